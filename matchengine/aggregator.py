"""
Groups raw image embeddings by item and builds one aggregate signature per item.
"""

import logging
from typing import Dict, Iterable, List, Tuple

from .models import ImageEmbedding, ItemAggregate, PROJECT, PRODUCT
from .vector_math import mean, normalize

logger = logging.getLogger(__name__)


def build_aggregate(item_id: str, item_type: str,
                    embeddings: List[ImageEmbedding], dim: int = None) -> ItemAggregate:
    """
    Build the aggregate for a single item.

    An item with no embeddings gets the zero vector, which has zero
    similarity to everything.
    """
    vector_by_image_id = {}
    for emb in embeddings:
        vector_by_image_id[emb.image_id] = emb.vector

    mean_vector = normalize(mean(list(vector_by_image_id.values()), dim=dim))
    return ItemAggregate(
        item_id=item_id,
        item_type=item_type,
        mean_vector=mean_vector,
        image_ids=list(vector_by_image_id.keys()),
        vector_by_image_id=vector_by_image_id,
    )


def aggregate_embeddings(embeddings: Iterable[ImageEmbedding],
                         dim: int = None) -> Tuple[List[ItemAggregate], List[ItemAggregate]]:
    """
    Single pass over image embeddings, grouped by (item_type, item_id).

    Args:
        embeddings: Unordered image embeddings
        dim: Embedding dimension used for degenerate (empty) aggregates

    Returns:
        Tuple of (project aggregates, product aggregates), each in first-seen order
    """
    groups: Dict[Tuple[str, str], List[ImageEmbedding]] = {}
    skipped = 0

    for emb in embeddings:
        if emb.item_type not in (PROJECT, PRODUCT):
            skipped += 1
            continue
        groups.setdefault((emb.item_type, emb.item_id), []).append(emb)

    if skipped:
        logger.warning(f"Skipped {skipped} embeddings with unknown item type")

    projects: List[ItemAggregate] = []
    products: List[ItemAggregate] = []
    for (item_type, item_id), group in groups.items():
        aggregate = build_aggregate(item_id, item_type, group, dim=dim)
        if item_type == PROJECT:
            projects.append(aggregate)
        else:
            products.append(aggregate)

    logger.info(f"Aggregated {len(projects)} projects and {len(products)} products")
    return projects, products


def filter_members(aggregates: List[ItemAggregate], valid_ids) -> List[ItemAggregate]:
    """Keep only aggregates whose item id is a current catalog member."""
    return [agg for agg in aggregates if agg.item_id in valid_ids]
