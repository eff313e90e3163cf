"""
All-pairs project/product similarity: scoring, tiering, top-N selection and
evidence-pair lookup.
"""

import logging
import math
from typing import List, Optional, Tuple

from .config import Config
from .models import (
    ItemAggregate, MatchCandidate,
    TIER_STRONG, TIER_LIKELY, TIER_POSSIBLE,
)
from .vector_math import cosine_similarity

logger = logging.getLogger(__name__)

SCORE_STRONG = 80
SCORE_LIKELY = 60
SCORE_POSSIBLE = 40


def score_from_similarity(similarity: float) -> int:
    """Map a cosine similarity to an integer score in [0, 100], rounding half up."""
    clamped = max(0.0, min(1.0, float(similarity)))
    return int(math.floor(clamped * 100 + 0.5))


def tier_from_score(score: int) -> Optional[str]:
    """Confidence tier for a score; None means the pair is excluded."""
    if score >= SCORE_STRONG:
        return TIER_STRONG
    if score >= SCORE_LIKELY:
        return TIER_LIKELY
    if score >= SCORE_POSSIBLE:
        return TIER_POSSIBLE
    return None


def best_evidence_pair(project: ItemAggregate, product: ItemAggregate) -> List[str]:
    """
    Find the project image and product image with the highest pairwise similarity.

    Scans every image combination of the two items. Ties keep the first pair
    in image order.

    Returns:
        [project_image_id, product_image_id], or fewer ids if an item has no images
    """
    best_sim = -1.0
    best_project_image = project.image_ids[0] if project.image_ids else None
    best_product_image = product.image_ids[0] if product.image_ids else None

    for project_image_id in project.image_ids:
        project_vec = project.vector_by_image_id.get(project_image_id)
        if project_vec is None:
            continue
        for product_image_id in product.image_ids:
            product_vec = product.vector_by_image_id.get(product_image_id)
            if product_vec is None:
                continue
            sim = cosine_similarity(project_vec, product_vec)
            if sim > best_sim:
                best_sim = sim
                best_project_image = project_image_id
                best_product_image = product_image_id

    return [image_id for image_id in (best_project_image, best_product_image) if image_id]


def rank_products(project: ItemAggregate,
                  products: List[ItemAggregate]) -> List[Tuple[ItemAggregate, int]]:
    """Score every product against one project, best first, ties by product id."""
    scored = []
    for product in products:
        sim = cosine_similarity(project.mean_vector, product.mean_vector)
        scored.append((product, score_from_similarity(sim)))

    scored.sort(key=lambda x: (-x[1], x[0].item_id))
    return scored


def match_project(project: ItemAggregate, products: List[ItemAggregate],
                  top_n: int = None) -> List[MatchCandidate]:
    """
    Candidate matches for a single project.

    Keeps at most `top_n` products by score, then drops any whose tier is excluded.
    """
    top_n = Config.TOP_N_PER_PROJECT if top_n is None else top_n

    candidates = []
    for product, score in rank_products(project, products)[:top_n]:
        tier = tier_from_score(score)
        if tier is None:
            continue
        candidates.append(MatchCandidate(
            project_id=project.item_id,
            product_id=product.item_id,
            score=score,
            tier=tier,
            reasons=[{"type": "embedding", "score": score}],
            evidence_image_ids=best_evidence_pair(project, product),
        ))
    return candidates


def compute_matches(projects: List[ItemAggregate], products: List[ItemAggregate],
                    top_n: int = None) -> List[MatchCandidate]:
    """
    Full candidate match set for every project against every product.

    Args:
        projects: Project aggregates (already filtered to catalog members)
        products: Product aggregates (already filtered to catalog members)
        top_n: Per-project cap, defaults to Config.TOP_N_PER_PROJECT

    Returns:
        Candidates grouped by project in project order, best first within a project
    """
    candidates: List[MatchCandidate] = []
    for project in projects:
        candidates.extend(match_project(project, products, top_n=top_n))

    logger.info(
        f"Computed {len(candidates)} candidate matches "
        f"for {len(projects)} projects x {len(products)} products"
    )
    return candidates
