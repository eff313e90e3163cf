"""
Recompute one project's matches after its photos change.

Uses the same aggregation and scoring as the full rebuild but touches only the
given project's rows. No run ledger entry and no catalog-wide stale cleanup.
"""

import logging
import uuid

from .aggregator import aggregate_embeddings, build_aggregate, filter_members
from .matcher import match_project
from .models import IncrementalResult, RunContext, PROJECT, PRODUCT
from .rebuild import rebuild_guard, upsert_candidates, utc_now

logger = logging.getLogger(__name__)


def update_project_matches(service, project_id: str, top_n: int = None,
                           dim: int = None) -> IncrementalResult:
    """
    Recompute and replace the match rows of a single project.

    Args:
        service: Service exposing embedding, catalog and match managers
        project_id: Project whose photo set changed
        top_n: Per-project cap, defaults to Config.TOP_N_PER_PROJECT
        dim: Embedding dimension for the zero vector of an image-less project

    Returns:
        IncrementalResult with the number of rows upserted and non-fatal errors

    Raises:
        RebuildInProgressError: a rebuild or another update holds the match table
    """
    with rebuild_guard(service):
        if not service.catalog_manager.is_valid_project(project_id):
            logger.warning(f"Project {project_id} is not in the catalog; skipping match update")
            return IncrementalResult(project_id=project_id, upserted_count=0)

        # Stamped on rows only; incremental updates have no run ledger entry
        ctx = RunContext(run_id=str(uuid.uuid4()), started_at=utc_now())

        project = build_aggregate(
            project_id, PROJECT,
            service.embedding_manager.get_item_embeddings(PROJECT, project_id),
            dim=dim,
        )
        _, products = aggregate_embeddings(
            service.embedding_manager.get_embeddings_by_type(PRODUCT), dim=dim
        )
        products = filter_members(products, service.catalog_manager.get_valid_product_ids())

        candidates = match_project(project, products, top_n=top_n)
        upsert_candidates(service, ctx, candidates)

        try:
            service.match_manager.delete_superseded(project_id, ctx.run_id)
        except Exception as e:
            logger.warning(f"Failed to delete old runs for project {project_id}: {e}")
            ctx.errors.append(f"delete old runs: {e}")

        logger.info(
            f"Updated matches for project {project_id}: "
            f"{len(project.image_ids)} images, {ctx.matches_upserted} upserted, "
            f"{len(ctx.errors)} errors"
        )
        return IncrementalResult(
            project_id=project_id,
            upserted_count=ctx.matches_upserted,
            errors=list(ctx.errors),
        )
