"""
Full rebuild of the match table from image embeddings.

Aggregates every item's embeddings, scores all projects against all products,
removes stale rows, upserts the new candidate set under a fresh run id, retires
each recomputed project's older rows and records the run in `matches_runs`.
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, List, Set

from .aggregator import aggregate_embeddings, filter_members
from .matcher import compute_matches
from .models import (
    MatchCandidate, RebuildResult, RunContext, RebuildInProgressError,
    RUN_COMPLETED, RUN_FAILED,
)

logger = logging.getLogger(__name__)

_process_lock = threading.Lock()


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@contextmanager
def rebuild_guard(service):
    """
    Single-flight guard for anything that writes the match table.

    Combines an in-process lock with the service's database advisory lock.
    Raises RebuildInProgressError instead of waiting when either is held.
    """
    if not _process_lock.acquire(blocking=False):
        raise RebuildInProgressError("A match rebuild is already running in this process")
    try:
        with service.rebuild_lock() as acquired:
            if not acquired:
                raise RebuildInProgressError("A match rebuild is already running")
            yield
    finally:
        _process_lock.release()


def cleanup_stale_matches(service, ctx: RunContext,
                          valid_project_ids: Set[str], valid_product_ids: Set[str]) -> int:
    """Delete persisted matches whose project or product left the catalog, any run."""
    existing = service.match_manager.get_all_matches()
    stale = [
        row for row in existing
        if row["project_id"] not in valid_project_ids or row["product_id"] not in valid_product_ids
    ]

    for row in stale:
        project_id, product_id = row["project_id"], row["product_id"]
        try:
            service.match_manager.delete_match(project_id, product_id)
            ctx.matches_deleted_stale += 1
        except Exception as e:
            logger.warning(f"Failed to delete stale match {project_id}/{product_id}: {e}")
            ctx.errors.append(f"delete stale {project_id}/{product_id}: {e}")

    if stale:
        logger.info(f"Deleted {ctx.matches_deleted_stale}/{len(stale)} stale matches")
    return ctx.matches_deleted_stale


def upsert_candidates(service, ctx: RunContext, candidates: List[MatchCandidate]) -> int:
    """Upsert every candidate stamped with the run id; failures are collected."""
    for candidate in candidates:
        try:
            service.match_manager.upsert_match(candidate, ctx.run_id, ctx.started_at)
            ctx.matches_upserted += 1
        except Exception as e:
            logger.warning(
                f"Failed to upsert match {candidate.project_id}/{candidate.product_id}: {e}"
            )
            ctx.errors.append(f"{candidate.project_id}/{candidate.product_id}: {e}")
    return ctx.matches_upserted


def supersede_old_rows(service, ctx: RunContext, project_ids: Iterable[str]) -> int:
    """
    Make each recomputed project's match set an exact replacement.

    Projects not passed in keep their existing rows.
    """
    deleted = 0
    for project_id in project_ids:
        try:
            deleted += service.match_manager.delete_superseded(project_id, ctx.run_id) or 0
        except Exception as e:
            logger.warning(f"Failed to delete old runs for project {project_id}: {e}")
            ctx.errors.append(f"delete old run for project {project_id}: {e}")
    return deleted


class RebuildOrchestrator:
    """
    Batch entry point for recomputing every project's matches.

    The run ledger is best-effort: a missing or failing `matches_runs` table
    never blocks the rebuild.
    """

    def __init__(self, service, top_n: int = None, dim: int = None):
        self.service = service
        self.top_n = top_n
        self.dim = dim

    def run(self) -> RebuildResult:
        with rebuild_guard(self.service):
            return self._run()

    def _run(self) -> RebuildResult:
        ctx = RunContext(run_id=str(uuid.uuid4()), started_at=utc_now())
        logger.info(f"Starting match rebuild {ctx.run_id}")
        self._insert_run(ctx)

        try:
            embeddings = self.service.embedding_manager.get_all_embeddings()
            projects, products = aggregate_embeddings(embeddings, dim=self.dim)

            valid_project_ids = self.service.catalog_manager.get_valid_project_ids()
            valid_product_ids = self.service.catalog_manager.get_valid_product_ids()
            projects = filter_members(projects, valid_project_ids)
            products = filter_members(products, valid_product_ids)
            logger.info(f"Matching {len(projects)} catalog projects against {len(products)} catalog products")

            candidates = compute_matches(projects, products, top_n=self.top_n)

            cleanup_stale_matches(self.service, ctx, valid_project_ids, valid_product_ids)
            upsert_candidates(self.service, ctx, candidates)
            supersede_old_rows(self.service, ctx, [p.item_id for p in projects])

            result = RebuildResult(
                run_id=ctx.run_id,
                projects_count=len(projects),
                products_count=len(products),
                matches_upserted=ctx.matches_upserted,
                matches_deleted_stale=ctx.matches_deleted_stale,
                errors=list(ctx.errors),
            )
            self._update_run(
                ctx.run_id,
                status=RUN_COMPLETED,
                completed_at=utc_now(),
                projects_count=result.projects_count,
                products_count=result.products_count,
                matches_upserted=result.matches_upserted,
                matches_deleted_stale=result.matches_deleted_stale,
                error_message=ctx.error_summary(),
            )
            logger.info(
                f"Match rebuild {ctx.run_id} completed: projects={result.projects_count} "
                f"products={result.products_count} upserted={result.matches_upserted} "
                f"deleted_stale={result.matches_deleted_stale} errors={len(result.errors)}"
            )
            return result

        except Exception as e:
            logger.exception(f"Match rebuild {ctx.run_id} failed: {e}")
            self._update_run(ctx.run_id, status=RUN_FAILED, completed_at=utc_now(),
                             error_message=str(e))
            raise

    def _insert_run(self, ctx: RunContext):
        try:
            self.service.run_log_manager.insert_run(ctx.run_id, ctx.started_at)
        except Exception as e:
            logger.warning(f"Could not record run {ctx.run_id} start: {e}")

    def _update_run(self, run_id: str, **fields):
        try:
            self.service.run_log_manager.update_run(run_id, **fields)
        except Exception as e:
            logger.warning(f"Could not update run {run_id}: {e}")


def rebuild_matches(service, top_n: int = None, dim: int = None) -> RebuildResult:
    """Run a full rebuild; raises RebuildInProgressError if one is already running."""
    return RebuildOrchestrator(service, top_n=top_n, dim=dim).run()
