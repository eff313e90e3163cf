"""
Data types shared by the aggregator, matcher, rebuild and incremental paths.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

import numpy as np

PROJECT = "project"
PRODUCT = "product"
ITEM_TYPES = (PROJECT, PRODUCT)

TIER_STRONG = "strong"
TIER_LIKELY = "likely"
TIER_POSSIBLE = "possible"

RUN_STARTED = "started"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"


class MatchEngineError(Exception):
    """Base error for the match engine."""


class RebuildInProgressError(MatchEngineError):
    """Raised when another rebuild or incremental update holds the match table."""


@dataclass
class ImageEmbedding:
    """One processed photo of a project or product."""
    item_id: str
    item_type: str
    image_id: str
    vector: np.ndarray


@dataclass
class ItemAggregate:
    """
    Per-item signature: the normalized mean of all image vectors.

    `vector_by_image_id` keeps the per-image vectors (in read order) for
    evidence lookup. Never persisted.
    """
    item_id: str
    item_type: str
    mean_vector: np.ndarray
    image_ids: List[str] = field(default_factory=list)
    vector_by_image_id: Dict[str, np.ndarray] = field(default_factory=dict)


@dataclass
class MatchCandidate:
    """A scored project/product pair that survived tiering and the top-N cap."""
    project_id: str
    product_id: str
    score: int
    tier: str
    reasons: List[Dict[str, Any]]
    evidence_image_ids: List[str]

    def to_row(self, run_id: str, updated_at: str) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "product_id": self.product_id,
            "run_id": run_id,
            "score": self.score,
            "tier": self.tier,
            "reasons": self.reasons,
            "evidence_image_ids": self.evidence_image_ids,
            "updated_at": updated_at,
        }


@dataclass
class RunContext:
    """State threaded through the stages of a single rebuild."""
    run_id: str
    started_at: str
    errors: List[str] = field(default_factory=list)
    matches_upserted: int = 0
    matches_deleted_stale: int = 0

    def error_summary(self, limit: int = 3) -> Optional[str]:
        """First `limit` non-fatal errors joined for the run ledger, or None."""
        if not self.errors:
            return None
        return "; ".join(self.errors[:limit])


@dataclass
class RebuildResult:
    run_id: str
    projects_count: int
    products_count: int
    matches_upserted: int
    matches_deleted_stale: int
    errors: List[str] = field(default_factory=list)


@dataclass
class IncrementalResult:
    project_id: str
    upserted_count: int
    errors: List[str] = field(default_factory=list)
