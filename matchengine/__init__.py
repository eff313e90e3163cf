"""
Project/Product Match Engine Module

This module recommends likely project <-> product associations from the visual
similarity of their photographs:
- Per-item aggregate signatures from precomputed image embeddings
- Brute-force cosine similarity between the two catalogs
- Confidence tiers, a bounded top-N per project and evidence image pairs
- Idempotent PostgreSQL persistence with a run-tracking ledger
- REST API backend with FastAPI and a queue-draining background worker

Main components:
- vector_math / aggregator / matcher: pure in-memory transforms
- rebuild: full rebuild orchestration and the single-flight guard
- incremental: per-project recompute after photo changes
- database: PostgreSQL stores for embeddings, catalog, matches and runs
- config: Configuration management and environment variables
"""

__version__ = "1.0.0"
__author__ = "Match Engine Team"

from .aggregator import aggregate_embeddings
from .matcher import compute_matches, score_from_similarity, tier_from_score
from .rebuild import RebuildOrchestrator, rebuild_matches
from .incremental import update_project_matches
from .database import MatchEngineService, DatabaseManager, DatabaseConfig
from .config import Config, config

__all__ = [
    'aggregate_embeddings',
    'compute_matches',
    'score_from_similarity',
    'tier_from_score',
    'RebuildOrchestrator',
    'rebuild_matches',
    'update_project_matches',
    'MatchEngineService',
    'DatabaseManager',
    'DatabaseConfig',
    'Config',
    'config'
]
