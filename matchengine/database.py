"""
Database utilities for image embeddings, catalog membership, matches and run logs.
Handles PostgreSQL (pgvector) operations for the match engine.
"""

import psycopg2
from psycopg2.extras import RealDictCursor, Json
import numpy as np
from typing import List, Dict, Optional, Any, Iterable, Set
import logging
from contextlib import contextmanager
from dataclasses import dataclass
import os
import uuid
from pathlib import Path

from .config import Config
from .models import ImageEmbedding, MatchCandidate, ITEM_TYPES, PROJECT, RUN_STARTED

logger = logging.getLogger(__name__)


def parse_vector(vector_data: Any) -> np.ndarray:
    """Parse a pgvector value (text '[x,y,...]', list or array) into a float32 array."""
    if isinstance(vector_data, str):
        # Remove brackets and split by commas
        vector_str = vector_data.strip().strip('[]')
        if not vector_str:
            return np.zeros(0, dtype=np.float32)
        vector_values = [float(x.strip()) for x in vector_str.split(',')]
        return np.array(vector_values, dtype=np.float32)
    return np.array(vector_data, dtype=np.float32)


@dataclass
class DatabaseConfig:
    """Database configuration.

    Values default to environment variables when not provided so that
    creating `DatabaseConfig()` picks up settings from `.env` or the
    environment (matching `matchengine/config.py`).
    """
    host: str = None
    port: int = None
    dbname: str = None
    user: str = None
    password: str = None

    def __post_init__(self):
        # Read from environment if values not explicitly provided
        self.host = self.host or os.getenv("DB_HOST", "localhost")
        self.port = int(self.port or os.getenv("DB_PORT", 5432))
        self.dbname = self.dbname or os.getenv("DB_NAME", "matches")
        self.user = self.user or os.getenv("DB_USER", "postgres")
        self.password = self.password or os.getenv("DB_PASSWORD", "postgres")

    def get_connection_string(self) -> str:
        return f"host={self.host} port={self.port} dbname={self.dbname} user={self.user} password={self.password}"


class DatabaseManager:
    """
    Manages database connections for the match engine.
    """

    def __init__(self, config: DatabaseConfig = None):
        self.config = config or DatabaseConfig()

    @contextmanager
    def get_connection(self):
        """Context manager for database connections."""
        conn = None
        try:
            conn = psycopg2.connect(self.config.get_connection_string())
            yield conn
        except Exception as e:
            if conn:
                conn.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            if conn:
                conn.close()

    @contextmanager
    def advisory_lock(self, key: int):
        """
        Hold a session-level advisory lock for the duration of the block.

        Yields True if the lock was acquired, False if another session holds it.
        The lock lives on its own connection so it survives the block's commits.
        """
        conn = psycopg2.connect(self.config.get_connection_string())
        conn.autocommit = True
        acquired = False
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_try_advisory_lock(%s)", (key,))
                acquired = bool(cur.fetchone()[0])
            yield acquired
        finally:
            try:
                if acquired:
                    with conn.cursor() as cur:
                        cur.execute("SELECT pg_advisory_unlock(%s)", (key,))
            finally:
                conn.close()

    def execute_script(self, script_path: str):
        """Execute SQL script from file."""
        with open(script_path, 'r') as f:
            script = f.read()

        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(script)
            conn.commit()
            logger.info(f"Successfully executed script: {script_path}")


class EmbeddingManager:
    """
    Reads per-image embeddings from the `image_ai` table.
    """

    _SELECT = """
        SELECT image_id, listing_id, listing_type, embedding
        FROM image_ai
        WHERE listing_id IS NOT NULL
          AND embedding IS NOT NULL
          AND listing_type = ANY(%s)
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def _fetch(self, extra_sql: str = "", params: tuple = ()) -> List[ImageEmbedding]:
        query = self._SELECT + extra_sql + " ORDER BY listing_id, image_id"
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, (list(ITEM_TYPES),) + params)
                rows = cur.fetchall()

        return [
            ImageEmbedding(
                item_id=str(listing_id),
                item_type=listing_type,
                image_id=str(image_id),
                vector=parse_vector(embedding),
            )
            for image_id, listing_id, listing_type, embedding in rows
        ]

    def get_all_embeddings(self) -> List[ImageEmbedding]:
        """Get every usable project and product image embedding."""
        embeddings = self._fetch()
        logger.info(f"Loaded {len(embeddings)} image embeddings")
        return embeddings

    def get_embeddings_by_type(self, item_type: str) -> List[ImageEmbedding]:
        """Get all image embeddings for one item type."""
        return self._fetch(" AND listing_type = %s", (item_type,))

    def get_item_embeddings(self, item_type: str, item_id: str) -> List[ImageEmbedding]:
        """Get image embeddings for a single project or product."""
        return self._fetch(" AND listing_type = %s AND listing_id = %s", (item_type, item_id))


class CatalogManager:
    """
    Current catalog membership: which project and product ids exist.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def _ids(self, query: str, params: tuple = ()) -> Set[str]:
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                return {str(row[0]) for row in cur.fetchall()}

    def get_valid_project_ids(self) -> Set[str]:
        return self._ids("SELECT id FROM listings WHERE type = %s", (PROJECT,))

    def get_valid_product_ids(self) -> Set[str]:
        return self._ids("SELECT id FROM products")

    def is_valid_project(self, project_id: str) -> bool:
        found = self._ids(
            "SELECT id FROM listings WHERE type = %s AND id = %s", (PROJECT, project_id)
        )
        return bool(found)


class MatchManager:
    """
    Manages the `matches` table: upserts, deletions and display reads.
    """

    _COLUMNS = "m.project_id, m.product_id, m.run_id::text AS run_id, m.score, m.tier, " \
               "m.reasons, m.evidence_image_ids, m.updated_at"

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def get_all_matches(self) -> List[Dict[str, Any]]:
        """Get the key and run id of every persisted match."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("SELECT project_id, product_id, run_id::text AS run_id FROM matches")
                return [dict(row) for row in cur.fetchall()]

    def upsert_match(self, candidate: MatchCandidate, run_id: str, updated_at: str):
        """Insert or update a match by (project_id, product_id), stamping the run id."""
        row = candidate.to_row(run_id, updated_at)

        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO matches (project_id, product_id, run_id, score, tier,
                                         reasons, evidence_image_ids, updated_at)
                    VALUES (%s, %s, %s::uuid, %s, %s, %s, %s, %s)
                    ON CONFLICT (project_id, product_id)
                    DO UPDATE SET run_id = EXCLUDED.run_id,
                                  score = EXCLUDED.score,
                                  tier = EXCLUDED.tier,
                                  reasons = EXCLUDED.reasons,
                                  evidence_image_ids = EXCLUDED.evidence_image_ids,
                                  updated_at = EXCLUDED.updated_at;
                """, (row["project_id"], row["product_id"], row["run_id"], row["score"],
                      row["tier"], Json(row["reasons"]), row["evidence_image_ids"],
                      row["updated_at"]))
                conn.commit()

    def delete_match(self, project_id: str, product_id: str) -> int:
        """Delete one match by key."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    DELETE FROM matches WHERE project_id = %s AND product_id = %s
                """, (project_id, product_id))
                deleted = cur.rowcount
                conn.commit()
                return deleted

    def delete_superseded(self, project_id: str, run_id: str) -> int:
        """Delete a project's matches written by any run other than `run_id`."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    DELETE FROM matches
                    WHERE project_id = %s AND run_id IS DISTINCT FROM %s::uuid
                """, (project_id, run_id))
                deleted = cur.rowcount
                conn.commit()
                return deleted

    def _select(self, where_sql: str, params: tuple, min_score: int,
                tiers: Optional[Iterable[str]], limit: int, offset: int,
                order_sql: str) -> List[Dict[str, Any]]:
        # Joins restrict reads to rows whose project and product still exist
        query = f"""
            SELECT {self._COLUMNS}
            FROM matches m
            JOIN listings l ON l.id = m.project_id AND l.type = 'project'
            JOIN products p ON p.id = m.product_id
            WHERE {where_sql} AND m.score >= %s
        """
        params = params + (min_score,)
        if tiers is not None:
            query += " AND m.tier = ANY(%s)"
            params += (list(tiers),)
        query += f" ORDER BY m.score DESC, {order_sql} LIMIT %s OFFSET %s"
        params += (limit, offset)

        with self.db_manager.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                return [dict(row) for row in cur.fetchall()]

    def get_project_matches(self, project_id: str, min_score: int = 0,
                            tiers: Optional[Iterable[str]] = None,
                            limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        """Get products matched to a project, best first."""
        return self._select("m.project_id = %s", (project_id,), min_score, tiers,
                            limit, offset, "m.product_id")

    def get_product_matches(self, product_id: str, min_score: int = 0,
                            tiers: Optional[Iterable[str]] = None,
                            limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        """Get projects matched to a product, best first."""
        return self._select("m.product_id = %s", (product_id,), min_score, tiers,
                            limit, offset, "m.project_id")

    def get_image_matches(self, image_id: str, min_score: int = 0,
                          tiers: Optional[Iterable[str]] = None,
                          limit: int = 20) -> List[Dict[str, Any]]:
        """Get matches whose evidence pair includes the image."""
        return self._select("%s = ANY(m.evidence_image_ids)", (image_id,), min_score, tiers,
                            limit, 0, "m.project_id, m.product_id")


class RunLogManager:
    """
    Manages the `matches_runs` ledger.
    """

    UPDATABLE_FIELDS = (
        "status", "completed_at", "projects_count", "products_count",
        "matches_upserted", "matches_deleted_stale", "error_message",
    )

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def insert_run(self, run_id: str, started_at: str):
        """Record a new run with status 'started'."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO matches_runs (run_id, status, started_at)
                    VALUES (%s::uuid, %s, %s)
                """, (run_id, RUN_STARTED, started_at))
                conn.commit()

    def update_run(self, run_id: str, **fields):
        """Update a run's terminal status and metrics."""
        unknown = set(fields) - set(self.UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown run fields: {sorted(unknown)}")
        if not fields:
            return

        columns = list(fields)
        assignments = ", ".join(f"{column} = %s" for column in columns)
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE matches_runs SET {assignments} WHERE run_id = %s::uuid",
                    tuple(fields[column] for column in columns) + (run_id,)
                )
                conn.commit()

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Get a run by id; ids that are not UUIDs match no run."""
        try:
            uuid.UUID(str(run_id))
        except ValueError:
            return None

        with self.db_manager.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("""
                    SELECT run_id::text AS run_id, status, started_at, completed_at,
                           projects_count, products_count, matches_upserted,
                           matches_deleted_stale, error_message
                    FROM matches_runs WHERE run_id = %s::uuid
                """, (run_id,))
                row = cur.fetchone()
                return dict(row) if row else None

    def get_latest_run(self) -> Optional[Dict[str, Any]]:
        """Get the most recently started run."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("""
                    SELECT run_id::text AS run_id, status, started_at, completed_at,
                           projects_count, products_count, matches_upserted,
                           matches_deleted_stale, error_message
                    FROM matches_runs ORDER BY started_at DESC LIMIT 1
                """)
                row = cur.fetchone()
                return dict(row) if row else None


class RecomputeQueueManager:
    """
    Work queues drained by the background worker: per-project recomputes
    (filled by the image_ai trigger) and full rebuild requests.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def get_queued_projects(self) -> List[Dict[str, Any]]:
        """Queued project recomputes, oldest first, each with its enqueue version."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("""
                    SELECT project_id, last_updated
                    FROM match_recompute_queue ORDER BY last_updated
                """)
                return [dict(row) for row in cur.fetchall()]

    def dequeue_project(self, project_id: str, last_updated) -> int:
        """Remove a served entry; a re-queue newer than `last_updated` stays pending."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    DELETE FROM match_recompute_queue
                    WHERE project_id = %s AND last_updated <= %s
                """, (project_id, last_updated))
                deleted = cur.rowcount
                conn.commit()
                return deleted

    def request_rebuild(self) -> int:
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO match_rebuild_requests DEFAULT VALUES
                    RETURNING request_id;
                """)
                request_id = cur.fetchone()[0]
                conn.commit()
                return request_id

    def latest_rebuild_request_id(self) -> Optional[int]:
        """Return the newest pending rebuild request id, or None."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT MAX(request_id) FROM match_rebuild_requests")
                row = cur.fetchone()
                return row[0] if row else None

    def clear_rebuild_requests(self, up_to_request_id: int):
        """Clear requests served by a rebuild; later requests stay pending."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM match_rebuild_requests WHERE request_id <= %s",
                    (up_to_request_id,)
                )
                conn.commit()


# High-level service class that combines all managers
class MatchEngineService:
    """
    High-level service bundling the stores the match engine reads and writes.
    """

    def __init__(self, config: DatabaseConfig = None):
        self.db_manager = DatabaseManager(config)
        self.embedding_manager = EmbeddingManager(self.db_manager)
        self.catalog_manager = CatalogManager(self.db_manager)
        self.match_manager = MatchManager(self.db_manager)
        self.run_log_manager = RunLogManager(self.db_manager)
        self.queue_manager = RecomputeQueueManager(self.db_manager)

    def rebuild_lock(self):
        """Advisory lock shared by full rebuilds and incremental updates."""
        return self.db_manager.advisory_lock(Config.REBUILD_LOCK_KEY)

    def setup_database(self, schema_path: str = None):
        """Setup database schema."""
        if schema_path is None:
            # Use default schema path
            schema_path = Path(__file__).parent.parent / "db" / "create_table.sql"

        if not os.path.exists(schema_path):
            raise FileNotFoundError(f"Schema file not found: {schema_path}")
        self.db_manager.execute_script(str(schema_path))

    def check_connection(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.db_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
            return True
        except Exception as e:
            logger.warning(f"Database connection check failed: {e}")
            return False
