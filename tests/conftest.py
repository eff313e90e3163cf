import sys
import uuid
from contextlib import contextmanager
from pathlib import Path

import numpy as np
import pytest

# Ensure project root is on sys.path so `matchengine` package can be imported
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from matchengine.models import ImageEmbedding, PROJECT, PRODUCT


def unit(*values):
    v = np.array(values, dtype=np.float32)
    return v / np.linalg.norm(v)


def emb(item_type, item_id, image_id, *values):
    return ImageEmbedding(item_id=item_id, item_type=item_type, image_id=image_id,
                          vector=np.array(values, dtype=np.float32))


class FakeEmbeddingManager:
    def __init__(self, embeddings=None, fail=None):
        self.embeddings = list(embeddings or [])
        self.fail = fail

    def get_all_embeddings(self):
        if self.fail:
            raise self.fail
        return list(self.embeddings)

    def get_embeddings_by_type(self, item_type):
        return [e for e in self.embeddings if e.item_type == item_type]

    def get_item_embeddings(self, item_type, item_id):
        return [e for e in self.embeddings if e.item_type == item_type and e.item_id == item_id]


class FakeCatalogManager:
    def __init__(self, project_ids=(), product_ids=()):
        self.project_ids = set(project_ids)
        self.product_ids = set(product_ids)

    def get_valid_project_ids(self):
        return set(self.project_ids)

    def get_valid_product_ids(self):
        return set(self.product_ids)

    def is_valid_project(self, project_id):
        return project_id in self.project_ids


class FakeMatchManager:
    def __init__(self, catalog=None):
        self.rows = {}
        self.catalog = catalog
        self.fail_upsert = set()
        self.fail_delete = set()
        self.fail_supersede = set()

    def seed(self, project_id, product_id, score=50, tier="possible", run_id="old-run",
             evidence=None):
        self.rows[(project_id, product_id)] = {
            "project_id": project_id,
            "product_id": product_id,
            "run_id": run_id,
            "score": score,
            "tier": tier,
            "reasons": [{"type": "embedding", "score": score}],
            "evidence_image_ids": list(evidence or []),
            "updated_at": "2026-01-01T00:00:00+00:00",
        }

    def get_all_matches(self):
        return [
            {"project_id": r["project_id"], "product_id": r["product_id"], "run_id": r["run_id"]}
            for r in self.rows.values()
        ]

    def upsert_match(self, candidate, run_id, updated_at):
        key = (candidate.project_id, candidate.product_id)
        if key in self.fail_upsert:
            raise RuntimeError("upsert refused")
        self.rows[key] = candidate.to_row(run_id, updated_at)

    def delete_match(self, project_id, product_id):
        if (project_id, product_id) in self.fail_delete:
            raise RuntimeError("delete refused")
        return 1 if self.rows.pop((project_id, product_id), None) else 0

    def delete_superseded(self, project_id, run_id):
        if project_id in self.fail_supersede:
            raise RuntimeError("supersede refused")
        stale = [k for k, r in self.rows.items() if k[0] == project_id and r["run_id"] != run_id]
        for key in stale:
            del self.rows[key]
        return len(stale)

    def _select(self, predicate, min_score, tiers, limit, offset, secondary):
        rows = [
            r for r in self.rows.values()
            if predicate(r) and r["score"] >= min_score
            and (tiers is None or r["tier"] in tiers)
            and (self.catalog is None or (
                r["project_id"] in self.catalog.project_ids
                and r["product_id"] in self.catalog.product_ids))
        ]
        rows.sort(key=lambda r: (-r["score"], r[secondary]))
        return [dict(r) for r in rows[offset:offset + limit]]

    def get_project_matches(self, project_id, min_score=0, tiers=None, limit=50, offset=0):
        self.last_read = {"min_score": min_score, "tiers": tiers, "limit": limit, "offset": offset}
        return self._select(lambda r: r["project_id"] == project_id,
                            min_score, tiers, limit, offset, "product_id")

    def get_product_matches(self, product_id, min_score=0, tiers=None, limit=50, offset=0):
        self.last_read = {"min_score": min_score, "tiers": tiers, "limit": limit, "offset": offset}
        return self._select(lambda r: r["product_id"] == product_id,
                            min_score, tiers, limit, offset, "project_id")

    def get_image_matches(self, image_id, min_score=0, tiers=None, limit=20):
        return self._select(lambda r: image_id in r["evidence_image_ids"],
                            min_score, tiers, limit, 0, "project_id")

    def keys(self):
        return set(self.rows)


class FakeRunLogManager:
    def __init__(self, broken=False):
        self.runs = {}
        self.updates = []
        self.broken = broken

    def insert_run(self, run_id, started_at):
        if self.broken:
            raise RuntimeError('relation "matches_runs" does not exist')
        self.runs[run_id] = {"run_id": run_id, "status": "started", "started_at": started_at}

    def update_run(self, run_id, **fields):
        if self.broken:
            raise RuntimeError('relation "matches_runs" does not exist')
        self.updates.append((run_id, fields))
        self.runs[run_id].update(fields)

    def get_run(self, run_id):
        try:
            uuid.UUID(str(run_id))
        except ValueError:
            return None
        return self.runs.get(run_id)

    def get_latest_run(self):
        if not self.runs:
            return None
        return list(self.runs.values())[-1]


class FakeQueueManager:
    def __init__(self, projects=None, rebuild_requests=None):
        # project_id -> enqueue version
        self.projects = {}
        self.version = 0
        for project_id in projects or []:
            self.enqueue_project(project_id)
        self.rebuild_requests = list(rebuild_requests or [])

    def enqueue_project(self, project_id):
        # What the image_ai trigger does on a photo change
        self.version += 1
        self.projects[project_id] = self.version

    def queued_ids(self):
        return sorted(self.projects, key=self.projects.get)

    def get_queued_projects(self):
        return [{"project_id": p, "last_updated": self.projects[p]} for p in self.queued_ids()]

    def dequeue_project(self, project_id, last_updated):
        if project_id in self.projects and self.projects[project_id] <= last_updated:
            del self.projects[project_id]
            return 1
        return 0

    def request_rebuild(self):
        request_id = (max(self.rebuild_requests) if self.rebuild_requests else 0) + 1
        self.rebuild_requests.append(request_id)
        return request_id

    def latest_rebuild_request_id(self):
        return max(self.rebuild_requests) if self.rebuild_requests else None

    def clear_rebuild_requests(self, up_to_request_id):
        self.rebuild_requests = [r for r in self.rebuild_requests if r > up_to_request_id]


class FakeService:
    def __init__(self, embeddings=None, project_ids=(), product_ids=(), run_log_broken=False,
                 queued_projects=None, rebuild_requests=None):
        self.embedding_manager = FakeEmbeddingManager(embeddings)
        self.catalog_manager = FakeCatalogManager(project_ids, product_ids)
        self.match_manager = FakeMatchManager(self.catalog_manager)
        self.run_log_manager = FakeRunLogManager(broken=run_log_broken)
        self.queue_manager = FakeQueueManager(queued_projects, rebuild_requests)
        self.lock_available = True
        self.connected = True

    @contextmanager
    def rebuild_lock(self):
        yield self.lock_available

    def check_connection(self):
        return self.connected


@pytest.fixture
def scenario_service():
    """
    Project P sits close to product A (cosine 0.85) and far from product B (cosine 0.2).
    """
    a = unit(0.85, np.sqrt(1 - 0.85 ** 2), 0.0)
    b = unit(0.2, 0.0, np.sqrt(1 - 0.2 ** 2))
    embeddings = [
        emb(PROJECT, "P", "p-img-1", 1.0, 0.0, 0.0),
        emb(PROJECT, "P", "p-img-2", 1.0, 0.0, 0.0),
        emb(PRODUCT, "A", "a-img-1", *a),
        emb(PRODUCT, "B", "b-img-1", *b),
    ]
    return FakeService(embeddings, project_ids={"P"}, product_ids={"A", "B"})
