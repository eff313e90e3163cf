"""
FastAPI backend for the project/product match engine.
Provides REST API endpoints to rebuild matches, recompute a single project, and read
current matches for display.
"""

from fastapi import FastAPI, HTTPException, Query, Depends
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from typing import List, Optional, Dict, Any
from datetime import datetime
import asyncio
import logging
from dataclasses import asdict
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from .config import Config
from .database import MatchEngineService, DatabaseConfig
from .incremental import update_project_matches
from .match_worker import start_background_worker
from .models import RebuildInProgressError
from .queries import get_project_matches, get_product_matched_projects, get_image_matches
from .rebuild import rebuild_matches

# Configure logging
logging.basicConfig(level=Config.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Match Engine API",
    description="Visual project/product match rebuilds and match reads",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify exact origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global variables for services
db_service: Optional[MatchEngineService] = None
# Stop callable returned by the background worker starter
worker_stopper = None

# Pydantic models for API responses
class MatchInfo(BaseModel):
    project_id: str
    product_id: str
    score: int
    tier: str
    reasons: List[Dict[str, Any]] = []
    evidence_image_ids: List[str] = []
    run_id: Optional[str] = None
    updated_at: Optional[datetime] = None

class MatchList(BaseModel):
    items: List[MatchInfo]

class RebuildResponse(BaseModel):
    run_id: str
    projects_count: int
    products_count: int
    matches_upserted: int
    matches_deleted_stale: int
    errors: List[str]

class IncrementalResponse(BaseModel):
    project_id: str
    upserted_count: int
    errors: List[str]

class RunInfo(BaseModel):
    run_id: str
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    projects_count: Optional[int] = None
    products_count: Optional[int] = None
    matches_upserted: Optional[int] = None
    matches_deleted_stale: Optional[int] = None
    error_message: Optional[str] = None

class SystemStatus(BaseModel):
    status: str
    database_connected: bool
    latest_run: Optional[RunInfo] = None
    queued_projects: int = 0


def get_service() -> MatchEngineService:
    """Dependency returning the initialized service."""
    if db_service is None:
        raise HTTPException(status_code=503, detail="Match service not initialized")
    return db_service


# Startup and shutdown events
@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    global db_service, worker_stopper

    try:
        db_service = MatchEngineService(DatabaseConfig(**Config.get_db_config()))

        # Start background worker that drains the recompute/rebuild queues
        if Config.WORKER_ENABLED:
            try:
                worker_stopper = await start_background_worker(db_service, interval=Config.WORKER_INTERVAL)
            except Exception as e:
                logger.warning(f"Failed to start match worker: {e}")

        logger.info("Application startup completed successfully")

    except Exception as e:
        logger.error(f"Error during startup: {e}")
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Shutdown hook to stop background worker cleanly."""
    global worker_stopper
    if worker_stopper is not None:
        try:
            await worker_stopper()
        except Exception as e:
            logger.warning(f"Error while stopping worker: {e}")


def _match_list(rows: List[Dict[str, Any]]) -> MatchList:
    return MatchList(items=[MatchInfo(**row) for row in rows])


# API Endpoints


@app.get("/status", response_model=SystemStatus)
async def get_system_status(service: MatchEngineService = Depends(get_service)):
    """Get system status and health information."""
    if not service.check_connection():
        return SystemStatus(status="error", database_connected=False)

    try:
        latest = service.run_log_manager.get_latest_run()
        queued = service.queue_manager.get_queued_projects()
        return SystemStatus(
            status="healthy",
            database_connected=True,
            latest_run=RunInfo(**latest) if latest else None,
            queued_projects=len(queued)
        )
    except Exception as e:
        logger.error(f"Error getting system status: {e}")
        return SystemStatus(status="degraded", database_connected=True)


@app.post("/matches/rebuild", response_model=RebuildResponse)
async def rebuild_all_matches(service: MatchEngineService = Depends(get_service)):
    """Rebuild all matches from image embeddings."""
    try:
        result = await asyncio.to_thread(rebuild_matches, service)
        return RebuildResponse(**asdict(result))
    except RebuildInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Error rebuilding matches: {e}")
        raise HTTPException(status_code=500, detail=f"Error rebuilding matches: {str(e)}")


@app.post("/projects/{project_id}/matches/recompute", response_model=IncrementalResponse)
async def recompute_project_matches(project_id: str, service: MatchEngineService = Depends(get_service)):
    """Recompute matches for one project after its photos changed."""
    try:
        result = await asyncio.to_thread(update_project_matches, service, project_id)
        return IncrementalResponse(**asdict(result))
    except RebuildInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Error recomputing matches for project {project_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Error recomputing matches: {str(e)}")


@app.get("/projects/{project_id}/matches", response_model=MatchList)
async def project_matches(
    project_id: str,
    min_score: int = Query(Config.MATCH_MIN_SCORE, ge=0, le=100, description="Minimum score (inclusive)"),
    limit: int = Query(Config.DEFAULT_MATCH_LIMIT, ge=1, le=Config.MAX_MATCH_LIMIT, description="Number of matches to return"),
    tier: str = Query("all", description="all, confident, strong, likely or possible"),
    service: MatchEngineService = Depends(get_service)
):
    """Get products matched to a project."""
    try:
        return _match_list(get_project_matches(service, project_id, min_score=min_score, limit=limit, tier=tier))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error retrieving matches for project {project_id}: {e}")
        raise HTTPException(status_code=500, detail="Error retrieving project matches")


@app.get("/products/{product_id}/matches", response_model=MatchList)
async def product_matches(
    product_id: str,
    min_score: int = Query(Config.MATCH_MIN_SCORE, ge=0, le=100, description="Minimum score (inclusive)"),
    limit: int = Query(Config.DEFAULT_MATCH_LIMIT, ge=1, le=Config.MAX_MATCH_LIMIT, description="Number of matches to return"),
    tier: str = Query("all", description="all, confident, strong, likely or possible"),
    service: MatchEngineService = Depends(get_service)
):
    """Get projects matched to a product."""
    try:
        return _match_list(get_product_matched_projects(service, product_id, min_score=min_score, limit=limit, tier=tier))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error retrieving matches for product {product_id}: {e}")
        raise HTTPException(status_code=500, detail="Error retrieving product matches")


@app.get("/images/{image_id}/matches", response_model=MatchList)
async def image_matches(
    image_id: str,
    min_score: int = Query(Config.MATCH_MIN_SCORE, ge=0, le=100),
    limit: int = Query(Config.LIGHTBOX_MATCH_LIMIT, ge=1, le=Config.MAX_MATCH_LIMIT),
    tier: str = Query("all"),
    service: MatchEngineService = Depends(get_service)
):
    """Get matches whose evidence pair includes the image."""
    try:
        return _match_list(get_image_matches(service, image_id, min_score=min_score, limit=limit, tier=tier))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error retrieving matches for image {image_id}: {e}")
        raise HTTPException(status_code=500, detail="Error retrieving image matches")


@app.get("/runs/latest", response_model=RunInfo)
async def latest_run(service: MatchEngineService = Depends(get_service)):
    """Get the most recent rebuild run."""
    run = service.run_log_manager.get_latest_run()
    if not run:
        raise HTTPException(status_code=404, detail="No runs recorded")
    return RunInfo(**run)


@app.get("/runs/{run_id}", response_model=RunInfo)
async def get_run(run_id: str, service: MatchEngineService = Depends(get_service)):
    """Get a rebuild run by id."""
    run = service.run_log_manager.get_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return RunInfo(**run)


# Administrative endpoints
@app.get("/admin/queues")
async def admin_get_queues(service: MatchEngineService = Depends(get_service)):
    """Return queued project recomputes and the pending rebuild request (for operators)."""
    try:
        return {
            "queued_projects": service.queue_manager.get_queued_projects(),
            "pending_rebuild_request": service.queue_manager.latest_rebuild_request_id()
        }
    except Exception as e:
        logger.error(f"Error fetching admin queues: {e}")
        raise HTTPException(status_code=500, detail="Error fetching admin queues")


@app.post("/admin/rebuild-request")
async def admin_request_rebuild(service: MatchEngineService = Depends(get_service)):
    """Queue a full rebuild for the background worker."""
    try:
        request_id = service.queue_manager.request_rebuild()
        return {"message": "Rebuild queued", "request_id": request_id}
    except Exception as e:
        logger.error(f"Error queueing rebuild: {e}")
        raise HTTPException(status_code=500, detail="Error queueing rebuild")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=Config.API_HOST, port=Config.API_PORT)
