import asyncio
import logging

from .incremental import update_project_matches
from .models import RebuildInProgressError
from .rebuild import rebuild_matches

logger = logging.getLogger(__name__)


async def start_background_worker(service, interval: int = 30):
    """Start the background worker as an asyncio Task.

    The worker will:
    - Process `match_recompute_queue`: recompute matches for projects whose photos changed.
    - Process `match_rebuild_requests`: run a full rebuild when one has been requested.

    Blocking operations (database I/O and similarity computation) are offloaded to a thread via asyncio.to_thread.
    Work that finds a rebuild already running stays queued for the next tick.
    """
    stop_event = asyncio.Event()

    async def _loop():
        logger.info("Match worker started (interval=%s seconds)", interval)
        while not stop_event.is_set():
            try:
                # Process per-project recompute queue
                try:
                    queued = await asyncio.to_thread(service.queue_manager.get_queued_projects)

                    for entry in queued:
                        project_id = entry["project_id"]
                        try:
                            logger.info(f"Recomputing matches for project {project_id}")
                            result = await asyncio.to_thread(update_project_matches, service, project_id)
                            # Remove from queue on success; a newer re-queue stays pending
                            await asyncio.to_thread(
                                service.queue_manager.dequeue_project, project_id, entry["last_updated"]
                            )
                            logger.info(
                                f"Match recompute completed for project {project_id} "
                                f"(upserted={result.upserted_count}, errors={len(result.errors)})"
                            )
                        except RebuildInProgressError:
                            logger.info(f"Rebuild in progress; project {project_id} stays queued")
                            break
                        except Exception as e:
                            logger.exception(f"Failed to recompute matches for project {project_id}: {e}")
                except Exception:
                    logger.exception("Error reading match_recompute_queue")

                # Process rebuild requests: run one full rebuild for all pending requests
                try:
                    request_id = await asyncio.to_thread(service.queue_manager.latest_rebuild_request_id)

                    if request_id is not None:
                        logger.info(f"Rebuild requested (request_id={request_id}); rebuilding all matches")
                        try:
                            result = await asyncio.to_thread(rebuild_matches, service)
                            await asyncio.to_thread(service.queue_manager.clear_rebuild_requests, request_id)
                            logger.info(f"Requested rebuild completed (run_id={result.run_id})")
                        except RebuildInProgressError:
                            logger.info("Rebuild already running; request stays pending")
                        except Exception as e:
                            # Failure is recorded in matches_runs; requests are served once
                            logger.exception(f"Requested rebuild failed: {e}")
                            await asyncio.to_thread(service.queue_manager.clear_rebuild_requests, request_id)
                except Exception:
                    logger.exception("Error reading match_rebuild_requests")

            except Exception:
                logger.exception("Unexpected error in match worker loop")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

        logger.info("Match worker stopped")

    task = asyncio.create_task(_loop())

    # Return a stop function that can be awaited to stop the loop
    async def stop():
        stop_event.set()
        await task

    return stop
