import asyncio

from conftest import FakeService, emb
from matchengine.match_worker import start_background_worker
from matchengine.models import PROJECT


def test_recompute_queue_processing(scenario_service):
    async def runner():
        # seed recompute queue with project P
        scenario_service.queue_manager.enqueue_project("P")

        # start worker with short interval
        stop = await start_background_worker(scenario_service, interval=0.5)

        # allow some time for the worker to process
        await asyncio.sleep(1.2)

        # stop worker
        await stop()

        # matches should have been computed and the project removed from queue
        assert ("P", "A") in scenario_service.match_manager.keys()
        assert scenario_service.queue_manager.queued_ids() == []

    asyncio.run(runner())


def test_rebuild_request_triggers_full_rebuild(scenario_service):
    async def runner():
        scenario_service.queue_manager.rebuild_requests = [1, 2]

        stop = await start_background_worker(scenario_service, interval=0.5)

        await asyncio.sleep(1.5)

        await stop()

        # a run should have been recorded and requests cleared
        runs = list(scenario_service.run_log_manager.runs.values())
        assert len(runs) == 1
        assert runs[0]["status"] == "completed"
        assert scenario_service.queue_manager.rebuild_requests == []
        assert ("P", "A") in scenario_service.match_manager.keys()

    asyncio.run(runner())


def test_work_stays_queued_while_rebuild_holds_lock(scenario_service):
    async def runner():
        scenario_service.lock_available = False
        scenario_service.queue_manager.enqueue_project("P")
        scenario_service.queue_manager.rebuild_requests = [7]

        stop = await start_background_worker(scenario_service, interval=0.5)
        await asyncio.sleep(1.2)
        await stop()

        assert scenario_service.queue_manager.queued_ids() == ["P"]
        assert scenario_service.queue_manager.rebuild_requests == [7]
        assert scenario_service.match_manager.keys() == set()

    asyncio.run(runner())


def test_failed_rebuild_request_is_cleared_and_recorded():
    async def runner():
        service = FakeService(project_ids={"P"}, rebuild_requests=[3])
        service.embedding_manager.fail = RuntimeError("embedding store unavailable")

        stop = await start_background_worker(service, interval=0.5)
        await asyncio.sleep(1.2)
        await stop()

        assert service.queue_manager.rebuild_requests == []
        (run,) = service.run_log_manager.runs.values()
        assert run["status"] == "failed"

    asyncio.run(runner())


def test_requeue_during_recompute_is_not_lost(scenario_service):
    embeddings = scenario_service.embedding_manager
    original = embeddings.get_item_embeddings
    seen = []

    def get_item_embeddings(item_type, item_id):
        rows = original(item_type, item_id)
        seen.append(len(rows))
        if len(seen) == 1:
            # A new photo lands while the first recompute is running
            embeddings.embeddings.append(emb(PROJECT, "P", "p-img-3", 1.0, 0.0, 0.0))
            scenario_service.queue_manager.enqueue_project("P")
        return rows

    embeddings.get_item_embeddings = get_item_embeddings

    async def runner():
        scenario_service.queue_manager.enqueue_project("P")

        stop = await start_background_worker(scenario_service, interval=0.5)
        await asyncio.sleep(1.2)
        await stop()

        # The second recompute picked up the new photo, then the queue drained
        assert seen == [2, 3]
        assert scenario_service.queue_manager.queued_ids() == []

    asyncio.run(runner())
