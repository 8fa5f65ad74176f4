import pytest

from common.models import GameEventType, JobStatus, ServiceErrorKind
from engine.session import SessionCoordinator, setup_game_data_processor
from engine.worker import JobWorker
from mq import PubSubService, QueueService
from sync import LockService, PresenceService


@pytest.fixture
def services(memory_store):
    locks = LockService(memory_store)
    presence = PresenceService(memory_store)
    pubsub = PubSubService(memory_store)
    queue = QueueService(memory_store)
    return locks, presence, pubsub, queue, SessionCoordinator(locks, presence, pubsub, queue)


@pytest.mark.asyncio
async def test_start_session_runs_every_step(services):
    locks, presence, pubsub, queue, sessions = services

    result = await sessions.start_session("game-1", "board-1", "u1", "Alice")
    assert result.success, result.error
    started = result.data

    roster = (await presence.get_board_presence("board-1")).data
    assert roster["u1"].is_host is True
    assert roster["u1"].role == "host"

    events = (await pubsub.get_recent_events("game-1")).data
    assert [e.id for e in events] == [started.event_id]
    assert events[0].type == GameEventType.GAME_START

    job = (await queue.get_job(started.job_id)).data
    assert job.queue_name == "game-tasks"
    assert job.job_type == "setup-game-data"
    assert job.priority == 7

    # init lock is released afterwards
    assert (await locks.get_lock_status("game-init:game-1")).data.exists is False


@pytest.mark.asyncio
async def test_start_session_contended(services):
    locks, presence, pubsub, queue, sessions = services
    await locks.acquire_lock("game-init:game-2", "someone-else", 5000)

    result = await sessions.start_session("game-2", "board-2", "u1", "Alice")
    assert result.success is False
    assert result.kind == ServiceErrorKind.NOT_ACQUIRED
    assert (await presence.get_board_presence("board-2")).data == {}
    assert (await queue.get_queue_stats("game-tasks")).data.waiting == 0


@pytest.mark.asyncio
async def test_failed_step_releases_presence(services):
    locks, presence, pubsub, queue, sessions = services

    async def broken_add_job(*args, **kwargs):
        from common.models import ServiceResult
        return ServiceResult.fail("store down")

    queue.add_job = broken_add_job
    result = await sessions.start_session("game-3", "board-3", "u1", "Alice")
    assert result.success is False
    assert result.kind == ServiceErrorKind.STORE
    assert (await presence.get_board_presence("board-3")).data == {}
    assert (await locks.get_lock_status("game-init:game-3")).data.exists is False


@pytest.mark.asyncio
async def test_setup_job_processed_by_worker(services):
    locks, presence, pubsub, queue, sessions = services
    started = (await sessions.start_session("game-4", "board-4", "u1", "Alice")).data

    worker = JobWorker(queue, "game-tasks").register("setup-game-data", setup_game_data_processor(pubsub))
    assert await worker.run_once() is True

    job = (await queue.get_job(started.job_id)).data
    assert job.status == JobStatus.COMPLETED
    events = (await pubsub.get_recent_events("game-4")).data
    assert events[-1].type == GameEventType.SYSTEM_ANNOUNCEMENT
