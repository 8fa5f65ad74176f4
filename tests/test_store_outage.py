import pytest

from common.models import ServiceErrorKind
from engine.session import SessionCoordinator
from errors import LockNotAcquiredError
from mq import PubSubService, QueueService
from sync import LockService, PresenceService


@pytest.mark.asyncio
async def test_acquire_reports_store_failure(unreachable_store):
    locks = LockService(unreachable_store)
    result = await locks.acquire_lock("resource_a", "h1", 5000)

    assert result.success is False
    assert result.kind == ServiceErrorKind.STORE
    assert "Connection refused" in result.error
    assert locks.get_active_locks() == {}


@pytest.mark.asyncio
async def test_with_lock_skips_fn_on_store_failure(unreachable_store):
    locks = LockService(unreachable_store)
    called = []

    async def work():
        called.append(True)
        return "done"

    result = await locks.with_lock("resource_a", work, 5000)
    assert result.kind == ServiceErrorKind.STORE
    assert result.kind != ServiceErrorKind.NOT_ACQUIRED
    assert called == []


@pytest.mark.asyncio
async def test_lock_handle_does_not_enter_on_store_failure(unreachable_store):
    locks = LockService(unreachable_store)
    with pytest.raises(LockNotAcquiredError):
        async with locks.lock("resource_a", lease_duration_ms=5000):
            pass


@pytest.mark.asyncio
async def test_presence_join_reports_store_failure(unreachable_store):
    presence = PresenceService(unreachable_store)
    result = await presence.join_board_presence("board-1", "u1", {"display_name": "Alice"})
    assert result.success is False
    assert result.kind == ServiceErrorKind.STORE

    # input problems are still reported before the store is touched
    calls = unreachable_store.calls
    invalid = await presence.join_board_presence("board-1", "u1", {"avatar": "x.png"})
    assert invalid.kind == ServiceErrorKind.INVALID
    assert unreachable_store.calls == calls


@pytest.mark.asyncio
async def test_publish_reports_store_failure(unreachable_store):
    pubsub = PubSubService(unreachable_store)
    result = await pubsub.publish_game_event({
        "type": "game_start", "game_id": "game-1", "user_id": "u1", "payload": {},
    })
    assert result.success is False
    assert result.kind == ServiceErrorKind.STORE


@pytest.mark.asyncio
async def test_queue_reports_store_failure(unreachable_store):
    queue = QueueService(unreachable_store)
    assert (await queue.add_job("q", "t")).kind == ServiceErrorKind.STORE

    result = await queue.get_next_job("q")
    assert result.success is False
    assert result.kind == ServiceErrorKind.STORE
    assert (await queue.reserve("q")).kind == ServiceErrorKind.STORE


@pytest.mark.asyncio
async def test_session_start_reports_store_failure(unreachable_store):
    locks = LockService(unreachable_store)
    presence = PresenceService(unreachable_store)
    pubsub = PubSubService(unreachable_store)
    queue = QueueService(unreachable_store)
    sessions = SessionCoordinator(locks, presence, pubsub, queue)

    result = await sessions.start_session("game-1", "board-1", "u1", "Alice")
    assert result.success is False
    assert result.kind == ServiceErrorKind.STORE
