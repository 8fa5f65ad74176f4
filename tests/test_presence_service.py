import asyncio

import pytest

from common.models import (
    ParticipantInfo, PresenceEventType, PresenceStatus, RoleInfo, ServiceErrorKind
)
from sync import PresenceService


@pytest.fixture
def presence(memory_store):
    return PresenceService(memory_store)


@pytest.mark.asyncio
async def test_join_and_roster(presence):
    handle = (await presence.join_board_presence(
        "board-1", "u1", ParticipantInfo(display_name="Alice"), RoleInfo(role="host", is_host=True)
    )).data
    await presence.join_board_presence("board-1", "u2", {"display_name": "Bob"})

    roster = (await presence.get_board_presence("board-1")).data
    assert set(roster) == {"u1", "u2"}
    assert roster["u1"].is_host is True
    assert roster["u1"].display_name == "Alice"
    assert roster["u2"].role == "player"
    assert handle.participant_id == "u1"


@pytest.mark.asyncio
async def test_join_twice_keeps_single_entry(presence, clock):
    await presence.join_board_presence("board-2", "u1", {"display_name": "Alice"})
    first = (await presence.get_board_presence("board-2")).data["u1"]

    clock.advance(5000)
    await presence.join_board_presence("board-2", "u1", {"display_name": "Alice B."})

    roster = (await presence.get_board_presence("board-2")).data
    assert len(roster) == 1
    assert roster["u1"].display_name == "Alice B."
    assert roster["u1"].joined_at == first.joined_at
    assert roster["u1"].last_seen_at == first.last_seen_at + 5000


@pytest.mark.asyncio
async def test_entries_expire_without_heartbeat(presence, clock):
    await presence.join_board_presence("board-3", "u1", {"display_name": "Alice"})
    clock.advance(30000)
    await presence.join_board_presence("board-3", "u2", {"display_name": "Bob"})

    clock.advance(31000)
    roster = (await presence.get_board_presence("board-3")).data
    assert set(roster) == {"u2"}


@pytest.mark.asyncio
async def test_update_refreshes_and_merges(presence, clock):
    await presence.join_board_presence("board-4", "u1", {"display_name": "Alice"}, {"extra": {"team": "red"}})
    clock.advance(50000)

    update = await presence.update_user_presence("board-4", "u1", PresenceStatus.AWAY, {"cursor": 3})
    assert update.data.updated is True
    assert update.data.presence.metadata == {"team": "red", "cursor": 3}

    clock.advance(50000)
    entry = (await presence.get_board_presence("board-4")).data["u1"]
    assert entry.status == PresenceStatus.AWAY


@pytest.mark.asyncio
async def test_update_never_resurrects_expired_entry(presence, clock):
    await presence.join_board_presence("board-5", "u1", {"display_name": "Alice"})
    clock.advance(61000)

    update = await presence.update_user_presence("board-5", "u1", PresenceStatus.BUSY)
    assert update.success
    assert update.data.updated is False
    assert (await presence.get_board_presence("board-5")).data == {}


@pytest.mark.asyncio
async def test_leave_and_release_are_idempotent(presence, clock):
    handle = (await presence.join_board_presence("board-6", "u1", {"display_name": "Alice"})).data

    assert await handle.release() is True
    assert await handle.release() is False
    assert await handle.close() is False
    assert (await presence.leave_board_presence("board-6", "u1")).data.left is False

    other = (await presence.join_board_presence("board-6", "u2", {"display_name": "Bob"})).data
    clock.advance(61000)
    # releasing after natural expiry is safe
    assert await other.release() is False


@pytest.mark.asyncio
async def test_invalid_join(presence):
    result = await presence.join_board_presence("board-7", "u1", {"avatar": "x.png"})
    assert result.success is False
    assert result.kind == ServiceErrorKind.INVALID

    result = await presence.join_board_presence("", "u1", {"display_name": "Alice"})
    assert result.kind == ServiceErrorKind.INVALID


@pytest.mark.asyncio
async def test_user_presence_across_boards(presence):
    await presence.join_board_presence("board-a", "u1", {"display_name": "Alice"})
    await presence.join_board_presence("board-b", "u1", {"display_name": "Alice"})

    boards = (await presence.get_user_presence("u1")).data
    assert set(boards) == {"board-a", "board-b"}

    removed = await presence.cleanup_user_presence("u1")
    assert removed.data == 2
    assert (await presence.get_user_presence("u1")).data == {}
    assert (await presence.get_board_presence("board-a")).data == {}


@pytest.mark.asyncio
async def test_malformed_entry_is_dropped(presence, memory_store):
    await presence.join_board_presence("board-8", "u1", {"display_name": "Alice"})
    await memory_store.set(presence._entry_key("board-8", "u1"), "{not json", ttl_ms=60000)

    roster = await presence.get_board_presence("board-8")
    assert roster.success
    assert roster.data == {}


@pytest.mark.asyncio
async def test_presence_events_are_published(presence):
    events = presence.subscribe_presence("board-9")
    first = asyncio.create_task(events.__anext__())
    await asyncio.sleep(0)

    await presence.join_board_presence("board-9", "u1", {"display_name": "Alice"})
    event = await asyncio.wait_for(first, timeout=1)
    assert event.type == PresenceEventType.JOIN
    assert event.presence.display_name == "Alice"

    await presence.leave_board_presence("board-9", "u1")
    event = await asyncio.wait_for(events.__anext__(), timeout=1)
    assert event.type == PresenceEventType.LEAVE
    await events.aclose()


@pytest.mark.asyncio
async def test_heartbeat_keeps_entry_alive(redis_store):
    presence = PresenceService(redis_store)
    handle = (await presence.join_board_presence("board-10", "u1", {"display_name": "Alice"})).data
    await redis_store.expire(presence._entry_key("board-10", "u1"), 200)

    handle.start_heartbeat(0.05)
    await asyncio.sleep(0.3)
    assert "u1" in (await presence.get_board_presence("board-10")).data
    await handle.release()
