import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Optional, Union

from pydantic import ValidationError

from common.config import PresenceConfig
from common.models import (
    ParticipantInfo, PresenceEntry, PresenceEvent, PresenceEventType, PresenceLeave,
    PresenceStatus, PresenceUpdate, RoleInfo, ServiceErrorKind, ServiceResult
)
from store import INF, KeyValueStore

logger = logging.getLogger(__name__)


class PresenceService:
    """
    Tracks which participants are on which board.

    An entry lives at its own key with a TTL; the board roster and the
    per-participant board index are sorted sets scored by expiry so stale
    members can be pruned by score. The entry key is the source of truth.
    """

    def __init__(self, store: KeyValueStore, config: Optional[PresenceConfig] = None, namespace: str = "presence"):
        self.store = store
        self.config = config or PresenceConfig()
        self.namespace = namespace

    @property
    def ttl_ms(self) -> int:
        return self.config.ttl_secs * 1000

    def _entry_key(self, board_id: str, participant_id: str) -> str:
        return f"{self.namespace}:{board_id}:{participant_id}"

    def _roster_key(self, board_id: str) -> str:
        return f"{self.namespace}:board:{board_id}:members"

    def _user_key(self, participant_id: str) -> str:
        return f"{self.namespace}:user:{participant_id}:boards"

    def channel(self, board_id: str) -> str:
        return f"{self.namespace}:board:{board_id}"

    async def _read_entry(self, board_id: str, participant_id: str) -> Optional[PresenceEntry]:
        key = self._entry_key(board_id, participant_id)
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            return PresenceEntry.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Dropping unreadable presence entry {key}: {e}")
            await self.store.delete(key)
            return None

    async def _write_indexes(self, entry: PresenceEntry, expires_at: int):
        roster = self._roster_key(entry.board_id)
        user_boards = self._user_key(entry.participant_id)
        await self.store.zadd(roster, entry.participant_id, expires_at)
        await self.store.zadd(user_boards, entry.board_id, expires_at)
        # index keys outlive the newest entry by one TTL at most
        await self.store.expire(roster, entry.ttl_ms * 2)
        await self.store.expire(user_boards, entry.ttl_ms * 2)

    async def _publish(self, event_type: PresenceEventType, board_id: str, participant_id: str,
                       presence: Optional[PresenceEntry] = None):
        event = PresenceEvent(
            type=event_type,
            board_id=board_id,
            participant_id=participant_id,
            presence=presence,
            timestamp=await self.store.time_ms(),
        )
        await self.store.publish(self.channel(board_id), event.model_dump_json())

    async def join_board_presence(
        self,
        board_id: str,
        participant_id: str,
        metadata: Union[ParticipantInfo, Dict[str, Any]],
        role_info: Union[RoleInfo, Dict[str, Any], None] = None,
    ) -> ServiceResult["PresenceHandle"]:
        """
        Registers the participant on the board. Joining again replaces the
        metadata and refreshes the TTL; there is never more than one entry.
        """
        if not board_id or not participant_id:
            return ServiceResult.fail("Board id and participant id are required", ServiceErrorKind.INVALID)
        try:
            info = ParticipantInfo.model_validate(metadata)
            role = RoleInfo.model_validate(role_info or {})
        except ValidationError as e:
            return ServiceResult.fail(str(e), ServiceErrorKind.INVALID)

        try:
            now = await self.store.time_ms()
            previous = await self._read_entry(board_id, participant_id)
            entry = PresenceEntry(
                board_id=board_id,
                participant_id=participant_id,
                display_name=info.display_name,
                avatar=info.avatar,
                role=role.role,
                is_host=role.is_host,
                metadata=dict(role.extra),
                joined_at=previous.joined_at if previous else now,
                last_seen_at=now,
                ttl_ms=self.ttl_ms,
            )
            await self.store.set(self._entry_key(board_id, participant_id), entry.model_dump_json(), ttl_ms=self.ttl_ms)
            await self._write_indexes(entry, now + self.ttl_ms)
            await self._publish(PresenceEventType.JOIN, board_id, participant_id, entry)
        except Exception as e:
            logger.error(f"Presence join error for {participant_id} on {board_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        logger.info(
            f"{participant_id} joined board {board_id}",
            extra={"board_id": board_id, "participant_id": participant_id},
        )
        return ServiceResult.ok(PresenceHandle(self, board_id, participant_id))

    async def leave_board_presence(self, board_id: str, participant_id: str) -> ServiceResult[PresenceLeave]:
        try:
            removed = await self.store.delete(self._entry_key(board_id, participant_id))
            await self.store.zrem(self._roster_key(board_id), participant_id)
            await self.store.zrem(self._user_key(participant_id), board_id)
            if removed:
                await self._publish(PresenceEventType.LEAVE, board_id, participant_id)
        except Exception as e:
            logger.error(f"Presence leave error for {participant_id} on {board_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        if removed:
            logger.info(f"{participant_id} left board {board_id}")
        return ServiceResult.ok(PresenceLeave(left=removed))

    async def get_board_presence(self, board_id: str) -> ServiceResult[Dict[str, PresenceEntry]]:
        roster = self._roster_key(board_id)
        try:
            now = await self.store.time_ms()
            await self.store.zremrangebyscore(roster, -INF, now)
            members = await self.store.zrange(roster, 0, -1)

            presence: Dict[str, PresenceEntry] = {}
            for participant_id in members:
                entry = await self._read_entry(board_id, participant_id)
                if entry is None:
                    await self.store.zrem(roster, participant_id)
                    continue
                presence[participant_id] = entry
        except Exception as e:
            logger.error(f"Presence read error for board {board_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        return ServiceResult.ok(presence)

    async def update_user_presence(
        self,
        board_id: str,
        participant_id: str,
        status: Optional[PresenceStatus] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> ServiceResult[PresenceUpdate]:
        """
        Refreshes the TTL and merges ``extra`` into the entry's metadata.
        Never recreates an entry that has already expired.
        """
        try:
            status = PresenceStatus(status) if status is not None else None
        except ValueError as e:
            return ServiceResult.fail(str(e), ServiceErrorKind.INVALID)

        try:
            entry = await self._read_entry(board_id, participant_id)
            if entry is None:
                logger.debug(f"No presence for {participant_id} on {board_id}, nothing to update")
                return ServiceResult.ok(PresenceUpdate(updated=False))

            now = await self.store.time_ms()
            if status is not None:
                entry.status = status
            if extra:
                entry.metadata.update(extra)
            entry.last_seen_at = now

            written = await self.store.set(
                self._entry_key(board_id, participant_id),
                entry.model_dump_json(),
                ttl_ms=entry.ttl_ms,
                only_if_exists=True,
            )
            if not written:
                return ServiceResult.ok(PresenceUpdate(updated=False))

            await self._write_indexes(entry, now + entry.ttl_ms)
            await self._publish(PresenceEventType.UPDATE, board_id, participant_id, entry)
        except Exception as e:
            logger.error(f"Presence update error for {participant_id} on {board_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        return ServiceResult.ok(PresenceUpdate(updated=True, presence=entry))

    async def heartbeat(self, board_id: str, participant_id: str) -> ServiceResult[bool]:
        """Refreshes the TTL without publishing an update event"""
        key = self._entry_key(board_id, participant_id)
        try:
            entry = await self._read_entry(board_id, participant_id)
            if entry is None:
                return ServiceResult.ok(False)
            now = await self.store.time_ms()
            entry.last_seen_at = now
            if not await self.store.set(key, entry.model_dump_json(), ttl_ms=entry.ttl_ms, only_if_exists=True):
                return ServiceResult.ok(False)
            await self._write_indexes(entry, now + entry.ttl_ms)
        except Exception as e:
            logger.error(f"Presence heartbeat error for {participant_id} on {board_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))
        return ServiceResult.ok(True)

    async def get_user_presence(self, participant_id: str) -> ServiceResult[Dict[str, PresenceEntry]]:
        """All boards the participant is currently present on"""
        index = self._user_key(participant_id)
        try:
            now = await self.store.time_ms()
            await self.store.zremrangebyscore(index, -INF, now)
            boards = await self.store.zrange(index, 0, -1)

            presence: Dict[str, PresenceEntry] = {}
            for board_id in boards:
                entry = await self._read_entry(board_id, participant_id)
                if entry is None:
                    await self.store.zrem(index, board_id)
                    continue
                presence[board_id] = entry
        except Exception as e:
            logger.error(f"Presence lookup error for {participant_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        return ServiceResult.ok(presence)

    async def cleanup_user_presence(self, participant_id: str) -> ServiceResult[int]:
        """Removes the participant from every board; returns how many entries were removed"""
        try:
            boards = await self.store.zrange(self._user_key(participant_id), 0, -1)
        except Exception as e:
            logger.error(f"Presence cleanup error for {participant_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        removed = 0
        for board_id in boards:
            result = await self.leave_board_presence(board_id, participant_id)
            if not result.success:
                return ServiceResult.fail(result.error, result.kind)
            removed += int(result.data.left)

        logger.info(f"Cleaned up presence for {participant_id} on {removed} boards")
        return ServiceResult.ok(removed)

    async def subscribe_presence(self, board_id: str) -> AsyncIterator[PresenceEvent]:
        async for raw in self.store.subscribe(self.channel(board_id)):
            try:
                yield PresenceEvent.model_validate_json(raw)
            except ValidationError as e:
                logger.warning(f"Skipping malformed presence event on {board_id}: {e}")


class PresenceHandle:
    """
    Returned by join_board_presence. ``release()`` is the cleanup
    operation and is safe to call any number of times.
    """
    def __init__(self, service: PresenceService, board_id: str, participant_id: str):
        self.service = service
        self.board_id = board_id
        self.participant_id = participant_id
        self._released = False
        self._heartbeat: Optional[asyncio.Task] = None

    @property
    def released(self) -> bool:
        return self._released

    async def update(self, status: Optional[PresenceStatus] = None, extra: Optional[Dict[str, Any]] = None) -> bool:
        if self._released:
            return False
        result = await self.service.update_user_presence(self.board_id, self.participant_id, status, extra)
        return result.success and result.data.updated

    async def current(self) -> Optional[PresenceEntry]:
        result = await self.service.get_board_presence(self.board_id)
        if not result.success:
            return None
        return result.data.get(self.participant_id)

    def start_heartbeat(self, interval: Optional[float] = None):
        if self._released or self._heartbeat:
            return
        interval = interval or self.service.config.heartbeat_secs
        self._heartbeat = asyncio.create_task(self._heartbeat_loop(interval))

    async def _heartbeat_loop(self, interval: float):
        while not self._released:
            await asyncio.sleep(interval)
            result = await self.service.heartbeat(self.board_id, self.participant_id)
            if result.success and not result.data:
                logger.warning(f"Presence of {self.participant_id} on {self.board_id} expired, heartbeat stopped")
                return

    async def release(self) -> bool:
        if self._released:
            return False
        self._released = True
        if self._heartbeat:
            self._heartbeat.cancel()
            self._heartbeat = None
        result = await self.service.leave_board_presence(self.board_id, self.participant_id)
        return result.success and result.data.left

    async def close(self) -> bool:
        return await self.release()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.release()
