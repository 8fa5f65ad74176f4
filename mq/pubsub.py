import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from common.config import PubSubConfig
from common.models import (
    ChannelStats, ChatMessage, ChatMessageDraft, GameEvent, GameEventDraft, GameEventType,
    ServiceErrorKind, ServiceResult
)
from store import KeyValueStore

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class PubSubService:
    """
    Game event and chat fan-out with a bounded, ordered history per game.

    History entries are scored by a per-channel counter, so order follows
    the order in which publishes reached the store, not wall clocks.
    """

    def __init__(self, store: KeyValueStore, config: Optional[PubSubConfig] = None):
        self.store = store
        self.config = config or PubSubConfig()

    @staticmethod
    def events_channel(game_id: str) -> str:
        return f"game:events:{game_id}"

    @staticmethod
    def chat_channel(game_id: str) -> str:
        return f"game:chat:{game_id}"

    @staticmethod
    def _history_key(channel: str) -> str:
        return f"{channel}:history"

    @staticmethod
    def _sequence_key(channel: str) -> str:
        return f"{channel}:seq"

    async def _append(self, channel: str, payload: str, cap: int, ttl_s: int):
        history = self._history_key(channel)
        sequence_key = self._sequence_key(channel)
        sequence = await self.store.increment(sequence_key)
        await self.store.zadd(history, payload, sequence)
        # keep only the newest `cap` entries
        await self.store.zremrangebyrank(history, 0, -(cap + 1))
        await self.store.expire(history, ttl_s * 1000)
        await self.store.expire(sequence_key, ttl_s * 1000)

    async def _read(self, channel: str, model: Type[M]) -> List[M]:
        items = []
        for raw in await self.store.zrange(self._history_key(channel), 0, -1):
            try:
                items.append(model.model_validate_json(raw))
            except ValidationError as e:
                logger.warning(f"Skipping malformed history entry on {channel}: {e}")
        return items

    def _limit(self, limit: Optional[int]) -> int:
        if not limit or limit <= 0:
            return self.config.max_events_per_poll
        return limit

    async def publish_game_event(
        self,
        event: Union[GameEventDraft, Dict[str, Any]],
        persist: bool = True,
        ttl_s: Optional[int] = None,
    ) -> ServiceResult[str]:
        try:
            draft = GameEventDraft.model_validate(event)
        except ValidationError as e:
            return ServiceResult.fail(str(e), ServiceErrorKind.INVALID)

        channel = self.events_channel(draft.game_id)
        try:
            data = draft.model_dump()
            data["timestamp"] = await self.store.time_ms()
            published = GameEvent(**data)
            payload = published.model_dump_json()

            await self.store.publish(channel, payload)
            if persist:
                await self._append(channel, payload, self.config.max_events, ttl_s or self.config.history_ttl_secs)
        except Exception as e:
            logger.error(f"Failed to publish {draft.type.value} event for game {draft.game_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        logger.debug(f"Published {published.type.value} event {published.id} to {channel}")
        return ServiceResult.ok(published.id)

    async def publish_chat_message(self, message: Union[ChatMessageDraft, Dict[str, Any]]) -> ServiceResult[str]:
        try:
            draft = ChatMessageDraft.model_validate(message)
        except ValidationError as e:
            return ServiceResult.fail(str(e), ServiceErrorKind.INVALID)

        channel = self.chat_channel(draft.game_id)
        try:
            data = draft.model_dump()
            data["timestamp"] = await self.store.time_ms()
            chat = ChatMessage(**data)
            payload = chat.model_dump_json()

            await self.store.publish(channel, payload)
            await self._append(channel, payload, self.config.max_chat_messages, self.config.history_ttl_secs)
        except Exception as e:
            logger.error(f"Failed to publish chat message for game {draft.game_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        return ServiceResult.ok(chat.id)

    async def publish_system_announcement(
        self,
        game_id: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ServiceResult[str]:
        return await self.publish_game_event({
            "type": GameEventType.SYSTEM_ANNOUNCEMENT,
            "game_id": game_id,
            "user_id": "system",
            "payload": {"message": message, **(metadata or {})},
        })

    async def publish_bulk_events(self, events: List[Union[GameEventDraft, Dict[str, Any]]]) -> ServiceResult[List[str]]:
        """
        Publishes each event independently, in order. Ids of events that
        failed are left out; the call only fails when none got through.
        """
        ids: List[str] = []
        errors: List[str] = []
        for index, event in enumerate(events):
            result = await self.publish_game_event(event)
            if result.success:
                ids.append(result.data)
            else:
                logger.warning(f"Bulk publish: event #{index} failed: {result.error}")
                errors.append(result.error)

        if events and not ids:
            return ServiceResult.fail(f"All {len(events)} events failed to publish: {errors[0]}")
        return ServiceResult.ok(ids)

    async def get_recent_events(
        self,
        game_id: str,
        limit: Optional[int] = None,
        since: Optional[int] = None,
    ) -> ServiceResult[List[GameEvent]]:
        """Newest ``limit`` events, oldest first; ``since`` is an exclusive timestamp"""
        try:
            events = await self._read(self.events_channel(game_id), GameEvent)
        except Exception as e:
            logger.error(f"Failed to read events for game {game_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        if since is not None:
            events = [event for event in events if event.timestamp > since]
        return ServiceResult.ok(events[-self._limit(limit):])

    async def get_chat_history(
        self,
        game_id: str,
        limit: Optional[int] = None,
        before: Optional[int] = None,
    ) -> ServiceResult[List[ChatMessage]]:
        try:
            messages = await self._read(self.chat_channel(game_id), ChatMessage)
        except Exception as e:
            logger.error(f"Failed to read chat history for game {game_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        if before is not None:
            messages = [message for message in messages if message.timestamp < before]
        return ServiceResult.ok(messages[-self._limit(limit):])

    async def get_channel_stats(self, game_id: str) -> ServiceResult[ChannelStats]:
        events_key = self._history_key(self.events_channel(game_id))
        try:
            total_events = await self.store.zcard(events_key)
            total_messages = await self.store.zcard(self._history_key(self.chat_channel(game_id)))
            oldest = await self.store.zrange(events_key, 0, 0)
            newest = await self.store.zrange(events_key, -1, -1)
        except Exception as e:
            logger.error(f"Failed to read channel stats for game {game_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        stats = ChannelStats(total_events=total_events, total_messages=total_messages)
        try:
            if oldest:
                stats.oldest_event_at = GameEvent.model_validate_json(oldest[0]).timestamp
            if newest:
                stats.newest_event_at = GameEvent.model_validate_json(newest[0]).timestamp
        except ValidationError as e:
            logger.warning(f"Malformed event at history edge for game {game_id}: {e}")
        return ServiceResult.ok(stats)

    async def clear_game_history(self, game_id: str) -> ServiceResult[bool]:
        try:
            for channel in (self.events_channel(game_id), self.chat_channel(game_id)):
                await self.store.delete(self._history_key(channel))
                await self.store.delete(self._sequence_key(channel))
        except Exception as e:
            logger.error(f"Failed to clear history for game {game_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        logger.info(f"Cleared history for game {game_id}")
        return ServiceResult.ok(True)

    async def subscribe_game_events(self, game_id: str) -> AsyncIterator[GameEvent]:
        async for raw in self.store.subscribe(self.events_channel(game_id)):
            try:
                yield GameEvent.model_validate_json(raw)
            except ValidationError as e:
                logger.warning(f"Skipping malformed event on game {game_id}: {e}")
