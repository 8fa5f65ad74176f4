import logging
from typing import Optional

from pydantic import BaseModel

from common.models import (
    GameEventType, ParticipantInfo, RoleInfo, ServiceErrorKind, ServiceResult
)
from mq import PubSubService, QueueService
from sync import LockService, PresenceService

logger = logging.getLogger(__name__)

SETUP_QUEUE = "game-tasks"
SETUP_JOB_TYPE = "setup-game-data"
SETUP_PRIORITY = 7
INIT_LEASE_MS = 10000


class SessionStart(BaseModel):
    game_id: str
    board_id: str
    host_id: str
    event_id: str
    job_id: str


class SessionCoordinator:
    """
    Starts a game session: under the game's init lock the host joins the
    board, ``game_start`` is announced and the setup job is queued.
    """
    def __init__(self, locks: LockService, presence: PresenceService, pubsub: PubSubService, queue: QueueService):
        self.locks = locks
        self.presence = presence
        self.pubsub = pubsub
        self.queue = queue

    async def start_session(
        self,
        game_id: str,
        board_id: str,
        user_id: str,
        display_name: str,
        avatar: Optional[str] = None,
    ) -> ServiceResult[SessionStart]:
        async def initialize() -> ServiceResult[SessionStart]:
            joined = await self.presence.join_board_presence(
                board_id,
                user_id,
                ParticipantInfo(display_name=display_name, avatar=avatar),
                RoleInfo(role="host", is_host=True),
            )
            if not joined.success:
                return ServiceResult.fail(joined.error, joined.kind)
            handle = joined.data

            event = await self.pubsub.publish_game_event({
                "type": GameEventType.GAME_START,
                "game_id": game_id,
                "user_id": user_id,
                "board_id": board_id,
                "payload": {"host_id": user_id, "display_name": display_name},
            })
            if not event.success:
                await handle.release()
                return ServiceResult.fail(event.error, event.kind)

            job = await self.queue.add_job(
                SETUP_QUEUE,
                SETUP_JOB_TYPE,
                {"game_id": game_id, "board_id": board_id, "host_id": user_id},
                priority=SETUP_PRIORITY,
            )
            if not job.success:
                await handle.release()
                return ServiceResult.fail(job.error, job.kind)

            return ServiceResult.ok(SessionStart(
                game_id=game_id,
                board_id=board_id,
                host_id=user_id,
                event_id=event.data,
                job_id=job.data,
            ))

        outcome = await self.locks.with_lock(f"game-init:{game_id}", initialize, lease_duration_ms=INIT_LEASE_MS)
        if not outcome.success:
            if outcome.kind == ServiceErrorKind.NOT_ACQUIRED:
                logger.info(f"Session for game {game_id} is already being initialized")
            return ServiceResult.fail(outcome.error, outcome.kind)

        started = outcome.data
        if started.success:
            logger.info(f"Session started for game {game_id} on board {board_id} by {user_id}")
        else:
            logger.error(f"Session start for game {game_id} failed: {started.error}")
        return started


def setup_game_data_processor(pubsub: PubSubService):
    """Processor for the setup job queued by start_session"""
    async def process(job):
        game_id = job.payload.get("game_id")
        if not game_id:
            raise ValueError(f"Setup job {job.id} has no game_id")
        announced = await pubsub.publish_system_announcement(game_id, "Game setup complete", {"job_id": job.id})
        if not announced.success:
            raise RuntimeError(f"Could not announce setup of {game_id}: {announced.error}")
        return {"game_id": game_id, "board_id": job.payload.get("board_id"), "announcement_id": announced.data}
    return process
