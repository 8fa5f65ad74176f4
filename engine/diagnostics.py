"""
End-to-end self checks of every coordination component against the live store.
Each check uses fresh random ids and cleans up after itself.
"""
import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from common.models import (
    ChatMessageType, GameEventType, JobPriority, ParticipantInfo, PresenceStatus, RoleInfo,
    ServiceResult
)
from common.state import State
from errors import CoordinationError

logger = logging.getLogger(__name__)

FEATURES = ("locks", "presence", "pubsub", "queue", "integration")


class DiagnosticCheckFailed(CoordinationError):
    pass


class DiagnosticStatus(str, Enum):
    PASSED = "passed"
    PARTIAL = "partial"
    ERROR = "error"


class DiagnosticTestResult(BaseModel):
    test: str
    success: bool
    duration_ms: int
    details: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class DiagnosticsReport(BaseModel):
    feature: str
    total_tests: int = 0
    successful_tests: int = 0
    failed_tests: int = 0
    total_duration_ms: int = 0
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    results: List[DiagnosticTestResult] = Field(default_factory=list)
    status: DiagnosticStatus = DiagnosticStatus.PASSED
    error: Optional[str] = None

    @property
    def http_status(self) -> int:
        return {
            DiagnosticStatus.PASSED: 200,
            DiagnosticStatus.PARTIAL: 207,
            DiagnosticStatus.ERROR: 500,
        }[self.status]


def _expect(condition: bool, message: str):
    if not condition:
        raise DiagnosticCheckFailed(message)


def _data(result: ServiceResult, step: str):
    if not result.success:
        raise DiagnosticCheckFailed(f"{step}: {result.error}")
    return result.data


def _uid() -> str:
    return uuid.uuid4().hex[:12]


async def check_locks(state: State) -> Dict[str, Any]:
    locks = state.locks
    lock_id = f"diagnostics-lock-{_uid()}"
    holder1, holder2 = f"holder-1-{_uid()}", f"holder-2-{_uid()}"
    steps = []

    first = _data(await locks.acquire_lock(lock_id, holder1, lease_duration_ms=5000), "acquire")
    _expect(first.acquired, "First holder could not acquire the lock")
    steps.append("acquire")

    try:
        second = _data(
            await locks.acquire_lock(lock_id, holder2, lease_duration_ms=5000, retry_attempts=1, retry_delay_ms=100),
            "contended acquire",
        )
        _expect(not second.acquired, "Second holder acquired a held lock")
        steps.append("mutual_exclusion")

        status = _data(await locks.get_lock_status(lock_id), "status")
        _expect(status.exists and status.holder == holder1, "Lock status does not show the holder")
        steps.append("status_check")

        extension = _data(await locks.extend_lock(lock_id, holder1, 3000), "extend")
        _expect(extension.extended, "Holder could not extend the lock")
        steps.append("extend")
    finally:
        release = _data(await locks.release_lock(lock_id, holder1), "release")
    _expect(release.released, "Holder could not release the lock")
    steps.append("release")

    async def guarded():
        return "executed"

    value = _data(await locks.with_lock(f"{lock_id}-scoped", guarded, lease_duration_ms=5000), "with_lock")
    _expect(value == "executed", "with_lock returned the wrong value")
    steps.append("with_lock")

    return {"lock_id": lock_id, "steps": steps}


async def check_presence(state: State) -> Dict[str, Any]:
    presence = state.presence
    board_id = f"diagnostics-board-{_uid()}"
    user1, user2 = f"user-1-{_uid()}", f"user-2-{_uid()}"

    handle1 = _data(await presence.join_board_presence(
        board_id, user1, ParticipantInfo(display_name="Test User 1"), RoleInfo(role="host", is_host=True)
    ), "join user 1")
    handle2 = _data(await presence.join_board_presence(
        board_id, user2, ParticipantInfo(display_name="Test User 2"), RoleInfo()
    ), "join user 2")

    try:
        roster = _data(await presence.get_board_presence(board_id), "roster")
        _expect(len(roster) == 2, f"Expected 2 participants, found {len(roster)}")

        update = _data(await presence.update_user_presence(board_id, user1, PresenceStatus.AWAY), "update")
        _expect(update.updated, "Status update was not applied")

        _expect(await handle2.release(), "Second participant could not leave")
        roster = _data(await presence.get_board_presence(board_id), "roster after leave")
        _expect(len(roster) == 1, f"Expected 1 participant after leave, found {len(roster)}")
        _expect(roster[user1].status == PresenceStatus.AWAY, "Status update was not persisted")
    finally:
        await handle1.release()
        await handle2.release()

    return {"board_id": board_id, "participants_joined": 2, "final_count": 1}


async def check_pubsub(state: State) -> Dict[str, Any]:
    pubsub = state.pubsub
    game_id = f"diagnostics-game-{_uid()}"
    user_id = f"user-{_uid()}"

    try:
        event_id = _data(await pubsub.publish_game_event({
            "type": GameEventType.GAME_START,
            "game_id": game_id,
            "user_id": user_id,
            "payload": {"diagnostics": True},
        }), "game event")
        message_id = _data(await pubsub.publish_chat_message({
            "game_id": game_id,
            "user_id": user_id,
            "username": "Test User",
            "message": "Hello from diagnostics",
            "type": ChatMessageType.USER,
        }), "chat message")
        _data(await pubsub.publish_system_announcement(game_id, "Diagnostics announcement"), "announcement")

        recent = _data(await pubsub.get_recent_events(game_id, limit=10), "recent events")
        _expect(len(recent) >= 2, f"Expected at least 2 events, found {len(recent)}")
        _expect(recent[0].id == event_id, "Events are out of order")

        chat = _data(await pubsub.get_chat_history(game_id, limit=10), "chat history")
        _expect(any(m.id == message_id for m in chat), "Chat message missing from history")

        ids = _data(await pubsub.publish_bulk_events([
            {"type": GameEventType.CELL_MARKED, "game_id": game_id, "user_id": user_id, "payload": {"cell": i}}
            for i in range(2)
        ]), "bulk publish")
        _expect(len(ids) == 2, f"Bulk publish returned {len(ids)} ids")

        stats = _data(await pubsub.get_channel_stats(game_id), "channel stats")
        _expect(stats.total_events == 4, f"Expected 4 events in history, found {stats.total_events}")
    finally:
        await pubsub.clear_game_history(game_id)

    return {"game_id": game_id, "events": stats.total_events, "messages": stats.total_messages}


async def check_queue(state: State, delay_ms: int = 1000) -> Dict[str, Any]:
    queue = state.queue
    queue_name = f"diagnostics-queue-{_uid()}"

    high = _data(await queue.add_job(queue_name, "diagnostics", {"n": 1}, priority=JobPriority.HIGH), "add high")
    low = _data(await queue.add_job(queue_name, "diagnostics", {"n": 2}, priority=2), "add low")
    delayed = _data(await queue.add_job(
        queue_name, "diagnostics", {"n": 3}, priority=JobPriority.NORMAL, delay_ms=delay_ms
    ), "add delayed")

    job = _data(await queue.get_next_job(queue_name), "first pop")
    _expect(job is not None and job.id == high, "Highest priority job was not served first")
    _data(await queue.complete_job(job.id, {"ok": True}), "complete")

    job = _data(await queue.get_next_job(queue_name), "second pop")
    _expect(job is not None and job.id == low, "Delayed job was served before it was due")
    _data(await queue.complete_job(job.id), "complete")

    failing = _data(await queue.add_job(queue_name, "diagnostics-fail", max_attempts=1), "add failing")
    job = _data(await queue.get_next_job(queue_name), "failing pop")
    _expect(job is not None and job.id == failing, "Failing job not served")
    failure = _data(await queue.fail_job(job, "Intentional diagnostics failure"), "fail")
    _expect(failure.dead_lettered, "Job with no attempts left was not dead-lettered")

    await asyncio.sleep(delay_ms * 1.2 / 1000)
    job = _data(await queue.get_next_job(queue_name), "delayed pop")
    _expect(job is not None and job.id == delayed, "Delayed job not served once due")
    _data(await queue.complete_job(job.id), "complete")

    stats = _data(await queue.get_queue_stats(queue_name), "stats")
    _expect(stats.completed == 3 and stats.failed == 1, f"Unexpected queue stats {stats.model_dump()}")
    return {"queue": queue_name, "stats": stats.model_dump()}


async def check_integration(state: State) -> Dict[str, Any]:
    game_id = f"diagnostics-game-{_uid()}"
    board_id = f"diagnostics-board-{_uid()}"
    user_id = f"host-{_uid()}"

    started = _data(await state.sessions.start_session(game_id, board_id, user_id, "Diagnostics Host"), "start session")
    try:
        roster = _data(await state.presence.get_board_presence(board_id), "roster")
        _expect(user_id in roster and roster[user_id].is_host, "Host is not present on the board")

        events = _data(await state.pubsub.get_recent_events(game_id), "recent events")
        _expect(any(e.type == GameEventType.GAME_START for e in events), "game_start was not published")

        job = _data(await state.queue.get_job(started.job_id), "setup job")
        _expect(job.job_type == "setup-game-data", "Setup job has the wrong type")
    finally:
        await state.presence.leave_board_presence(board_id, user_id)
        await state.pubsub.clear_game_history(game_id)

    return started.model_dump()


CHECKS: Dict[str, Callable[[State], Awaitable[Dict[str, Any]]]] = {
    "locks": check_locks,
    "presence": check_presence,
    "pubsub": check_pubsub,
    "queue": check_queue,
    "integration": check_integration,
}


async def _run_check(name: str, check, state: State) -> DiagnosticTestResult:
    start = time.perf_counter()
    try:
        details = await check(state)
        success, error = True, None
    except Exception as e:
        logger.warning(f"Diagnostic check {name} failed: {e}")
        details, success, error = None, False, str(e)
    return DiagnosticTestResult(
        test=name,
        success=success,
        duration_ms=int((time.perf_counter() - start) * 1000),
        details=details,
        error=error,
    )


async def run_diagnostics(state: State, feature: str = "all") -> DiagnosticsReport:
    """
    Runs the checks selected by ``feature`` (one of FEATURES or "all").
    Raises ValueError for an unknown feature.
    """
    if feature != "all" and feature not in CHECKS:
        raise ValueError(f"Unknown feature '{feature}', expected one of: all, {', '.join(FEATURES)}")

    start = time.perf_counter()
    report = DiagnosticsReport(feature=feature)
    logger.info(f"Starting diagnostics for {feature}")

    try:
        if not state.initialized:
            await state.init()
        selected = FEATURES if feature == "all" else (feature,)
        for name in selected:
            report.results.append(await _run_check(name, CHECKS[name], state))
    except Exception as e:
        logger.error(f"Diagnostics for {feature} failed: {e}", exc_info=True)
        report.status = DiagnosticStatus.ERROR
        report.error = str(e)

    report.total_tests = len(report.results)
    report.successful_tests = sum(1 for r in report.results if r.success)
    report.failed_tests = report.total_tests - report.successful_tests
    report.total_duration_ms = int((time.perf_counter() - start) * 1000)
    if report.status != DiagnosticStatus.ERROR and report.failed_tests:
        report.status = DiagnosticStatus.PARTIAL

    logger.info(
        f"Diagnostics for {feature} finished: {report.successful_tests}/{report.total_tests} passed",
        extra={"data": {"status": report.status.value, "duration_ms": report.total_duration_ms}},
    )
    return report
