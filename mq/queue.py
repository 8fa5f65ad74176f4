import logging
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar, Union

from pydantic import ValidationError

from common.config import QueueConfig
from common.models import (
    Job, JobCompletion, JobFailure, JobStatus, QueueStats, ServiceErrorKind, ServiceResult
)
from store import INF, KeyValueStore
from .retry import retry_delay_ms

logger = logging.getLogger(__name__)

T = TypeVar("T")


class QueuedJob(Generic[T]):
    """
    A reserved job, allowing complete/fail actions.
    Whichever action runs first wins; later calls are no-ops. A completion
    rejected as INVALID leaves the job active, so the handle stays open.
    """
    def __init__(
        self,
        job: T,
        complete_fn: Callable[[Any], Awaitable[ServiceResult[JobCompletion]]],
        fail_fn: Callable[[str], Awaitable[ServiceResult[JobFailure]]],
    ):
        self.job = job
        self._complete_fn = complete_fn
        self._fail_fn = fail_fn
        self._action_taken = False

    @property
    def done(self) -> bool:
        return self._action_taken

    async def complete(self, result: Any = None) -> Optional[ServiceResult[JobCompletion]]:
        if self._action_taken:
            return None
        outcome = await self._complete_fn(result)
        self._action_taken = outcome.kind != ServiceErrorKind.INVALID
        return outcome

    async def fail(self, reason: str = "unknown") -> Optional[ServiceResult[JobFailure]]:
        if self._action_taken:
            return None
        outcome = await self._fail_fn(reason)
        self._action_taken = True
        return outcome


class QueueService:
    """
    Priority job queue with delayed delivery, retry and a dead-letter set.

    Per queue there are five sorted sets: ``waiting`` (scored by priority
    then enqueue sequence), ``delayed`` (scored by ready time), ``active``
    (scored by start time), ``completed`` and ``failed`` (scored by finish
    time). Job records are JSON documents under their own key. A job id
    lives in exactly one of the sets; moving it always starts with a
    ZPOPMIN or ZREM whose winner is the only caller allowed to go on.
    """

    def __init__(self, store: KeyValueStore, config: Optional[QueueConfig] = None, namespace: str = "queue"):
        self.store = store
        self.config = config or QueueConfig()
        self.namespace = namespace

    def _key(self, queue_name: str, part: str) -> str:
        return f"{self.namespace}:{queue_name}:{part}"

    def _job_key(self, job_id: str) -> str:
        return f"{self.namespace}:job:{job_id}"

    async def _load(self, job_id: str) -> Optional[Job]:
        raw = await self.store.get(self._job_key(job_id))
        if raw is None:
            return None
        try:
            return Job.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Dropping unreadable job record {job_id}: {e}")
            await self.store.delete(self._job_key(job_id))
            return None

    async def _save(self, job: Job, ttl_ms: Optional[int] = None):
        await self.store.set(self._job_key(job.id), job.model_dump_json(), ttl_ms=ttl_ms)

    async def add_job(
        self,
        queue_name: str,
        job_type: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: Optional[int] = None,
        delay_ms: int = 0,
        max_attempts: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ServiceResult[str]:
        if delay_ms < 0:
            return ServiceResult.fail("Delay must not be negative", ServiceErrorKind.INVALID)

        try:
            now = await self.store.time_ms()
        except Exception as e:
            logger.error(f"Failed to add job to {queue_name}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        try:
            job = Job(
                queue_name=queue_name,
                job_type=job_type,
                payload=payload or {},
                priority=self.config.default_priority if priority is None else priority,
                created_at=now,
                ready_at=now + delay_ms,
                max_attempts=self.config.default_max_attempts if max_attempts is None else max_attempts,
                metadata=metadata or {},
            )
        except ValidationError as e:
            return ServiceResult.fail(str(e), ServiceErrorKind.INVALID)

        try:
            job.sequence = await self.store.increment(self._key(queue_name, "seq"))
            await self._save(job)
            if delay_ms > 0:
                await self.store.zadd(self._key(queue_name, "delayed"), job.id, job.ready_at)
            else:
                await self.store.zadd(self._key(queue_name, "waiting"), job.id, job.score)
        except Exception as e:
            logger.error(f"Failed to add job to {queue_name}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        logger.info(
            f"Job {job.id} ({job_type}) added to {queue_name}",
            extra={"job_id": job.id, "queue": queue_name, "data": {"priority": job.priority, "delay_ms": delay_ms}},
        )
        return ServiceResult.ok(job.id)

    async def _promote_delayed(self, queue_name: str, now: int) -> int:
        delayed = self._key(queue_name, "delayed")
        promoted = 0
        for job_id in await self.store.zrangebyscore(delayed, -INF, now):
            # only the caller that removes it from `delayed` moves it on
            if not await self.store.zrem(delayed, job_id):
                continue
            job = await self._load(job_id)
            if job is None:
                continue
            await self.store.zadd(self._key(queue_name, "waiting"), job.id, job.score)
            promoted += 1
        if promoted:
            logger.debug(f"Promoted {promoted} delayed jobs in {queue_name}")
        return promoted

    async def get_next_job(self, queue_name: str) -> ServiceResult[Optional[Job]]:
        """
        Hands out the highest-priority ready job, or None. Concurrent callers
        never receive the same job.
        """
        waiting = self._key(queue_name, "waiting")
        try:
            now = await self.store.time_ms()
            await self._promote_delayed(queue_name, now)

            while True:
                popped = await self.store.zpopmin(waiting)
                if popped is None:
                    return ServiceResult.ok(None)
                job = await self._load(popped[0])
                if job is not None:
                    break
                logger.warning(f"Job record {popped[0]} missing, skipped")

            job.status = JobStatus.ACTIVE
            job.started_at = now
            await self._save(job)
            await self.store.zadd(self._key(queue_name, "active"), job.id, now)
        except Exception as e:
            logger.error(f"Failed to get next job from {queue_name}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        logger.debug(f"Job {job.id} ({job.job_type}) taken from {queue_name}")
        return ServiceResult.ok(job)

    async def reserve(self, queue_name: str) -> ServiceResult[Optional[QueuedJob[Job]]]:
        result = await self.get_next_job(queue_name)
        if not result.success or result.data is None:
            return result
        job = result.data
        return ServiceResult.ok(QueuedJob(
            job,
            complete_fn=lambda value: self.complete_job(job.id, value),
            fail_fn=lambda reason: self.fail_job(job.id, reason),
        ))

    async def complete_job(self, job_id: str, result: Any = None) -> ServiceResult[JobCompletion]:
        """
        Moves an active job to ``completed``. A result that cannot be
        stored as JSON is rejected with INVALID and the job stays active.
        """
        try:
            job = await self._load(job_id)
            if job is None:
                return ServiceResult.fail(f"Job {job_id} not found", ServiceErrorKind.NOT_FOUND)

            now = await self.store.time_ms()
            job.status = JobStatus.COMPLETED
            job.finished_at = now
            job.result = result
            try:
                payload = job.model_dump_json()
            except (TypeError, ValueError) as e:
                logger.warning(f"Job {job_id} not completed: result is not serializable: {e}")
                return ServiceResult.fail(f"Job result is not serializable: {e}", ServiceErrorKind.INVALID)

            # the record is written only by the caller that removed the id
            if not await self.store.zrem(self._key(job.queue_name, "active"), job_id):
                logger.warning(f"Job {job_id} not completed: it is not active")
                return ServiceResult.ok(JobCompletion(completed=False, reason="Job is not active"))

            ttl_ms = self.config.completed_ttl_secs * 1000
            await self.store.set(self._job_key(job_id), payload, ttl_ms=ttl_ms)

            completed = self._key(job.queue_name, "completed")
            await self.store.zadd(completed, job_id, now)
            await self.store.zremrangebyscore(completed, -INF, now - ttl_ms)
        except Exception as e:
            logger.error(f"Failed to complete job {job_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        logger.info(f"Job {job_id} completed", extra={"job_id": job_id, "queue": job.queue_name})
        return ServiceResult.ok(JobCompletion(completed=True))

    async def fail_job(self, job: Union[Job, str], reason: str) -> ServiceResult[JobFailure]:
        """
        Records a failed attempt. The job is retried with exponential
        backoff until it has used ``max_attempts``, then dead-lettered.
        """
        job_id = job.id if isinstance(job, Job) else job
        try:
            record = await self._load(job_id)
            if record is None:
                return ServiceResult.fail(f"Job {job_id} not found", ServiceErrorKind.NOT_FOUND)
            previous_attempts = record.attempts

            now = await self.store.time_ms()
            record.attempts += 1
            record.last_error = reason
            retrying = record.attempts < record.max_attempts
            if retrying:
                delay = retry_delay_ms(
                    record.attempts,
                    self.config.retry_base_delay_ms,
                    self.config.retry_max_delay_ms,
                )
                record.status = JobStatus.PENDING
                record.ready_at = now + delay
                record.started_at = None
                ttl_ms = None
            else:
                record.status = JobStatus.FAILED
                record.finished_at = now
                ttl_ms = self.config.failed_ttl_secs * 1000
            payload = record.model_dump_json()

            if not await self.store.zrem(self._key(record.queue_name, "active"), job_id):
                logger.warning(f"Job {job_id} not failed: it is not active")
                return ServiceResult.ok(JobFailure(failed=False, attempts=previous_attempts, reason="Job is not active"))

            await self.store.set(self._job_key(job_id), payload, ttl_ms=ttl_ms)
            if retrying:
                await self.store.zadd(self._key(record.queue_name, "delayed"), job_id, record.ready_at)
                logger.warning(
                    f"Job {job_id} failed (attempt {record.attempts}/{record.max_attempts}), retry in {delay}ms: {reason}"
                )
                return ServiceResult.ok(JobFailure(
                    failed=True, attempts=record.attempts, retry_at=record.ready_at, reason=reason
                ))

            failed = self._key(record.queue_name, "failed")
            await self.store.zadd(failed, job_id, now)
            await self.store.zremrangebyscore(failed, -INF, now - ttl_ms)
        except Exception as e:
            logger.error(f"Failed to record failure of job {job_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        logger.error(
            f"Job {job_id} dead-lettered after {record.attempts} attempts: {reason}",
            extra={"job_id": job_id, "queue": record.queue_name},
        )
        return ServiceResult.ok(JobFailure(failed=True, dead_lettered=True, attempts=record.attempts, reason=reason))

    async def get_job(self, job_id: str) -> ServiceResult[Job]:
        try:
            job = await self._load(job_id)
        except Exception as e:
            logger.error(f"Failed to read job {job_id}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))
        if job is None:
            return ServiceResult.fail(f"Job {job_id} not found", ServiceErrorKind.NOT_FOUND)
        return ServiceResult.ok(job)

    async def get_failed_jobs(self, queue_name: str, limit: int = 100) -> ServiceResult[List[Job]]:
        """Dead-lettered jobs, most recent first"""
        try:
            jobs = []
            for job_id in await self.store.zrange(self._key(queue_name, "failed"), 0, limit - 1, desc=True):
                job = await self._load(job_id)
                if job is not None:
                    jobs.append(job)
        except Exception as e:
            logger.error(f"Failed to read failed jobs of {queue_name}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))
        return ServiceResult.ok(jobs)

    async def get_queue_stats(self, queue_name: str) -> ServiceResult[QueueStats]:
        try:
            now = await self.store.time_ms()
            completed = self._key(queue_name, "completed")
            failed = self._key(queue_name, "failed")
            await self.store.zremrangebyscore(completed, -INF, now - self.config.completed_ttl_secs * 1000)
            await self.store.zremrangebyscore(failed, -INF, now - self.config.failed_ttl_secs * 1000)

            stats = QueueStats(
                waiting=await self.store.zcard(self._key(queue_name, "waiting")),
                delayed=await self.store.zcard(self._key(queue_name, "delayed")),
                active=await self.store.zcard(self._key(queue_name, "active")),
                completed=await self.store.zcard(completed),
                failed=await self.store.zcard(failed),
            )
        except Exception as e:
            logger.error(f"Failed to read stats of {queue_name}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))
        return ServiceResult.ok(stats)

    async def recover_stale_jobs(
        self,
        queue_name: str,
        processing_timeout_ms: Optional[int] = None,
    ) -> ServiceResult[int]:
        """Fails jobs that have been active for longer than the processing timeout"""
        timeout = processing_timeout_ms or self.config.processing_timeout_ms
        try:
            now = await self.store.time_ms()
            stale = await self.store.zrangebyscore(self._key(queue_name, "active"), -INF, now - timeout)
        except Exception as e:
            logger.error(f"Failed to scan stale jobs of {queue_name}: {e}", exc_info=True)
            return ServiceResult.fail(str(e))

        recovered = 0
        for job_id in stale:
            result = await self.fail_job(job_id, "Job processing timeout")
            if not result.success:
                return ServiceResult.fail(result.error, result.kind)
            recovered += int(result.data.failed)

        if recovered:
            logger.warning(f"Recovered {recovered} stale jobs in {queue_name}")
        return ServiceResult.ok(recovered)
