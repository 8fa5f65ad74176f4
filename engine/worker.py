import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from common.models import Job
from mq import QueueService

logger = logging.getLogger(__name__)

Processor = Callable[[Job], Awaitable[Any]]


class JobWorker:
    """
    Pulls jobs from one queue and runs the processor registered for the
    job type. A processor's return value becomes the job result; an
    exception becomes a failed attempt.
    """
    def __init__(
        self,
        queue: QueueService,
        queue_name: str,
        worker_id: str = "worker-1",
        poll_interval: Optional[float] = None,
        recover_interval: float = 60.0,
    ):
        self.queue = queue
        self.queue_name = queue_name
        self.worker_id = worker_id
        self.poll_interval = poll_interval if poll_interval is not None else queue.config.poll_interval
        self.recover_interval = recover_interval
        self.running = False
        self._processors: Dict[str, Processor] = {}
        self._last_recovery = 0.0

    def register(self, job_type: str, processor: Processor) -> "JobWorker":
        self._processors[job_type] = processor
        return self

    async def start(self):
        self.running = True
        logger.info(f"Worker {self.worker_id} started on queue {self.queue_name}, job types: {sorted(self._processors)}")

        while self.running:
            if time.monotonic() - self._last_recovery >= self.recover_interval:
                self._last_recovery = time.monotonic()
                await self.queue.recover_stale_jobs(self.queue_name)

            if not await self.run_once():
                await asyncio.sleep(self.poll_interval)

        logger.info(f"Worker {self.worker_id} stopped")

    async def stop(self):
        logger.info(f"Worker {self.worker_id} stopping...")
        self.running = False

    async def run_once(self) -> bool:
        """Processes at most one job; returns whether one was taken"""
        reserved = await self.queue.reserve(self.queue_name)
        if not reserved.success:
            logger.error(f"[{self.worker_id}] Could not poll {self.queue_name}: {reserved.error}")
            return False
        if reserved.data is None:
            return False

        queued = reserved.data
        job = queued.job
        processor = self._processors.get(job.job_type)
        if processor is None:
            logger.error(f"[{self.worker_id}] No processor registered for {job.job_type}")
            await queued.fail(f"No processor registered for job type {job.job_type}")
            return True

        logger.info(
            f"[{self.worker_id}] Processing job {job.id} ({job.job_type}), attempt {job.attempts + 1}",
            extra={"job_id": job.id, "queue": self.queue_name, "worker_id": self.worker_id},
        )
        try:
            result = await processor(job)
        except Exception as e:
            logger.error(f"[{self.worker_id}] Job {job.id} failed: {e}", exc_info=True)
            await queued.fail(str(e))
            return True

        outcome = await queued.complete(result)
        if not queued.done:
            logger.error(f"[{self.worker_id}] Job {job.id} result rejected: {outcome.error}")
            await queued.fail(outcome.error)
        return True
