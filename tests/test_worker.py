import asyncio

import pytest

from common.models import JobStatus
from engine.worker import JobWorker
from mq import QueueService


@pytest.fixture
def queue(memory_store):
    return QueueService(memory_store)


@pytest.mark.asyncio
async def test_run_once_completes_job(queue):
    seen = []

    async def handle(job):
        seen.append(job.payload["n"])
        return {"doubled": job.payload["n"] * 2}

    worker = JobWorker(queue, "work").register("double", handle)
    job_id = (await queue.add_job("work", "double", {"n": 21})).data

    assert await worker.run_once() is True
    assert seen == [21]
    job = (await queue.get_job(job_id)).data
    assert job.status == JobStatus.COMPLETED
    assert job.result == {"doubled": 42}

    assert await worker.run_once() is False


@pytest.mark.asyncio
async def test_processor_exception_fails_job(queue):
    async def explode(job):
        raise ValueError("bad payload")

    worker = JobWorker(queue, "work").register("explode", explode)
    job_id = (await queue.add_job("work", "explode", max_attempts=1)).data

    assert await worker.run_once() is True
    job = (await queue.get_job(job_id)).data
    assert job.status == JobStatus.FAILED
    assert job.last_error == "bad payload"


@pytest.mark.asyncio
async def test_unknown_job_type_fails(queue):
    worker = JobWorker(queue, "work")
    job_id = (await queue.add_job("work", "mystery", max_attempts=1)).data

    await worker.run_once()
    job = (await queue.get_job(job_id)).data
    assert job.status == JobStatus.FAILED
    assert "No processor registered" in job.last_error


@pytest.mark.asyncio
async def test_start_and_stop(queue):
    done = asyncio.Event()

    async def handle(job):
        done.set()
        return None

    worker = JobWorker(queue, "work", poll_interval=0.01).register("t", handle)
    runner = asyncio.create_task(worker.start())
    await queue.add_job("work", "t")

    await asyncio.wait_for(done.wait(), timeout=2)
    await worker.stop()
    await asyncio.wait_for(runner, timeout=2)
    assert (await queue.get_queue_stats("work")).data.completed == 1


@pytest.mark.asyncio
async def test_unserializable_result_fails_job(queue, clock):
    async def opaque(job):
        return object()

    worker = JobWorker(queue, "work").register("opaque", opaque)
    retried = (await queue.add_job("work", "opaque", max_attempts=2)).data

    assert await worker.run_once() is True
    job = (await queue.get_job(retried)).data
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1
    assert "not serializable" in job.last_error

    clock.advance(1000)
    assert await worker.run_once() is True
    stats = (await queue.get_queue_stats("work")).data
    assert (stats.active, stats.delayed, stats.failed) == (0, 0, 1)
    assert (await queue.get_job(retried)).data.status == JobStatus.FAILED
