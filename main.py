import asyncio
import json
import logging
import sys

import click

from common.config import settings
from common.state import get_state
from utils.logger import setup_logging

# Setup Logging
setup_logging(
    level=settings.logging.level,
    format_type=settings.logging.format,
    node_id=settings.node_id
)
logger = logging.getLogger("main")


@click.group()
def cli():
    pass


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to api.host)")
@click.option("--port", default=None, type=int, help="Port (defaults to api.port)")
def serve(host, port):
    """Serves the diagnostics HTTP API."""
    import uvicorn
    from engine.api import create_app

    uvicorn.run(
        create_app(settings),
        host=host or settings.api.host,
        port=port or settings.api.port,
        log_config=None,
    )


@cli.command()
@click.option(
    "--feature",
    default="all",
    type=click.Choice(["all", "locks", "presence", "pubsub", "queue", "integration"]),
    help="Component to check",
)
def diagnose(feature):
    """Runs the end-to-end checks and prints the report."""
    from engine.diagnostics import DiagnosticStatus, run_diagnostics

    async def _run():
        state = get_state()
        try:
            return await run_diagnostics(state, feature)
        finally:
            await state.close()

    report = asyncio.run(_run())
    click.echo(json.dumps(report.model_dump(mode="json"), indent=2))
    if report.status != DiagnosticStatus.PASSED:
        sys.exit(1)


@cli.command()
@click.option("--queue", "queue_name", default="game-tasks", help="Queue to consume")
@click.option("--worker-id", default=None, help="Worker id (defaults to node id)")
def worker(queue_name, worker_id):
    """Starts a job worker."""
    from engine.worker import JobWorker
    from engine.session import SETUP_JOB_TYPE, setup_game_data_processor

    async def _run():
        state = get_state()
        await state.init()
        job_worker = JobWorker(state.queue, queue_name, worker_id=worker_id or settings.node_id)
        job_worker.register(SETUP_JOB_TYPE, setup_game_data_processor(state.pubsub))

        try:
            await job_worker.start()
        except asyncio.CancelledError:
            await job_worker.stop()
        finally:
            await state.close()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")


if __name__ == "__main__":
    cli()
