"""Worker entry point: wires the Postgres collaborators and runs the jobs."""

import asyncio
import json
import signal
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

import click
from dotenv import load_dotenv

# Load environment variables before settings are read
load_dotenv()

from routine_engine.config import get_settings
from routine_engine.database import close_database, health_check, init_database, run_migrations
from routine_engine.services.activity_source import PostgresActivitySource
from routine_engine.services.forgotten_activity_service import ForgottenActivityService
from routine_engine.services.logging_service import configure_logging, get_logger
from routine_engine.services.notification_sink import PostgresNotificationSink
from routine_engine.services.pattern_service import PatternService
from routine_engine.services.pattern_store import PostgresPatternStore
from routine_engine.services.scheduler_service import EngineScheduler


@asynccontextmanager
async def engine() -> AsyncIterator[EngineScheduler]:
    """Open the database, build the services and close everything on exit."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger = get_logger("main")

    await init_database()
    await run_migrations()
    logger.info("database_initialized")

    timeout = settings.collaborator_timeout_seconds
    store = PostgresPatternStore(timeout=timeout)
    source = PostgresActivitySource(timeout=timeout)
    sink = PostgresNotificationSink(timeout=timeout)

    scheduler = EngineScheduler(
        pattern_service=PatternService(store, source, sink, settings),
        forgotten_service=ForgottenActivityService(store, sink, settings),
        activity_source=source,
        settings=settings,
    )
    try:
        yield scheduler
    finally:
        await close_database()
        logger.info("engine_shutdown")


async def serve() -> None:
    """Run both jobs on schedule until SIGINT or SIGTERM."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    async with engine() as scheduler:
        scheduler.start()
        await stop_event.wait()
        await scheduler.stop()


async def run_once(job: str, user_id: Optional[str]) -> dict:
    async with engine() as scheduler:
        if job == "detect":
            if user_id:
                result = await scheduler.pattern_service.detect_patterns_for_user(user_id)
                return {"user_id": user_id, "patterns": len(result.patterns), "offers": result.offers_sent}
            return await scheduler.run_detection_pass()
        return await scheduler.run_forgotten_sweep(user_id=user_id)


async def check_health() -> dict:
    """Database connectivity status for the ``health`` command."""
    configure_logging(get_settings().log_level)
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        await init_database()
        db_healthy = await health_check()
        health_status["database"] = "healthy" if db_healthy else "unhealthy"
    except Exception:
        health_status["database"] = "unavailable"
    finally:
        await close_database()

    if health_status["database"] != "healthy":
        health_status["status"] = "unhealthy"
    return health_status


@click.group()
def cli() -> None:
    """Behavioral pattern detection and proactive reminder engine."""


@cli.command()
def run() -> None:
    """Run the detection pass and the forgotten-activity sweep on schedule."""
    asyncio.run(serve())


@cli.command()
@click.option("--user", "user_id", default=None, help="Only process this user.")
def detect(user_id: Optional[str]) -> None:
    """Run one detection pass now."""
    click.echo(json.dumps(asyncio.run(run_once("detect", user_id))))


@cli.command()
@click.option("--user", "user_id", default=None, help="Only process this user.")
def sweep(user_id: Optional[str]) -> None:
    """Run one forgotten-activity sweep now."""
    click.echo(json.dumps(asyncio.run(run_once("sweep", user_id))))


@cli.command()
def health() -> None:
    """Check database connectivity; exits non-zero when unhealthy."""
    health_status = asyncio.run(check_health())
    click.echo(json.dumps(health_status))
    if health_status["status"] != "healthy":
        sys.exit(1)


if __name__ == "__main__":
    cli()
