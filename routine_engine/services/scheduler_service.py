"""Scheduler running the detection pass and the forgotten-activity sweep."""

import asyncio
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

import structlog
from croniter import croniter

from routine_engine.config import Settings, get_settings
from routine_engine.errors import StoreUnavailableError
from routine_engine.models.pattern import Pattern
from routine_engine.services.collaborators import ActivitySource
from routine_engine.services.forgotten_activity_service import ForgottenActivityService
from routine_engine.services.pattern_service import PatternService

logger = structlog.get_logger(__name__)

DETECTION_JOB = "pattern_detection"
FORGOTTEN_JOB = "forgotten_activity_check"


class EngineScheduler:
    """Runs both engine jobs on their cron schedules.

    Users are processed concurrently up to ``max_concurrent_users``. A failing
    user is logged and skipped; the next tick retries it.
    """

    def __init__(
        self,
        pattern_service: PatternService,
        forgotten_service: ForgottenActivityService,
        activity_source: ActivitySource,
        settings: Optional[Settings] = None,
    ):
        self.pattern_service = pattern_service
        self.forgotten_service = forgotten_service
        self.activity_source = activity_source
        self.settings = settings or get_settings()
        self._tasks: List[asyncio.Task] = []
        self._running = False

    def start(self):
        """Start both job loops as asyncio background tasks."""
        self._running = True
        self._tasks = [
            asyncio.create_task(
                self._run_on_schedule(DETECTION_JOB, self.settings.detection_schedule_cron, self.run_detection_pass)
            ),
            asyncio.create_task(
                self._run_on_schedule(FORGOTTEN_JOB, self.settings.forgotten_sweep_cron, self.run_forgotten_sweep)
            ),
        ]
        logger.info(
            "scheduler_started",
            detection_cron=self.settings.detection_schedule_cron,
            forgotten_cron=self.settings.forgotten_sweep_cron,
        )

    async def stop(self):
        """Stop both job loops."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("scheduler_stopped")

    async def _run_on_schedule(
        self, job_name: str, cron_expression: str, job: Callable[[], Awaitable[dict]]
    ):
        """Sleep until each cron tick, then run the job."""
        schedule = croniter(cron_expression, datetime.now(timezone.utc))

        while self._running:
            next_run = schedule.get_next(datetime)
            delay = (next_run - datetime.now(timezone.utc)).total_seconds()

            try:
                if delay > 0:
                    await asyncio.sleep(delay)
                await job()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("scheduler_job_error", job=job_name, error=str(e))

    async def _for_each_user(
        self, user_ids: Iterable[str], work: Callable[[str], Awaitable[dict]]
    ) -> List[dict]:
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_users)

        async def bounded(user_id: str) -> dict:
            async with semaphore:
                return await work(user_id)

        return await asyncio.gather(*(bounded(uid) for uid in user_ids))

    async def run_detection_pass(self, now: Optional[datetime] = None) -> dict:
        """Detect patterns for every active user."""
        start_time = time.perf_counter()
        now = now or datetime.now(timezone.utc)

        try:
            user_ids = await asyncio.wait_for(
                self.activity_source.list_active_user_ids(self.settings.max_users_per_pass),
                timeout=self.settings.collaborator_timeout_seconds,
            )
        except (StoreUnavailableError, asyncio.TimeoutError) as e:
            logger.error("detection_pass_failed", error=str(e))
            return {"users": 0, "succeeded": 0, "failed": 0, "patterns": 0, "offers": 0}

        logger.info("detection_pass_started", users=len(user_ids))

        async def detect(user_id: str) -> dict:
            try:
                result = await self.pattern_service.detect_patterns_for_user(user_id, now)
                return {"ok": True, "patterns": len(result.patterns), "offers": result.offers_sent}
            except StoreUnavailableError as e:
                logger.warning("detection_pass_aborted", user_id=user_id, error=str(e))
            except Exception as e:
                logger.error("detection_pass_error", user_id=user_id, error=str(e))
            return {"ok": False, "patterns": 0, "offers": 0}

        outcomes = await self._for_each_user(user_ids, detect)
        summary = {
            "users": len(user_ids),
            "succeeded": sum(1 for o in outcomes if o["ok"]),
            "failed": sum(1 for o in outcomes if not o["ok"]),
            "patterns": sum(o["patterns"] for o in outcomes),
            "offers": sum(o["offers"] for o in outcomes),
        }

        logger.info(
            "detection_pass_completed",
            duration_ms=int((time.perf_counter() - start_time) * 1000),
            **summary,
        )
        return summary

    async def run_forgotten_sweep(
        self, now: Optional[datetime] = None, user_id: Optional[str] = None
    ) -> dict:
        """Send forgotten-activity reminders across all monitored patterns."""
        start_time = time.perf_counter()
        now = now or datetime.now(timezone.utc)

        try:
            patterns = await self.forgotten_service.list_monitored_patterns(user_id)
        except StoreUnavailableError as e:
            logger.error("forgotten_sweep_failed", error=str(e))
            return {"users": 0, "succeeded": 0, "failed": 0, "reminders": 0}

        by_user: Dict[str, List[Pattern]] = defaultdict(list)
        for pattern in patterns:
            by_user[pattern.user_id].append(pattern)

        async def sweep(uid: str) -> dict:
            try:
                sent = await self.forgotten_service.sweep_patterns(by_user[uid], now)
                return {"ok": True, "reminders": sent}
            except StoreUnavailableError as e:
                logger.warning("forgotten_sweep_user_aborted", user_id=uid, error=str(e))
            except Exception as e:
                logger.error("forgotten_sweep_user_error", user_id=uid, error=str(e))
            return {"ok": False, "reminders": 0}

        outcomes = await self._for_each_user(list(by_user), sweep)
        summary = {
            "users": len(by_user),
            "succeeded": sum(1 for o in outcomes if o["ok"]),
            "failed": sum(1 for o in outcomes if not o["ok"]),
            "reminders": sum(o["reminders"] for o in outcomes),
        }

        logger.info(
            "forgotten_sweep_completed",
            duration_ms=int((time.perf_counter() - start_time) * 1000),
            **summary,
        )
        return summary
