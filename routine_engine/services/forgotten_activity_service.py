"""Forgotten-activity monitor for automated patterns."""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo

import structlog

from routine_engine.config import Settings, get_settings
from routine_engine.errors import StoreUnavailableError
from routine_engine.models.notification import NotificationKind, PatternNotification
from routine_engine.models.pattern import Pattern, PatternFilter
from routine_engine.services.collaborators import NotificationSink, PatternStore
from routine_engine.services.notification_sink import dispatch_notification
from routine_engine.services.priority_rules import grace_period_minutes
from routine_engine.services.reminder_rules import (
    ReminderState,
    build_forgotten_message,
    minutes_late,
    reminder_state,
    start_of_day,
)

logger = structlog.get_logger(__name__)


@dataclass
class ForgottenActivity:
    """A due pattern that is past its grace period with nothing recorded today."""

    pattern: Pattern
    minutes_late: int
    grace_period_minutes: int


class ForgottenActivityService:
    """Finds skipped routines and sends at most one reminder per pattern per day."""

    def __init__(
        self,
        store: PatternStore,
        sink: NotificationSink,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.sink = sink
        self.settings = settings or get_settings()
        self.tz = ZoneInfo(self.settings.engine_timezone)

    async def list_monitored_patterns(self, user_id: Optional[str] = None) -> List[Pattern]:
        """Patterns the user accepted automation for."""
        try:
            return await asyncio.wait_for(
                self.store.list_patterns(PatternFilter(user_id=user_id, auto_created=True)),
                timeout=self.settings.collaborator_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError("list_patterns", e) from e

    def find_forgotten(self, patterns: List[Pattern], now: datetime) -> List[ForgottenActivity]:
        """Pick the overdue patterns out of ``patterns`` as of ``now``."""
        local_now = now.astimezone(self.tz)
        forgotten = []

        for pattern in patterns:
            if not pattern.auto_created:
                continue
            grace = grace_period_minutes(pattern.priority, self.settings)
            state = reminder_state(pattern, local_now, grace)
            if state == ReminderState.OVERDUE:
                forgotten.append(
                    ForgottenActivity(
                        pattern=pattern,
                        minutes_late=minutes_late(pattern, local_now),
                        grace_period_minutes=grace,
                    )
                )

        return forgotten

    async def check_forgotten_activities(
        self, user_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> List[ForgottenActivity]:
        """Load monitored patterns (optionally for one user) and find the overdue ones."""
        now = now or datetime.now(timezone.utc)
        patterns = await self.list_monitored_patterns(user_id)
        forgotten = self.find_forgotten(patterns, now)
        logger.info(
            "forgotten_activities_checked",
            user_id=user_id,
            monitored=len(patterns),
            forgotten=len(forgotten),
        )
        return forgotten

    async def send_forgotten_reminder(
        self, activity: ForgottenActivity, now: Optional[datetime] = None
    ) -> bool:
        """Claim today's reminder slot for the pattern and notify the user.

        Returns False when another sweep already reminded today.
        """
        now = now or datetime.now(timezone.utc)
        pattern = activity.pattern
        day_start = start_of_day(now.astimezone(self.tz))

        try:
            missed_count = await asyncio.wait_for(
                self.store.claim_forgotten_reminder(pattern.id, day_start, now),
                timeout=self.settings.collaborator_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError("claim_forgotten_reminder", e) from e

        if missed_count is None:
            logger.info("forgotten_reminder_already_sent", pattern_id=str(pattern.id))
            return False

        pattern.metadata.missed_count = missed_count
        pattern.metadata.last_reminded_at = now

        title, body = build_forgotten_message(pattern)
        await dispatch_notification(
            self.sink,
            PatternNotification(
                user_id=pattern.user_id,
                kind=NotificationKind.FORGOTTEN_ACTIVITY,
                title=title[:200],
                body=body[:500],
                payload={
                    "pattern_id": str(pattern.id),
                    "action": "forgotten_reminder",
                    "minutes_late": activity.minutes_late,
                },
                priority=pattern.priority,
            ),
            timeout=self.settings.collaborator_timeout_seconds,
        )

        logger.info(
            "forgotten_reminder_sent",
            pattern_id=str(pattern.id),
            user_id=pattern.user_id,
            minutes_late=activity.minutes_late,
            missed_count=missed_count,
        )
        return True

    async def sweep_patterns(self, patterns: List[Pattern], now: Optional[datetime] = None) -> int:
        """Remind for every overdue pattern in ``patterns``. Returns reminders sent."""
        now = now or datetime.now(timezone.utc)
        sent = 0
        for activity in self.find_forgotten(patterns, now):
            if await self.send_forgotten_reminder(activity, now):
                sent += 1
        return sent
