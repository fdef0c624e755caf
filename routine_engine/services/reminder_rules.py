"""Per-day reminder state for automated patterns.

The state is never stored. It is re-derived on every sweep from the pattern
timing, ``last_occurrence`` and ``metadata.last_reminded_at``, so it resets
at local midnight on its own.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from routine_engine.models.pattern import Frequency, Pattern, Priority
from routine_engine.services.frequency_analysis import sunday_weekday
from routine_engine.services.offer_rules import format_time


class ReminderState(str, Enum):
    """Where a pattern stands today."""

    NOT_DUE = "not_due"
    COMPLETED = "completed"  # an occurrence was recorded today
    DUE_PENDING = "due_pending"  # due, still within the grace period
    OVERDUE = "overdue"  # forgotten; a reminder should go out
    REMINDED = "reminded"  # today's reminder already went out


def is_due_today(pattern: Pattern, now: datetime) -> bool:
    """Whether the pattern's cadence includes ``now``'s local date."""
    timing = pattern.timing
    if pattern.frequency == Frequency.DAILY:
        return True
    if pattern.frequency == Frequency.WEEKLY:
        return timing.day_of_week == sunday_weekday(now)
    if pattern.frequency == Frequency.MONTHLY:
        return timing.day_of_month == now.day
    if pattern.frequency == Frequency.CUSTOM:
        return bool(timing.custom_days) and sunday_weekday(now) in timing.custom_days
    return False


def scheduled_time(pattern: Pattern, now: datetime) -> datetime:
    """Today's occurrence of the pattern's hour:minute, in ``now``'s zone."""
    return now.replace(
        hour=pattern.timing.hour,
        minute=pattern.timing.minute,
        second=0,
        microsecond=0,
    )


def minutes_late(pattern: Pattern, now: datetime) -> int:
    return int((now - scheduled_time(pattern, now)).total_seconds() // 60)


def _same_local_day(moment: Optional[datetime], now: datetime) -> bool:
    if moment is None:
        return False
    return moment.astimezone(now.tzinfo).date() == now.date()


def reminder_state(pattern: Pattern, now: datetime, grace_minutes: int) -> ReminderState:
    """Derive today's reminder state. ``now`` must be timezone-aware."""
    if not is_due_today(pattern, now):
        return ReminderState.NOT_DUE
    if _same_local_day(pattern.last_occurrence, now):
        return ReminderState.COMPLETED
    if _same_local_day(pattern.metadata.last_reminded_at, now):
        return ReminderState.REMINDED

    elapsed = now - scheduled_time(pattern, now)
    if elapsed > timedelta(minutes=grace_minutes):
        return ReminderState.OVERDUE
    return ReminderState.DUE_PENDING


def start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def build_forgotten_message(pattern: Pattern) -> tuple:
    """Title and body of a forgotten-activity reminder, graded by priority."""
    at = format_time(pattern.timing)
    if pattern.priority == Priority.CRITICAL:
        body = f"Time for your {pattern.title}. You usually take care of this at {at}."
    elif pattern.priority == Priority.HIGH:
        period = "day" if pattern.frequency == Frequency.DAILY else "week"
        body = (
            f"I noticed you usually {pattern.title} around this time every {period}, "
            "but haven't yet today. Want a reminder?"
        )
    else:
        body = f"Time for your {pattern.title}? You usually handle this around {at}!"
    return f"Forgotten: {pattern.title}", body
