"""Automation offer gate and offer wording."""

from enum import Enum
from typing import List

from routine_engine.models.pattern import Frequency, Pattern, PatternTiming, UserResponse

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


class OfferState(str, Enum):
    """Where a pattern stands with respect to the one-time automation offer."""

    NOT_ELIGIBLE = "not_eligible"  # too inconsistent, or already accepted
    ELIGIBLE = "eligible"
    OFFERED = "offered"
    DECLINED = "declined"


def offer_state(pattern: Pattern, threshold: float = 0.7) -> OfferState:
    """Derive the offer state of a pattern.

    Only ELIGIBLE may transition (to OFFERED); every other state is final
    for detection passes.
    """
    if pattern.user_response == UserResponse.DECLINED:
        return OfferState.DECLINED
    if pattern.metadata.automation_offered_at is not None:
        return OfferState.OFFERED
    if pattern.user_response != UserResponse.PENDING or pattern.consistency < threshold:
        return OfferState.NOT_ELIGIBLE
    return OfferState.ELIGIBLE


def format_time(timing: PatternTiming) -> str:
    return f"{timing.hour}:{timing.minute:02d}"


def _ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def join_days(days: List[int]) -> str:
    """"Monday", "Monday and Friday", "Monday, Wednesday, and Friday"."""
    names = [DAY_NAMES[d] for d in days]
    if len(names) == 1:
        return names[0]
    if len(names) == 2:
        return " and ".join(names)
    return ", ".join(names[:-1]) + ", and " + names[-1]


def describe_frequency(pattern: Pattern) -> str:
    """Human phrase for a pattern's cadence, e.g. "every Tuesday"."""
    timing = pattern.timing
    if pattern.frequency == Frequency.DAILY:
        return "every day"
    if pattern.frequency == Frequency.WEEKLY and timing.day_of_week is not None:
        return f"every {DAY_NAMES[timing.day_of_week]}"
    if pattern.frequency == Frequency.CUSTOM and timing.custom_days:
        return f"every {join_days(timing.custom_days)}"
    if pattern.frequency == Frequency.MONTHLY and timing.day_of_month is not None:
        return f"every month on the {_ordinal(timing.day_of_month)}"
    return "every month" if pattern.frequency == Frequency.MONTHLY else "regularly"


def build_offer_message(pattern: Pattern) -> tuple:
    """Title and body of the automation offer notification."""
    cadence = describe_frequency(pattern)
    body = (
        f'I\'ve noticed you set a reminder to "{pattern.title}" {cadence} '
        f"around {format_time(pattern.timing)}. Want me to create it automatically "
        f"{cadence} so you don't have to?"
    )
    return "Pattern Detected - Automate?", body
