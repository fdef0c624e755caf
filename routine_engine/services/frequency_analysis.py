"""Frequency classification and consistency scoring for activity groups.

Everything here is pure: a sorted occurrence list goes in, a classification
or a score comes out. Weekdays follow the 0=Sunday..6=Saturday convention
and are computed in the timezone passed by the caller.
"""

import math
from collections import Counter
from datetime import datetime, timezone, tzinfo
from typing import Hashable, List, Optional, Sequence

import structlog

from routine_engine.models.activity import Occurrence
from routine_engine.models.pattern import Frequency, FrequencyClass, PatternCandidate, PatternTiming

logger = structlog.get_logger(__name__)

SECONDS_PER_DAY = 86400

DAILY_GAP = (0.5, 1.5)
WEEKLY_GAP = (6.0, 8.0)
CUSTOM_GAP = (2.0, 4.0)
MONTHLY_GAP = (25.0, 35.0)
CUSTOM_DISTINCT_DAYS = (2, 5)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return math.floor(value + 0.5)


def sunday_weekday(moment: datetime) -> int:
    """Weekday with Sunday as 0."""
    return (moment.weekday() + 1) % 7


def _mode_first_seen(values: Sequence[Hashable]):
    """Most common value; ties go to the value encountered first."""
    counts = Counter(values)
    top = max(counts.values())
    for value in values:
        if counts[value] == top:
            return value
    return None


def _day_gaps(occurrences: Sequence[Occurrence]) -> List[int]:
    return [
        round_half_up((b.occurred_at - a.occurred_at).total_seconds() / SECONDS_PER_DAY)
        for a, b in zip(occurrences, occurrences[1:])
    ]


def _within(value: float, bounds: tuple) -> bool:
    return bounds[0] <= value <= bounds[1]


def classify_frequency(
    occurrences: Sequence[Occurrence],
    tz: tzinfo = timezone.utc,
) -> Optional[FrequencyClass]:
    """Classify a sorted occurrence list by its mean day gap.

    Returns None when the gaps fit no supported cadence.
    """
    if len(occurrences) < 2:
        return None

    gaps = _day_gaps(occurrences)
    mean_gap = sum(gaps) / len(gaps)
    local = [o.occurred_at.astimezone(tz) for o in occurrences]
    weekdays = [sunday_weekday(m) for m in local]

    if _within(mean_gap, DAILY_GAP):
        return FrequencyClass(frequency=Frequency.DAILY)

    if _within(mean_gap, WEEKLY_GAP):
        return FrequencyClass(
            frequency=Frequency.WEEKLY,
            day_of_week=_mode_first_seen(weekdays),
        )

    if _within(mean_gap, CUSTOM_GAP):
        distinct = sorted(set(weekdays))
        low, high = CUSTOM_DISTINCT_DAYS
        if low <= len(distinct) <= high:
            return FrequencyClass(frequency=Frequency.CUSTOM, custom_days=distinct)

    if _within(mean_gap, MONTHLY_GAP):
        return FrequencyClass(
            frequency=Frequency.MONTHLY,
            day_of_month=_mode_first_seen([m.day for m in local]),
        )

    return None


def expected_occurrences(span_days: int, frequency: FrequencyClass) -> int:
    """How many occurrences the cadence predicts over ``span_days``."""
    if frequency.frequency == Frequency.DAILY:
        return span_days
    if frequency.frequency == Frequency.WEEKLY:
        return span_days // 7
    if frequency.frequency == Frequency.MONTHLY:
        return span_days // 30
    if frequency.frequency == Frequency.CUSTOM and frequency.custom_days:
        return math.floor(span_days / 7 * len(frequency.custom_days))
    return 0


def score_consistency(occurrences: Sequence[Occurrence], frequency: FrequencyClass) -> float:
    """Ratio of observed to expected occurrences, capped at 1.

    Describes past behavior only. Returns 0 when nothing was expected.
    """
    if len(occurrences) < 2:
        return 0.0

    span = occurrences[-1].occurred_at - occurrences[0].occurred_at
    span_days = round_half_up(span.total_seconds() / SECONDS_PER_DAY)
    expected = expected_occurrences(span_days, frequency)
    if expected <= 0:
        return 0.0
    return min(len(occurrences) / expected, 1.0)


def average_time_of_day(occurrences: Sequence[Occurrence], tz: tzinfo = timezone.utc) -> tuple:
    """Mean (hour, minute) of the occurrences in ``tz``."""
    minutes = [
        local.hour * 60 + local.minute
        for local in (o.occurred_at.astimezone(tz) for o in occurrences)
    ]
    mean_minutes = round_half_up(sum(minutes) / len(minutes))
    return mean_minutes // 60, mean_minutes % 60


def analyze_group(
    normalized_title: str,
    occurrences: Sequence[Occurrence],
    min_consistency: float = 0.6,
    tz: tzinfo = timezone.utc,
) -> Optional[PatternCandidate]:
    """Turn one title group into a pattern candidate, or None.

    ``occurrences`` must be sorted ascending.
    """
    frequency = classify_frequency(occurrences, tz)
    if frequency is None:
        logger.debug("group_not_periodic", normalized_title=normalized_title, count=len(occurrences))
        return None

    consistency = score_consistency(occurrences, frequency)
    if consistency < min_consistency:
        logger.debug(
            "group_below_consistency",
            normalized_title=normalized_title,
            frequency=frequency.frequency.value,
            consistency=round(consistency, 3),
        )
        return None

    hour, minute = average_time_of_day(occurrences, tz)
    latest = occurrences[-1]

    return PatternCandidate(
        normalized_title=normalized_title,
        title=latest.title,
        type=occurrences[0].type,
        frequency=frequency.frequency,
        timing=PatternTiming(
            hour=hour,
            minute=minute,
            day_of_week=frequency.day_of_week,
            day_of_month=frequency.day_of_month,
            custom_days=frequency.custom_days,
        ),
        consistency=consistency,
        record_ids=[o.source_id for o in occurrences],
        last_occurrence=latest.occurred_at,
    )
