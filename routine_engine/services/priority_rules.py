"""Keyword-based priority and priority-based grace periods."""

from typing import Dict, List, Mapping, Optional

from routine_engine.config import DEFAULT_PRIORITY_KEYWORDS, Settings, get_settings
from routine_engine.models.pattern import Priority
from routine_engine.services.activity_grouping import normalize_title

# Keyword groups are checked in this order; the first hit wins
_PRECEDENCE = (Priority.CRITICAL, Priority.HIGH, Priority.LOW)


def derive_priority(
    title: str,
    keywords: Optional[Mapping[str, List[str]]] = None,
) -> Priority:
    """Map a title to a priority by substring keyword lookup.

    Keywords are matched against the lower-cased title and its normalized
    form, so "Calling Mom" hits "call mom". Falls back to medium.
    """
    table = keywords if keywords is not None else DEFAULT_PRIORITY_KEYWORDS
    forms = (title.lower(), normalize_title(title))
    for priority in _PRECEDENCE:
        if any(keyword in form for keyword in table.get(priority.value, []) for form in forms):
            return priority
    return Priority.MEDIUM


def grace_period_minutes(priority: Priority, settings: Optional[Settings] = None) -> int:
    """Minutes past the scheduled time before a pattern counts as forgotten."""
    settings = settings or get_settings()
    periods: Dict[str, int] = settings.grace_periods
    return periods.get(priority.value, settings.grace_period_medium_minutes)
