"""Models package exports."""

from routine_engine.models.activity import ActivityRecord, ActivityType, Occurrence
from routine_engine.models.notification import NotificationKind, PatternNotification
from routine_engine.models.pattern import (
    Frequency,
    FrequencyClass,
    Pattern,
    PatternCandidate,
    PatternFilter,
    PatternMetadata,
    PatternTiming,
    Priority,
    UserResponse,
)

__all__ = [
    "ActivityRecord",
    "ActivityType",
    "Frequency",
    "FrequencyClass",
    "NotificationKind",
    "Occurrence",
    "Pattern",
    "PatternCandidate",
    "PatternFilter",
    "PatternMetadata",
    "PatternNotification",
    "PatternTiming",
    "Priority",
    "UserResponse",
]
