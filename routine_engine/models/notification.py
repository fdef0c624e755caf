"""Notification models for proactive nudges."""

from enum import Enum

from pydantic import BaseModel, Field

from routine_engine.models.pattern import Priority


class NotificationKind(str, Enum):
    """Notification kinds this engine emits."""

    PATTERN_DETECTED = "pattern_detected"
    FORGOTTEN_ACTIVITY = "forgotten_activity"


class PatternNotification(BaseModel):
    """A notification handed to the sink."""

    user_id: str
    kind: NotificationKind
    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., min_length=1, max_length=500)
    payload: dict = Field(default_factory=dict)
    priority: Priority = Priority.MEDIUM
