"""Behavioral pattern models."""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from routine_engine.models.activity import ActivityType


class Frequency(str, Enum):
    """Cadence a pattern repeats on."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class Priority(str, Enum):
    """Keyword-derived importance of a pattern."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_RANK = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}


class UserResponse(str, Enum):
    """User's answer to an automation offer."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class PatternTiming(BaseModel):
    """When a pattern usually happens, in the engine timezone."""

    hour: int = Field(..., ge=0, le=23)
    minute: int = Field(..., ge=0, le=59)
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)  # 0 = Sunday
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    custom_days: Optional[List[int]] = None


class PatternMetadata(BaseModel):
    """Bookkeeping carried alongside a pattern."""

    original_record_ids: List[str] = Field(default_factory=list)
    missed_count: int = 0
    automation_offered_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    last_reminded_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None


class FrequencyClass(BaseModel):
    """Result of classifying an occurrence list."""

    frequency: Frequency
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    custom_days: Optional[List[int]] = None


class PatternCandidate(BaseModel):
    """A classified, scored title group that has not been persisted yet."""

    normalized_title: str
    title: str
    type: ActivityType
    frequency: Frequency
    timing: PatternTiming
    consistency: float = Field(..., ge=0.0, le=1.0)
    record_ids: List[str]
    last_occurrence: datetime


class Pattern(BaseModel):
    """A persisted inference that a user repeats an activity on a cadence."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    title: str
    normalized_title: str
    type: ActivityType
    frequency: Frequency
    timing: PatternTiming
    occurrences: int = 0
    consistency: float = Field(default=0.0, ge=0.0, le=1.0)
    last_occurrence: datetime
    first_detected: datetime
    priority: Priority = Priority.MEDIUM
    auto_created: bool = False
    user_response: UserResponse = UserResponse.PENDING
    metadata: PatternMetadata = Field(default_factory=PatternMetadata)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> tuple:
        """Uniqueness key: (user_id, normalized_title, frequency)."""
        return (self.user_id, self.normalized_title, self.frequency.value)


class PatternFilter(BaseModel):
    """Criteria for listing patterns. Unset fields do not filter."""

    user_id: Optional[str] = None
    frequency: Optional[Frequency] = None
    type: Optional[ActivityType] = None
    user_response: Optional[UserResponse] = None
    priority: Optional[Priority] = None
    auto_created: Optional[bool] = None
    min_consistency: Optional[float] = None
    last_occurrence_before: Optional[datetime] = None
