"""Activity record models read from the reminder and task subsystems."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, TypeAdapter, ValidationError, field_validator


class ActivityType(str, Enum):
    """Kinds of activity the engine learns from."""

    REMINDER = "reminder"
    TASK = "task"


_DATETIME = TypeAdapter(datetime)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Coerce a raw timestamp into an aware datetime, or None if unparseable.

    Accepts anything pydantic accepts for a datetime (ISO strings, ``Z``
    suffixes, epoch seconds). Naive values are taken to be UTC.
    """
    try:
        parsed = _DATETIME.validate_python(value)
    except ValidationError:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ActivityRecord(BaseModel):
    """A reminder or task as seen by the engine (read-only input)."""

    title: str
    type: ActivityType
    occurred_at: Optional[datetime] = None
    source_id: str

    @field_validator("occurred_at", mode="before")
    @classmethod
    def lenient_timestamp(cls, value: Any) -> Optional[datetime]:
        # Bad timestamps exclude the record from grouping instead of failing the batch
        return parse_timestamp(value)

    @field_validator("source_id", mode="before")
    @classmethod
    def stringify_source_id(cls, value: Any) -> str:
        return str(value)


@dataclass(frozen=True)
class Occurrence:
    """One piece of evidence inside a title group."""

    occurred_at: datetime
    source_id: str
    type: ActivityType
    title: str
