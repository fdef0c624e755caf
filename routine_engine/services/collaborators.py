"""Interfaces of the collaborators the engine reads from and writes to."""

from datetime import datetime
from typing import AsyncContextManager, List, Optional, Protocol
from uuid import UUID

from routine_engine.models.activity import ActivityRecord
from routine_engine.models.notification import NotificationKind
from routine_engine.models.pattern import Frequency, Pattern, PatternFilter, Priority


class ActivitySource(Protocol):
    """Read-only access to a user's reminders and tasks."""

    async def list_activities(self, user_id: str, since: datetime) -> List[ActivityRecord]:
        ...

    async def list_active_user_ids(self, limit: int) -> List[str]:
        ...


class PatternStore(Protocol):
    """Durable pattern storage, unique on (user_id, normalized_title, frequency).

    ``upsert_pattern`` writes evidence and user-response fields only.
    ``automation_offered_at``, ``last_reminded_at`` and ``missed_count``
    change solely through the ``claim_*`` methods, each an atomic
    conditional update that returns a falsy value when the gate was already
    taken.
    """

    def lock(self, user_id: str, normalized_title: str, frequency: Frequency) -> AsyncContextManager[None]:
        ...

    async def find_pattern(
        self, user_id: str, normalized_title: str, frequency: Frequency
    ) -> Optional[Pattern]:
        ...

    async def get_pattern(self, user_id: str, pattern_id: UUID) -> Optional[Pattern]:
        ...

    async def upsert_pattern(self, pattern: Pattern) -> Pattern:
        ...

    async def list_patterns(self, pattern_filter: PatternFilter) -> List[Pattern]:
        ...

    async def delete_pattern(self, user_id: str, pattern_id: UUID) -> bool:
        ...

    async def claim_automation_offer(self, pattern_id: UUID, offered_at: datetime) -> bool:
        ...

    async def claim_forgotten_reminder(
        self, pattern_id: UUID, day_start: datetime, reminded_at: datetime
    ) -> Optional[int]:
        """Returns the new missed count, or None if already reminded or done today."""
        ...


class NotificationSink(Protocol):
    """Fire-and-forget notification delivery."""

    async def emit(
        self,
        user_id: str,
        kind: NotificationKind,
        title: str,
        body: str,
        payload: dict,
        priority: Priority,
    ) -> None:
        ...
