"""Pattern service: detection pass, pattern merge, automation offers and user responses."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, List, Optional, TypeVar
from uuid import UUID
from zoneinfo import ZoneInfo

import structlog

from routine_engine.config import Settings, get_settings
from routine_engine.errors import StoreUnavailableError
from routine_engine.models.notification import NotificationKind, PatternNotification
from routine_engine.models.pattern import (
    PRIORITY_RANK,
    Pattern,
    PatternCandidate,
    PatternFilter,
    PatternMetadata,
    Priority,
    UserResponse,
)
from routine_engine.services.activity_grouping import group_activities
from routine_engine.services.collaborators import ActivitySource, NotificationSink, PatternStore
from routine_engine.services.frequency_analysis import analyze_group
from routine_engine.services.notification_sink import dispatch_notification
from routine_engine.services.offer_rules import OfferState, build_offer_message, offer_state
from routine_engine.services.priority_rules import derive_priority

logger = structlog.get_logger(__name__)

T = TypeVar("T")

PATTERN_SORT_KEYS = {
    "priority": lambda p: (PRIORITY_RANK[p.priority], -p.consistency),
    "consistency": lambda p: -p.consistency,
    "occurrences": lambda p: -p.occurrences,
    "recent": lambda p: -p.last_occurrence.timestamp(),
}


def new_pattern(user_id: str, candidate: PatternCandidate, priority: Priority, now: datetime) -> Pattern:
    """Create a pattern from its first qualifying evidence."""
    return Pattern(
        user_id=user_id,
        title=candidate.title,
        normalized_title=candidate.normalized_title,
        type=candidate.type,
        frequency=candidate.frequency,
        timing=candidate.timing,
        occurrences=len(set(candidate.record_ids)),
        consistency=candidate.consistency,
        last_occurrence=candidate.last_occurrence,
        first_detected=now,
        priority=priority,
        metadata=PatternMetadata(original_record_ids=list(dict.fromkeys(candidate.record_ids))),
    )


def merge_pattern(existing: Pattern, candidate: PatternCandidate) -> Pattern:
    """Fold new evidence into an existing pattern.

    ``occurrences`` grows only by record ids not seen before, so re-running a
    pass over the same window never inflates it. The stored ids are trimmed
    to the candidate's, which covers the whole lookback window; ids that
    aged out of the window cannot come back. Priority and first_detected
    stay as they were.
    """
    seen = set(existing.metadata.original_record_ids)
    record_ids = list(dict.fromkeys(candidate.record_ids))
    new_ids = [r for r in record_ids if r not in seen]
    metadata = existing.metadata.model_copy(update={"original_record_ids": record_ids})
    return existing.model_copy(
        update={
            "title": candidate.title,
            "timing": candidate.timing,
            "occurrences": existing.occurrences + len(new_ids),
            "consistency": candidate.consistency,
            "last_occurrence": max(existing.last_occurrence, candidate.last_occurrence),
            "metadata": metadata,
        }
    )


@dataclass
class DetectionResult:
    """Outcome of one user's detection pass."""

    user_id: str
    patterns: List[Pattern] = field(default_factory=list)
    offers_sent: int = 0


class PatternService:
    """Detects routines for a user and keeps the pattern store in sync."""

    def __init__(
        self,
        store: PatternStore,
        activity_source: ActivitySource,
        sink: NotificationSink,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.activity_source = activity_source
        self.sink = sink
        self.settings = settings or get_settings()
        self.tz = ZoneInfo(self.settings.engine_timezone)

    async def _bounded(self, operation: str, call: Awaitable[T]) -> T:
        """Await a collaborator call, turning a timeout into StoreUnavailableError."""
        try:
            return await asyncio.wait_for(call, timeout=self.settings.collaborator_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError(operation, e) from e

    async def detect_patterns_for_user(
        self, user_id: str, now: Optional[datetime] = None
    ) -> DetectionResult:
        """Run one detection pass over the user's lookback window.

        Raises:
            StoreUnavailableError: The activity source or pattern store failed;
                the caller should abandon this user until the next tick.
        """
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(days=self.settings.lookback_days)

        records = await self._bounded(
            "list_activities", self.activity_source.list_activities(user_id, since)
        )
        groups = group_activities(records, min_occurrences=self.settings.min_occurrences)

        candidates = []
        for normalized_title, occurrences in groups.items():
            candidate = analyze_group(
                normalized_title,
                occurrences,
                min_consistency=self.settings.min_consistency,
                tz=self.tz,
            )
            if candidate is not None:
                candidates.append(candidate)

        logger.info(
            "pattern_candidates_found",
            user_id=user_id,
            records=len(records),
            groups=len(groups),
            candidates=len(candidates),
        )

        result = DetectionResult(user_id=user_id)
        for candidate in candidates:
            pattern, offered = await self.sync_candidate(user_id, candidate, now)
            result.patterns.append(pattern)
            if offered:
                result.offers_sent += 1

        return result

    async def sync_candidate(
        self, user_id: str, candidate: PatternCandidate, now: datetime
    ) -> tuple:
        """Create or merge the pattern for a candidate, then run the offer gate.

        Returns (pattern, offered). The whole read-merge-write runs under the
        pattern key's lock.
        """
        async with self.store.lock(user_id, candidate.normalized_title, candidate.frequency):
            existing = await self._bounded(
                "find_pattern",
                self.store.find_pattern(user_id, candidate.normalized_title, candidate.frequency),
            )

            if existing is not None:
                pattern = merge_pattern(existing, candidate)
                event = "pattern_updated"
            else:
                priority = derive_priority(candidate.title, self.settings.priority_keywords)
                pattern = new_pattern(user_id, candidate, priority, now)
                event = "pattern_created"

            pattern = await self._bounded("upsert_pattern", self.store.upsert_pattern(pattern))

            logger.info(
                event,
                pattern_id=str(pattern.id),
                user_id=user_id,
                normalized_title=pattern.normalized_title,
                frequency=pattern.frequency.value,
                occurrences=pattern.occurrences,
                consistency=round(pattern.consistency, 3),
            )

            offered = await self.maybe_offer_automation(pattern, now)

        return pattern, offered

    async def maybe_offer_automation(self, pattern: Pattern, now: datetime) -> bool:
        """Emit the one-time automation offer if the pattern is eligible.

        The gate is claimed in the store before the notification goes out, so
        concurrent passes cannot both offer, and a failed send is not retried.
        """
        state = offer_state(pattern, self.settings.automation_offer_consistency)
        if state != OfferState.ELIGIBLE:
            return False

        claimed = await self._bounded(
            "claim_automation_offer", self.store.claim_automation_offer(pattern.id, now)
        )
        if not claimed:
            logger.info("automation_offer_already_claimed", pattern_id=str(pattern.id))
            return False

        pattern.metadata.automation_offered_at = now
        title, body = build_offer_message(pattern)
        await dispatch_notification(
            self.sink,
            PatternNotification(
                user_id=pattern.user_id,
                kind=NotificationKind.PATTERN_DETECTED,
                title=title,
                body=body[:500],
                payload={"pattern_id": str(pattern.id), "action": "offer_automation"},
                priority=pattern.priority,
            ),
            timeout=self.settings.collaborator_timeout_seconds,
        )

        logger.info(
            "automation_offered",
            pattern_id=str(pattern.id),
            user_id=pattern.user_id,
            frequency=pattern.frequency.value,
        )
        return True

    async def _respond(self, user_id: str, pattern_id: UUID, event: str, **changes) -> Optional[Pattern]:
        """Apply a user response to a pattern under its key lock."""
        pattern = await self._bounded("get_pattern", self.store.get_pattern(user_id, pattern_id))
        if pattern is None:
            return None

        async with self.store.lock(user_id, pattern.normalized_title, pattern.frequency):
            # Re-read inside the lock so a concurrent merge is not overwritten
            current = await self._bounded("get_pattern", self.store.get_pattern(user_id, pattern_id))
            if current is None:
                return None

            metadata_changes = {
                k: changes.pop(k) for k in ("declined_at", "paused_at") if k in changes
            }
            metadata = current.metadata.model_copy(update=metadata_changes)
            updated = current.model_copy(update={**changes, "metadata": metadata})
            saved = await self._bounded("upsert_pattern", self.store.upsert_pattern(updated))

        logger.info(event, pattern_id=str(pattern_id), user_id=user_id, title=saved.title)
        return saved

    async def accept_automation(self, user_id: str, pattern_id: UUID) -> Optional[Pattern]:
        """User accepted the offer; the pattern is monitored from now on."""
        return await self._respond(
            user_id,
            pattern_id,
            "automation_accepted",
            user_response=UserResponse.ACCEPTED,
            auto_created=True,
            paused_at=None,
        )

    async def decline_automation(self, user_id: str, pattern_id: UUID) -> Optional[Pattern]:
        """User declined the offer; it will never be repeated."""
        return await self._respond(
            user_id,
            pattern_id,
            "automation_declined",
            user_response=UserResponse.DECLINED,
            auto_created=False,
            declined_at=datetime.now(timezone.utc),
        )

    async def pause_automation(self, user_id: str, pattern_id: UUID) -> Optional[Pattern]:
        """Stop monitoring an accepted pattern without forgetting the answer."""
        return await self._respond(
            user_id,
            pattern_id,
            "automation_paused",
            auto_created=False,
            paused_at=datetime.now(timezone.utc),
        )

    async def delete_pattern(self, user_id: str, pattern_id: UUID) -> bool:
        deleted = await self._bounded("delete_pattern", self.store.delete_pattern(user_id, pattern_id))
        if deleted:
            logger.info("pattern_deleted", pattern_id=str(pattern_id), user_id=user_id)
        return deleted

    async def get_pattern(self, user_id: str, pattern_id: UUID) -> Optional[Pattern]:
        return await self._bounded("get_pattern", self.store.get_pattern(user_id, pattern_id))

    async def list_patterns(
        self,
        user_id: str,
        pattern_filter: Optional[PatternFilter] = None,
        sort_by: str = "priority",
    ) -> List[Pattern]:
        """A user's patterns matching the filter, ordered by ``sort_by``.

        ``sort_by`` is one of ``priority`` (then consistency), ``consistency``,
        ``occurrences`` or ``recent``; all but priority sort highest first.

        Raises:
            ValueError: Unknown sort key
        """
        if sort_by not in PATTERN_SORT_KEYS:
            raise ValueError(f"Unknown sort key: {sort_by}")

        scoped = (pattern_filter or PatternFilter()).model_copy(update={"user_id": user_id})
        patterns = await self._bounded("list_patterns", self.store.list_patterns(scoped))
        patterns.sort(key=PATTERN_SORT_KEYS[sort_by])
        return patterns

    async def get_suggestions(self, user_id: str, limit: Optional[int] = None) -> List[Pattern]:
        """Pending patterns worth offering, by priority then consistency."""
        patterns = await self._bounded(
            "list_patterns",
            self.store.list_patterns(
                PatternFilter(
                    user_id=user_id,
                    user_response=UserResponse.PENDING,
                    min_consistency=self.settings.min_consistency,
                )
            ),
        )
        patterns.sort(key=PATTERN_SORT_KEYS["priority"])
        return patterns[: self.settings.max_suggestions if limit is None else limit]

    async def get_statistics(self, user_id: str) -> dict:
        """Summary counts over all of a user's patterns."""
        patterns = await self._bounded(
            "list_patterns", self.store.list_patterns(PatternFilter(user_id=user_id))
        )
        min_consistency = self.settings.min_consistency
        average = sum(p.consistency for p in patterns) / len(patterns) if patterns else 0.0

        return {
            "total_patterns": len(patterns),
            "active_automations": sum(
                1 for p in patterns if p.auto_created and p.user_response == UserResponse.ACCEPTED
            ),
            "pending_suggestions": sum(
                1
                for p in patterns
                if p.user_response == UserResponse.PENDING and p.consistency >= min_consistency
            ),
            "declined_patterns": sum(1 for p in patterns if p.user_response == UserResponse.DECLINED),
            "critical_patterns": sum(1 for p in patterns if p.priority == Priority.CRITICAL),
            "average_consistency": round(average, 2),
        }

    async def list_stale_patterns(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[Pattern]:
        """Patterns with no evidence for ``stale_after_days``, for user cleanup.

        Nothing is deleted here; the user decides to accept, pause or delete.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=self.settings.stale_after_days)
        patterns = await self._bounded(
            "list_patterns",
            self.store.list_patterns(PatternFilter(user_id=user_id, last_occurrence_before=cutoff)),
        )
        logger.info("stale_patterns_listed", user_id=user_id, count=len(patterns))
        return patterns
