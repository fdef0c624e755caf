"""Postgres-backed pattern store."""

import hashlib
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional
from uuid import UUID

import structlog

from routine_engine.database import get_pool, store_errors
from routine_engine.models.pattern import (
    Frequency,
    Pattern,
    PatternFilter,
    PatternMetadata,
    PatternTiming,
)

logger = structlog.get_logger(__name__)

PATTERN_COLUMNS = """
    id, user_id, title, normalized_title, type, frequency, timing, occurrences,
    consistency, last_occurrence, first_detected, priority, auto_created,
    user_response, original_record_ids, missed_count, automation_offered_at,
    declined_at, last_reminded_at, paused_at, created_at, updated_at
"""


def advisory_key(user_id: str, normalized_title: str, frequency: Frequency) -> int:
    """Stable signed 64-bit key for pg_advisory_lock."""
    raw = f"{user_id}\x1f{normalized_title}\x1f{frequency.value}".encode("utf-8")
    digest = hashlib.blake2b(raw, digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


def _load_json(value, default):
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def row_to_pattern(row) -> Pattern:
    """Build a Pattern from a behavior_patterns row."""
    return Pattern(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        normalized_title=row["normalized_title"],
        type=row["type"],
        frequency=row["frequency"],
        timing=PatternTiming(**_load_json(row["timing"], {})),
        occurrences=row["occurrences"],
        consistency=row["consistency"],
        last_occurrence=row["last_occurrence"],
        first_detected=row["first_detected"],
        priority=row["priority"],
        auto_created=row["auto_created"],
        user_response=row["user_response"],
        metadata=PatternMetadata(
            original_record_ids=_load_json(row["original_record_ids"], []),
            missed_count=row["missed_count"],
            automation_offered_at=row["automation_offered_at"],
            declined_at=row["declined_at"],
            last_reminded_at=row["last_reminded_at"],
            paused_at=row["paused_at"],
        ),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresPatternStore:
    """Pattern store on the ``behavior_patterns`` table.

    Single-writer semantics per pattern key come from a session-level
    advisory lock plus an ``ON CONFLICT`` upsert; the one-shot gates are
    conditional updates.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    @asynccontextmanager
    async def lock(
        self, user_id: str, normalized_title: str, frequency: Frequency
    ) -> AsyncIterator[None]:
        """Hold the advisory lock for one pattern key."""
        key = advisory_key(user_id, normalized_title, frequency)
        async with store_errors("lock_pattern"):
            pool = await get_pool()
            conn = await pool.acquire(timeout=self.timeout)
        try:
            async with store_errors("lock_pattern"):
                await conn.execute("SELECT pg_advisory_lock($1)", key, timeout=self.timeout)
            try:
                yield
            finally:
                async with store_errors("unlock_pattern"):
                    await conn.execute("SELECT pg_advisory_unlock($1)", key)
        finally:
            # Pool reset also runs pg_advisory_unlock_all()
            await pool.release(conn)

    async def find_pattern(
        self, user_id: str, normalized_title: str, frequency: Frequency
    ) -> Optional[Pattern]:
        async with store_errors("find_pattern"):
            pool = await get_pool()
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {PATTERN_COLUMNS}
                    FROM behavior_patterns
                    WHERE user_id = $1 AND normalized_title = $2 AND frequency = $3
                    """,
                    user_id,
                    normalized_title,
                    frequency.value,
                    timeout=self.timeout,
                )
        return row_to_pattern(row) if row else None

    async def get_pattern(self, user_id: str, pattern_id: UUID) -> Optional[Pattern]:
        async with store_errors("get_pattern"):
            pool = await get_pool()
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {PATTERN_COLUMNS}
                    FROM behavior_patterns
                    WHERE id = $1 AND user_id = $2
                    """,
                    pattern_id,
                    user_id,
                    timeout=self.timeout,
                )
        return row_to_pattern(row) if row else None

    async def upsert_pattern(self, pattern: Pattern) -> Pattern:
        """Insert a pattern, or merge it into the row with the same key.

        Priority, first_detected and the gate columns are never touched on
        conflict.
        """
        now = datetime.now(timezone.utc)
        async with store_errors("upsert_pattern"):
            pool = await get_pool()
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO behavior_patterns
                    (id, user_id, title, normalized_title, type, frequency, timing,
                     occurrences, consistency, last_occurrence, first_detected, priority,
                     auto_created, user_response, original_record_ids, missed_count,
                     automation_offered_at, declined_at, last_reminded_at, paused_at,
                     created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10, $11, $12,
                            $13, $14, $15::jsonb, $16, $17, $18, $19, $20, $21, $21)
                    ON CONFLICT (user_id, normalized_title, frequency) DO UPDATE SET
                        title = EXCLUDED.title,
                        timing = EXCLUDED.timing,
                        occurrences = EXCLUDED.occurrences,
                        consistency = EXCLUDED.consistency,
                        last_occurrence = GREATEST(behavior_patterns.last_occurrence, EXCLUDED.last_occurrence),
                        original_record_ids = EXCLUDED.original_record_ids,
                        auto_created = EXCLUDED.auto_created,
                        user_response = EXCLUDED.user_response,
                        declined_at = EXCLUDED.declined_at,
                        paused_at = EXCLUDED.paused_at,
                        updated_at = EXCLUDED.updated_at
                    RETURNING {PATTERN_COLUMNS}
                    """,
                    pattern.id,
                    pattern.user_id,
                    pattern.title,
                    pattern.normalized_title,
                    pattern.type.value,
                    pattern.frequency.value,
                    pattern.timing.model_dump_json(),
                    pattern.occurrences,
                    pattern.consistency,
                    pattern.last_occurrence,
                    pattern.first_detected,
                    pattern.priority.value,
                    pattern.auto_created,
                    pattern.user_response.value,
                    json.dumps(pattern.metadata.original_record_ids),
                    pattern.metadata.missed_count,
                    pattern.metadata.automation_offered_at,
                    pattern.metadata.declined_at,
                    pattern.metadata.last_reminded_at,
                    pattern.metadata.paused_at,
                    now,
                    timeout=self.timeout,
                )

        logger.debug("pattern_upserted", pattern_id=str(row["id"]), user_id=pattern.user_id)
        return row_to_pattern(row)

    async def list_patterns(self, pattern_filter: PatternFilter) -> List[Pattern]:
        """List patterns matching every set field of the filter."""
        conditions = []
        params: list = []

        def add(clause: str, value) -> None:
            params.append(value)
            conditions.append(clause.format(f"${len(params)}"))

        if pattern_filter.user_id is not None:
            add("user_id = {}", pattern_filter.user_id)
        if pattern_filter.frequency is not None:
            add("frequency = {}", pattern_filter.frequency.value)
        if pattern_filter.type is not None:
            add("type = {}", pattern_filter.type.value)
        if pattern_filter.user_response is not None:
            add("user_response = {}", pattern_filter.user_response.value)
        if pattern_filter.priority is not None:
            add("priority = {}", pattern_filter.priority.value)
        if pattern_filter.auto_created is not None:
            add("auto_created = {}", pattern_filter.auto_created)
        if pattern_filter.min_consistency is not None:
            add("consistency >= {}", pattern_filter.min_consistency)
        if pattern_filter.last_occurrence_before is not None:
            add("last_occurrence <= {}", pattern_filter.last_occurrence_before)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        async with store_errors("list_patterns"):
            pool = await get_pool()
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {PATTERN_COLUMNS}
                    FROM behavior_patterns
                    {where_clause}
                    ORDER BY user_id, last_occurrence DESC
                    """,
                    *params,
                    timeout=self.timeout,
                )

        return [row_to_pattern(row) for row in rows]

    async def delete_pattern(self, user_id: str, pattern_id: UUID) -> bool:
        async with store_errors("delete_pattern"):
            pool = await get_pool()
            async with pool.acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM behavior_patterns WHERE id = $1 AND user_id = $2",
                    pattern_id,
                    user_id,
                    timeout=self.timeout,
                )
        return result == "DELETE 1"

    async def claim_automation_offer(self, pattern_id: UUID, offered_at: datetime) -> bool:
        """Set automation_offered_at if it is unset and the user has not answered."""
        async with store_errors("claim_automation_offer"):
            pool = await get_pool()
            async with pool.acquire() as conn:
                claimed = await conn.fetchval(
                    """
                    UPDATE behavior_patterns
                    SET automation_offered_at = $2, updated_at = $2
                    WHERE id = $1
                    AND automation_offered_at IS NULL
                    AND user_response = 'pending'
                    RETURNING id
                    """,
                    pattern_id,
                    offered_at,
                    timeout=self.timeout,
                )
        return claimed is not None

    async def claim_forgotten_reminder(
        self, pattern_id: UUID, day_start: datetime, reminded_at: datetime
    ) -> Optional[int]:
        """Mark today's reminder as sent and bump missed_count, once per day.

        Loses when the reminder already went out today or today's activity
        was recorded since the pattern was read.
        """
        async with store_errors("claim_forgotten_reminder"):
            pool = await get_pool()
            async with pool.acquire() as conn:
                missed_count = await conn.fetchval(
                    """
                    UPDATE behavior_patterns
                    SET last_reminded_at = $3, missed_count = missed_count + 1, updated_at = $3
                    WHERE id = $1
                    AND auto_created = TRUE
                    AND last_occurrence < $2
                    AND (last_reminded_at IS NULL OR last_reminded_at < $2)
                    RETURNING missed_count
                    """,
                    pattern_id,
                    day_start,
                    reminded_at,
                    timeout=self.timeout,
                )
        return missed_count
