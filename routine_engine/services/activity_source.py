"""Postgres-backed read access to reminders and tasks."""

from datetime import datetime
from typing import List

import structlog

from routine_engine.database import get_pool, store_errors
from routine_engine.models.activity import ActivityRecord, ActivityType

logger = structlog.get_logger(__name__)


class PostgresActivitySource:
    """Reads the reminder and task tables owned by other subsystems.

    A reminder counts at its reminder time, a task at its due date; either
    falls back to the creation time.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    async def list_activities(self, user_id: str, since: datetime) -> List[ActivityRecord]:
        async with store_errors("list_activities"):
            pool = await get_pool()
            async with pool.acquire() as conn:
                reminder_rows = await conn.fetch(
                    """
                    SELECT id, title, COALESCE(reminder_time, created_at) AS occurred_at
                    FROM reminders
                    WHERE user_id::text = $1 AND created_at >= $2
                    """,
                    user_id,
                    since,
                    timeout=self.timeout,
                )
                task_rows = await conn.fetch(
                    """
                    SELECT id, title, COALESCE(due_date, created_at) AS occurred_at
                    FROM tasks
                    WHERE user_id::text = $1 AND created_at >= $2
                    """,
                    user_id,
                    since,
                    timeout=self.timeout,
                )

        records = [
            ActivityRecord(
                title=row["title"] or "",
                type=ActivityType.REMINDER,
                occurred_at=row["occurred_at"],
                source_id=row["id"],
            )
            for row in reminder_rows
        ] + [
            ActivityRecord(
                title=row["title"] or "",
                type=ActivityType.TASK,
                occurred_at=row["occurred_at"],
                source_id=row["id"],
            )
            for row in task_rows
        ]

        logger.info(
            "activities_loaded",
            user_id=user_id,
            reminders=len(reminder_rows),
            tasks=len(task_rows),
        )
        return records

    async def list_active_user_ids(self, limit: int) -> List[str]:
        async with store_errors("list_active_user_ids"):
            pool = await get_pool()
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id::text AS id
                    FROM users
                    WHERE is_active = TRUE
                    ORDER BY created_at ASC
                    LIMIT $1
                    """,
                    limit,
                    timeout=self.timeout,
                )
        return [row["id"] for row in rows]
