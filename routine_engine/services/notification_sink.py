"""Notification sink and the guarded dispatch used by the engine."""

import asyncio
import json
from datetime import datetime, timezone
from uuid import uuid4

import structlog

from routine_engine.database import get_pool
from routine_engine.errors import NotificationDispatchError
from routine_engine.models.notification import NotificationKind, PatternNotification
from routine_engine.models.pattern import Priority
from routine_engine.services.collaborators import NotificationSink

logger = structlog.get_logger(__name__)


class PostgresNotificationSink:
    """Writes notifications into the shared ``notifications`` table.

    Delivery fan-out (push, email) belongs to the notification subsystem.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    async def emit(
        self,
        user_id: str,
        kind: NotificationKind,
        title: str,
        body: str,
        payload: dict,
        priority: Priority,
    ) -> None:
        notification_id = uuid4()
        now = datetime.now(timezone.utc)

        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO notifications
                    (id, user_id, type, title, message, data, priority, is_read, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, FALSE, $8)
                    """,
                    notification_id,
                    user_id,
                    kind.value,
                    title,
                    body,
                    json.dumps(payload, default=str),
                    priority.value,
                    now,
                    timeout=self.timeout,
                )
        except Exception as e:
            raise NotificationDispatchError(kind.value, e) from e

        logger.info(
            "notification_created",
            notification_id=str(notification_id),
            user_id=user_id,
            type=kind.value,
        )


async def dispatch_notification(
    sink: NotificationSink,
    notification: PatternNotification,
    timeout: float = 5.0,
) -> bool:
    """Hand a notification to the sink, bounded by ``timeout``.

    Failures are logged and reported as False; callers keep whatever gate
    they already claimed, since a missed nudge is preferable to a duplicate.
    """
    try:
        await asyncio.wait_for(
            sink.emit(
                user_id=notification.user_id,
                kind=notification.kind,
                title=notification.title,
                body=notification.body,
                payload=notification.payload,
                priority=notification.priority,
            ),
            timeout=timeout,
        )
        return True
    except Exception as e:
        logger.warning(
            "notification_dispatch_failed",
            user_id=notification.user_id,
            kind=notification.kind.value,
            error=str(e),
        )
        return False
