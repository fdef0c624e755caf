"""Unit tests for PostgresPatternStore."""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from routine_engine.errors import StoreUnavailableError
from routine_engine.models.activity import ActivityType
from routine_engine.models.pattern import Frequency, PatternFilter, Priority, UserResponse
from routine_engine.services.pattern_store import PostgresPatternStore, advisory_key, row_to_pattern

NOW = datetime(2026, 3, 12, 6, tzinfo=timezone.utc)


def pattern_row(**overrides):
    row = {
        "id": uuid4(),
        "user_id": "user-1",
        "title": "Drink water",
        "normalized_title": "drink water",
        "type": "reminder",
        "frequency": "daily",
        "timing": json.dumps({"hour": 7, "minute": 0}),
        "occurrences": 7,
        "consistency": 0.78,
        "last_occurrence": NOW,
        "first_detected": NOW,
        "priority": "medium",
        "auto_created": False,
        "user_response": "pending",
        "original_record_ids": json.dumps(["r1", "r2"]),
        "missed_count": 0,
        "automation_offered_at": None,
        "declined_at": None,
        "last_reminded_at": None,
        "paused_at": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


@pytest.fixture
def store():
    return PostgresPatternStore(timeout=1.0)


class TestRowMapping:
    def test_decodes_json_columns(self):
        pattern = row_to_pattern(pattern_row())

        assert pattern.timing.hour == 7
        assert pattern.metadata.original_record_ids == ["r1", "r2"]
        assert pattern.frequency == Frequency.DAILY
        assert pattern.priority == Priority.MEDIUM

    def test_accepts_decoded_json(self):
        pattern = row_to_pattern(
            pattern_row(timing={"hour": 9, "minute": 30, "day_of_week": 1}, original_record_ids=["x"])
        )

        assert pattern.timing.day_of_week == 1
        assert pattern.metadata.original_record_ids == ["x"]


class TestAdvisoryKey:
    def test_stable_and_signed_64_bit(self):
        key = advisory_key("user-1", "drink water", Frequency.DAILY)

        assert key == advisory_key("user-1", "drink water", Frequency.DAILY)
        assert -(2**63) <= key < 2**63

    def test_differs_per_key(self):
        assert advisory_key("user-1", "drink water", Frequency.DAILY) != advisory_key(
            "user-1", "drink water", Frequency.WEEKLY
        )


class TestLock:
    @pytest.mark.asyncio
    async def test_locks_and_unlocks(self, store, mock_pool):
        pool, conn = mock_pool
        pool.acquire = AsyncMock(return_value=conn)
        pool.release = AsyncMock()

        with patch("routine_engine.services.pattern_store.get_pool", return_value=pool):
            async with store.lock("user-1", "drink water", Frequency.DAILY):
                pass

        statements = [c.args[0] for c in conn.execute.call_args_list]
        assert statements == ["SELECT pg_advisory_lock($1)", "SELECT pg_advisory_unlock($1)"]
        pool.release.assert_awaited_once_with(conn)

    @pytest.mark.asyncio
    async def test_releases_on_body_error(self, store, mock_pool):
        pool, conn = mock_pool
        pool.acquire = AsyncMock(return_value=conn)
        pool.release = AsyncMock()

        with patch("routine_engine.services.pattern_store.get_pool", return_value=pool):
            with pytest.raises(ValueError):
                async with store.lock("user-1", "drink water", Frequency.DAILY):
                    raise ValueError("boom")

        assert conn.execute.call_count == 2
        pool.release.assert_awaited_once_with(conn)

    @pytest.mark.asyncio
    async def test_lock_failure_is_store_error(self, store, mock_pool):
        pool, conn = mock_pool
        pool.acquire = AsyncMock(return_value=conn)
        pool.release = AsyncMock()
        conn.execute.side_effect = OSError("connection reset")

        with patch("routine_engine.services.pattern_store.get_pool", return_value=pool):
            with pytest.raises(StoreUnavailableError):
                async with store.lock("user-1", "drink water", Frequency.DAILY):
                    pass

        pool.release.assert_awaited_once_with(conn)


class TestQueries:
    @pytest.mark.asyncio
    async def test_find_pattern(self, store, mock_pool):
        pool, conn = mock_pool
        conn.fetchrow.return_value = pattern_row()

        with patch("routine_engine.services.pattern_store.get_pool", return_value=pool):
            pattern = await store.find_pattern("user-1", "drink water", Frequency.DAILY)

        assert pattern.title == "Drink water"
        args = conn.fetchrow.call_args.args
        assert args[1:] == ("user-1", "drink water", "daily")

    @pytest.mark.asyncio
    async def test_find_pattern_missing(self, store, mock_pool):
        pool, conn = mock_pool
        conn.fetchrow.return_value = None

        with patch("routine_engine.services.pattern_store.get_pool", return_value=pool):
            assert await store.find_pattern("user-1", "drink water", Frequency.DAILY) is None

    @pytest.mark.asyncio
    async def test_upsert_never_overwrites_gates(self, store, mock_pool):
        pool, conn = mock_pool
        row = pattern_row()
        conn.fetchrow.return_value = row
        pattern = row_to_pattern(row)

        with patch("routine_engine.services.pattern_store.get_pool", return_value=pool):
            saved = await store.upsert_pattern(pattern)

        assert saved.id == row["id"]
        sql = conn.fetchrow.call_args.args[0]
        update_clause = sql.split("DO UPDATE SET")[1].split("RETURNING")[0]
        assert "ON CONFLICT (user_id, normalized_title, frequency)" in sql
        for column in ("automation_offered_at", "last_reminded_at", "missed_count", "priority", "first_detected"):
            assert f"{column} =" not in update_clause

    @pytest.mark.asyncio
    async def test_list_patterns_builds_filter(self, store, mock_pool):
        pool, conn = mock_pool
        conn.fetch.return_value = [pattern_row(), pattern_row(normalized_title="stretch")]

        with patch("routine_engine.services.pattern_store.get_pool", return_value=pool):
            patterns = await store.list_patterns(
                PatternFilter(user_id="user-1", auto_created=True, user_response=UserResponse.ACCEPTED)
            )

        assert len(patterns) == 2
        args = conn.fetch.call_args.args
        assert "user_id = $1" in args[0]
        assert "user_response = $2" in args[0]
        assert "auto_created = $3" in args[0]
        assert args[1:] == ("user-1", "accepted", True)

    @pytest.mark.asyncio
    async def test_list_patterns_by_type_and_frequency(self, store, mock_pool):
        pool, conn = mock_pool

        with patch("routine_engine.services.pattern_store.get_pool", return_value=pool):
            await store.list_patterns(
                PatternFilter(user_id="user-1", frequency=Frequency.WEEKLY, type=ActivityType.TASK)
            )

        args = conn.fetch.call_args.args
        assert "frequency = $2" in args[0]
        assert "type = $3" in args[0]
        assert args[1:] == ("user-1", "weekly", "task")

    @pytest.mark.asyncio
    async def test_list_patterns_without_filter(self, store, mock_pool):
        pool, conn = mock_pool

        with patch("routine_engine.services.pattern_store.get_pool", return_value=pool):
            assert await store.list_patterns(PatternFilter()) == []

        assert "WHERE" not in conn.fetch.call_args.args[0]

    @pytest.mark.asyncio
    async def test_delete_pattern(self, store, mock_pool):
        pool, conn = mock_pool
        conn.execute.return_value = "DELETE 1"

        with patch("routine_engine.services.pattern_store.get_pool", return_value=pool):
            assert await store.delete_pattern("user-1", uuid4()) is True

        conn.execute.return_value = "DELETE 0"
        with patch("routine_engine.services.pattern_store.get_pool", return_value=pool):
            assert await store.delete_pattern("user-1", uuid4()) is False

    @pytest.mark.asyncio
    async def test_query_failure_is_store_error(self, store, mock_pool):
        pool, conn = mock_pool
        conn.fetch.side_effect = OSError("connection refused")

        with patch("routine_engine.services.pattern_store.get_pool", return_value=pool):
            with pytest.raises(StoreUnavailableError) as exc_info:
                await store.list_patterns(PatternFilter(user_id="user-1"))

        assert exc_info.value.operation == "list_patterns"


class TestGates:
    @pytest.mark.asyncio
    async def test_claim_automation_offer(self, store, mock_pool):
        pool, conn = mock_pool
        pattern_id = uuid4()
        conn.fetchval.return_value = pattern_id

        with patch("routine_engine.services.pattern_store.get_pool", return_value=pool):
            assert await store.claim_automation_offer(pattern_id, NOW) is True

        sql = conn.fetchval.call_args.args[0]
        assert "automation_offered_at IS NULL" in sql
        assert "user_response = 'pending'" in sql

    @pytest.mark.asyncio
    async def test_claim_automation_offer_lost(self, store, mock_pool):
        pool, conn = mock_pool
        conn.fetchval.return_value = None

        with patch("routine_engine.services.pattern_store.get_pool", return_value=pool):
            assert await store.claim_automation_offer(uuid4(), NOW) is False

    @pytest.mark.asyncio
    async def test_claim_forgotten_reminder(self, store, mock_pool):
        pool, conn = mock_pool
        conn.fetchval.return_value = 3
        day_start = NOW.replace(hour=0)

        with patch("routine_engine.services.pattern_store.get_pool", return_value=pool):
            missed = await store.claim_forgotten_reminder(uuid4(), day_start, NOW)

        assert missed == 3
        args = conn.fetchval.call_args.args
        assert "last_reminded_at < $2" in args[0]
        assert "last_occurrence < $2" in args[0]
        assert args[2:] == (day_start, NOW)

    @pytest.mark.asyncio
    async def test_claim_forgotten_reminder_already_sent(self, store, mock_pool):
        pool, conn = mock_pool
        conn.fetchval.return_value = None

        with patch("routine_engine.services.pattern_store.get_pool", return_value=pool):
            assert await store.claim_forgotten_reminder(uuid4(), NOW, NOW) is None
