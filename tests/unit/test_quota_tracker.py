"""
Unit Tests for the Quota Tracker and Quota Sweep

Tests weekly windows, limit checks, usage metering and the reset sweep.
"""

import asyncio
import pytest
import sys
import os
from datetime import datetime, timedelta, timezone

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "fusha_tutor_memory", "src"))

from fusha_tutor_memory.clock import FixedClock, next_sunday
from fusha_tutor_memory.errors import QuotaExceeded
from fusha_tutor_memory.memory_store import MemoryLessonStore, MemoryQuotaStore
from fusha_tutor_memory.models import QuotaProfile, Tier
from fusha_tutor_memory.quota_sweep import QuotaSweep
from fusha_tutor_memory.quota_tracker import MESSAGE_LIMIT, TOKEN_LIMIT, QuotaTracker

# Wednesday
T0 = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)
SUNDAY = datetime(2024, 1, 14, 0, 0, tzinfo=timezone.utc)
USER = "user-1"


def profile(messages_used=0, tokens_used=0, reset_at=SUNDAY, message_quota=100, token_quota=300_000, user=USER):
    return QuotaProfile(
        user_id=user,
        tier=Tier.STUDENT,
        message_quota=message_quota,
        token_quota=token_quota,
        messages_used=messages_used,
        tokens_used=tokens_used,
        reset_at=reset_at,
    )


class TestNextSunday:

    def test_midweek(self):
        assert next_sunday(T0) == SUNDAY

    def test_sunday_midnight_moves_a_full_week(self):
        assert next_sunday(SUNDAY) == SUNDAY + timedelta(days=7)

    def test_saturday_night(self):
        assert next_sunday(SUNDAY - timedelta(minutes=1)) == SUNDAY

    def test_other_timezones_are_normalised(self):
        # Sunday 01:00 in UTC+3 is still Saturday in UTC.
        local = datetime(2024, 1, 14, 1, 0, tzinfo=timezone(timedelta(hours=3)))
        assert next_sunday(local) == SUNDAY


class TestQuotaTracker:
    """Test suite for QuotaTracker on the in-memory store."""

    @pytest.fixture
    def store(self):
        return MemoryQuotaStore()

    @pytest.fixture
    def lessons(self):
        return MemoryLessonStore()

    @pytest.fixture
    def clock(self):
        return FixedClock(T0)

    @pytest.fixture
    def tracker(self, store, lessons, clock):
        return QuotaTracker(store, lessons, clock=clock)

    @pytest.mark.asyncio
    async def test_message_limit_blocks(self, tracker, store):
        """100 of 100 messages used with the window still open."""
        await store.create_profile(profile(messages_used=100))

        check = await tracker.can_send(USER)

        assert check.allowed is False
        assert check.reason == MESSAGE_LIMIT
        assert check.messages_remaining == 0
        assert check.reset_at == SUNDAY

    @pytest.mark.asyncio
    async def test_token_limit_blocks(self, tracker, store):
        await store.create_profile(profile(messages_used=5, tokens_used=300_000))

        check = await tracker.can_send(USER)

        assert check.allowed is False
        assert check.reason == TOKEN_LIMIT
        assert check.messages_remaining == 95

    @pytest.mark.asyncio
    async def test_message_limit_reported_first(self, tracker, store):
        await store.create_profile(profile(messages_used=100, tokens_used=300_000))

        assert (await tracker.can_send(USER)).reason == MESSAGE_LIMIT

    @pytest.mark.asyncio
    async def test_new_user_gets_student_profile(self, tracker):
        check = await tracker.can_send("new-user")

        assert check.allowed is True
        assert check.messages_remaining == 100
        assert check.tokens_remaining == 300_000
        assert check.reset_at == SUNDAY
        assert check.to_dict()["canSend"] is True
        assert "reason" not in check.to_dict()

    @pytest.mark.asyncio
    async def test_expired_window_resets_on_read(self, tracker, store, clock):
        await store.create_profile(profile(messages_used=100, tokens_used=1234, reset_at=T0 - timedelta(days=3)))

        check = await tracker.can_send(USER)

        assert check.allowed is True
        assert check.messages_remaining == 100
        assert check.reset_at == SUNDAY
        stored = await store.get_profile(USER)
        assert stored.messages_used == 0
        assert stored.tokens_used == 0

    @pytest.mark.asyncio
    async def test_window_boundary_is_inclusive(self, tracker, store, clock):
        await store.create_profile(profile(messages_used=100))
        clock.current = SUNDAY

        check = await tracker.can_send(USER)

        assert check.allowed is True
        assert check.reset_at == SUNDAY + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_ensure_can_send_raises(self, tracker, store):
        await store.create_profile(profile(messages_used=100))

        with pytest.raises(QuotaExceeded) as excinfo:
            await tracker.ensure_can_send(USER)

        assert excinfo.value.check.reason == MESSAGE_LIMIT
        assert excinfo.value.retryable is False

    @pytest.mark.asyncio
    async def test_increment_usage_updates_user_and_lesson(self, tracker, lessons, store):
        await lessons.start_lesson(USER, T0, lesson_id="l1")

        usage = await tracker.increment_usage(USER, "l1", 1500)

        assert usage.messages_remaining == 99
        assert usage.tokens_remaining == 300_000 - 1500
        lesson = await lessons.get_lesson("l1")
        assert lesson.messages_count == 1
        assert lesson.tokens_used == 1500

    @pytest.mark.asyncio
    async def test_usage_is_monotonic_within_window(self, tracker, store):
        used = []
        for tokens in (10, 0, 250):
            await tracker.increment_usage(USER, None, tokens)
            used.append((await store.get_profile(USER)).messages_used)

        assert used == [1, 2, 3]
        assert (await store.get_profile(USER)).tokens_used == 260

    @pytest.mark.asyncio
    async def test_tokens_only_increment(self, tracker, store):
        await tracker.increment_usage(USER, None, 40, increment_message=False)

        stored = await store.get_profile(USER)
        assert stored.messages_used == 0
        assert stored.tokens_used == 40

    @pytest.mark.asyncio
    async def test_increment_after_window_ended_resets_first(self, tracker, store, clock):
        await store.create_profile(profile(messages_used=100, reset_at=SUNDAY))
        clock.current = SUNDAY + timedelta(hours=2)

        usage = await tracker.increment_usage(USER, None, 100)

        assert usage.messages_remaining == 99
        stored = await store.get_profile(USER)
        assert stored.messages_used == 1
        assert stored.reset_at == SUNDAY + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_negative_tokens_rejected(self, tracker):
        with pytest.raises(ValueError):
            await tracker.increment_usage(USER, None, -1)

    @pytest.mark.asyncio
    async def test_update_tier_keeps_usage(self, tracker, store):
        await store.create_profile(profile(messages_used=40))

        info = await tracker.update_tier(USER, Tier.SCHOLAR)

        assert info.message_quota == 250
        assert info.messages_used == 40
        assert info.messages_remaining == 210
        assert info.to_dict()["tier"] == "scholar"

    @pytest.mark.asyncio
    async def test_reset_expired_is_idempotent(self, tracker, store, clock):
        await store.create_profile(profile(messages_used=100, reset_at=SUNDAY))
        await store.create_profile(profile(user="user-2", reset_at=SUNDAY + timedelta(days=7)))
        clock.current = SUNDAY

        assert await tracker.pending_reset_count() == 1
        assert await tracker.reset_expired() == 1
        assert await tracker.reset_expired() == 0
        assert (await store.get_profile(USER)).reset_at == SUNDAY + timedelta(days=7)


class TestQuotaSweep:
    """Test suite for the background sweep."""

    @pytest.fixture
    def store(self):
        return MemoryQuotaStore()

    @pytest.fixture
    def tracker(self, store):
        return QuotaTracker(store, clock=FixedClock(SUNDAY + timedelta(minutes=5)))

    @pytest.mark.asyncio
    async def test_run_once(self, tracker, store):
        await store.create_profile(profile(messages_used=80, reset_at=SUNDAY))
        sweep = QuotaSweep(tracker)

        assert await sweep.run_once() == 1
        status = sweep.get_status()
        assert status["last_reset_count"] == 1
        assert status["total_reset"] == 1
        assert status["last_run"] == (SUNDAY + timedelta(minutes=5)).isoformat()

    @pytest.mark.asyncio
    async def test_disabled_sweep_never_starts(self, tracker):
        sweep = QuotaSweep(tracker, enabled=False)

        await sweep.start()

        assert sweep.sweep_task is None
        assert sweep.running is False

    @pytest.mark.asyncio
    async def test_start_runs_immediately_and_stops(self, tracker, store):
        await store.create_profile(profile(messages_used=80, reset_at=SUNDAY))
        sweep = QuotaSweep(tracker, interval_minutes=60)

        await sweep.start()
        for _ in range(5):
            await asyncio.sleep(0)
        await sweep.stop()

        assert sweep.total_reset == 1
        assert sweep.sweep_task is None
        assert (await store.get_profile(USER)).messages_used == 0
