"""
Unit Tests for TutorTurn

Tests the quota gate, streamed decoding and post-turn persistence.
"""

import asyncio
import pytest
import sys
import os
from datetime import datetime, timezone

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "fusha_tutor_memory", "src"))

from fusha_tutor_memory.clock import FixedClock
from fusha_tutor_memory.errors import QuotaExceeded, StoreUnavailable
from fusha_tutor_memory.memory_store import MemoryLessonStore, MemoryObservationStore, MemoryQuotaStore
from fusha_tutor_memory.models import ObservationKind, QuotaProfile, Tier
from fusha_tutor_memory.quota_tracker import QuotaTracker
from fusha_tutor_memory.tutor_turn import TutorTurn

T0 = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)
USER = "user-1"


async def chunks_of(*parts):
    for part in parts:
        yield part


class FailingObservationStore(MemoryObservationStore):

    async def append(self, observations):
        raise StoreUnavailable("insert grammar_observations", TimeoutError("timed out"))


class TestTutorTurn:

    @pytest.fixture
    def clock(self):
        return FixedClock(T0)

    @pytest.fixture
    def quota_store(self):
        return MemoryQuotaStore()

    @pytest.fixture
    def lessons(self):
        return MemoryLessonStore()

    @pytest.fixture
    def tracker(self, quota_store, lessons, clock):
        return QuotaTracker(quota_store, lessons, clock=clock)

    @pytest.fixture
    def observations(self):
        return MemoryObservationStore()

    @pytest.mark.asyncio
    async def test_full_turn(self, tracker, observations, lessons, quota_store, clock):
        await lessons.start_lesson(USER, T0, lesson_id="l1")
        turn = TutorTurn(tracker, observations, "l1", USER, lesson_id="l1", clock=clock)

        check = await turn.begin()
        shown = [
            text async for text in turn.stream(chunks_of(
                "Right! [GRAM:5|part_of_",
                "speech|verb|noun|incorrect] Next ",
                "question...",
            ))
        ]
        outcome = await turn.complete(tokens_used=420)

        assert check.allowed is True
        assert "".join(shown) == "Right! Next question..."
        assert all("[" not in text for text in shown)
        assert outcome.cleaned_text == "Right! Next question..."
        assert outcome.usage.messages_remaining == 99

        stored = await observations.fetch(ObservationKind.GRAMMAR_CHECK, session_id="l1")
        assert len(stored) == 1
        assert stored[0].user_id == USER
        assert stored[0].id is not None
        lesson = await lessons.get_lesson("l1")
        assert lesson.tokens_used == 420

    @pytest.mark.asyncio
    async def test_blocked_user_cannot_begin(self, tracker, observations, quota_store):
        await quota_store.create_profile(QuotaProfile(
            user_id=USER,
            tier=Tier.STUDENT,
            message_quota=100,
            token_quota=300_000,
            messages_used=100,
            reset_at=datetime(2024, 1, 14, tzinfo=timezone.utc),
        ))
        turn = TutorTurn(tracker, observations, "l1", USER)

        with pytest.raises(QuotaExceeded):
            await turn.begin()

    @pytest.mark.asyncio
    async def test_store_failure_skips_metering(self, tracker, quota_store, clock):
        turn = TutorTurn(tracker, FailingObservationStore(), "l1", USER, clock=clock)
        await turn.begin()
        turn.feed("[TRANS:3|pen|قلم|correct] Good.")

        with pytest.raises(StoreUnavailable):
            await turn.complete(tokens_used=10)

        assert (await quota_store.get_profile(USER)).messages_used == 0

    @pytest.mark.asyncio
    async def test_complete_runs_once(self, tracker, observations, quota_store, clock):
        turn = TutorTurn(tracker, observations, "l1", USER, clock=clock)
        await turn.begin()
        turn.feed("[TRANS:3|pen|قلم|correct] Good.")

        first = await turn.complete(tokens_used=10)
        second = await turn.complete(tokens_used=10)

        assert second is first
        assert turn.completed is True
        assert (await quota_store.get_profile(USER)).messages_used == 1
        assert len(await observations.fetch(ObservationKind.TRANSLATION_CHECK, session_id="l1")) == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_still_records(self, tracker, observations, quota_store, clock):
        turn = TutorTurn(tracker, observations, "l1", USER, clock=clock)
        await turn.begin()
        turn.feed("[TRANS:3|pen|قلم|correct] Good.")

        task = asyncio.ensure_future(turn.complete(tokens_used=10))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        outcome = await turn.complete(tokens_used=10)

        assert outcome.cleaned_text == "Good."
        assert (await quota_store.get_profile(USER)).messages_used == 1
