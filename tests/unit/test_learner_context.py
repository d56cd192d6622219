"""
Unit Tests for learner context loading

Tests the per-learner word review targets built from stored observations.
"""

import pytest
import sys
import os
from datetime import datetime, timedelta, timezone

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "fusha_tutor_memory", "src"))

from fusha_tutor_memory.learner_context import load_review_targets
from fusha_tutor_memory.memory_store import MemoryObservationStore
from fusha_tutor_memory.models import Observation, ObservationKind

T0 = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


def grammar(word_id, is_correct, user_id="user-1", session_id="s-1", offset=0):
    return Observation(
        kind=ObservationKind.GRAMMAR_CHECK,
        session_id=session_id,
        user_id=user_id,
        word_id=word_id,
        feature="grammatical_case",
        student_answer="genitive",
        correct_answer="accusative",
        is_correct=is_correct,
        created_at=T0 + timedelta(seconds=offset),
    )


def translation(word_id, is_correct, user_id="user-1", offset=0):
    return Observation(
        kind=ObservationKind.TRANSLATION_CHECK,
        session_id="s-1",
        user_id=user_id,
        word_id=word_id,
        student_answer="pen",
        correct_answer="book",
        is_correct=is_correct,
        created_at=T0 + timedelta(seconds=offset),
    )


class TestMistakenWords:

    @pytest.fixture
    def store(self):
        return MemoryObservationStore()

    @pytest.mark.asyncio
    async def test_distinct_ids_in_first_missed_order(self, store):
        await store.append([
            grammar(7, False, offset=0),
            grammar(3, True, offset=1),
            grammar(5, False, offset=2),
            grammar(7, False, offset=3),
            grammar(3, False, offset=4),
        ])

        assert await store.mistaken_word_ids(user_id="user-1") == [7, 5, 3]

    @pytest.mark.asyncio
    async def test_other_learners_are_excluded(self, store):
        await store.append([
            grammar(1, False, user_id="user-2", offset=0),
            grammar(2, False, offset=1),
        ])

        assert await store.mistaken_word_ids(user_id="user-1") == [2]
        assert await store.mistaken_word_ids(user_id="user-2") == [1]

    @pytest.mark.asyncio
    async def test_translation_kind(self, store):
        await store.append([grammar(1, False), translation(9, False, offset=1), translation(4, True, offset=2)])

        assert await store.mistaken_word_ids(user_id="user-1", kind=ObservationKind.TRANSLATION_CHECK) == [9]


class TestAccuracy:

    @pytest.fixture
    def store(self):
        return MemoryObservationStore()

    @pytest.mark.asyncio
    async def test_empty_history(self, store):
        assert await store.accuracy(ObservationKind.GRAMMAR_CHECK, user_id="user-1") == (0, 0, 0.0)

    @pytest.mark.asyncio
    async def test_percentage(self, store):
        await store.append([grammar(1, True), grammar(2, False, offset=1), grammar(3, True, offset=2)])

        total, correct, percent = await store.accuracy(ObservationKind.GRAMMAR_CHECK, session_id="s-1")

        assert (total, correct) == (3, 2)
        assert percent == pytest.approx(66.666, rel=1e-3)


class TestReviewTargets:

    @pytest.mark.asyncio
    async def test_targets_for_learner(self):
        store = MemoryObservationStore()
        await store.append([
            grammar(5, False, offset=0),
            grammar(6, True, offset=1),
            grammar(8, False, user_id="user-2", offset=2),
            translation(9, False, offset=3),
        ])

        targets = await load_review_targets(store, "user-1")

        assert targets.to_dict() == {
            "userId": "user-1",
            "grammarWordIds": [5],
            "translationWordIds": [9],
            "grammarAccuracy": {"total": 2, "correct": 1, "accuracy": 50.0},
            "translationAccuracy": {"total": 1, "correct": 0, "accuracy": 0.0},
        }

    @pytest.mark.asyncio
    async def test_new_learner_has_no_targets(self):
        targets = await load_review_targets(MemoryObservationStore(), "user-1")

        assert targets.grammar_word_ids == []
        assert targets.to_dict()["grammarAccuracy"] == {"total": 0, "correct": 0, "accuracy": 0.0}
