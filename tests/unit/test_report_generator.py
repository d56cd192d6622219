"""
Unit Tests for the Report Generator

Tests scoring, patterns, recommendations and the per-feature breakdowns.
"""

import pytest
import sys
import os
from datetime import datetime, timedelta, timezone

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "fusha_tutor_memory", "src"))

from fusha_tutor_memory.clock import FixedClock
from fusha_tutor_memory.memory_store import MemoryLessonStore, MemoryObservationStore
from fusha_tutor_memory.models import LearningSignal, Lesson, Observation, ObservationKind
from fusha_tutor_memory.report_generator import (
    ReportService,
    category_for_error,
    generate_report,
    get_motivational_message,
    practice_prompt,
)

T0 = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)
SESSION = "lesson-1"


def grammar(feature, student, correct, is_correct, offset=0, word_id=1):
    return Observation(
        kind=ObservationKind.GRAMMAR_CHECK,
        session_id=SESSION,
        user_id="user-1",
        word_id=word_id,
        feature=feature,
        student_answer=student,
        correct_answer=correct,
        is_correct=is_correct,
        created_at=T0 + timedelta(seconds=offset),
    )


def translation(word_id, student, correct, is_correct, offset=0):
    return Observation(
        kind=ObservationKind.TRANSLATION_CHECK,
        session_id=SESSION,
        user_id="user-1",
        word_id=word_id,
        student_answer=student,
        correct_answer=correct,
        is_correct=is_correct,
        created_at=T0 + timedelta(seconds=offset),
    )


def signal(signal_type, category, skill, behaviour, offset=0):
    return LearningSignal(
        session_id=SESSION,
        signal_type=signal_type,
        skill_category=category,
        specific_skill=skill,
        observed_behavior=behaviour,
        created_at=T0 + timedelta(seconds=offset),
    )


class TestScoring:

    def test_empty_lesson_gets_neutral_report(self):
        report = generate_report(SESSION, [], now=T0)

        assert report.overall_score == 50
        assert report.total_interactions == 0
        assert report.recommendations == []
        assert report.patterns == []
        assert report.motivational_message == "Good effort! Every challenge is a learning opportunity!"
        assert report.translation_breakdown["accuracy"] == 0

    def test_correct_answers_raise_score(self):
        observations = [grammar("gender", "مذكر", "مذكر", True, i) for i in range(3)]
        report = generate_report(SESSION, observations, now=T0)

        assert report.overall_score == 95
        assert report.grammar_accuracy == 100
        assert report.motivational_message == "Outstanding! You're mastering Arabic at an incredible pace!"

    def test_score_is_clamped(self):
        high = generate_report(SESSION, [grammar("gender", "a", "a", True, i) for i in range(10)], now=T0)
        low = generate_report(
            SESSION,
            [grammar(f"feature_{i}", "a", "b", False, i) for i in range(20)],
            now=T0,
        )

        assert high.overall_score == 100
        assert low.overall_score == 0
        assert low.motivational_message == "Keep going! The best learners embrace the struggle!"

    def test_breakthrough_signal(self):
        report = generate_report(
            SESSION,
            [],
            [signal("breakthrough", "grammar", "idafa", "Built كتابُ الطالبِ unprompted")],
            now=T0,
        )

        assert report.overall_score == 75
        assert report.breakthroughs[0]["moment"] == "Built كتابُ الطالبِ unprompted"
        assert report.breakthroughs[0]["context"] == "grammar: idafa"

    def test_motivational_thresholds(self):
        assert get_motivational_message(90).startswith("Outstanding!")
        assert get_motivational_message(75).startswith("Excellent progress!")
        assert get_motivational_message(60).startswith("Great work!")
        assert get_motivational_message(40).startswith("Good effort!")
        assert get_motivational_message(39).startswith("Keep going!")


class TestPatternsAndRecommendations:

    def test_repeated_weakness_becomes_pattern_and_first_recommendation(self):
        observations = [
            grammar("grammatical_case", "accusative", "genitive", False, 0),
            grammar("grammatical_case", "nominative", "genitive", False, 1),
            translation(7, "door", "بيت", False, 2),
        ]
        report = generate_report(SESSION, observations, now=T0)

        assert report.overall_score == 22
        assert len(report.patterns) == 1
        pattern = report.patterns[0]
        assert pattern["pattern"] == "Grammatical Cases"
        assert pattern["frequency"] == 2
        assert pattern["impact"] == "high"

        first, second = report.recommendations
        assert first["priority"] == 1
        assert first["skillArea"] == "Grammar"
        assert first["specificFocus"] == "Grammatical Cases"
        assert "label every noun" in first["practicePrompt"]
        assert first["estimatedTime"] == "15 minutes"
        assert second["skillArea"] == "Vocabulary"
        assert second["practicePrompt"].startswith("Ask your tutor for three fresh examples of word meanings")

    def test_pattern_signal_is_reported(self):
        report = generate_report(
            SESSION,
            [],
            [signal("pattern", "fluency", "hesitation", "Pauses before every verb")],
            now=T0,
        )

        assert report.patterns[0]["explanation"] == "Pauses before every verb"
        assert report.patterns[0]["impact"] == "medium"

    def test_at_most_five_recommendations(self):
        observations = [grammar(f"feature_{i}", "a", "b", False, i) for i in range(7)]
        report = generate_report(SESSION, observations, now=T0)

        assert [r["priority"] for r in report.recommendations] == [1, 2, 3, 4, 5]

    def test_practice_prompts_by_keyword(self):
        assert "في" in practice_prompt("Prepositions")
        assert practice_prompt("Verb conjugation").startswith("Conjugate")
        assert "three-letter roots" in practice_prompt("Root Letters")
        assert "verbal" in practice_prompt("Word order")

    def test_error_type_categories(self):
        assert category_for_error("gender") == "grammar"
        assert category_for_error("Vocabulary") == "vocabulary"
        assert category_for_error("") == "comprehension"


class TestBreakdowns:

    def test_grammar_breakdown_lowest_accuracy_first(self):
        observations = [
            grammar("gender", "مذكر", "مذكر", True, 0),
            grammar("number", "مفرد", "جمع", False, 1),
            grammar("number", "مفرد", "جمع", False, 2),
        ]
        report = generate_report(SESSION, observations, now=T0)

        number, gender = report.grammar_breakdown
        assert number["feature"] == "Singular/Plural"
        assert number["accuracy"] == 0
        assert number["mistakes"] == [{"student": "مفرد", "correct": "جمع", "count": 2}]
        assert gender["accuracy"] == 100
        assert report.grammar_accuracy == 33

    def test_translation_breakdown(self):
        observations = [
            translation(1, "book", "كتاب", True, 0),
            translation(2, "door", "بيت", False, 1),
            translation(2, "room", "بيت", False, 2),
            translation(3, "pen", "قلم", True, 3),
        ]
        report = generate_report(SESSION, observations, now=T0)
        table = report.translation_breakdown

        assert table["accuracy"] == 50
        assert table["strugglingWords"][0]["wordId"] == 2
        assert table["strugglingWords"][0]["count"] == 2
        assert [w["wordId"] for w in table["masteredWords"]] == [1, 3]

    def test_time_spent_from_lesson(self):
        lesson = Lesson(id=SESSION, user_id="user-1", started_at=T0 - timedelta(minutes=30))
        report = generate_report(SESSION, [], lesson=lesson, now=T0)

        assert report.time_spent == 30

    def test_to_dict_shape(self):
        data = generate_report(SESSION, [grammar("gender", "a", "a", True)], now=T0).to_dict()

        assert data["sessionId"] == SESSION
        assert set(data["sessionSummary"]) == {
            "timeSpent", "totalInteractions", "overallScore", "grammarAccuracy", "translationAccuracy",
        }
        assert data["generatedAt"] == T0.isoformat()


class TestReportService:

    @pytest.mark.asyncio
    async def test_generate_from_stores(self):
        observations = MemoryObservationStore()
        lessons = MemoryLessonStore()
        await lessons.start_lesson("user-1", T0, lesson_id=SESSION)
        await observations.append([grammar("gender", "a", "a", True), translation(4, "x", "y", False, 1)])
        await observations.append_signals([signal("strength", "grammar", "gender", "Matched adjective gender", 2)])

        service = ReportService(observations, lessons, clock=FixedClock(T0 + timedelta(minutes=12)))
        report = await service.generate(SESSION)

        assert report.total_interactions == 2
        assert report.time_spent == 12
        assert report.overall_score == 50 + 15 - 8 + 15
