"""
Report Generator

Builds the end-of-lesson learning report from a session's observations and
learning signals: a weighted score, strengths and weaknesses by category,
recurring patterns, breakthroughs and up to five study recommendations.

``generate_report`` is pure; ``ReportService`` loads the data and calls it.
"""

import logging
import re
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from fusha_tutor_memory.clock import Clock, utc_now
from fusha_tutor_memory.fact_extraction import rounded_percent
from fusha_tutor_memory.models import LearningSignal, Lesson, Observation, ObservationKind
from fusha_tutor_memory.stores import LessonStore, ObservationStore

logger = logging.getLogger(__name__)

BASE_SCORE = 50
CATEGORY_WEIGHTS = {
    "grammar": 5,
    "vocabulary": 4,
    "comprehension": 3,
    "fluency": 2,
    "pronunciation": 1,
}
EVENT_POINTS = {"strength": 3, "weakness": -2, "breakthrough": 5, "pattern": 0}

IMPACT_ORDER = {"high": 0, "medium": 1, "low": 2}
ESTIMATED_TIME = {"high": "15 minutes", "medium": "10 minutes", "low": "5 minutes"}

MAX_PATTERNS = 5
MAX_RECOMMENDATIONS = 5
MAX_SKILL_EXAMPLES = 3

REPORT_FEATURE_NAMES = {
    "part_of_speech": "Parts of Speech",
    "grammatical_case": "Grammatical Cases",
    "verb_form": "Verb Forms",
    "verb_tense": "Verb Tenses",
    "verb_voice": "Active/Passive Voice",
    "gender": "Gender",
    "number": "Singular/Plural",
    "root": "Root Letters",
}

ERROR_TYPE_CATEGORIES = {
    "grammar": "grammar",
    "gender": "grammar",
    "conjugation": "grammar",
    "vocabulary": "vocabulary",
    "pronunciation": "pronunciation",
}

# Checked in order; first match wins.
PRACTICE_PROMPTS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"preposition"),
     "Ask your tutor for five short sentences using في، على، من and إلى, "
     "then explain why each preposition fits its sentence."),
    (re.compile(r"conjugat"),
     "Conjugate كَتَبَ and ذَهَبَ in the past and present tense for every pronoun, "
     "then have your tutor check the endings."),
    (re.compile(r"\bcases?\b"),
     "Take one short ayah and label every noun as marfūʿ, manṣūb or majrūr, "
     "naming the word that causes each ending."),
    (re.compile(r"\broots?\b"),
     "Pick four words from today's lesson, find their three-letter roots "
     "and name one more word built on each root."),
    (re.compile(r"word order"),
     "Rebuild three jumbled sentences in both verbal (verb first) and nominal "
     "(noun first) order, then read them aloud."),
]

MOTIVATIONAL_MESSAGES = [
    (90, "Outstanding! You're mastering Arabic at an incredible pace!"),
    (75, "Excellent progress! Your dedication is really showing!"),
    (60, "Great work! You're building a strong foundation!"),
    (40, "Good effort! Every challenge is a learning opportunity!"),
]
FALLBACK_MESSAGE = "Keep going! The best learners embrace the struggle!"


def format_report_feature(feature: str) -> str:
    if feature in REPORT_FEATURE_NAMES:
        return REPORT_FEATURE_NAMES[feature]
    return " ".join(word.capitalize() for word in feature.split("_"))


def category_for_error(error_type: Optional[str]) -> str:
    return ERROR_TYPE_CATEGORIES.get((error_type or "").lower(), "comprehension")


def impact_for(category: str) -> str:
    weight = CATEGORY_WEIGHTS.get(category, 1)
    if weight >= 4:
        return "high"
    if weight >= 2:
        return "medium"
    return "low"


def practice_prompt(skill: str) -> str:
    """Practice prompt chosen by keyword in the skill name."""
    lowered = skill.lower()
    for pattern, prompt in PRACTICE_PROMPTS:
        if pattern.search(lowered):
            return prompt
    return (
        f"Ask your tutor for three fresh examples of {lowered} and explain each one "
        f"back in your own words before moving on."
    )


def get_motivational_message(score: int) -> str:
    for threshold, message in MOTIVATIONAL_MESSAGES:
        if score >= threshold:
            return message
    return FALLBACK_MESSAGE


@dataclass(frozen=True)
class ReportEvent:
    """One scored event: a strength, weakness, pattern or breakthrough."""
    event_type: str
    category: str
    skill: str
    detail: str
    created_at: datetime
    example: Optional[str] = None


def events_from_records(
    observations: Sequence[Observation],
    signals: Sequence[LearningSignal] = (),
) -> List[ReportEvent]:
    """Map observations and signals to report events in creation order."""
    events: List[ReportEvent] = []
    for o in observations:
        if o.kind is ObservationKind.GRAMMAR_CHECK:
            events.append(ReportEvent(
                event_type="strength" if o.is_correct else "weakness",
                category="grammar",
                skill=format_report_feature(o.feature),
                detail=f"{o.student_answer} → {o.correct_answer}",
                example=None if o.is_correct else f"{o.student_answer} → {o.correct_answer}",
                created_at=o.created_at,
            ))
        elif o.kind is ObservationKind.TRANSLATION_CHECK:
            events.append(ReportEvent(
                event_type="strength" if o.is_correct else "weakness",
                category="vocabulary",
                skill="word meanings",
                detail=f"{o.student_answer} → {o.correct_answer}",
                example=o.correct_answer,
                created_at=o.created_at,
            ))
        else:
            events.append(ReportEvent(
                event_type="weakness",
                category=category_for_error(o.error_type),
                skill=(o.error_type or "general").replace("_", " "),
                detail=o.context or f"{o.student_answer} → {o.correct_answer}",
                example=o.correct_answer or None,
                created_at=o.created_at,
            ))
    for s in signals:
        events.append(ReportEvent(
            event_type=s.signal_type,
            category=s.skill_category,
            skill=s.specific_skill,
            detail=s.observed_behavior,
            example=s.arabic_example,
            created_at=s.created_at,
        ))
    events.sort(key=lambda e: e.created_at)
    return events


def score_events(events: Sequence[ReportEvent]) -> int:
    score = BASE_SCORE
    for event in events:
        score += EVENT_POINTS.get(event.event_type, 0) * CATEGORY_WEIGHTS.get(event.category, 1)
    return max(0, min(100, score))


def skill_breakdown(events: Sequence[ReportEvent], event_type: str) -> List[Dict[str, Any]]:
    """``[{category, skills: [{name, frequency, examples}]}]`` for one event type."""
    categories: "OrderedDict[str, OrderedDict[str, Dict[str, Any]]]" = OrderedDict()
    for event in events:
        if event.event_type != event_type:
            continue
        skills = categories.setdefault(event.category, OrderedDict())
        skill = skills.setdefault(event.skill, {"name": event.skill, "frequency": 0, "examples": []})
        skill["frequency"] += 1
        if event.example and event.example not in skill["examples"] and len(skill["examples"]) < MAX_SKILL_EXAMPLES:
            skill["examples"].append(event.example)
    return [
        {"category": category, "skills": sorted(skills.values(), key=lambda s: -s["frequency"])}
        for category, skills in categories.items()
    ]


def detect_patterns(events: Sequence[ReportEvent]) -> List[Dict[str, Any]]:
    """Explicit pattern signals plus weaknesses seen at least twice."""
    counts = Counter((e.category, e.skill) for e in events if e.event_type in ("pattern", "weakness"))
    weakness_counts = Counter((e.category, e.skill) for e in events if e.event_type == "weakness")

    found: "OrderedDict[Tuple[str, str], Dict[str, Any]]" = OrderedDict()
    for event in events:
        key = (event.category, event.skill)
        if key in found:
            continue
        if event.event_type == "pattern":
            explanation = event.detail
        elif event.event_type == "weakness" and weakness_counts[key] >= 2:
            explanation = f"Came up {weakness_counts[key]} times this lesson (e.g. {event.detail})"
        else:
            continue
        found[key] = {
            "pattern": event.skill,
            "category": event.category,
            "frequency": counts[key],
            "impact": impact_for(event.category),
            "explanation": explanation,
        }

    patterns = sorted(found.values(), key=lambda p: (IMPACT_ORDER[p["impact"]], -p["frequency"]))
    return patterns[:MAX_PATTERNS]


def build_recommendations(patterns: Sequence[Dict[str, Any]], events: Sequence[ReportEvent]) -> List[Dict[str, Any]]:
    """High-impact patterns first, then the most frequent remaining weaknesses."""
    chosen: List[Tuple[str, str, str]] = []
    for p in patterns:
        if p["impact"] == "high":
            chosen.append((p["category"], p["pattern"], p["impact"]))

    weaknesses = Counter((e.category, e.skill) for e in events if e.event_type == "weakness")
    for (category, skill), _ in weaknesses.most_common():
        if len(chosen) >= MAX_RECOMMENDATIONS:
            break
        if any(c == category and s == skill for c, s, _ in chosen):
            continue
        chosen.append((category, skill, impact_for(category)))

    return [
        {
            "priority": index,
            "skillArea": category.capitalize(),
            "specificFocus": skill,
            "practicePrompt": practice_prompt(skill),
            "estimatedTime": ESTIMATED_TIME[impact],
        }
        for index, (category, skill, impact) in enumerate(chosen[:MAX_RECOMMENDATIONS], start=1)
    ]


def grammar_breakdown(observations: Sequence[Observation]) -> List[Dict[str, Any]]:
    by_feature: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    for o in observations:
        data = by_feature.setdefault(o.feature, {"total": 0, "correct": 0, "mistakes": Counter()})
        data["total"] += 1
        if o.is_correct:
            data["correct"] += 1
        else:
            data["mistakes"][(o.student_answer, o.correct_answer)] += 1

    rows = [
        {
            "feature": format_report_feature(feature),
            "total": data["total"],
            "correct": data["correct"],
            "incorrect": data["total"] - data["correct"],
            "accuracy": rounded_percent(data["correct"], data["total"]),
            "mistakes": [
                {"student": student, "correct": correct, "count": count}
                for (student, correct), count in data["mistakes"].most_common(5)
            ],
        }
        for feature, data in by_feature.items()
    ]
    # Lowest accuracy first: what needs work.
    return sorted(rows, key=lambda r: r["accuracy"])


def translation_breakdown(observations: Sequence[Observation]) -> Dict[str, Any]:
    total = len(observations)
    correct = sum(1 for o in observations if o.is_correct)
    missed: "OrderedDict[int, Dict[str, Any]]" = OrderedDict()
    known: "OrderedDict[int, Dict[str, Any]]" = OrderedDict()
    for o in observations:
        if o.word_id is None:
            continue
        if o.is_correct:
            entry = known.setdefault(o.word_id, {"wordId": o.word_id, "correctAnswer": o.correct_answer, "count": 0})
        else:
            entry = missed.setdefault(o.word_id, {
                "wordId": o.word_id,
                "studentAnswer": o.student_answer,
                "correctAnswer": o.correct_answer,
                "count": 0,
            })
        entry["count"] += 1

    return {
        "total": total,
        "correct": correct,
        "incorrect": total - correct,
        "accuracy": rounded_percent(correct, total) if total else 0,
        "strugglingWords": sorted(missed.values(), key=lambda w: -w["count"])[:10],
        "masteredWords": sorted(
            (w for word_id, w in known.items() if word_id not in missed),
            key=lambda w: -w["count"],
        )[:10],
    }


@dataclass
class LearningReport:
    session_id: str
    time_spent: int
    total_interactions: int
    overall_score: int
    grammar_accuracy: int = 0
    translation_accuracy: int = 0
    strengths: List[Dict[str, Any]] = field(default_factory=list)
    weaknesses: List[Dict[str, Any]] = field(default_factory=list)
    patterns: List[Dict[str, Any]] = field(default_factory=list)
    breakthroughs: List[Dict[str, Any]] = field(default_factory=list)
    recommendations: List[Dict[str, Any]] = field(default_factory=list)
    grammar_breakdown: List[Dict[str, Any]] = field(default_factory=list)
    translation_breakdown: Dict[str, Any] = field(default_factory=dict)
    motivational_message: str = ""
    generated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "sessionSummary": {
                "timeSpent": self.time_spent,
                "totalInteractions": self.total_interactions,
                "overallScore": self.overall_score,
                "grammarAccuracy": self.grammar_accuracy,
                "translationAccuracy": self.translation_accuracy,
            },
            "strengths": self.strengths,
            "weaknesses": self.weaknesses,
            "patterns": self.patterns,
            "breakthroughs": self.breakthroughs,
            "recommendations": self.recommendations,
            "grammarBreakdown": self.grammar_breakdown,
            "translationBreakdown": self.translation_breakdown,
            "motivationalMessage": self.motivational_message,
            "generatedAt": self.generated_at.isoformat(),
        }


def _minutes_spent(lesson: Optional[Lesson], now: datetime) -> int:
    if lesson is None or lesson.started_at is None:
        return 0
    end = lesson.ended_at or now
    return max(0, round((end - lesson.started_at).total_seconds() / 60))


def generate_report(
    session_id: str,
    observations: Sequence[Observation],
    signals: Sequence[LearningSignal] = (),
    lesson: Optional[Lesson] = None,
    now: Optional[datetime] = None,
) -> LearningReport:
    """Score and summarise one lesson. Never raises for empty input."""
    now = now or utc_now()
    time_spent = _minutes_spent(lesson, now)

    if not observations and not signals:
        return LearningReport(
            session_id=session_id,
            time_spent=time_spent,
            total_interactions=0,
            overall_score=BASE_SCORE,
            translation_breakdown=translation_breakdown([]),
            motivational_message=get_motivational_message(BASE_SCORE),
            generated_at=now,
        )

    events = events_from_records(observations, signals)
    score = score_events(events)
    patterns = detect_patterns(events)

    grammar = [o for o in observations if o.kind is ObservationKind.GRAMMAR_CHECK]
    translation = [o for o in observations if o.kind is ObservationKind.TRANSLATION_CHECK]
    grammar_correct = sum(1 for o in grammar if o.is_correct)
    translation_table = translation_breakdown(translation)

    return LearningReport(
        session_id=session_id,
        time_spent=time_spent,
        total_interactions=len(observations),
        overall_score=score,
        grammar_accuracy=rounded_percent(grammar_correct, len(grammar)) if grammar else 0,
        translation_accuracy=translation_table["accuracy"],
        strengths=skill_breakdown(events, "strength"),
        weaknesses=skill_breakdown(events, "weakness"),
        patterns=patterns,
        breakthroughs=[
            {"moment": e.detail, "timestamp": e.created_at.isoformat(), "context": f"{e.category}: {e.skill}"}
            for e in events if e.event_type == "breakthrough"
        ],
        recommendations=build_recommendations(patterns, events),
        grammar_breakdown=grammar_breakdown(grammar),
        translation_breakdown=translation_table,
        motivational_message=get_motivational_message(score),
        generated_at=now,
    )


class ReportService:
    """Loads a lesson's records and builds its report."""

    def __init__(self, observation_store: ObservationStore, lesson_store: LessonStore, clock: Clock = utc_now):
        self.observation_store = observation_store
        self.lesson_store = lesson_store
        self.clock = clock

    async def generate(self, session_id: str) -> LearningReport:
        observations = await self.observation_store.fetch_session(session_id)
        signals = await self.observation_store.fetch_signals(session_id)
        lesson = await self.lesson_store.get_lesson(session_id)
        report = generate_report(session_id, observations, signals, lesson=lesson, now=self.clock())
        logger.info(
            f"📈 [ReportService] Report for {session_id}: score {report.overall_score}, "
            f"{report.total_interactions} interactions, {len(report.recommendations)} recommendations"
        )
        return report
