"""
Fact Extraction

Turns the observations of one completed lesson into durable learner facts:

1. Resolve the learner (lesson record, then the session's observations)
2. Derive candidate facts from grammar and translation observations
3. Merge each candidate into the fact store (create or confirm)
4. Write a one-line performance summary onto the lesson

Re-running extraction for the same lesson is safe: evidence is recorded per
(fact, lesson) and counters only move for new evidence.
"""

import logging
from collections import Counter, OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from fusha_tutor_memory.clock import Clock, utc_now
from fusha_tutor_memory.errors import DuplicateFact, NotFound
from fusha_tutor_memory.fact_matching import FactMatcher, PrefixMatcher
from fusha_tutor_memory.models import (
    CandidateFact,
    FactMergeOutcome,
    FactType,
    LearnerFact,
    LessonAnalysis,
    Observation,
    ObservationKind,
)
from fusha_tutor_memory.stores import FactStore, LessonStore, ObservationStore

logger = logging.getLogger(__name__)

FEATURE_DISPLAY_NAMES = {
    "part_of_speech": "parts of speech",
    "grammatical_case": "grammatical cases",
    "verb_form": "verb forms",
    "verb_tense": "verb tenses",
    "verb_voice": "active/passive voice",
    "gender": "gender agreement",
    "number": "singular/plural",
    "root": "root identification",
}


def format_feature_name(feature: str) -> str:
    """Display name for a grammar feature id."""
    return FEATURE_DISPLAY_NAMES.get(feature, feature.replace("_", " "))


@dataclass
class ExtractionPolicy:
    """
    Thresholds for turning lesson accuracy into facts.

    With the accuracy thresholds left at None any incorrect answer produces a
    struggle and any correct answer produces a strength.
    """
    struggle_below_accuracy: Optional[float] = None
    strength_at_least_accuracy: Optional[float] = None
    confusion_min_occurrences: int = 2
    missed_words_limit: int = 3
    struggle_examples_limit: int = 3
    examples_cap: int = 5
    match_prefix_length: int = 30

    def is_struggle(self, correct: int, incorrect: int) -> bool:
        if incorrect == 0:
            return False
        if self.struggle_below_accuracy is None:
            return True
        return correct / (correct + incorrect) * 100 < self.struggle_below_accuracy

    def is_strength(self, correct: int, incorrect: int) -> bool:
        if correct == 0:
            return False
        if self.strength_at_least_accuracy is None:
            return True
        return correct / (correct + incorrect) * 100 >= self.strength_at_least_accuracy


def merge_examples(existing: Iterable[str], new: Iterable[str], cap: int) -> List[str]:
    """Order-preserving, de-duplicated union capped at ``cap`` entries."""
    merged: List[str] = []
    for example in list(existing) + list(new):
        if example and example not in merged:
            merged.append(example)
    return merged[:cap]


def rounded_percent(correct: int, total: int) -> int:
    """Integer percentage, halves rounded up."""
    return (200 * correct + total) // (2 * total)


def analyze_grammar(observations: Sequence[Observation], policy: ExtractionPolicy) -> List[CandidateFact]:
    """Struggle/strength facts per grammar feature, plus repeated confusions."""
    by_feature: Dict[str, Dict] = OrderedDict()
    for observation in observations:
        feature = observation.feature or "general"
        data = by_feature.setdefault(feature, {"correct": 0, "incorrect": 0, "examples": []})
        if observation.is_correct:
            data["correct"] += 1
        else:
            data["incorrect"] += 1
            if len(data["examples"]) < policy.struggle_examples_limit:
                data["examples"].append(f"{observation.student_answer} → {observation.correct_answer}")

    facts: List[CandidateFact] = []
    for feature, data in by_feature.items():
        name = format_feature_name(feature)
        logger.debug(f"📊 [FactExtractor] {feature}: {data['correct']}/{data['correct'] + data['incorrect']}")
        if policy.is_struggle(data["correct"], data["incorrect"]):
            facts.append(CandidateFact(
                fact_type=FactType.STRUGGLE,
                fact_text=f"Struggles with {name}",
                category="grammar",
                arabic_examples=tuple(data["examples"]),
                feature_key=f"grammar:{feature}",
            ))
        if policy.is_strength(data["correct"], data["incorrect"]):
            facts.append(CandidateFact(
                fact_type=FactType.STRENGTH,
                fact_text=f"Strong understanding of {name}",
                category="grammar",
                feature_key=f"grammar:{feature}",
            ))

    pairs = Counter(
        (o.student_answer, o.correct_answer)
        for o in observations
        if not o.is_correct
    )
    # Counter keeps first-seen order, so ties stay in creation order.
    for (student, correct), count in pairs.items():
        if count >= policy.confusion_min_occurrences:
            facts.append(CandidateFact(
                fact_type=FactType.STRUGGLE,
                fact_text=f"Confuses {student} with {correct}",
                category="grammar",
                arabic_examples=(f"{student} → {correct}",),
                feature_key=f"confusion:{student}>{correct}",
            ))
    return facts


def analyze_translation(observations: Sequence[Observation], policy: ExtractionPolicy) -> List[CandidateFact]:
    """One overall vocabulary fact per direction, plus the most-missed words."""
    if not observations:
        return []
    correct = sum(1 for o in observations if o.is_correct)
    incorrect = len(observations) - correct
    facts: List[CandidateFact] = []

    if policy.is_struggle(correct, incorrect):
        facts.append(CandidateFact(
            fact_type=FactType.STRUGGLE,
            fact_text="Needs more vocabulary practice",
            category="vocabulary",
            feature_key="vocabulary:overall",
        ))
    if policy.is_strength(correct, incorrect):
        facts.append(CandidateFact(
            fact_type=FactType.STRENGTH,
            fact_text="Good vocabulary retention",
            category="vocabulary",
            feature_key="vocabulary:overall",
        ))

    missed = Counter(o.correct_answer for o in observations if not o.is_correct and o.correct_answer)
    # most_common is stable for equal counts, keeping first-missed order.
    top = [word for word, _ in missed.most_common(policy.missed_words_limit)]
    if top:
        facts.append(CandidateFact(
            fact_type=FactType.STRUGGLE,
            fact_text=f"Missed words: {', '.join(top)}",
            category="vocabulary",
            arabic_examples=tuple(top),
            feature_key="vocabulary:missed",
        ))
    return facts


def performance_summary(grammar: Sequence[Observation], translation: Sequence[Observation]) -> str:
    """``Grammar: c/n (p%) | Vocabulary: c/n (p%) | Overall: p%``, omitting empty kinds."""
    parts = []
    grammar_correct = sum(1 for o in grammar if o.is_correct)
    translation_correct = sum(1 for o in translation if o.is_correct)
    if grammar:
        parts.append(f"Grammar: {grammar_correct}/{len(grammar)} ({rounded_percent(grammar_correct, len(grammar))}%)")
    if translation:
        parts.append(
            f"Vocabulary: {translation_correct}/{len(translation)} "
            f"({rounded_percent(translation_correct, len(translation))}%)"
        )
    if not parts:
        return "No questions answered."
    total = len(grammar) + len(translation)
    parts.append(f"Overall: {rounded_percent(grammar_correct + translation_correct, total)}%")
    return " | ".join(parts)


class FactExtractor:
    """Derives candidate facts from a lesson and merges them into the fact store."""

    def __init__(
        self,
        observation_store: ObservationStore,
        fact_store: FactStore,
        lesson_store: LessonStore,
        matcher: Optional[FactMatcher] = None,
        policy: Optional[ExtractionPolicy] = None,
        clock: Clock = utc_now,
    ):
        self.observation_store = observation_store
        self.fact_store = fact_store
        self.lesson_store = lesson_store
        self.policy = policy or ExtractionPolicy()
        self.matcher = matcher or PrefixMatcher(self.policy.match_prefix_length)
        self.clock = clock

    async def resolve_user(self, session_id: str) -> str:
        lesson = await self.lesson_store.get_lesson(session_id)
        if lesson and lesson.user_id:
            return lesson.user_id
        user_id = await self.observation_store.find_session_user(session_id)
        if not user_id:
            raise NotFound(f"No user could be resolved for lesson {session_id}")
        return user_id

    async def extract_facts(self, session_id: str, user_id: Optional[str] = None) -> LessonAnalysis:
        """
        Analyze a completed lesson and merge its facts.

        Args:
            session_id: Lesson / session id the observations were logged under
            user_id: Learner; resolved from the lesson or observations when omitted

        Returns:
            LessonAnalysis with one merge outcome per candidate fact

        Raises:
            NotFound: no user could be resolved
            StoreUnavailable: any store call failed
        """
        user_id = user_id or await self.resolve_user(session_id)
        logger.info(f"🧠 [FactExtractor] Extracting facts for lesson {session_id} (user {user_id[:20]}...)")

        grammar = await self.observation_store.fetch_session(session_id, ObservationKind.GRAMMAR_CHECK)
        translation = await self.observation_store.fetch_session(session_id, ObservationKind.TRANSLATION_CHECK)
        freeform = await self.observation_store.fetch_session(session_id, ObservationKind.FREEFORM_ERROR)

        candidates = analyze_grammar(grammar, self.policy) + analyze_translation(translation, self.policy)
        logger.info(
            f"📊 [FactExtractor] {len(grammar)} grammar / {len(translation)} translation observations "
            f"-> {len(candidates)} candidate facts"
        )

        now = self.clock()
        outcomes = []
        for candidate in candidates:
            outcomes.append(await self.merge_candidate(user_id, session_id, candidate, now))

        summary = performance_summary(grammar, translation)
        await self.lesson_store.set_performance_summary(session_id, summary)

        applied = sum(1 for o in outcomes if o.applied)
        logger.info(f"✅ [FactExtractor] Lesson {session_id}: {applied}/{len(outcomes)} facts applied ({summary})")
        return LessonAnalysis(
            lesson_id=session_id,
            user_id=user_id,
            grammar_observations=grammar,
            translation_observations=translation,
            freeform_errors=freeform,
            extracted_facts=outcomes,
            performance_summary=summary,
        )

    async def merge_candidate(
        self,
        user_id: str,
        lesson_id: str,
        candidate: CandidateFact,
        now: datetime,
    ) -> FactMergeOutcome:
        """Confirm the matching active fact, or create one."""
        strength = candidate.fact_type is FactType.STRENGTH
        last_error: Optional[DuplicateFact] = None
        for _ in range(2):
            existing = await self.fact_store.find_active_facts(user_id, candidate.fact_type, candidate.category)
            match = self.matcher.find_match(existing, candidate)
            if match is not None:
                examples = merge_examples(match.arabic_examples, candidate.arabic_examples, self.policy.examples_cap)
                fact, applied = await self.fact_store.confirm_fact(
                    match.id,
                    lesson_id,
                    strength=strength,
                    examples=examples,
                    confirmed_at=now,
                )
                if not applied:
                    logger.debug(f"🔁 [FactExtractor] Lesson {lesson_id} already counted for '{fact.fact_text}'")
                return FactMergeOutcome(candidate=candidate, fact=fact, created=False, applied=applied)

            fact_key = self.matcher.key_for(candidate)
            counted = await self.fact_store.find_counted_fact(
                user_id, candidate.fact_type, candidate.category, fact_key, lesson_id
            )
            if counted is not None:
                # Counted on a fact that has since been retired.
                logger.debug(f"🔁 [FactExtractor] Lesson {lesson_id} already counted for '{counted.fact_text}'")
                return FactMergeOutcome(candidate=candidate, fact=counted, created=False, applied=False)

            fact = LearnerFact(
                user_id=user_id,
                fact_type=candidate.fact_type,
                fact_text=candidate.fact_text,
                category=candidate.category,
                fact_key=fact_key,
                arabic_examples=merge_examples([], candidate.arabic_examples, self.policy.examples_cap),
                observation_count=1,
                success_count=1 if strength else 0,
                first_observed=now,
                last_confirmed=now,
                source_lesson_id=lesson_id,
            )
            try:
                stored = await self.fact_store.insert_fact(fact, lesson_id)
            except DuplicateFact as e:
                # Another lesson created it between our read and insert.
                logger.info(f"🔁 [FactExtractor] Concurrent insert for '{candidate.fact_text}', merging instead")
                last_error = e
                continue
            logger.info(f"✨ [FactExtractor] New {candidate.fact_type.value}: {candidate.fact_text}")
            return FactMergeOutcome(candidate=candidate, fact=stored, created=True, applied=True)
        raise last_error
