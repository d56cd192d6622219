"""
In-process store implementations.

Used when Supabase is not configured and throughout the test suite. Each store
guards its state with a lock so every method is atomic, matching the
guarantees of the SQL functions the Supabase stores call.
"""

import itertools
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Set, Tuple

from fusha_tutor_memory.errors import DuplicateFact
from fusha_tutor_memory.models import (
    FactType,
    LearnerFact,
    LearningSignal,
    Lesson,
    Observation,
    ObservationKind,
    QuotaProfile,
    Tier,
)
from fusha_tutor_memory.stores import FactStore, LessonStore, ObservationStore, QuotaStore


class MemoryObservationStore(ObservationStore):

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._observations: Dict[ObservationKind, List[Observation]] = {kind: [] for kind in ObservationKind}
        self._signals: List[LearningSignal] = []

    async def append(self, observations: Sequence[Observation]) -> int:
        if not observations:
            return 0
        with self._lock:
            for observation in observations:
                self._observations[observation.kind].append(replace(observation, id=next(self._ids)))
        return len(observations)

    async def append_signals(self, signals: Sequence[LearningSignal]) -> int:
        if not signals:
            return 0
        with self._lock:
            for signal in signals:
                self._signals.append(replace(signal, id=next(self._ids)))
        return len(signals)

    async def fetch(
        self,
        kind: ObservationKind,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[Observation]:
        with self._lock:
            rows = [
                o for o in self._observations[kind]
                if (session_id is None or o.session_id == session_id)
                and (user_id is None or o.user_id == user_id)
            ]
        return sorted(rows, key=lambda o: (o.created_at, o.id))

    async def fetch_signals(self, session_id: str) -> List[LearningSignal]:
        with self._lock:
            rows = [s for s in self._signals if s.session_id == session_id]
        return sorted(rows, key=lambda s: (s.created_at, s.id))


class MemoryFactStore(FactStore):

    def __init__(self):
        self._lock = threading.Lock()
        self._facts: Dict[str, LearnerFact] = {}
        self._evidence: Set[Tuple[str, str]] = set()

    @staticmethod
    def _copy(fact: LearnerFact) -> LearnerFact:
        return replace(fact, arabic_examples=list(fact.arabic_examples))

    async def find_active_facts(
        self,
        user_id: str,
        fact_type: Optional[FactType] = None,
        category: Optional[str] = None,
    ) -> List[LearnerFact]:
        with self._lock:
            return [
                self._copy(f) for f in self._facts.values()
                if f.user_id == user_id and f.is_active
                and (fact_type is None or f.fact_type == fact_type)
                and (category is None or f.category == category)
            ]

    async def all_facts(self, user_id: str) -> List[LearnerFact]:
        """Active and inactive facts for a user."""
        with self._lock:
            return [self._copy(f) for f in self._facts.values() if f.user_id == user_id]

    def _counted(self, user_id, fact_type, category, fact_key, lesson_id) -> Optional[LearnerFact]:
        for fact in self._facts.values():
            if (fact.user_id == user_id and fact.fact_type == fact_type
                    and fact.category == category and fact.fact_key == fact_key
                    and (fact.id, lesson_id) in self._evidence):
                return fact
        return None

    async def find_counted_fact(
        self,
        user_id: str,
        fact_type: FactType,
        category: str,
        fact_key: str,
        lesson_id: str,
    ) -> Optional[LearnerFact]:
        with self._lock:
            fact = self._counted(user_id, fact_type, category, fact_key, lesson_id)
            return self._copy(fact) if fact else None

    async def insert_fact(self, fact: LearnerFact, lesson_id: str) -> LearnerFact:
        with self._lock:
            for existing in self._facts.values():
                if (existing.is_active and existing.user_id == fact.user_id
                        and existing.fact_type == fact.fact_type
                        and existing.category == fact.category
                        and existing.fact_key == fact.fact_key):
                    raise DuplicateFact(f"Active fact already exists for key {fact.fact_key!r}")
            if self._counted(fact.user_id, fact.fact_type, fact.category, fact.fact_key, lesson_id):
                raise DuplicateFact(f"Lesson {lesson_id} already counted for key {fact.fact_key!r}")
            stored = replace(fact, id=str(uuid.uuid4()), arabic_examples=list(fact.arabic_examples), source_lesson_id=lesson_id)
            self._facts[stored.id] = stored
            self._evidence.add((stored.id, lesson_id))
            return self._copy(stored)

    async def confirm_fact(
        self,
        fact_id: str,
        lesson_id: str,
        *,
        strength: bool,
        examples: Sequence[str],
        confirmed_at: datetime,
    ) -> Tuple[LearnerFact, bool]:
        with self._lock:
            fact = self._facts[fact_id]
            if (fact_id, lesson_id) in self._evidence:
                return self._copy(fact), False
            self._evidence.add((fact_id, lesson_id))
            fact.observation_count += 1
            if strength:
                fact.success_count += 1
            fact.arabic_examples = list(examples)
            fact.last_confirmed = confirmed_at
            fact.source_lesson_id = lesson_id
            return self._copy(fact), True

    async def deactivate_fact(self, fact_id: str) -> bool:
        with self._lock:
            fact = self._facts.get(fact_id)
            if fact is None or not fact.is_active:
                return False
            fact.is_active = False
            return True


class MemoryLessonStore(LessonStore):

    def __init__(self):
        self._lock = threading.Lock()
        self._lessons: Dict[str, Lesson] = {}

    async def start_lesson(self, user_id: Optional[str], started_at: datetime, lesson_id: Optional[str] = None) -> Lesson:
        with self._lock:
            lesson = Lesson(id=lesson_id or str(uuid.uuid4()), user_id=user_id, started_at=started_at)
            self._lessons.setdefault(lesson.id, lesson)
            return replace(self._lessons[lesson.id])

    async def get_lesson(self, lesson_id: str) -> Optional[Lesson]:
        with self._lock:
            lesson = self._lessons.get(lesson_id)
            return replace(lesson) if lesson else None

    async def end_lesson(self, lesson_id: str, ended_at: datetime) -> Optional[Lesson]:
        with self._lock:
            lesson = self._lessons.get(lesson_id)
            if lesson is None:
                return None
            if lesson.ended_at is None:
                lesson.ended_at = ended_at
            return replace(lesson)

    async def set_performance_summary(self, lesson_id: str, summary: str) -> None:
        with self._lock:
            lesson = self._lessons.get(lesson_id)
            if lesson is not None:
                lesson.performance_summary = summary

    async def increment_usage(self, lesson_id: str, messages: int, tokens: int) -> None:
        with self._lock:
            lesson = self._lessons.get(lesson_id)
            if lesson is not None:
                lesson.messages_count += messages
                lesson.tokens_used += tokens


class MemoryQuotaStore(QuotaStore):

    def __init__(self):
        self._lock = threading.Lock()
        self._profiles: Dict[str, QuotaProfile] = {}

    async def get_profile(self, user_id: str) -> Optional[QuotaProfile]:
        with self._lock:
            profile = self._profiles.get(user_id)
            return replace(profile) if profile else None

    async def create_profile(self, profile: QuotaProfile) -> QuotaProfile:
        with self._lock:
            stored = self._profiles.setdefault(profile.user_id, replace(profile))
            return replace(stored)

    @staticmethod
    def _reset_locked(profile: QuotaProfile, now: datetime, next_reset: datetime) -> bool:
        if now < profile.reset_at:
            return False
        profile.messages_used = 0
        profile.tokens_used = 0
        profile.reset_at = next_reset
        return True

    async def reset_if_due(self, user_id: str, now: datetime, next_reset: datetime) -> Optional[QuotaProfile]:
        with self._lock:
            profile = self._profiles.get(user_id)
            if profile is None:
                return None
            self._reset_locked(profile, now, next_reset)
            return replace(profile)

    async def increment_usage(
        self,
        user_id: str,
        messages: int,
        tokens: int,
        now: datetime,
        next_reset: datetime,
    ) -> Optional[QuotaProfile]:
        with self._lock:
            profile = self._profiles.get(user_id)
            if profile is None:
                return None
            self._reset_locked(profile, now, next_reset)
            profile.messages_used += messages
            profile.tokens_used += tokens
            return replace(profile)

    async def update_tier(self, user_id: str, tier: Tier, message_quota: int, token_quota: int) -> Optional[QuotaProfile]:
        with self._lock:
            profile = self._profiles.get(user_id)
            if profile is None:
                return None
            profile.tier = tier
            profile.message_quota = message_quota
            profile.token_quota = token_quota
            return replace(profile)

    async def reset_expired(self, now: datetime, next_reset: datetime) -> int:
        with self._lock:
            return sum(1 for profile in self._profiles.values() if self._reset_locked(profile, now, next_reset))

    async def count_expired(self, now: datetime) -> int:
        with self._lock:
            return sum(1 for profile in self._profiles.values() if now >= profile.reset_at)
