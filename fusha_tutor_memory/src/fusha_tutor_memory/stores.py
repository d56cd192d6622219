"""
Store interfaces.

Every component receives the stores it needs through its constructor. All
methods are coroutines and return typed records from models; an implementation
that cannot complete a call raises StoreUnavailable instead of returning a
partial result.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

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


class ObservationStore(ABC):
    """Append-only log of Observations and LearningSignals."""

    @abstractmethod
    async def append(self, observations: Sequence[Observation]) -> int:
        """Persist observations; an empty sequence is a no-op returning 0."""

    @abstractmethod
    async def append_signals(self, signals: Sequence[LearningSignal]) -> int:
        """Persist learning signals; an empty sequence is a no-op returning 0."""

    @abstractmethod
    async def fetch(
        self,
        kind: ObservationKind,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[Observation]:
        """Observations of one kind, oldest first, filtered by session and/or user."""

    @abstractmethod
    async def fetch_signals(self, session_id: str) -> List[LearningSignal]:
        """Learning signals for a session, oldest first."""

    async def fetch_session(
        self,
        session_id: str,
        kind: Optional[ObservationKind] = None,
    ) -> List[Observation]:
        """All observations for a session, oldest first."""
        kinds = [kind] if kind else list(ObservationKind)
        observations: List[Observation] = []
        for each in kinds:
            observations.extend(await self.fetch(each, session_id=session_id))
        observations.sort(key=lambda o: o.created_at)
        return observations

    async def find_session_user(self, session_id: str) -> Optional[str]:
        """First user id recorded on the session's grammar, then translation observations."""
        for kind in (ObservationKind.GRAMMAR_CHECK, ObservationKind.TRANSLATION_CHECK):
            for observation in await self.fetch(kind, session_id=session_id):
                if observation.user_id:
                    return observation.user_id
        return None

    async def mistaken_word_ids(
        self,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        kind: ObservationKind = ObservationKind.GRAMMAR_CHECK,
    ) -> List[int]:
        """Distinct word ids answered incorrectly, in first-missed order."""
        seen: List[int] = []
        for observation in await self.fetch(kind, session_id=session_id, user_id=user_id):
            if not observation.is_correct and observation.word_id is not None and observation.word_id not in seen:
                seen.append(observation.word_id)
        return seen

    async def accuracy(
        self,
        kind: ObservationKind,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Tuple[int, int, float]:
        """(total, correct, accuracy percent) for one observation kind."""
        observations = await self.fetch(kind, session_id=session_id, user_id=user_id)
        total = len(observations)
        correct = sum(1 for o in observations if o.is_correct)
        return total, correct, (correct / total * 100) if total else 0.0


class FactStore(ABC):
    """Durable learner facts and the lesson evidence behind them."""

    @abstractmethod
    async def find_active_facts(
        self,
        user_id: str,
        fact_type: Optional[FactType] = None,
        category: Optional[str] = None,
    ) -> List[LearnerFact]:
        """Active facts for a user, optionally narrowed by type and category."""

    @abstractmethod
    async def find_counted_fact(
        self,
        user_id: str,
        fact_type: FactType,
        category: str,
        fact_key: str,
        lesson_id: str,
    ) -> Optional[LearnerFact]:
        """A fact with this key, active or not, that already holds evidence from the lesson."""

    @abstractmethod
    async def insert_fact(self, fact: LearnerFact, lesson_id: str) -> LearnerFact:
        """
        Insert a new active fact together with its first evidence row.

        Raises:
            DuplicateFact: an active fact with the same key already exists, or
                the lesson was already counted for this key
        """

    @abstractmethod
    async def confirm_fact(
        self,
        fact_id: str,
        lesson_id: str,
        *,
        strength: bool,
        examples: Sequence[str],
        confirmed_at: datetime,
    ) -> Tuple[LearnerFact, bool]:
        """
        Count one lesson's evidence toward an existing fact.

        Counters move only if no evidence row exists yet for
        ``(fact_id, lesson_id)``. Returns the fact and whether it was applied.
        """

    @abstractmethod
    async def deactivate_fact(self, fact_id: str) -> bool:
        """Mark a fact inactive; False when it was already inactive."""


class LessonStore(ABC):
    """Lesson records and their per-lesson counters."""

    @abstractmethod
    async def start_lesson(self, user_id: Optional[str], started_at: datetime, lesson_id: Optional[str] = None) -> Lesson:
        pass

    @abstractmethod
    async def get_lesson(self, lesson_id: str) -> Optional[Lesson]:
        pass

    @abstractmethod
    async def end_lesson(self, lesson_id: str, ended_at: datetime) -> Optional[Lesson]:
        pass

    @abstractmethod
    async def set_performance_summary(self, lesson_id: str, summary: str) -> None:
        pass

    @abstractmethod
    async def increment_usage(self, lesson_id: str, messages: int, tokens: int) -> None:
        """Atomically add to the lesson's message and token counters."""


class QuotaStore(ABC):
    """Per-user quota windows. Every mutation is atomic per user."""

    @abstractmethod
    async def get_profile(self, user_id: str) -> Optional[QuotaProfile]:
        pass

    @abstractmethod
    async def create_profile(self, profile: QuotaProfile) -> QuotaProfile:
        """Insert the profile unless one exists; returns the stored profile."""

    @abstractmethod
    async def reset_if_due(self, user_id: str, now: datetime, next_reset: datetime) -> Optional[QuotaProfile]:
        """Zero the counters and move reset_at when ``now >= reset_at``."""

    @abstractmethod
    async def increment_usage(
        self,
        user_id: str,
        messages: int,
        tokens: int,
        now: datetime,
        next_reset: datetime,
    ) -> Optional[QuotaProfile]:
        """Reset-if-due then add to the counters, as one atomic step."""

    @abstractmethod
    async def update_tier(self, user_id: str, tier: Tier, message_quota: int, token_quota: int) -> Optional[QuotaProfile]:
        pass

    @abstractmethod
    async def reset_expired(self, now: datetime, next_reset: datetime) -> int:
        """Reset every profile whose window has ended; returns how many."""

    @abstractmethod
    async def count_expired(self, now: datetime) -> int:
        pass
