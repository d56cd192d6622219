"""
Typed records for the learner-memory core.

Every store returns these types; raw PostgREST rows never leave the store
layer.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple

from fusha_tutor_memory.clock import utc_now


class ObservationKind(Enum):
    """Kinds of graded interaction decoded from tutor text."""
    GRAMMAR_CHECK = "grammar_check"
    TRANSLATION_CHECK = "translation_check"
    FREEFORM_ERROR = "freeform_error"


class FactType(Enum):
    STRUGGLE = "struggle"
    STRENGTH = "strength"
    INTEREST = "interest"
    PREFERENCE = "preference"


SIGNAL_TYPES = ("strength", "weakness", "pattern", "breakthrough")
SKILL_CATEGORIES = ("vocabulary", "grammar", "pronunciation", "comprehension", "fluency")


@dataclass(frozen=True)
class Observation:
    """One graded micro-interaction. Immutable once created."""
    kind: ObservationKind
    session_id: str
    student_answer: str
    correct_answer: str
    is_correct: bool
    user_id: Optional[str] = None
    word_id: Optional[int] = None
    feature: Optional[str] = None  # GrammarCheck only
    error_type: Optional[str] = None  # FreeformError only
    context: Optional[str] = None  # FreeformError only
    created_at: datetime = field(default_factory=utc_now)
    id: Optional[int] = None

    def __post_init__(self):
        if self.word_id is not None and (isinstance(self.word_id, bool) or not isinstance(self.word_id, int) or self.word_id < 0):
            raise ValueError(f"word_id must be a non-negative integer, got {self.word_id!r}")
        if self.kind is ObservationKind.GRAMMAR_CHECK and not self.feature:
            raise ValueError("grammar observations require a feature")

    def with_user(self, user_id: Optional[str]) -> "Observation":
        return replace(self, user_id=user_id)


@dataclass(frozen=True)
class LearningSignal:
    """Qualitative note the tutor emits with an [OBS:...] tag."""
    session_id: str
    signal_type: str
    skill_category: str
    specific_skill: str
    observed_behavior: str
    arabic_example: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    id: Optional[int] = None


@dataclass(frozen=True)
class DecodeSkip:
    """A protocol fragment that was stripped but produced no record."""
    tag: str
    raw: str
    reason: str


@dataclass
class DecodeResult:
    """Everything decoded from one piece of tutor text."""
    observations: List[Observation] = field(default_factory=list)
    signals: List[LearningSignal] = field(default_factory=list)
    cleaned_text: str = ""
    skipped: List[DecodeSkip] = field(default_factory=list)


@dataclass
class LearnerFact:
    """A durable belief about one learner."""
    user_id: str
    fact_type: FactType
    fact_text: str
    category: str
    fact_key: str
    arabic_examples: List[str] = field(default_factory=list)
    observation_count: int = 1
    success_count: int = 0
    first_observed: datetime = field(default_factory=utc_now)
    last_confirmed: datetime = field(default_factory=utc_now)
    is_active: bool = True
    source_lesson_id: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "factType": self.fact_type.value,
            "factText": self.fact_text,
            "category": self.category,
            "arabicExamples": list(self.arabic_examples),
            "observationCount": self.observation_count,
            "successCount": self.success_count,
            "firstObserved": self.first_observed.isoformat(),
            "lastConfirmed": self.last_confirmed.isoformat(),
            "isActive": self.is_active,
        }


@dataclass(frozen=True)
class CandidateFact:
    """A fact derived from one lesson, before it is merged into the store."""
    fact_type: FactType
    fact_text: str
    category: str
    arabic_examples: Tuple[str, ...] = ()
    feature_key: Optional[str] = None


@dataclass
class FactMergeOutcome:
    """Result of merging one candidate into the fact store."""
    candidate: CandidateFact
    fact: LearnerFact
    created: bool
    applied: bool  # False when this lesson had already been counted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "factType": self.candidate.fact_type.value,
            "factText": self.candidate.fact_text,
            "category": self.candidate.category,
            "arabicExamples": list(self.candidate.arabic_examples),
            "isNew": self.created,
            "applied": self.applied,
            "factId": self.fact.id,
        }


@dataclass
class Lesson:
    """A bounded tutoring interaction."""
    id: str
    user_id: Optional[str]
    started_at: datetime = field(default_factory=utc_now)
    ended_at: Optional[datetime] = None
    performance_summary: Optional[str] = None
    messages_count: int = 0
    tokens_used: int = 0


@dataclass
class LessonAnalysis:
    """Outcome of extracting facts from one completed lesson."""
    lesson_id: str
    user_id: str
    grammar_observations: List[Observation] = field(default_factory=list)
    translation_observations: List[Observation] = field(default_factory=list)
    freeform_errors: List[Observation] = field(default_factory=list)
    extracted_facts: List[FactMergeOutcome] = field(default_factory=list)
    performance_summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lessonId": self.lesson_id,
            "userId": self.user_id,
            "performanceSummary": self.performance_summary,
            "extractedFacts": [outcome.to_dict() for outcome in self.extracted_facts],
            "grammarObservationCount": len(self.grammar_observations),
            "translationObservationCount": len(self.translation_observations),
            "freeformErrorCount": len(self.freeform_errors),
        }


class Tier(Enum):
    STUDENT = "student"
    SCHOLAR = "scholar"
    DEDICATED = "dedicated"


# tier -> (weekly messages, weekly tokens)
TIER_LIMITS: Dict[Tier, Tuple[int, int]] = {
    Tier.STUDENT: (100, 300_000),
    Tier.SCHOLAR: (250, 750_000),
    Tier.DEDICATED: (600, 1_500_000),
}


@dataclass
class QuotaProfile:
    """Per-user usage window."""
    user_id: str
    tier: Tier
    message_quota: int
    token_quota: int
    reset_at: datetime
    messages_used: int = 0
    tokens_used: int = 0

    @property
    def messages_remaining(self) -> int:
        return max(0, self.message_quota - self.messages_used)

    @property
    def tokens_remaining(self) -> int:
        return max(0, self.token_quota - self.tokens_used)

    @classmethod
    def for_tier(cls, user_id: str, tier: Tier, reset_at: datetime) -> "QuotaProfile":
        messages, tokens = TIER_LIMITS[tier]
        return cls(user_id=user_id, tier=tier, message_quota=messages, token_quota=tokens, reset_at=reset_at)
