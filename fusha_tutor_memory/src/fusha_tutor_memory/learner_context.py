"""
Learner context: a user's active facts grouped by type, and the words to
drill next.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from fusha_tutor_memory.models import FactType, LearnerFact, ObservationKind
from fusha_tutor_memory.stores import FactStore, ObservationStore


@dataclass
class LearnerFacts:
    user_id: str
    struggles: List[LearnerFact] = field(default_factory=list)
    strengths: List[LearnerFact] = field(default_factory=list)
    interests: List[LearnerFact] = field(default_factory=list)
    preferences: List[LearnerFact] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.struggles) + len(self.strengths) + len(self.interests) + len(self.preferences)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "facts": {
                "struggles": [f.to_dict() for f in self.struggles],
                "strengths": [f.to_dict() for f in self.strengths],
                "interests": [f.to_dict() for f in self.interests],
                "preferences": [f.to_dict() for f in self.preferences],
            },
        }


async def load_learner_facts(fact_store: FactStore, user_id: str) -> LearnerFacts:
    """Active facts for ``user_id``, most-observed first within each group."""
    facts = await fact_store.find_active_facts(user_id)
    facts.sort(key=lambda f: f.observation_count, reverse=True)
    grouped = LearnerFacts(user_id=user_id)
    buckets = {
        FactType.STRUGGLE: grouped.struggles,
        FactType.STRENGTH: grouped.strengths,
        FactType.INTEREST: grouped.interests,
        FactType.PREFERENCE: grouped.preferences,
    }
    for fact in facts:
        buckets[fact.fact_type].append(fact)
    return grouped


def _accuracy_dict(stats: Tuple[int, int, float]) -> Dict[str, Any]:
    total, correct, percent = stats
    return {"total": total, "correct": correct, "accuracy": round(percent, 1)}


@dataclass
class ReviewTargets:
    """Words a learner has missed, oldest miss first, with lifetime accuracy."""
    user_id: str
    grammar_word_ids: List[int] = field(default_factory=list)
    translation_word_ids: List[int] = field(default_factory=list)
    grammar_accuracy: Tuple[int, int, float] = (0, 0, 0.0)
    translation_accuracy: Tuple[int, int, float] = (0, 0, 0.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "grammarWordIds": list(self.grammar_word_ids),
            "translationWordIds": list(self.translation_word_ids),
            "grammarAccuracy": _accuracy_dict(self.grammar_accuracy),
            "translationAccuracy": _accuracy_dict(self.translation_accuracy),
        }


async def load_review_targets(observation_store: ObservationStore, user_id: str) -> ReviewTargets:
    """Drill targets across every lesson the learner has taken."""
    return ReviewTargets(
        user_id=user_id,
        grammar_word_ids=await observation_store.mistaken_word_ids(user_id=user_id),
        translation_word_ids=await observation_store.mistaken_word_ids(
            user_id=user_id, kind=ObservationKind.TRANSLATION_CHECK
        ),
        grammar_accuracy=await observation_store.accuracy(ObservationKind.GRAMMAR_CHECK, user_id=user_id),
        translation_accuracy=await observation_store.accuracy(ObservationKind.TRANSLATION_CHECK, user_id=user_id),
    )
