"""
Fact matchers decide whether a candidate fact restates an existing one.

Both matchers also produce the ``fact_key`` stored on new facts; the store's
unique index on ``(user_id, fact_type, category, fact_key)`` for active facts
relies on "same key" implying "matches".
"""

from abc import ABC, abstractmethod
from typing import Iterable, Optional

from fusha_tutor_memory.models import CandidateFact, LearnerFact


class FactMatcher(ABC):
    name = "base"

    @abstractmethod
    def key_for(self, candidate: CandidateFact) -> str:
        pass

    @abstractmethod
    def matches(self, existing: LearnerFact, candidate: CandidateFact) -> bool:
        pass

    def find_match(self, facts: Iterable[LearnerFact], candidate: CandidateFact) -> Optional[LearnerFact]:
        """First active fact of the same type and category that matches."""
        for fact in sorted(facts, key=lambda f: f.first_observed):
            if (fact.is_active and fact.fact_type == candidate.fact_type
                    and fact.category == candidate.category and self.matches(fact, candidate)):
                return fact
        return None


class PrefixMatcher(FactMatcher):
    """
    Text heuristic: the existing fact text contains the candidate's first
    ``prefix_length`` characters, ignoring case.
    """

    name = "prefix"

    def __init__(self, prefix_length: int = 30):
        self.prefix_length = prefix_length

    def _prefix(self, text: str) -> str:
        return text[:self.prefix_length].lower()

    def key_for(self, candidate: CandidateFact) -> str:
        return self._prefix(candidate.fact_text)

    def matches(self, existing: LearnerFact, candidate: CandidateFact) -> bool:
        return self._prefix(candidate.fact_text) in existing.fact_text.lower()


class FeatureKeyMatcher(FactMatcher):
    """Exact match on the candidate's feature key (e.g. ``grammar:verb_form``)."""

    name = "feature_key"

    def key_for(self, candidate: CandidateFact) -> str:
        if candidate.feature_key:
            return candidate.feature_key
        return f"text:{candidate.fact_text.lower()}"

    def matches(self, existing: LearnerFact, candidate: CandidateFact) -> bool:
        return existing.fact_key == self.key_for(candidate)


def matcher_for(name: Optional[str], prefix_length: int = 30) -> FactMatcher:
    """Build a matcher by name; unknown or empty names get the prefix matcher."""
    if name == FeatureKeyMatcher.name:
        return FeatureKeyMatcher()
    return PrefixMatcher(prefix_length)
