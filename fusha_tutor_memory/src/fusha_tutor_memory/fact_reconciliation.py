"""
Fact Reconciliation

Deactivates struggle facts that newer, at-least-as-well-evidenced strength
facts in the same category have superseded.
"""

import logging
from typing import List

from fusha_tutor_memory.models import FactType, LearnerFact
from fusha_tutor_memory.stores import FactStore

logger = logging.getLogger(__name__)


def supersedes(strength: LearnerFact, struggle: LearnerFact) -> bool:
    return (
        strength.category == struggle.category
        and strength.last_confirmed > struggle.last_confirmed
        and strength.observation_count >= struggle.observation_count
    )


class FactReconciler:
    """Coarse "learner has improved" pass over one user's active facts."""

    def __init__(self, fact_store: FactStore):
        self.fact_store = fact_store

    async def reconcile(self, user_id: str) -> List[LearnerFact]:
        """
        Deactivate superseded struggles for a user.

        Returns:
            The struggle facts that were deactivated, each at most once
        """
        struggles = await self.fact_store.find_active_facts(user_id, FactType.STRUGGLE)
        strengths = await self.fact_store.find_active_facts(user_id, FactType.STRENGTH)
        if not struggles or not strengths:
            return []

        deactivated: List[LearnerFact] = []
        for struggle in struggles:
            if not any(supersedes(strength, struggle) for strength in strengths):
                continue
            if await self.fact_store.deactivate_fact(struggle.id):
                struggle.is_active = False
                deactivated.append(struggle)
                logger.info(f"🎓 [FactReconciler] Deactivated struggle '{struggle.fact_text}' - learner improved")

        if deactivated:
            logger.info(f"✅ [FactReconciler] {len(deactivated)} struggles retired for user {user_id[:20]}...")
        return deactivated
