"""
Quota Tracker

Per-user weekly message and token allowances. A window ends at the next
Sunday 00:00 UTC; the first read or write after that resets the counters
(atomically, in the store) before doing anything else.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from fusha_tutor_memory.clock import Clock, next_sunday, utc_now
from fusha_tutor_memory.errors import NotFound, QuotaExceeded
from fusha_tutor_memory.models import QuotaProfile, Tier, TIER_LIMITS
from fusha_tutor_memory.stores import LessonStore, QuotaStore

logger = logging.getLogger(__name__)

MESSAGE_LIMIT = "message_limit"
TOKEN_LIMIT = "token_limit"


@dataclass
class QuotaCheck:
    allowed: bool
    messages_remaining: int
    tokens_remaining: int
    reset_at: datetime
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "canSend": self.allowed,
            "messagesRemaining": self.messages_remaining,
            "tokensRemaining": self.tokens_remaining,
            "resetDate": self.reset_at.isoformat(),
        }
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass
class UsageIncrement:
    messages_remaining: int
    tokens_remaining: int

    def to_dict(self) -> Dict[str, Any]:
        return {"messagesRemaining": self.messages_remaining, "tokensRemaining": self.tokens_remaining}


@dataclass
class QuotaInfo:
    tier: Tier
    message_quota: int
    messages_used: int
    messages_remaining: int
    token_quota: int
    tokens_used: int
    tokens_remaining: int
    reset_at: datetime

    @classmethod
    def from_profile(cls, profile: QuotaProfile) -> "QuotaInfo":
        return cls(
            tier=profile.tier,
            message_quota=profile.message_quota,
            messages_used=profile.messages_used,
            messages_remaining=profile.messages_remaining,
            token_quota=profile.token_quota,
            tokens_used=profile.tokens_used,
            tokens_remaining=profile.tokens_remaining,
            reset_at=profile.reset_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "messageQuota": self.message_quota,
            "messagesUsed": self.messages_used,
            "messagesRemaining": self.messages_remaining,
            "tokenQuota": self.token_quota,
            "tokensUsed": self.tokens_used,
            "tokensRemaining": self.tokens_remaining,
            "resetDate": self.reset_at.isoformat(),
        }


class QuotaTracker:
    """Gatekeeper for conversational turns."""

    def __init__(
        self,
        quota_store: QuotaStore,
        lesson_store: Optional[LessonStore] = None,
        clock: Clock = utc_now,
    ):
        self.quota_store = quota_store
        self.lesson_store = lesson_store
        self.clock = clock

    async def get_or_create_profile(self, user_id: str) -> QuotaProfile:
        """Current profile, creating a student profile on first use."""
        profile = await self.quota_store.get_profile(user_id)
        if profile is None:
            profile = await self.quota_store.create_profile(
                QuotaProfile.for_tier(user_id, Tier.STUDENT, next_sunday(self.clock()))
            )
            logger.info(f"👤 [QuotaTracker] Created {profile.tier.value} profile for user {user_id[:20]}...")
        return profile

    async def _current_profile(self, user_id: str) -> QuotaProfile:
        profile = await self.get_or_create_profile(user_id)
        now = self.clock()
        if now >= profile.reset_at:
            refreshed = await self.quota_store.reset_if_due(user_id, now, next_sunday(now))
            if refreshed is None:
                raise NotFound(f"Quota profile vanished for user {user_id}")
            logger.info(f"🔄 [QuotaTracker] Weekly window rolled over for user {user_id[:20]}...")
            profile = refreshed
        return profile

    async def can_send(self, user_id: str) -> QuotaCheck:
        profile = await self._current_profile(user_id)
        reason = None
        if profile.messages_remaining <= 0:
            reason = MESSAGE_LIMIT
        elif profile.tokens_remaining <= 0:
            reason = TOKEN_LIMIT
        if reason:
            logger.info(f"⛔ [QuotaTracker] User {user_id[:20]}... blocked ({reason})")
        return QuotaCheck(
            allowed=reason is None,
            reason=reason,
            messages_remaining=profile.messages_remaining,
            tokens_remaining=profile.tokens_remaining,
            reset_at=profile.reset_at,
        )

    async def ensure_can_send(self, user_id: str) -> QuotaCheck:
        """
        Raises:
            QuotaExceeded: the user has no messages or tokens left this window
        """
        check = await self.can_send(user_id)
        if not check.allowed:
            raise QuotaExceeded(check)
        return check

    async def increment_usage(
        self,
        user_id: str,
        lesson_id: Optional[str],
        tokens: int,
        increment_message: bool = True,
    ) -> UsageIncrement:
        """
        Record one turn's usage against the user's window and the lesson.

        The reset-if-due check and the increment run as one store operation.
        """
        if tokens < 0:
            raise ValueError("tokens must be non-negative")
        await self.get_or_create_profile(user_id)
        now = self.clock()
        messages = 1 if increment_message else 0
        profile = await self.quota_store.increment_usage(user_id, messages, tokens, now, next_sunday(now))
        if profile is None:
            raise NotFound(f"No quota profile for user {user_id}")

        if lesson_id and self.lesson_store is not None:
            await self.lesson_store.increment_usage(lesson_id, messages, tokens)

        logger.debug(
            f"📊 [QuotaTracker] User {user_id[:20]}...: {profile.messages_used}/{profile.message_quota} messages, "
            f"{profile.tokens_used}/{profile.token_quota} tokens"
        )
        return UsageIncrement(messages_remaining=profile.messages_remaining, tokens_remaining=profile.tokens_remaining)

    async def get_quota_info(self, user_id: str) -> QuotaInfo:
        return QuotaInfo.from_profile(await self._current_profile(user_id))

    async def update_tier(self, user_id: str, tier: Tier) -> QuotaInfo:
        """Switch plans; quotas follow the tier table and usage is kept."""
        await self.get_or_create_profile(user_id)
        messages, tokens = TIER_LIMITS[tier]
        profile = await self.quota_store.update_tier(user_id, tier, messages, tokens)
        if profile is None:
            raise NotFound(f"No quota profile for user {user_id}")
        logger.info(f"⭐ [QuotaTracker] User {user_id[:20]}... moved to {tier.value}")
        return QuotaInfo.from_profile(profile)

    async def reset_expired(self) -> int:
        """Scheduled sweep: reset every profile whose window has ended."""
        now = self.clock()
        count = await self.quota_store.reset_expired(now, next_sunday(now))
        logger.info(f"🔄 [QuotaTracker] Weekly reset sweep: {count} profiles reset")
        return count

    async def pending_reset_count(self) -> int:
        return await self.quota_store.count_expired(self.clock())
