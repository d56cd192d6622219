"""
Supabase-backed stores.

The supabase-py client is synchronous, so every ``execute()`` runs in a worker
thread. Counter updates and reset-if-due go through the SQL functions in
``supabase/migrations`` so they happen in a single statement.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from fusha_tutor_memory.clock import parse_timestamp
from fusha_tutor_memory.errors import DuplicateFact, StoreUnavailable
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

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"

OBSERVATION_TABLES = {
    ObservationKind.GRAMMAR_CHECK: "grammar_observations",
    ObservationKind.TRANSLATION_CHECK: "translation_observations",
    ObservationKind.FREEFORM_ERROR: "freeform_errors",
}


def _single(data) -> Optional[Dict[str, Any]]:
    """RPCs return either one object or a one-row list depending on the signature."""
    if isinstance(data, list):
        return data[0] if data else None
    return data or None


class SupabaseStore:
    """Shared plumbing: run a query off the event loop and surface failures."""

    def __init__(self, supabase_client):
        self.supabase = supabase_client
        self.name = type(self).__name__

    async def _execute(self, operation: str, query, conflict_error=None):
        try:
            return await asyncio.to_thread(query.execute)
        except Exception as e:
            if conflict_error is not None and getattr(e, "code", None) == UNIQUE_VIOLATION:
                raise conflict_error(str(e)) from e
            logger.error(f"❌ [{self.name}] {operation} failed: {e}", exc_info=True)
            raise StoreUnavailable(operation, e) from e


class SupabaseObservationStore(SupabaseStore, ObservationStore):

    @staticmethod
    def observation_to_row(observation: Observation) -> Dict[str, Any]:
        row = {
            "session_id": observation.session_id,
            "user_id": observation.user_id,
            "created_at": observation.created_at.isoformat(),
        }
        if observation.kind is ObservationKind.FREEFORM_ERROR:
            row.update({
                "error_type": observation.error_type or "",
                "student_said": observation.student_answer,
                "correction": observation.correct_answer,
                "context": observation.context or "",
            })
            return row
        row.update({
            "word_id": observation.word_id,
            "student_answer": observation.student_answer,
            "correct_answer": observation.correct_answer,
            "is_correct": observation.is_correct,
        })
        if observation.kind is ObservationKind.GRAMMAR_CHECK:
            row["grammar_feature"] = observation.feature
        return row

    @staticmethod
    def row_to_observation(kind: ObservationKind, row: Dict[str, Any]) -> Observation:
        if kind is ObservationKind.FREEFORM_ERROR:
            return Observation(
                kind=kind,
                id=row.get("id"),
                session_id=row["session_id"],
                user_id=row.get("user_id"),
                student_answer=row.get("student_said") or "",
                correct_answer=row.get("correction") or "",
                is_correct=False,
                error_type=row.get("error_type") or "",
                context=row.get("context") or "",
                created_at=parse_timestamp(row["created_at"]),
            )
        return Observation(
            kind=kind,
            id=row.get("id"),
            session_id=row["session_id"],
            user_id=row.get("user_id"),
            word_id=row.get("word_id"),
            feature=(row.get("grammar_feature") or "general") if kind is ObservationKind.GRAMMAR_CHECK else None,
            student_answer=row.get("student_answer") or "",
            correct_answer=row.get("correct_answer") or "",
            is_correct=bool(row.get("is_correct")),
            created_at=parse_timestamp(row["created_at"]),
        )

    async def append(self, observations: Sequence[Observation]) -> int:
        if not observations:
            return 0
        by_table: Dict[str, List[Dict[str, Any]]] = {}
        for observation in observations:
            by_table.setdefault(OBSERVATION_TABLES[observation.kind], []).append(self.observation_to_row(observation))

        for table, rows in by_table.items():
            await self._execute(f"insert {table}", self.supabase.table(table).insert(rows))
            logger.info(f"💾 [{self.name}] Stored {len(rows)} rows in {table}")
        return len(observations)

    async def append_signals(self, signals: Sequence[LearningSignal]) -> int:
        if not signals:
            return 0
        rows = [
            {
                "session_id": s.session_id,
                "user_id": s.user_id,
                "observation_type": s.signal_type,
                "skill_category": s.skill_category,
                "specific_skill": s.specific_skill,
                "observed_behavior": s.observed_behavior,
                "arabic_example": s.arabic_example,
                "created_at": s.created_at.isoformat(),
            }
            for s in signals
        ]
        await self._execute("insert learning_observations", self.supabase.table("learning_observations").insert(rows))
        logger.info(f"💾 [{self.name}] Stored {len(rows)} learning observations")
        return len(rows)

    async def fetch(
        self,
        kind: ObservationKind,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[Observation]:
        table = OBSERVATION_TABLES[kind]
        query = self.supabase.table(table).select("*")
        if session_id is not None:
            query = query.eq("session_id", session_id)
        if user_id is not None:
            query = query.eq("user_id", user_id)
        query = query.order("created_at").order("id")
        result = await self._execute(f"select {table}", query)
        return [self.row_to_observation(kind, row) for row in result.data or []]

    async def fetch_signals(self, session_id: str) -> List[LearningSignal]:
        query = self.supabase.table("learning_observations") \
            .select("*") \
            .eq("session_id", session_id) \
            .order("created_at") \
            .order("id")
        result = await self._execute("select learning_observations", query)
        return [
            LearningSignal(
                id=row.get("id"),
                session_id=row["session_id"],
                user_id=row.get("user_id"),
                signal_type=row["observation_type"],
                skill_category=row["skill_category"],
                specific_skill=row["specific_skill"],
                observed_behavior=row["observed_behavior"],
                arabic_example=row.get("arabic_example"),
                created_at=parse_timestamp(row["created_at"]),
            )
            for row in result.data or []
        ]

    async def find_session_user(self, session_id: str) -> Optional[str]:
        for kind in (ObservationKind.GRAMMAR_CHECK, ObservationKind.TRANSLATION_CHECK):
            table = OBSERVATION_TABLES[kind]
            query = self.supabase.table(table) \
                .select("user_id") \
                .eq("session_id", session_id) \
                .not_.is_("user_id", "null") \
                .limit(1)
            result = await self._execute(f"select {table}.user_id", query)
            if result.data:
                return result.data[0]["user_id"]
        return None


class SupabaseFactStore(SupabaseStore, FactStore):

    @staticmethod
    def row_to_fact(row: Dict[str, Any]) -> LearnerFact:
        return LearnerFact(
            id=row["id"],
            user_id=row["user_id"],
            fact_type=FactType(row["fact_type"]),
            fact_text=row["fact_text"],
            category=row.get("category") or "",
            fact_key=row.get("fact_key") or "",
            arabic_examples=list(row.get("arabic_examples") or []),
            observation_count=row.get("observation_count") or 0,
            success_count=row.get("success_count") or 0,
            first_observed=parse_timestamp(row["first_observed"]),
            last_confirmed=parse_timestamp(row["last_confirmed"]),
            is_active=bool(row.get("is_active")),
            source_lesson_id=row.get("source_lesson_id"),
        )

    async def find_active_facts(
        self,
        user_id: str,
        fact_type: Optional[FactType] = None,
        category: Optional[str] = None,
    ) -> List[LearnerFact]:
        query = self.supabase.table("learner_facts") \
            .select("*") \
            .eq("user_id", user_id) \
            .eq("is_active", True)
        if fact_type is not None:
            query = query.eq("fact_type", fact_type.value)
        if category is not None:
            query = query.eq("category", category)
        result = await self._execute("select learner_facts", query.order("first_observed"))
        return [self.row_to_fact(row) for row in result.data or []]

    async def find_counted_fact(
        self,
        user_id: str,
        fact_type: FactType,
        category: str,
        fact_key: str,
        lesson_id: str,
    ) -> Optional[LearnerFact]:
        query = self.supabase.table("learner_facts") \
            .select("*, fact_evidence!inner(lesson_id)") \
            .eq("user_id", user_id) \
            .eq("fact_type", fact_type.value) \
            .eq("category", category) \
            .eq("fact_key", fact_key) \
            .eq("fact_evidence.lesson_id", lesson_id) \
            .limit(1)
        result = await self._execute("select learner_facts by evidence", query)
        return self.row_to_fact(result.data[0]) if result.data else None

    async def insert_fact(self, fact: LearnerFact, lesson_id: str) -> LearnerFact:
        params = {
            "p_user_id": fact.user_id,
            "p_fact_type": fact.fact_type.value,
            "p_fact_text": fact.fact_text,
            "p_fact_key": fact.fact_key,
            "p_category": fact.category,
            "p_arabic_examples": list(fact.arabic_examples),
            "p_success_count": fact.success_count,
            "p_observed_at": fact.first_observed.isoformat(),
            "p_lesson_id": lesson_id,
        }
        result = await self._execute(
            "create_learner_fact",
            self.supabase.rpc("create_learner_fact", params),
            conflict_error=DuplicateFact,
        )
        row = _single(result.data)
        if row is None:
            raise StoreUnavailable("create_learner_fact")
        return self.row_to_fact(row)

    async def confirm_fact(
        self,
        fact_id: str,
        lesson_id: str,
        *,
        strength: bool,
        examples: Sequence[str],
        confirmed_at: datetime,
    ) -> Tuple[LearnerFact, bool]:
        params = {
            "p_fact_id": fact_id,
            "p_lesson_id": lesson_id,
            "p_is_strength": strength,
            "p_arabic_examples": list(examples),
            "p_confirmed_at": confirmed_at.isoformat(),
        }
        result = await self._execute("confirm_learner_fact", self.supabase.rpc("confirm_learner_fact", params))
        payload = _single(result.data)
        if payload is None or not payload.get("fact"):
            raise StoreUnavailable("confirm_learner_fact")
        return self.row_to_fact(payload["fact"]), bool(payload.get("applied"))

    async def deactivate_fact(self, fact_id: str) -> bool:
        query = self.supabase.table("learner_facts") \
            .update({"is_active": False}) \
            .eq("id", fact_id) \
            .eq("is_active", True)
        result = await self._execute("deactivate learner_fact", query)
        return bool(result.data)


class SupabaseLessonStore(SupabaseStore, LessonStore):

    @staticmethod
    def row_to_lesson(row: Dict[str, Any]) -> Lesson:
        return Lesson(
            id=row["id"],
            user_id=row.get("user_id"),
            started_at=parse_timestamp(row["started_at"]),
            ended_at=parse_timestamp(row["ended_at"]) if row.get("ended_at") else None,
            performance_summary=row.get("performance_summary"),
            messages_count=row.get("messages_count") or 0,
            tokens_used=row.get("tokens_used") or 0,
        )

    async def start_lesson(self, user_id: Optional[str], started_at: datetime, lesson_id: Optional[str] = None) -> Lesson:
        row = {"user_id": user_id, "started_at": started_at.isoformat()}
        if lesson_id:
            row["id"] = lesson_id
        result = await self._execute("insert lessons", self.supabase.table("lessons").insert(row))
        if not result.data:
            raise StoreUnavailable("insert lessons")
        lesson = self.row_to_lesson(result.data[0])
        logger.info(f"📘 [{self.name}] Started lesson {lesson.id}")
        return lesson

    async def get_lesson(self, lesson_id: str) -> Optional[Lesson]:
        query = self.supabase.table("lessons").select("*").eq("id", lesson_id).limit(1)
        result = await self._execute("select lessons", query)
        return self.row_to_lesson(result.data[0]) if result.data else None

    async def end_lesson(self, lesson_id: str, ended_at: datetime) -> Optional[Lesson]:
        query = self.supabase.table("lessons") \
            .update({"ended_at": ended_at.isoformat()}) \
            .eq("id", lesson_id) \
            .is_("ended_at", "null")
        await self._execute("end lesson", query)
        return await self.get_lesson(lesson_id)

    async def set_performance_summary(self, lesson_id: str, summary: str) -> None:
        query = self.supabase.table("lessons") \
            .update({"performance_summary": summary}) \
            .eq("id", lesson_id)
        await self._execute("update lessons.performance_summary", query)

    async def increment_usage(self, lesson_id: str, messages: int, tokens: int) -> None:
        params = {"p_lesson_id": lesson_id, "p_messages": messages, "p_tokens": tokens}
        await self._execute("increment_lesson_usage", self.supabase.rpc("increment_lesson_usage", params))


class SupabaseQuotaStore(SupabaseStore, QuotaStore):

    @staticmethod
    def row_to_profile(row: Dict[str, Any]) -> QuotaProfile:
        return QuotaProfile(
            user_id=row["id"],
            tier=Tier(row.get("subscription_tier") or Tier.STUDENT.value),
            message_quota=row["weekly_message_quota"],
            token_quota=row["weekly_token_quota"],
            messages_used=row.get("weekly_messages_used") or 0,
            tokens_used=row.get("weekly_tokens_used") or 0,
            reset_at=parse_timestamp(row["quota_reset_date"]),
        )

    async def get_profile(self, user_id: str) -> Optional[QuotaProfile]:
        query = self.supabase.table("profiles").select("*").eq("id", user_id).limit(1)
        result = await self._execute("select profiles", query)
        return self.row_to_profile(result.data[0]) if result.data else None

    async def create_profile(self, profile: QuotaProfile) -> QuotaProfile:
        row = {
            "id": profile.user_id,
            "subscription_tier": profile.tier.value,
            "weekly_message_quota": profile.message_quota,
            "weekly_messages_used": profile.messages_used,
            "weekly_token_quota": profile.token_quota,
            "weekly_tokens_used": profile.tokens_used,
            "quota_reset_date": profile.reset_at.isoformat(),
        }
        query = self.supabase.table("profiles").upsert(row, on_conflict="id", ignore_duplicates=True)
        await self._execute("upsert profiles", query)
        stored = await self.get_profile(profile.user_id)
        if stored is None:
            raise StoreUnavailable("upsert profiles")
        return stored

    async def reset_if_due(self, user_id: str, now: datetime, next_reset: datetime) -> Optional[QuotaProfile]:
        query = self.supabase.table("profiles") \
            .update({
                "weekly_messages_used": 0,
                "weekly_tokens_used": 0,
                "quota_reset_date": next_reset.isoformat(),
            }) \
            .eq("id", user_id) \
            .lte("quota_reset_date", now.isoformat())
        result = await self._execute("reset profile quota", query)
        if result.data:
            logger.info(f"🔄 [{self.name}] Reset weekly quota for user {user_id[:20]}...")
            return self.row_to_profile(result.data[0])
        return await self.get_profile(user_id)

    async def increment_usage(
        self,
        user_id: str,
        messages: int,
        tokens: int,
        now: datetime,
        next_reset: datetime,
    ) -> Optional[QuotaProfile]:
        params = {
            "p_user_id": user_id,
            "p_messages": messages,
            "p_tokens": tokens,
            "p_now": now.isoformat(),
            "p_next_reset": next_reset.isoformat(),
        }
        result = await self._execute("increment_quota_usage", self.supabase.rpc("increment_quota_usage", params))
        row = _single(result.data)
        return self.row_to_profile(row) if row and row.get("id") else None

    async def update_tier(self, user_id: str, tier: Tier, message_quota: int, token_quota: int) -> Optional[QuotaProfile]:
        query = self.supabase.table("profiles") \
            .update({
                "subscription_tier": tier.value,
                "weekly_message_quota": message_quota,
                "weekly_token_quota": token_quota,
            }) \
            .eq("id", user_id)
        result = await self._execute("update profiles.subscription_tier", query)
        return self.row_to_profile(result.data[0]) if result.data else None

    async def reset_expired(self, now: datetime, next_reset: datetime) -> int:
        params = {"p_now": now.isoformat(), "p_next_reset": next_reset.isoformat()}
        result = await self._execute("reset_weekly_quotas", self.supabase.rpc("reset_weekly_quotas", params))
        return int(result.data or 0)

    async def count_expired(self, now: datetime) -> int:
        query = self.supabase.table("profiles") \
            .select("id", count="exact") \
            .lte("quota_reset_date", now.isoformat())
        result = await self._execute("count expired profiles", query)
        return result.count or 0
