"""
Wiring of stores and core components for the backend.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from fusha_tutor_memory.clock import Clock, utc_now
from fusha_tutor_memory.fact_extraction import ExtractionPolicy, FactExtractor
from fusha_tutor_memory.fact_matching import matcher_for
from fusha_tutor_memory.fact_reconciliation import FactReconciler
from fusha_tutor_memory.memory_store import (
    MemoryFactStore,
    MemoryLessonStore,
    MemoryObservationStore,
    MemoryQuotaStore,
)
from fusha_tutor_memory.protocol_decoder import ProtocolDecoder
from fusha_tutor_memory.quota_tracker import QuotaTracker
from fusha_tutor_memory.report_generator import ReportService
from fusha_tutor_memory.stores import FactStore, LessonStore, ObservationStore, QuotaStore
from fusha_tutor_memory.supabase_store import (
    SupabaseFactStore,
    SupabaseLessonStore,
    SupabaseObservationStore,
    SupabaseQuotaStore,
)

logger = logging.getLogger(__name__)


@dataclass
class TutorServices:
    observation_store: ObservationStore
    fact_store: FactStore
    lesson_store: LessonStore
    quota_store: QuotaStore
    decoder: ProtocolDecoder
    quota_tracker: QuotaTracker
    extractor: FactExtractor
    reconciler: FactReconciler
    reports: ReportService
    clock: Clock = utc_now


def build_services(
    supabase_client=None,
    matcher_name: Optional[str] = None,
    policy: Optional[ExtractionPolicy] = None,
    clock: Clock = utc_now,
) -> TutorServices:
    """
    Build every component over Supabase stores, or in-memory stores when no
    client is given.
    """
    if supabase_client is not None:
        observation_store = SupabaseObservationStore(supabase_client)
        fact_store = SupabaseFactStore(supabase_client)
        lesson_store = SupabaseLessonStore(supabase_client)
        quota_store = SupabaseQuotaStore(supabase_client)
    else:
        logger.warning("⚠️ [Services] Supabase not configured, using in-memory stores")
        observation_store = MemoryObservationStore()
        fact_store = MemoryFactStore()
        lesson_store = MemoryLessonStore()
        quota_store = MemoryQuotaStore()

    policy = policy or ExtractionPolicy()
    matcher = matcher_for(matcher_name, policy.match_prefix_length)
    logger.info(f"🧩 [Services] Fact matcher: {matcher.name}")

    return TutorServices(
        observation_store=observation_store,
        fact_store=fact_store,
        lesson_store=lesson_store,
        quota_store=quota_store,
        decoder=ProtocolDecoder(),
        quota_tracker=QuotaTracker(quota_store, lesson_store, clock=clock),
        extractor=FactExtractor(observation_store, fact_store, lesson_store, matcher=matcher, policy=policy, clock=clock),
        reconciler=FactReconciler(fact_store),
        reports=ReportService(observation_store, lesson_store, clock=clock),
        clock=clock,
    )
