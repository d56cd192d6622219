"""
Learner-memory core for a Fusha (Quranic Arabic) tutor.

Decodes the tutor's inline grading protocol, turns lesson observations into
durable learner facts, builds lesson reports and meters weekly usage.
"""

from fusha_tutor_memory.errors import (
    DuplicateFact,
    NotFound,
    QuotaExceeded,
    StoreUnavailable,
    TutorMemoryError,
)
from fusha_tutor_memory.models import (
    CandidateFact,
    DecodeResult,
    DecodeSkip,
    FactType,
    LearnerFact,
    LearningSignal,
    Lesson,
    LessonAnalysis,
    Observation,
    ObservationKind,
    QuotaProfile,
    Tier,
    TIER_LIMITS,
)
from fusha_tutor_memory.protocol_decoder import ProtocolDecoder, StreamingDecoder, decode
from fusha_tutor_memory.fact_extraction import ExtractionPolicy, FactExtractor
from fusha_tutor_memory.fact_matching import FeatureKeyMatcher, PrefixMatcher, matcher_for
from fusha_tutor_memory.fact_reconciliation import FactReconciler
from fusha_tutor_memory.learner_context import LearnerFacts, ReviewTargets, load_learner_facts, load_review_targets
from fusha_tutor_memory.report_generator import LearningReport, ReportService, generate_report, get_motivational_message
from fusha_tutor_memory.quota_tracker import QuotaCheck, QuotaInfo, QuotaTracker, UsageIncrement
from fusha_tutor_memory.quota_sweep import QuotaSweep
from fusha_tutor_memory.tutor_turn import TurnOutcome, TutorTurn

__all__ = [
    "CandidateFact",
    "DecodeResult",
    "DecodeSkip",
    "DuplicateFact",
    "ExtractionPolicy",
    "FactExtractor",
    "FactReconciler",
    "FactType",
    "FeatureKeyMatcher",
    "LearnerFact",
    "LearnerFacts",
    "LearningReport",
    "LearningSignal",
    "Lesson",
    "LessonAnalysis",
    "NotFound",
    "Observation",
    "ObservationKind",
    "PrefixMatcher",
    "ProtocolDecoder",
    "QuotaCheck",
    "QuotaExceeded",
    "QuotaInfo",
    "QuotaProfile",
    "QuotaSweep",
    "QuotaTracker",
    "ReportService",
    "ReviewTargets",
    "StoreUnavailable",
    "StreamingDecoder",
    "TIER_LIMITS",
    "Tier",
    "TurnOutcome",
    "TutorMemoryError",
    "TutorTurn",
    "UsageIncrement",
    "decode",
    "generate_report",
    "get_motivational_message",
    "load_learner_facts",
    "load_review_targets",
    "matcher_for",
]
