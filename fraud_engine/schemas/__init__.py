# Data schemas for the Fraud Engine
from .fingerprints import (
    FingerprintKind,
    CardBrand,
    RiskLevel,
    PaymentSignals,
    DeviceSignals,
    FingerprintRecord,
    PaymentFingerprint,
    DeviceFingerprint,
    SharingInfo,
    BlacklistEntry,
)
from .usage import UsageOutcome, RiskFactorFlags, UsageRecord
from .assessments import (
    Recommendation,
    RecommendedAction,
    RequestContext,
    RuleEvaluation,
    FraudAssessment,
    ReviewOutcome,
    RuleStats,
    RulePerformanceReport,
)
from .patterns import PatternType, Severity, CardRiskPattern
from .requests import AssessmentRequest, UsageEvent, BlacklistRequest, ReviewRequest

__all__ = [
    # Fingerprints
    "FingerprintKind",
    "CardBrand",
    "RiskLevel",
    "PaymentSignals",
    "DeviceSignals",
    "FingerprintRecord",
    "PaymentFingerprint",
    "DeviceFingerprint",
    "SharingInfo",
    "BlacklistEntry",
    # Usage
    "UsageOutcome",
    "RiskFactorFlags",
    "UsageRecord",
    # Assessments
    "Recommendation",
    "RecommendedAction",
    "RequestContext",
    "RuleEvaluation",
    "FraudAssessment",
    "ReviewOutcome",
    "RuleStats",
    "RulePerformanceReport",
    # Patterns
    "PatternType",
    "Severity",
    "CardRiskPattern",
    # Requests
    "AssessmentRequest",
    "UsageEvent",
    "BlacklistRequest",
    "ReviewRequest",
]
