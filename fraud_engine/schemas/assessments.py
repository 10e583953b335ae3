"""
Assessment Schemas

Defines the request context submitted by registration, purchase and
bonus-claim flows, the per-rule evaluation result, and the final
assessment returned to the caller. Recommendations follow a hierarchy:
allow < review < block
"""

from datetime import datetime, UTC
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .fingerprints import DeviceSignals, PaymentSignals


def _utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class Recommendation(str, Enum):
    """
    Overall recommendation of an assessment.

    - allow: proceed
    - review: hold for manual review
    - block: refuse the operation
    """
    ALLOW = "allow"
    REVIEW = "review"
    BLOCK = "block"


class RecommendedAction(str, Enum):
    """Action recommended by a single triggered rule."""
    ALLOW = "allow"
    FLAG = "flag"
    BLOCK = "block"


class RequestContext(BaseModel):
    """
    Everything a caller knows about the user and the operation.

    All fields are optional; rules whose inputs are missing simply do
    not trigger.
    """
    email: Optional[str] = Field(
        default=None,
        description="Account email address",
    )
    ip: Optional[str] = Field(
        default=None,
        description="Client IP address",
    )
    user_agent: Optional[str] = Field(
        default=None,
        description="Client user agent",
    )
    device: Optional[DeviceSignals] = Field(
        default=None,
        description="Device signal bundle",
    )
    payment: Optional[PaymentSignals] = Field(
        default=None,
        description="Payment instrument signal bundle",
    )
    amount: Optional[int] = Field(
        default=None,
        ge=0,
        description="Transaction amount in minor currency units",
    )
    currency: Optional[str] = Field(
        default=None,
        description="ISO currency code of the amount",
    )
    account_age_hours: Optional[float] = Field(
        default=None,
        ge=0,
        description="Age of the account in hours",
    )


class RuleEvaluation(BaseModel):
    """
    Result of evaluating one rule against one request.

    risk_contribution is zero for rules that did not trigger.
    """
    rule_id: str
    rule_name: str = ""
    triggered: bool = False
    confidence: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
    )
    evidence: list[str] = Field(default_factory=list)
    reason: str = "Rule not triggered"
    risk_contribution: float = Field(
        default=0.0,
        ge=0.0,
    )
    recommended_action: RecommendedAction = RecommendedAction.ALLOW


class FraudAssessment(BaseModel):
    """
    Complete fraud assessment.

    Created once per request and never modified afterwards. Stored for
    audit and analytics.
    """
    model_config = ConfigDict(frozen=True)

    assessment_id: str
    user_id: str
    overall_risk_score: float = Field(
        ...,
        ge=0.0,
        le=100.0,
        description="Overall risk score (0-100)",
    )
    confidence: float = Field(
        ...,
        ge=0.0,
        le=1.0,
        description="Multiplier-weighted confidence of the triggered rules",
    )
    recommendation: Recommendation
    triggered_rules: list[RuleEvaluation] = Field(
        default_factory=list,
        description="Triggered rules, highest risk contribution first",
    )
    risk_factors: list[str] = Field(
        default_factory=list,
        description="Deduplicated evidence from the triggered rules",
    )
    suggested_actions: list[str] = Field(
        default_factory=list,
        description="Deduplicated follow-up actions from the triggered rules",
    )
    payment_fingerprint_id: Optional[str] = None
    device_fingerprint_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utc_now)


class ReviewOutcome(BaseModel):
    """Manual review verdict recorded against an assessment."""
    assessment_id: str
    was_true_positive: bool
    reviewer: str = "system"
    recorded_at: datetime = Field(default_factory=_utc_now)


class RuleStats(BaseModel):
    """Trigger and review statistics of one rule."""
    rule_id: str
    name: str
    category: str
    is_active: bool
    trigger_count: int = 0
    true_positive_count: int = 0
    false_positive_count: int = 0
    effectiveness: float = 0.0
    false_positive_rate: float = Field(
        default=0.0,
        description="False positives per trigger",
    )


class RulePerformanceReport(BaseModel):
    """Rule set performance over the stored assessments."""
    total_rules: int
    active_rules: int
    total_assessments: int
    avg_risk_score: float
    block_rate: float = Field(
        ...,
        description="Percentage of assessments recommending block",
    )
    review_rate: float = Field(
        ...,
        description="Percentage of assessments recommending review",
    )
    rules: list[RuleStats] = Field(default_factory=list)
