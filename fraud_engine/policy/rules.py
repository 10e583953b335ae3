"""
Fraud Rule Definitions

Each rule belongs to one category, and its conditions are the
condition model of that category (a tagged union keyed by
"category"). Rules can be loaded from YAML files and edited through
the admin API without code deployment.

Categories:
- device: accounts sharing a device fingerprint
- payment: accounts sharing a payment instrument, failed payments, blacklist
- account: disposable or patterned emails, accounts per IP
- behavior: young accounts spending large amounts
- velocity: transaction counts per hour/day
- geographic: VPN/proxy exits, high-risk countries
"""

from datetime import datetime, UTC
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..schemas import Severity


def _utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class RuleCategory(str, Enum):
    """Rule categories; each selects one conditions model."""
    DEVICE = "device"
    PAYMENT = "payment"
    ACCOUNT = "account"
    BEHAVIOR = "behavior"
    VELOCITY = "velocity"
    GEOGRAPHIC = "geographic"


DEFAULT_DISPOSABLE_DOMAINS = [
    "10minutemail.com",
    "guerrillamail.com",
    "mailinator.com",
    "temp-mail.org",
    "tempmail.net",
    "throwaway.email",
]


# =============================================================================
# Conditions (one model per category)
# =============================================================================

class _Conditions(BaseModel):
    model_config = ConfigDict(extra="forbid")


class DeviceConditions(_Conditions):
    category: Literal["device"] = "device"
    max_accounts_per_device: Optional[int] = Field(
        default=None,
        ge=0,
        description="Distinct users allowed on one device fingerprint",
    )


class PaymentConditions(_Conditions):
    category: Literal["payment"] = "payment"
    max_accounts_per_payment_method: Optional[int] = Field(
        default=None,
        ge=0,
        description="Distinct users allowed on one payment instrument",
    )
    max_failed_payments_per_hour: Optional[int] = Field(
        default=None,
        ge=0,
        description="Failed or declined attempts by the user allowed in the last hour",
    )
    blacklisted_payment_method: bool = Field(
        default=False,
        description="Trigger when the presented instrument is blacklisted",
    )


class AccountConditions(_Conditions):
    category: Literal["account"] = "account"
    disposable_email: bool = Field(
        default=False,
        description="Trigger on disposable email domains",
    )
    disposable_domains: list[str] = Field(
        default_factory=lambda: list(DEFAULT_DISPOSABLE_DOMAINS),
        description="Domains treated as disposable",
    )
    max_accounts_per_ip: Optional[int] = Field(
        default=None,
        ge=0,
        description="Distinct users allowed from one IP address",
    )
    suspicious_email_pattern: bool = Field(
        default=False,
        description="Trigger on generated-looking email local parts",
    )


class BehaviorConditions(_Conditions):
    category: Literal["behavior"] = "behavior"
    min_account_age_hours: Optional[float] = Field(
        default=None,
        ge=0,
        description="Accounts younger than this are considered new",
    )
    max_transaction_amount: Optional[int] = Field(
        default=None,
        ge=0,
        description="Amount (minor units) above which new accounts are flagged",
    )


class VelocityConditions(_Conditions):
    category: Literal["velocity"] = "velocity"
    max_transactions_per_hour: Optional[int] = Field(
        default=None,
        ge=0,
        description="Transactions allowed in the trailing hour",
    )
    max_transactions_per_day: Optional[int] = Field(
        default=None,
        ge=0,
        description="Transactions allowed in the trailing 24 hours",
    )


class GeographicConditions(_Conditions):
    category: Literal["geographic"] = "geographic"
    vpn_detection: bool = Field(
        default=False,
        description="Trigger on VPN/proxy exit addresses",
    )
    high_risk_countries: list[str] = Field(
        default_factory=list,
        description="ISO country codes treated as high risk",
    )


RuleConditions = Annotated[
    Union[
        DeviceConditions,
        PaymentConditions,
        AccountConditions,
        BehaviorConditions,
        VelocityConditions,
        GeographicConditions,
    ],
    Field(discriminator="category"),
]


# =============================================================================
# Actions, Weights, Metadata
# =============================================================================

class RuleActions(BaseModel):
    """Independent action flags of a rule."""
    block_user: bool = False
    flag_for_review: bool = False
    require_verification: bool = False
    limit_transactions: bool = False
    block_bonuses: bool = False
    send_alert: bool = False

    def describe(self) -> list[str]:
        """Human-readable follow-up actions, in a fixed order."""
        labels = [
            (self.block_user, "Block user account"),
            (self.flag_for_review, "Flag for manual review"),
            (self.require_verification, "Require identity verification"),
            (self.limit_transactions, "Limit transaction amounts"),
            (self.block_bonuses, "Block bonus eligibility"),
            (self.send_alert, "Send fraud alert"),
        ]
        return [label for enabled, label in labels if enabled]


class RuleWeights(BaseModel):
    risk_multiplier: float = Field(
        default=1.0,
        gt=0.0,
        description="Scales the rule's risk contribution",
    )
    confidence_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Minimum confidence for the rule to trigger",
    )


class RuleMetadata(BaseModel):
    """
    Audit and effectiveness counters.

    trigger_count and last_triggered are best-effort analytics counters.
    True/false positive counts only change through review outcomes.
    """
    created_at: datetime = Field(default_factory=_utc_now)
    created_by: str = "system"
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    last_triggered: Optional[datetime] = None
    trigger_count: int = Field(default=0, ge=0)
    true_positive_count: int = Field(default=0, ge=0)
    false_positive_count: int = Field(default=0, ge=0)
    effectiveness: float = Field(default=0.0, ge=0.0, le=1.0)

    def record_review(self, was_true_positive: bool) -> None:
        if was_true_positive:
            self.true_positive_count += 1
        else:
            self.false_positive_count += 1
        reviewed = self.true_positive_count + self.false_positive_count
        self.effectiveness = self.true_positive_count / reviewed if reviewed else 0.0


# =============================================================================
# Rule
# =============================================================================

def _fill_category(data: Any) -> Any:
    """Let callers give the category once, on the rule or on its conditions."""
    if not isinstance(data, dict):
        return data
    conditions = data.get("conditions")
    category = data.get("category")
    if isinstance(conditions, dict):
        if category is not None and "category" not in conditions:
            data = {**data, "conditions": {**conditions, "category": getattr(category, "value", category)}}
        elif category is None and "category" in conditions:
            data = {**data, "category": conditions["category"]}
    return data


class FraudRule(BaseModel):
    """
    Single fraud rule definition.

    version is the optimistic concurrency counter maintained by the store.
    """
    id: str = Field(
        ...,
        description="Unique rule identifier",
    )
    name: str = Field(
        ...,
        description="Human-readable rule name",
    )
    description: str = Field(
        default="",
        description="What the rule detects",
    )
    category: RuleCategory
    is_active: bool = Field(
        default=True,
        description="Whether the rule is evaluated",
    )
    severity: Severity = Severity.MEDIUM
    conditions: RuleConditions
    actions: RuleActions = Field(default_factory=RuleActions)
    weights: RuleWeights = Field(default_factory=RuleWeights)
    metadata: RuleMetadata = Field(default_factory=RuleMetadata)
    version: int = Field(default=0, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _category_from_conditions(cls, data: Any) -> Any:
        return _fill_category(data)

    @model_validator(mode="after")
    def _category_matches_conditions(self) -> "FraudRule":
        if self.conditions.category != self.category.value:
            raise ValueError(
                f"conditions category '{self.conditions.category}' "
                f"does not match rule category '{self.category.value}'"
            )
        return self


class RuleCreate(BaseModel):
    """Request to create a rule. The id is generated when omitted."""
    id: Optional[str] = Field(
        default=None,
        pattern=r"^[a-zA-Z0-9_\-]+$",
    )
    name: str
    description: str = ""
    category: Optional[RuleCategory] = None
    is_active: bool = True
    severity: Severity = Severity.MEDIUM
    conditions: RuleConditions
    actions: RuleActions = Field(default_factory=RuleActions)
    weights: RuleWeights = Field(default_factory=RuleWeights)

    @model_validator(mode="before")
    @classmethod
    def _category_from_conditions(cls, data: Any) -> Any:
        return _fill_category(data)


class RuleUpdate(BaseModel):
    """Partial update of a rule; omitted fields keep their value."""
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    severity: Optional[Severity] = None
    conditions: Optional[RuleConditions] = None
    actions: Optional[RuleActions] = None
    weights: Optional[RuleWeights] = None


# =============================================================================
# Default rule set
# =============================================================================
# Used when no rules are stored and no rules file is configured.

DEFAULT_RULES: list[FraudRule] = [
    FraudRule(
        id="multiple_accounts_device",
        name="Multiple Accounts per Device",
        description="Detect when too many accounts are created from the same device",
        category=RuleCategory.DEVICE,
        severity=Severity.HIGH,
        conditions=DeviceConditions(max_accounts_per_device=3),
        actions=RuleActions(flag_for_review=True, block_bonuses=True),
        weights=RuleWeights(risk_multiplier=1.5, confidence_threshold=0.8),
    ),
    FraudRule(
        id="shared_payment_method",
        name="Shared Payment Method",
        description="Detect when payment methods are shared across multiple accounts",
        category=RuleCategory.PAYMENT,
        severity=Severity.CRITICAL,
        conditions=PaymentConditions(max_accounts_per_payment_method=2),
        actions=RuleActions(block_user=True, send_alert=True),
        weights=RuleWeights(risk_multiplier=2.0, confidence_threshold=0.9),
    ),
    FraudRule(
        id="rapid_transactions",
        name="Rapid Transaction Pattern",
        description="Detect unusually high transaction velocity",
        category=RuleCategory.VELOCITY,
        severity=Severity.MEDIUM,
        conditions=VelocityConditions(max_transactions_per_hour=5, max_transactions_per_day=20),
        actions=RuleActions(flag_for_review=True, limit_transactions=True),
        weights=RuleWeights(risk_multiplier=1.2, confidence_threshold=0.7),
    ),
    FraudRule(
        id="new_account_high_spend",
        name="New Account High Spending",
        description="Detect high spending on new accounts",
        category=RuleCategory.BEHAVIOR,
        severity=Severity.HIGH,
        conditions=BehaviorConditions(min_account_age_hours=24, max_transaction_amount=50000),
        actions=RuleActions(flag_for_review=True, require_verification=True),
        weights=RuleWeights(risk_multiplier=1.8, confidence_threshold=0.8),
    ),
    FraudRule(
        id="disposable_email",
        name="Disposable Email Detection",
        description="Detect accounts using temporary/disposable email addresses",
        category=RuleCategory.ACCOUNT,
        severity=Severity.MEDIUM,
        conditions=AccountConditions(disposable_email=True),
        actions=RuleActions(flag_for_review=True, block_bonuses=True, require_verification=True),
        weights=RuleWeights(risk_multiplier=1.3, confidence_threshold=0.9),
    ),
    FraudRule(
        id="vpn_detection",
        name="VPN/Proxy Detection",
        description="Detect users connecting through VPNs or proxies",
        category=RuleCategory.GEOGRAPHIC,
        severity=Severity.LOW,
        conditions=GeographicConditions(vpn_detection=True),
        actions=RuleActions(flag_for_review=True, require_verification=True),
        weights=RuleWeights(risk_multiplier=1.1, confidence_threshold=0.6),
    ),
    FraudRule(
        id="failed_payment_pattern",
        name="Failed Payment Pattern",
        description="Detect patterns of failed payments indicating card testing",
        category=RuleCategory.PAYMENT,
        severity=Severity.HIGH,
        conditions=PaymentConditions(max_failed_payments_per_hour=3),
        actions=RuleActions(block_user=True, send_alert=True),
        weights=RuleWeights(risk_multiplier=1.7, confidence_threshold=0.85),
    ),
]


def default_rules() -> list[FraudRule]:
    """Fresh copies of the default rule set."""
    return [
        rule.model_copy(update={"metadata": RuleMetadata()}, deep=True)
        for rule in DEFAULT_RULES
    ]
