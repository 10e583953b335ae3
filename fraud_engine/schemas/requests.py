"""
API Request Schemas

Bodies accepted by the HTTP endpoints. Engine-level types (contexts,
signals, rules) are reused as-is.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from .assessments import RequestContext
from .fingerprints import PaymentSignals
from .usage import UsageOutcome


class AssessmentRequest(BaseModel):
    """Request for a fraud assessment."""
    user_id: str = Field(
        ...,
        min_length=1,
        description="User being assessed",
    )
    context: RequestContext = Field(
        default_factory=RequestContext,
        description="Signals and attributes of the request",
    )


class UsageEvent(BaseModel):
    """
    A transaction attempt to append to the usage ledger.

    The fingerprint is given either by id or by the payment signals it
    was derived from.
    """
    user_id: str = Field(..., min_length=1)
    transaction_id: str = Field(..., min_length=1)
    amount: int = Field(
        ...,
        ge=0,
        description="Amount in minor currency units",
    )
    outcome: UsageOutcome
    fingerprint_id: Optional[str] = None
    payment: Optional[PaymentSignals] = None
    currency: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    fraud_flags: list[str] = Field(default_factory=list)
    timestamp: Optional[datetime] = None

    @model_validator(mode="after")
    def _fingerprint_given(self) -> "UsageEvent":
        if not self.fingerprint_id and self.payment is None:
            raise ValueError("either fingerprint_id or payment must be provided")
        return self


class BlacklistRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    actor: str = "system"


class ReviewRequest(BaseModel):
    """Manual review verdict of an assessment."""
    was_true_positive: bool
    reviewer: str = "system"
