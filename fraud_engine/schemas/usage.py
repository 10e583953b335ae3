"""
Usage Ledger Schemas

A usage record is one attempt to use a fingerprinted instrument or
device. Records are append-only and never mutated after insertion.
"""

from datetime import datetime, UTC
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def _utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class UsageOutcome(str, Enum):
    """Outcome of a transaction attempt."""
    SUCCESS = "success"
    FAILED = "failed"
    DECLINED = "declined"
    FRAUD_BLOCKED = "fraud_blocked"

    @property
    def is_failure(self) -> bool:
        """Failed and declined attempts count towards card-testing signals."""
        return self in (UsageOutcome.FAILED, UsageOutcome.DECLINED)


class RiskFactorFlags(BaseModel):
    """Risk factors observed at the time of the attempt."""
    new_instrument: bool = False
    multi_user: bool = False
    velocity_flag: bool = False
    geo_mismatch: bool = False
    device_mismatch: bool = False

    def count(self) -> int:
        """Number of raised flags."""
        return sum(1 for value in self.model_dump().values() if value)


class UsageRecord(BaseModel):
    """Single append-only ledger entry."""
    id: str = Field(
        ...,
        description="Record id (usage_{sequence})",
    )
    sequence: int = Field(
        ...,
        ge=1,
        description="Monotonic ledger sequence number",
    )
    fingerprint_id: str
    user_id: str
    transaction_id: str
    amount: int = Field(
        default=0,
        ge=0,
        description="Amount in minor currency units",
    )
    currency: str = Field(
        default="NOK",
        description="ISO currency code",
    )
    timestamp: datetime = Field(default_factory=_utc_now)
    outcome: UsageOutcome
    flags: RiskFactorFlags = Field(default_factory=RiskFactorFlags)
    fraud_flags: list[str] = Field(
        default_factory=list,
        description="Fraud flags raised by the caller for this attempt",
    )
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def timestamp_ms(self) -> int:
        """Timestamp as epoch milliseconds (index score)."""
        return int(self.timestamp.timestamp() * 1000)
