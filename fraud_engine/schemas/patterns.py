"""
Risk Pattern Schemas

Patterns are produced by batch detection runs over the usage ledger
and the fingerprint registry. They are immutable; a newer run adds
new patterns instead of retracting older ones.
"""

from datetime import datetime, UTC
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def _utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class PatternType(str, Enum):
    """Classes of multi-entity abuse."""
    VELOCITY = "velocity"
    MULTI_USER = "multi_user"
    GEOGRAPHIC = "geographic"
    BEHAVIORAL = "behavioral"
    CARD_TESTING = "card_testing"


class Severity(str, Enum):
    """Severity shared by rules and patterns."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CardRiskPattern(BaseModel):
    """One detected pattern."""
    model_config = ConfigDict(frozen=True)

    pattern_id: str
    pattern_type: PatternType
    severity: Severity
    description: str
    detected_at: datetime = Field(default_factory=_utc_now)
    affected_fingerprints: list[str] = Field(default_factory=list)
    affected_users: list[str] = Field(default_factory=list)
    confidence: float = Field(
        ...,
        ge=0.0,
        le=1.0,
    )
