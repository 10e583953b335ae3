"""
Fingerprint Schemas

Defines the raw signal bundles submitted by callers and the
privacy-preserving identity records derived from them.

Only hashes and coarse attributes (card brand, platform) are ever
stored. The same signal tuple always maps to the same fingerprint id,
whichever user submits it, which is what exposes instrument and device
sharing across accounts.
"""

from datetime import datetime, UTC
from enum import Enum
from typing import ClassVar, Optional

from pydantic import BaseModel, Field, field_validator


def _utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class FingerprintKind(str, Enum):
    """Kinds of identities tracked by the registry."""
    PAYMENT = "payment"
    DEVICE = "device"


class CardBrand(str, Enum):
    """Card brand class derived from the leading digits."""
    VISA = "visa"
    MASTERCARD = "mastercard"
    AMEX = "amex"
    DISCOVER = "discover"
    UNKNOWN = "unknown"


class RiskLevel(str, Enum):
    """Sharing risk level reported by check_sharing."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# =============================================================================
# Raw signal bundles (never persisted)
# =============================================================================

class PaymentSignals(BaseModel):
    """
    Payment instrument signals as captured at checkout.

    Values are normalized and hashed by the registry; malformed values
    surface as FingerprintingFailed rather than validation errors so the
    engine decides how an unusable instrument is reported.
    """
    card_number: str = Field(
        ...,
        description="Primary account number, any formatting",
    )
    expiry_month: str = Field(
        ...,
        description="Expiry month (1-12)",
    )
    expiry_year: str = Field(
        ...,
        description="Expiry year (YY or YYYY)",
    )
    cardholder_name: str = Field(
        default="",
        description="Name printed on the card",
    )


class DeviceSignals(BaseModel):
    """
    Browser/device signals collected client-side.

    The canvas/webgl/audio fingerprints are opaque strings produced by
    the client; the registry only hashes them.
    """
    user_agent: str = Field(
        ...,
        description="User agent string",
    )
    screen_resolution: Optional[str] = Field(
        default=None,
        description="Screen resolution and color depth, e.g. 1920x1080x24",
    )
    timezone: Optional[str] = Field(
        default=None,
        description="IANA timezone name",
    )
    language: Optional[str] = Field(
        default=None,
        description="Browser language",
    )
    platform: Optional[str] = Field(
        default=None,
        description="Navigator platform",
    )
    canvas_fingerprint: Optional[str] = Field(
        default=None,
        description="Canvas rendering fingerprint",
    )
    webgl_fingerprint: Optional[str] = Field(
        default=None,
        description="WebGL vendor/renderer fingerprint",
    )
    audio_fingerprint: Optional[str] = Field(
        default=None,
        description="Audio stack fingerprint",
    )


# =============================================================================
# Identity records (persisted)
# =============================================================================

class FingerprintRecord(BaseModel):
    """
    Fields shared by payment and device fingerprints.

    risk_score only ever grows, except through an explicit admin reset.
    version is the optimistic concurrency counter maintained by the store.
    """
    kind: ClassVar[FingerprintKind]

    id: str = Field(
        ...,
        description="Deterministic fingerprint id (HMAC-SHA256 hex)",
    )
    created_at: datetime = Field(
        default_factory=_utc_now,
        description="First sighting",
    )
    last_used: datetime = Field(
        default_factory=_utc_now,
        description="Most recent sighting",
    )
    usage_count: int = Field(
        default=1,
        ge=0,
        description="Number of sightings",
    )
    associated_user_ids: list[str] = Field(
        default_factory=list,
        description="Distinct users that presented this fingerprint",
    )
    is_blacklisted: bool = Field(
        default=False,
        description="Blacklisted by an administrator",
    )
    risk_score: int = Field(
        default=0,
        ge=0,
        le=100,
        description="Running risk score (0-100)",
    )
    version: int = Field(
        default=0,
        ge=0,
        description="Record version for compare-and-set writes",
    )

    @field_validator("associated_user_ids")
    @classmethod
    def _unique_users(cls, v: list[str]) -> list[str]:
        return sorted(set(v))

    @property
    def user_count(self) -> int:
        """Number of distinct users associated with this fingerprint."""
        return len(self.associated_user_ids)

    def add_user(self, user_id: str) -> bool:
        """Associate a user; returns True if the association set grew."""
        if user_id in self.associated_user_ids:
            return False
        self.associated_user_ids = sorted({*self.associated_user_ids, user_id})
        return True

    def raise_risk(self, amount: int) -> None:
        """Increase the risk score, capped at 100."""
        self.risk_score = min(100, self.risk_score + max(0, amount))


class PaymentFingerprint(FingerprintRecord):
    """Identity of a payment instrument."""
    kind: ClassVar[FingerprintKind] = FingerprintKind.PAYMENT

    card_brand: CardBrand = Field(
        default=CardBrand.UNKNOWN,
        description="Card brand class",
    )
    bin_range_hash: str = Field(
        ...,
        description="HMAC of the 6-digit BIN",
    )
    last_four_hash: str = Field(
        ...,
        description="HMAC of the last four digits",
    )


class DeviceFingerprint(FingerprintRecord):
    """Identity of a browser/device."""
    kind: ClassVar[FingerprintKind] = FingerprintKind.DEVICE

    user_agent_hash: str = Field(
        ...,
        description="HMAC of the user agent string",
    )
    platform: Optional[str] = Field(
        default=None,
        description="Navigator platform (coarse, not identifying)",
    )
    timezone: Optional[str] = Field(
        default=None,
        description="Reported timezone",
    )

    @property
    def distinct_user_count(self) -> int:
        """How many distinct users were seen on this device."""
        return self.user_count


class SharingInfo(BaseModel):
    """Result of check_sharing. Unknown ids report zero users."""
    fingerprint_id: str
    is_shared: bool = False
    user_count: int = 0
    users: list[str] = Field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.LOW


class BlacklistEntry(BaseModel):
    """Audit record written for every blacklist call."""
    id: str
    fingerprint_id: str
    kind: FingerprintKind
    reason: str
    actor: str
    timestamp: datetime = Field(default_factory=_utc_now)
    affected_users: list[str] = Field(default_factory=list)
