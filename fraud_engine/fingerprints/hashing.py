"""
Signal Normalization and Hashing

Turns raw payment and device signals into deterministic,
privacy-preserving identifiers. Raw values never leave this module;
only HMAC-SHA256 digests keyed with FINGERPRINT_HASH_KEY do.

Normalization:
- Card number: digits only, 12-19 digits
- Expiry: MM/YY
- Cardholder name: casefolded, whitespace collapsed
- Device: ordered tuple of the signal fields, missing fields as ""
"""

import hashlib
import hmac
import json
import re
from typing import Optional

from ..errors import FingerprintingFailed
from ..schemas import CardBrand, DeviceSignals, PaymentSignals


_NON_DIGITS = re.compile(r"\D")

_BRAND_PATTERNS = (
    (re.compile(r"^4"), CardBrand.VISA),
    (re.compile(r"^(5[1-5]|2[2-7])"), CardBrand.MASTERCARD),
    (re.compile(r"^3[47]"), CardBrand.AMEX),
    (re.compile(r"^6"), CardBrand.DISCOVER),
)

BIN_LENGTH = 6


def hash_value(key: str, value: str) -> str:
    """Return a deterministic HMAC hash for identifiers."""
    return hmac.new(
        key.encode("utf-8"),
        value.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def normalize_card_number(card_number: str) -> str:
    """Strip formatting and validate the length of a card number."""
    digits = _NON_DIGITS.sub("", card_number or "")
    if not 12 <= len(digits) <= 19:
        raise FingerprintingFailed(
            f"card number must contain 12-19 digits, got {len(digits)}"
        )
    return digits


def normalize_expiry(month: str, year: str) -> str:
    """Return expiry as MM/YY."""
    month_digits = _NON_DIGITS.sub("", str(month or ""))
    year_digits = _NON_DIGITS.sub("", str(year or ""))

    if not month_digits or not 1 <= int(month_digits) <= 12:
        raise FingerprintingFailed(f"invalid expiry month: {month!r}")
    if len(year_digits) not in (2, 4):
        raise FingerprintingFailed(f"invalid expiry year: {year!r}")

    return f"{int(month_digits):02d}/{year_digits[-2:]}"


def normalize_name(name: Optional[str]) -> str:
    """Casefold and collapse whitespace."""
    return " ".join((name or "").casefold().split())


def card_brand(card_number: str) -> CardBrand:
    """Card brand class from the leading digits."""
    for pattern, brand in _BRAND_PATTERNS:
        if pattern.match(card_number):
            return brand
    return CardBrand.UNKNOWN


def payment_signal_tuple(signals: PaymentSignals) -> str:
    """Canonical string identifying a payment instrument."""
    digits = normalize_card_number(signals.card_number)
    expiry = normalize_expiry(signals.expiry_month, signals.expiry_year)
    return json.dumps([digits, expiry, normalize_name(signals.cardholder_name)])


def device_signal_tuple(signals: DeviceSignals) -> str:
    """Canonical string identifying a device."""
    user_agent = (signals.user_agent or "").strip()
    if not user_agent:
        raise FingerprintingFailed("device signals require a user agent")

    fields = [
        user_agent,
        signals.screen_resolution,
        signals.timezone,
        signals.language,
        signals.platform,
        signals.canvas_fingerprint,
        signals.webgl_fingerprint,
        signals.audio_fingerprint,
    ]
    return json.dumps([(value or "").strip() for value in fields])


class SignalHasher:
    """Computes fingerprint ids and attribute hashes with one secret key."""

    def __init__(self, key: str):
        if not key:
            raise FingerprintingFailed("fingerprint hash key is not configured")
        self._key = key

    def digest(self, value: str) -> str:
        return hash_value(self._key, value)

    def payment_id(self, signals: PaymentSignals) -> str:
        return self.digest(payment_signal_tuple(signals))

    def device_id(self, signals: DeviceSignals) -> str:
        return self.digest(device_signal_tuple(signals))

    def payment_attributes(self, signals: PaymentSignals) -> dict:
        """Coarse, non-reversible attributes stored alongside the id."""
        digits = normalize_card_number(signals.card_number)
        return {
            "card_brand": card_brand(digits),
            "bin_range_hash": self.digest(digits[:BIN_LENGTH]),
            "last_four_hash": self.digest(digits[-4:]),
        }

    def device_attributes(self, signals: DeviceSignals) -> dict:
        return {
            "user_agent_hash": self.digest(signals.user_agent.strip()),
            "platform": signals.platform,
            "timezone": signals.timezone,
        }
