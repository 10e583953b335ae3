# Fingerprint Registry Module
from .hashing import SignalHasher, card_brand, hash_value
from .registry import FingerprintRegistry, sharing_risk_level

__all__ = [
    "FingerprintRegistry",
    "SignalHasher",
    "card_brand",
    "hash_value",
    "sharing_risk_level",
]
