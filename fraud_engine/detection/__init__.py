# Pattern Detection Module
from .patterns import (
    PatternDetector,
    PatternCheck,
    PatternMatch,
    MultiUserCheck,
    VelocityCheck,
    CardTestingCheck,
)

__all__ = [
    "PatternDetector",
    "PatternCheck",
    "PatternMatch",
    "MultiUserCheck",
    "VelocityCheck",
    "CardTestingCheck",
]
