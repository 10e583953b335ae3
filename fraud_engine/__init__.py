"""
Fraud & Risk Assessment Engine

Rule-based fraud scoring combined with a fingerprint registry that
gives payment instruments and devices stable, privacy-preserving
identities.
"""

from .engine import FraudEngine

__version__ = "1.0.0"

__all__ = ["FraudEngine", "__version__"]
