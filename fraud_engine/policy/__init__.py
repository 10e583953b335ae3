# Fraud Rules Module
from .engine import RuleEngine, ResolvedIdentities, ConditionResult
from .geo import GeoIpProvider, StaticPatternGeoIpProvider
from .ip_index import IpAccountIndex
from .repository import RuleRepository, validate_rule
from .rules import (
    FraudRule,
    RuleCategory,
    RuleConditions,
    DeviceConditions,
    PaymentConditions,
    AccountConditions,
    BehaviorConditions,
    VelocityConditions,
    GeographicConditions,
    RuleActions,
    RuleWeights,
    RuleMetadata,
    RuleCreate,
    RuleUpdate,
    DEFAULT_RULES,
    default_rules,
)

__all__ = [
    "RuleEngine",
    "ResolvedIdentities",
    "ConditionResult",
    "GeoIpProvider",
    "StaticPatternGeoIpProvider",
    "IpAccountIndex",
    "RuleRepository",
    "validate_rule",
    "FraudRule",
    "RuleCategory",
    "RuleConditions",
    "DeviceConditions",
    "PaymentConditions",
    "AccountConditions",
    "BehaviorConditions",
    "VelocityConditions",
    "GeographicConditions",
    "RuleActions",
    "RuleWeights",
    "RuleMetadata",
    "RuleCreate",
    "RuleUpdate",
    "DEFAULT_RULES",
    "default_rules",
]
