"""
Fraud Engine

Wires the components around one key-value store:
- FingerprintRegistry: payment and device identities, sharing, blacklist
- UsageLedger: append-only usage log
- RuleRepository + RuleEngine: rule storage and evaluation
- RiskAggregator: assessments, history, reviews
- PatternDetector: batch card risk patterns

The engine is an explicit instance; callers (the API lifespan, jobs,
tests) create one, start() it and close() it.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from .config import Settings, get_settings
from .detection import PatternDetector
from .fingerprints import FingerprintRegistry
from .ledger import UsageLedger
from .policy import (
    FraudRule,
    GeoIpProvider,
    IpAccountIndex,
    RuleCreate,
    RuleEngine,
    RuleRepository,
    RuleUpdate,
)
from .schemas import (
    BlacklistEntry,
    CardRiskPattern,
    FraudAssessment,
    RequestContext,
    ReviewOutcome,
    RiskFactorFlags,
    RulePerformanceReport,
    SharingInfo,
    UsageOutcome,
    UsageRecord,
)
from .scoring import RiskAggregator
from .storage import KeyValueStore, build_store

logger = logging.getLogger("fraud_engine.engine")


class FraudEngine:
    """Facade over every engine component sharing one store."""

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        settings: Optional[Settings] = None,
        geo_provider: Optional[GeoIpProvider] = None,
        rules_path: Optional[Union[str, Path]] = None,
    ):
        """
        Initialize engine.

        Args:
            store: Key-value store (default: backend selected by settings)
            settings: Engine settings (default: cached environment settings)
            geo_provider: VPN/country lookups (default: static prefix table)
            rules_path: YAML rule file loaded on start (default: settings.rules_path)
        """
        self.settings = settings or get_settings()
        self.store = store or build_store(self.settings)
        self.rules_path = rules_path or self.settings.rules_path

        self.registry = FingerprintRegistry(self.store, self.settings)
        self.ledger = UsageLedger(self.store, self.registry, self.settings)
        self.ip_index = IpAccountIndex(self.store, self.settings)
        self.rules = RuleRepository(self.store, self.settings)
        self.rule_engine = RuleEngine(self.registry, self.ledger, self.ip_index, geo_provider)
        self.aggregator = RiskAggregator(
            self.registry, self.rules, self.rule_engine, self.store, self.settings
        )
        self.patterns = PatternDetector(self.registry, self.ledger, self.store, self.settings)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Initialize the store and load the rule set."""
        await self.store.initialize()

        if self.rules_path:
            await self.rules.load_from_yaml(self.rules_path)
        if not await self.rules.list_rules():
            await self.rules.load_defaults()

        active = await self.rules.active_rules()
        logger.info(
            "Fraud engine started (store: %s, active rules: %d)",
            self.store.backend, len(active),
        )

    async def close(self) -> None:
        await self.store.close()
        logger.info("Fraud engine closed")

    async def health_check(self) -> bool:
        return await self.store.health_check()

    # =========================================================================
    # Assessment
    # =========================================================================

    async def assess(self, user_id: str, context: RequestContext) -> FraudAssessment:
        return await self.aggregator.assess(user_id, context)

    async def get_assessment(self, assessment_id: str) -> FraudAssessment:
        return await self.aggregator.get_assessment(assessment_id)

    async def get_assessment_history(
        self,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[FraudAssessment]:
        return await self.aggregator.get_assessment_history(user_id, limit)

    async def record_review_outcome(
        self,
        assessment_id: str,
        was_true_positive: bool,
        reviewer: str = "system",
    ) -> ReviewOutcome:
        return await self.aggregator.record_review_outcome(assessment_id, was_true_positive, reviewer)

    async def rule_performance(self) -> RulePerformanceReport:
        return await self.aggregator.rule_performance()

    # =========================================================================
    # Fingerprints and Usage
    # =========================================================================

    async def check_sharing(self, fingerprint_id: str) -> SharingInfo:
        return await self.registry.check_sharing(fingerprint_id)

    async def is_blacklisted(self, fingerprint_id: str) -> bool:
        return await self.registry.is_blacklisted(fingerprint_id)

    async def blacklist(self, fingerprint_id: str, reason: str, actor: str = "system") -> bool:
        return await self.registry.blacklist(fingerprint_id, reason, actor)

    async def blacklist_entries(self, fingerprint_id: Optional[str] = None) -> list[BlacklistEntry]:
        return await self.registry.blacklist_entries(fingerprint_id)

    async def reset_risk(self, fingerprint_id: str, actor: str = "system"):
        return await self.registry.reset_risk(fingerprint_id, actor)

    async def record_usage(
        self,
        fingerprint_id: str,
        user_id: str,
        transaction_id: str,
        amount: int,
        outcome: UsageOutcome,
        flags: Optional[RiskFactorFlags] = None,
        currency: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        fraud_flags: Optional[list[str]] = None,
        timestamp: Optional[datetime] = None,
    ) -> UsageRecord:
        return await self.ledger.record(
            fingerprint_id,
            user_id,
            transaction_id,
            amount,
            outcome,
            flags=flags,
            currency=currency,
            ip=ip,
            user_agent=user_agent,
            fraud_flags=fraud_flags,
            timestamp=timestamp,
        )

    # =========================================================================
    # Rules
    # =========================================================================

    async def list_rules(self, active_only: bool = False) -> list[FraudRule]:
        return await self.rules.list_rules(active_only)

    async def get_rule(self, rule_id: str) -> FraudRule:
        return await self.rules.get_rule(rule_id)

    async def create_rule(self, data: RuleCreate, actor: str = "system") -> FraudRule:
        return await self.rules.create_rule(data, actor)

    async def update_rule(self, rule_id: str, update: RuleUpdate, actor: str = "system") -> FraudRule:
        return await self.rules.update_rule(rule_id, update, actor)

    async def delete_rule(self, rule_id: str) -> None:
        await self.rules.delete_rule(rule_id)

    # =========================================================================
    # Patterns and Retention
    # =========================================================================

    async def run_pattern_detection(self, now: Optional[datetime] = None) -> list[CardRiskPattern]:
        return await self.patterns.run(now)

    async def list_patterns(self, since: Optional[datetime] = None) -> list[CardRiskPattern]:
        return await self.patterns.list_patterns(since)

    async def purge_expired(self, now: Optional[datetime] = None) -> dict[str, int]:
        """
        Apply every retention window.

        Returns:
            Removed record counts by family
        """
        removed = {
            "usage": await self.ledger.purge_expired(now),
            "assessments": await self.aggregator.purge_expired(now),
            "patterns": await self.patterns.purge_expired(now),
        }
        logger.info("Retention purge complete: %s", removed)
        return removed
