"""
Card Risk Pattern Detection

Batch detection of abuse spanning many users or many attempts, run
over the fingerprint registry and the usage ledger:
1. multi_user: payment cards shared among 3 or more users
2. velocity: cards used more than 5 times in the trailing hour
3. card_testing: cards with more than 3 failed or declined attempts
   among their latest 100 records

Each check runs independently and yields at most one pattern per run.
Patterns are additive: a later run stores new patterns and never
retracts earlier ones.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from typing import Optional
from uuid import uuid4

from ..config import Settings
from ..fingerprints import FingerprintRegistry
from ..ledger import UsageLedger
from ..metrics import metrics
from ..schemas import CardRiskPattern, PatternType, Severity
from ..storage import KeyValueStore, pattern_key

logger = logging.getLogger("fraud_engine.detection")

PATTERN_INDEX = "pattern_index:all"


def _to_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


@dataclass
class PatternMatch:
    """Fingerprints and users caught by one check in one run."""
    fingerprints: list[str] = field(default_factory=list)
    users: set[str] = field(default_factory=set)
    escalate: bool = False

    def add(self, fingerprint_id: str, users) -> None:
        self.fingerprints.append(fingerprint_id)
        self.users.update(users)


class PatternCheck(ABC):
    """
    Base class for pattern checks.

    Subclasses look for one pattern type and describe what they found.
    """

    pattern_type: PatternType
    severity: Severity
    confidence: float

    @abstractmethod
    async def scan(self, now: datetime) -> PatternMatch:
        """Collect matching fingerprints."""
        pass

    @abstractmethod
    def describe(self, match: PatternMatch) -> str:
        pass

    def severity_of(self, match: PatternMatch) -> Severity:
        return self.severity

    async def detect(self, now: datetime) -> Optional[CardRiskPattern]:
        """Run the check; returns None when nothing matched."""
        match = await self.scan(now)
        if not match.fingerprints:
            return None

        return CardRiskPattern(
            pattern_id=f"pattern_{self.pattern_type.value}_{uuid4().hex[:12]}",
            pattern_type=self.pattern_type,
            severity=self.severity_of(match),
            description=self.describe(match),
            detected_at=now,
            affected_fingerprints=sorted(match.fingerprints),
            affected_users=sorted(match.users),
            confidence=self.confidence,
        )


class MultiUserCheck(PatternCheck):
    """Payment cards shared among several users."""

    pattern_type = PatternType.MULTI_USER
    severity = Severity.MEDIUM
    confidence = 0.85

    def __init__(self, registry: FingerprintRegistry, min_users: int = 3, high_users: int = 5):
        self.registry = registry
        self.min_users = min_users
        self.high_users = high_users

    async def scan(self, now: datetime) -> PatternMatch:
        match = PatternMatch()
        for fingerprint in await self.registry.list_payment():
            if fingerprint.user_count >= self.min_users:
                match.add(fingerprint.id, fingerprint.associated_user_ids)
                if fingerprint.user_count >= self.high_users:
                    match.escalate = True
        return match

    def severity_of(self, match: PatternMatch) -> Severity:
        return Severity.HIGH if match.escalate else Severity.MEDIUM

    def describe(self, match: PatternMatch) -> str:
        return f"{len(match.fingerprints)} payment cards shared among multiple users"


class VelocityCheck(PatternCheck):
    """Cards with too many uses in the trailing window."""

    pattern_type = PatternType.VELOCITY
    severity = Severity.HIGH
    confidence = 0.90

    def __init__(self, ledger: UsageLedger, max_uses: int = 5, window_minutes: int = 60):
        self.ledger = ledger
        self.max_uses = max_uses
        self.window_minutes = window_minutes

    async def scan(self, now: datetime) -> PatternMatch:
        match = PatternMatch()
        for fingerprint_id in await self.ledger.active_fingerprints(self.window_minutes, now=now):
            records = await self.ledger.recent(fingerprint_id, self.window_minutes, now=now)
            if len(records) > self.max_uses:
                match.add(fingerprint_id, {record.user_id for record in records})
        return match

    def describe(self, match: PatternMatch) -> str:
        return f"{len(match.fingerprints)} cards with high transaction velocity"


class CardTestingCheck(PatternCheck):
    """Cards with repeated failed or declined attempts."""

    pattern_type = PatternType.CARD_TESTING
    severity = Severity.MEDIUM
    confidence = 0.75

    def __init__(
        self,
        registry: FingerprintRegistry,
        ledger: UsageLedger,
        max_failures: int = 3,
        lookback: int = 100,
    ):
        self.registry = registry
        self.ledger = ledger
        self.max_failures = max_failures
        self.lookback = lookback

    async def scan(self, now: datetime) -> PatternMatch:
        match = PatternMatch()
        for fingerprint in await self.registry.list_payment():
            records = await self.ledger.latest(fingerprint.id, self.lookback)
            failures = [record for record in records if record.outcome.is_failure]
            if len(failures) > self.max_failures:
                match.add(fingerprint.id, {record.user_id for record in failures})
        return match

    def describe(self, match: PatternMatch) -> str:
        return f"{len(match.fingerprints)} cards with multiple failed transactions"


class PatternDetector:
    """
    Runs the pattern checks and stores what they find.

    Patterns live under patterns:{id} with a time index for listing and
    retention.
    """

    def __init__(
        self,
        registry: FingerprintRegistry,
        ledger: UsageLedger,
        store: KeyValueStore,
        settings: Settings,
        checks: Optional[list[PatternCheck]] = None,
    ):
        """
        Initialize pattern detector.

        Args:
            registry: Fingerprint registry
            ledger: Usage ledger
            store: Backing key-value store for patterns
            settings: Engine settings (pattern retention)
            checks: Pattern checks to run (default: multi_user, velocity, card_testing)
        """
        self.registry = registry
        self.ledger = ledger
        self.store = store
        self.settings = settings
        self.checks = checks or [
            MultiUserCheck(registry),
            VelocityCheck(ledger),
            CardTestingCheck(registry, ledger),
        ]

    async def run(self, now: Optional[datetime] = None) -> list[CardRiskPattern]:
        """
        Run every check once and store the detected patterns.

        Returns:
            Patterns detected in this run (at most one per check)
        """
        now = now or datetime.now(UTC)
        results = await asyncio.gather(*(check.detect(now) for check in self.checks))
        patterns = [pattern for pattern in results if pattern is not None]

        for pattern in patterns:
            await self.store.put(pattern_key(pattern.pattern_id), pattern.model_dump(mode="json"))
            await self.store.index_add(PATTERN_INDEX, pattern.pattern_id, _to_ms(pattern.detected_at))
            metrics.patterns_detected.labels(pattern_type=pattern.pattern_type.value).inc()
            logger.info(
                "Detected %s pattern (%s): %s",
                pattern.pattern_type.value, pattern.severity.value, pattern.description,
            )

        return patterns

    async def list_patterns(
        self,
        since: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> list[CardRiskPattern]:
        """Stored patterns detected at or after since, newest first."""
        now = now or datetime.now(UTC)
        min_score = _to_ms(since) if since else 0
        ids = await self.store.index_range(PATTERN_INDEX, min_score, _to_ms(now))
        rows = await self.store.get_many([pattern_key(i) for i in reversed(ids)])
        return [CardRiskPattern.model_validate(row) for row in rows]

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """
        Drop patterns older than the retention window.

        Returns:
            Number of patterns removed
        """
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(days=self.settings.pattern_retention_days)

        expired = await self.store.index_remove_below(PATTERN_INDEX, _to_ms(cutoff))
        removed = 0
        for pattern_id in expired:
            if await self.store.delete(pattern_key(pattern_id)):
                removed += 1

        if removed:
            logger.info(
                "Purged %d patterns older than %d days",
                removed, self.settings.pattern_retention_days,
            )
        return removed
