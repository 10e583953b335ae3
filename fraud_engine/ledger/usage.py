"""
Usage Ledger

Append-only log of fingerprint usage (transaction attempts and their
outcomes). Records get monotonic ids from a store counter, so appends
never read-modify-write shared state.

Time queries go through sorted indexes (ZSET semantics) scored by
timestamp in milliseconds, which keeps them proportional to the window
rather than to total history:
- usage_index:{fingerprint_id}: one fingerprint's records
- usage_user_index:{user_id}: one user's records
- usage_index:all: every record (pattern detection, retention purge)
"""

import asyncio
import logging
from datetime import datetime, timedelta, UTC
from typing import Optional

from ..config import Settings
from ..errors import FraudEngineError
from ..fingerprints import FingerprintRegistry
from ..metrics import metrics
from ..schemas import RiskFactorFlags, UsageOutcome, UsageRecord
from ..storage import KeyValueStore, usage_key

logger = logging.getLogger("fraud_engine.ledger")

GLOBAL_INDEX = "usage_index:all"

# Flag derivation thresholds
NEW_INSTRUMENT_AGE = timedelta(hours=24)
VELOCITY_FLAG_WINDOW_MINUTES = 60
VELOCITY_FLAG_MAX_USES = 3


def fingerprint_index(fingerprint_id: str) -> str:
    return f"usage_index:{fingerprint_id}"


def user_index(user_id: str) -> str:
    return f"usage_user_index:{user_id}"


def _to_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _fingerprint_of(key: str) -> str:
    """Fingerprint id from a usage:{fingerprint_id}:{seq} key."""
    return key.split(":", 1)[1].rsplit(":", 1)[0]


class UsageLedger:
    """
    Append-only usage log with windowed queries.

    Each record also feeds the registry: failed, declined and
    fraud-blocked attempts raise the fingerprint's risk score.
    """

    def __init__(
        self,
        store: KeyValueStore,
        registry: FingerprintRegistry,
        settings: Settings,
    ):
        """
        Initialize usage ledger.

        Args:
            store: Backing key-value store
            registry: Fingerprint registry updated with usage outcomes
            settings: Engine settings (currency default, retention)
        """
        self.store = store
        self.registry = registry
        self.settings = settings

    async def record(
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
        """
        Append a usage record.

        Args:
            fingerprint_id: Payment or device fingerprint used
            user_id: User attempting the transaction
            transaction_id: Caller's transaction id
            amount: Amount in minor currency units
            outcome: Result of the attempt
            flags: Risk factors; derived from ledger and registry state if None
            currency: ISO currency (default from settings)
            ip: Client IP
            user_agent: Client user agent
            fraud_flags: Fraud flags raised by the caller (+5 risk each)
            timestamp: Event time (default: now)

        Returns:
            The stored record
        """
        timestamp = timestamp or datetime.now(UTC)
        if flags is None:
            flags = await self._derive_flags(fingerprint_id, timestamp)

        sequence = await self.store.next_sequence("usage")
        record = UsageRecord(
            id=f"usage_{sequence}",
            sequence=sequence,
            fingerprint_id=fingerprint_id,
            user_id=user_id,
            transaction_id=transaction_id,
            amount=amount,
            currency=currency or self.settings.default_currency,
            timestamp=timestamp,
            outcome=outcome,
            flags=flags,
            fraud_flags=list(fraud_flags or []),
            ip=ip,
            user_agent=user_agent,
        )

        key = usage_key(fingerprint_id, sequence)
        score = record.timestamp_ms
        await self.store.put(key, record.model_dump(mode="json"))
        await asyncio.gather(
            self.store.index_add(fingerprint_index(fingerprint_id), key, score),
            self.store.index_add(user_index(user_id), key, score),
            self.store.index_add(GLOBAL_INDEX, key, score),
        )
        metrics.usage_records_total.labels(outcome=outcome.value).inc()

        try:
            await self.registry.apply_usage_outcome(
                fingerprint_id, outcome, len(record.fraud_flags)
            )
        except FraudEngineError as e:
            logger.warning("Risk update failed for usage %s: %s", record.id, e)
        return record

    async def _derive_flags(self, fingerprint_id: str, at: datetime) -> RiskFactorFlags:
        fingerprint = await self.registry.get(fingerprint_id)
        recent = await self.recent(fingerprint_id, VELOCITY_FLAG_WINDOW_MINUTES, now=at)

        return RiskFactorFlags(
            new_instrument=fingerprint is None or at - fingerprint.created_at < NEW_INSTRUMENT_AGE,
            multi_user=fingerprint is not None and fingerprint.user_count > 1,
            velocity_flag=len(recent) > VELOCITY_FLAG_MAX_USES,
        )

    # =========================================================================
    # Windowed Queries
    # =========================================================================

    async def _load(self, keys: list[str]) -> list[UsageRecord]:
        rows = await self.store.get_many(keys)
        records = [UsageRecord.model_validate(row) for row in rows]
        return sorted(records, key=lambda r: (r.timestamp, r.sequence))

    async def _window(
        self,
        index: str,
        window_minutes: float,
        now: Optional[datetime] = None,
    ) -> list[UsageRecord]:
        now = now or datetime.now(UTC)
        start = now - timedelta(minutes=window_minutes)
        keys = await self.store.index_range(index, _to_ms(start), _to_ms(now))
        return await self._load(keys)

    async def recent(
        self,
        fingerprint_id: str,
        window_minutes: float,
        now: Optional[datetime] = None,
    ) -> list[UsageRecord]:
        """Records for a fingerprint within the trailing window, oldest first."""
        return await self._window(fingerprint_index(fingerprint_id), window_minutes, now)

    async def recent_for_user(
        self,
        user_id: str,
        window_minutes: float,
        now: Optional[datetime] = None,
    ) -> list[UsageRecord]:
        """A user's records across all fingerprints within the trailing window."""
        return await self._window(user_index(user_id), window_minutes, now)

    async def latest(self, fingerprint_id: str, count: int) -> list[UsageRecord]:
        """The most recent count records for a fingerprint, oldest first."""
        keys = await self.store.index_tail(fingerprint_index(fingerprint_id), count)
        return await self._load(keys)

    async def active_fingerprints(
        self,
        window_minutes: float,
        now: Optional[datetime] = None,
    ) -> list[str]:
        """Fingerprint ids with at least one record in the window."""
        now = now or datetime.now(UTC)
        start = now - timedelta(minutes=window_minutes)
        keys = await self.store.index_range(GLOBAL_INDEX, _to_ms(start), _to_ms(now))
        return sorted({_fingerprint_of(key) for key in keys})

    # =========================================================================
    # Retention
    # =========================================================================

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """
        Drop records older than the retention window.

        Returns:
            Number of records removed
        """
        now = now or datetime.now(UTC)
        cutoff_ms = _to_ms(now - timedelta(days=self.settings.usage_retention_days))

        expired = await self.store.index_remove_below(GLOBAL_INDEX, cutoff_ms)
        if not expired:
            return 0

        rows = await self.store.get_many(expired)
        fingerprints = {_fingerprint_of(key) for key in expired}
        users = {row["user_id"] for row in rows}

        removed = 0
        for key in expired:
            if await self.store.delete(key):
                removed += 1

        for fingerprint_id in fingerprints:
            await self.store.index_remove_below(fingerprint_index(fingerprint_id), cutoff_ms)
        for user_id in users:
            await self.store.index_remove_below(user_index(user_id), cutoff_ms)

        logger.info("Purged %d usage records older than %d days", removed, self.settings.usage_retention_days)
        return removed
