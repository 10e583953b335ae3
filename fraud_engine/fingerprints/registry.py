"""
Fingerprint Registry

Gives payment instruments and devices stable identities and tracks
which users present them. Sharing detection emerges from one rule:
every sighting of a fingerprint associated with more than one user
raises its risk score by a fixed penalty.

Consistency:
- Writers of one fingerprint are serialized in-process by a per-id lock
- Every write is a compare-and-set on the record version, retried on
  conflict so writers in other processes never lose updates (bounded by
  CAS_MAX_RETRIES, then ConcurrentModification)
- Writers of different fingerprints never share a lock
"""

import logging
from datetime import datetime, UTC
from typing import Callable, Optional, Union
from uuid import uuid4

from ..config import Settings
from ..errors import FingerprintNotFound
from ..metrics import metrics
from ..schemas import (
    BlacklistEntry,
    DeviceFingerprint,
    DeviceSignals,
    FingerprintKind,
    FingerprintRecord,
    PaymentFingerprint,
    PaymentSignals,
    RiskLevel,
    SharingInfo,
    UsageOutcome,
)
from ..storage import KeyValueStore, blacklist_key, cas_update, family_prefix, fingerprint_key
from ..utils.locks import KeyedLock
from .hashing import SignalHasher

logger = logging.getLogger("fraud_engine.registry")

Fingerprint = Union[PaymentFingerprint, DeviceFingerprint]
Signals = Union[PaymentSignals, DeviceSignals]

_MODELS: dict[FingerprintKind, type[FingerprintRecord]] = {
    FingerprintKind.PAYMENT: PaymentFingerprint,
    FingerprintKind.DEVICE: DeviceFingerprint,
}

# Risk added per usage outcome
OUTCOME_PENALTIES = {
    UsageOutcome.FAILED: 10,
    UsageOutcome.DECLINED: 10,
    UsageOutcome.FRAUD_BLOCKED: 50,
}
FRAUD_FLAG_PENALTY = 5


def _utc_now() -> datetime:
    return datetime.now(UTC)


def sharing_risk_level(user_count: int) -> RiskLevel:
    """low below 3 users, medium for 3-4, high from 5."""
    if user_count >= 5:
        return RiskLevel.HIGH
    if user_count >= 3:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class FingerprintRegistry:
    """
    Payment and device identity registry.

    Lookups on unseen ids return "no data" results (None, False, an
    unshared SharingInfo); only administrative writes raise
    FingerprintNotFound.
    """

    def __init__(self, store: KeyValueStore, settings: Settings):
        """
        Initialize registry.

        Args:
            store: Backing key-value store
            settings: Engine settings (hash key, sharing penalty, retry bound)
        """
        self.store = store
        self.settings = settings
        self.hasher = SignalHasher(settings.fingerprint_hash_key)
        self._locks = KeyedLock()

    # =========================================================================
    # Identity
    # =========================================================================

    def compute_payment_id(self, signals: PaymentSignals) -> str:
        """Deterministic id of a payment instrument (raises FingerprintingFailed)."""
        return self.hasher.payment_id(signals)

    def compute_device_id(self, signals: DeviceSignals) -> str:
        """Deterministic id of a device (raises FingerprintingFailed)."""
        return self.hasher.device_id(signals)

    async def resolve_or_create(self, signals: Signals, user_id: str) -> Fingerprint:
        """
        Resolve the fingerprint for a signal bundle, creating it on first sighting.

        Existing fingerprints gain the user (idempotently), a usage bump
        and, when shared by more than one user, the sharing penalty.

        Raises:
            FingerprintingFailed: signals cannot be normalized
            ConcurrentModification: write kept conflicting
        """
        if isinstance(signals, PaymentSignals):
            kind = FingerprintKind.PAYMENT
            fingerprint_id = self.compute_payment_id(signals)
            attributes = self.hasher.payment_attributes(signals)
        else:
            kind = FingerprintKind.DEVICE
            fingerprint_id = self.compute_device_id(signals)
            attributes = self.hasher.device_attributes(signals)

        model = _MODELS[kind]
        penalty = self.settings.shared_instrument_penalty

        def create() -> FingerprintRecord:
            return model(
                id=fingerprint_id,
                associated_user_ids=[user_id],
                **attributes,
            )

        def sighting(record: FingerprintRecord) -> None:
            record.add_user(user_id)
            record.usage_count += 1
            record.last_used = _utc_now()
            if record.user_count > 1:
                record.raise_risk(penalty)

        record, created = await self._write(kind, fingerprint_id, sighting, create=create)
        metrics.fingerprint_resolutions.labels(
            kind=kind.value,
            result="created" if created else "updated",
        ).inc()

        if not created and record.user_count > 1:
            logger.info(
                "Shared %s fingerprint %s seen for user %s (%d users, risk %d)",
                kind.value, fingerprint_id[:12], user_id, record.user_count, record.risk_score,
            )
        return record

    # =========================================================================
    # Reads
    # =========================================================================

    async def _get(self, kind: FingerprintKind, fingerprint_id: str) -> Optional[Fingerprint]:
        raw = await self.store.get(fingerprint_key(kind.value, fingerprint_id))
        return _MODELS[kind].model_validate(raw) if raw else None

    async def get_payment(self, fingerprint_id: str) -> Optional[PaymentFingerprint]:
        return await self._get(FingerprintKind.PAYMENT, fingerprint_id)

    async def get_device(self, fingerprint_id: str) -> Optional[DeviceFingerprint]:
        return await self._get(FingerprintKind.DEVICE, fingerprint_id)

    async def get(self, fingerprint_id: str) -> Optional[Fingerprint]:
        """Look up an id in either family."""
        return await self.get_payment(fingerprint_id) or await self.get_device(fingerprint_id)

    async def list_payment(self) -> list[PaymentFingerprint]:
        rows = await self.store.scan(family_prefix("fingerprints", FingerprintKind.PAYMENT.value))
        return [PaymentFingerprint.model_validate(row) for row in rows]

    async def list_device(self) -> list[DeviceFingerprint]:
        rows = await self.store.scan(family_prefix("fingerprints", FingerprintKind.DEVICE.value))
        return [DeviceFingerprint.model_validate(row) for row in rows]

    async def check_sharing(self, fingerprint_id: str) -> SharingInfo:
        """
        Report how many users share a fingerprint.

        Pure read. Unknown ids report an unshared fingerprint with zero users.
        """
        record = await self.get(fingerprint_id)
        if record is None:
            return SharingInfo(fingerprint_id=fingerprint_id)

        return SharingInfo(
            fingerprint_id=fingerprint_id,
            is_shared=record.user_count > 1,
            user_count=record.user_count,
            users=list(record.associated_user_ids),
            risk_level=sharing_risk_level(record.user_count),
        )

    async def is_blacklisted(self, fingerprint_id: str) -> bool:
        record = await self.get(fingerprint_id)
        return bool(record and record.is_blacklisted)

    # =========================================================================
    # Administrative Writes
    # =========================================================================

    async def blacklist(self, fingerprint_id: str, reason: str, actor: str) -> bool:
        """
        Blacklist a fingerprint (risk score 100).

        Idempotent: repeating the call leaves the same end state. An
        audit entry is written for every call.

        Raises:
            FingerprintNotFound: id is unknown in both families
        """
        kind = await self._kind_of(fingerprint_id)

        def apply(record: FingerprintRecord) -> None:
            record.is_blacklisted = True
            record.risk_score = 100

        record, _ = await self._write(kind, fingerprint_id, apply)

        entry = BlacklistEntry(
            id=uuid4().hex,
            fingerprint_id=fingerprint_id,
            kind=kind,
            reason=reason,
            actor=actor,
            affected_users=list(record.associated_user_ids),
        )
        await self.store.put(blacklist_key(entry.id), entry.model_dump(mode="json"))
        metrics.blacklisted_total.labels(kind=kind.value).inc()

        logger.warning(
            "Blacklisted %s fingerprint %s by %s: %s",
            kind.value, fingerprint_id[:12], actor, reason,
        )
        return True

    async def blacklist_entries(self, fingerprint_id: Optional[str] = None) -> list[BlacklistEntry]:
        """Audit trail of blacklist calls, oldest first."""
        rows = await self.store.scan(family_prefix("blacklist"))
        entries = [BlacklistEntry.model_validate(row) for row in rows]
        if fingerprint_id:
            entries = [e for e in entries if e.fingerprint_id == fingerprint_id]
        return sorted(entries, key=lambda e: e.timestamp)

    async def reset_risk(self, fingerprint_id: str, actor: str) -> Fingerprint:
        """
        Reset risk score to 0 and lift a blacklist.

        The only path that lowers a risk score.
        """
        kind = await self._kind_of(fingerprint_id)

        def apply(record: FingerprintRecord) -> None:
            record.risk_score = 0
            record.is_blacklisted = False

        record, _ = await self._write(kind, fingerprint_id, apply)
        logger.warning("Risk reset for %s fingerprint %s by %s", kind.value, fingerprint_id[:12], actor)
        return record

    async def apply_usage_outcome(
        self,
        fingerprint_id: str,
        outcome: UsageOutcome,
        fraud_flag_count: int = 0,
    ) -> Optional[Fingerprint]:
        """
        Raise risk after a transaction attempt.

        failed/declined +10, fraud_blocked +50, +5 per fraud flag, capped
        at 100. Unknown ids are ignored (returns None).
        """
        kind = await self._kind_of(fingerprint_id, required=False)
        if kind is None:
            return None

        increase = OUTCOME_PENALTIES.get(outcome, 0) + FRAUD_FLAG_PENALTY * max(0, fraud_flag_count)

        def apply(record: FingerprintRecord) -> None:
            record.raise_risk(increase)
            record.last_used = _utc_now()

        record, _ = await self._write(kind, fingerprint_id, apply)
        return record

    # =========================================================================
    # Internals
    # =========================================================================

    async def _kind_of(self, fingerprint_id: str, required: bool = True) -> Optional[FingerprintKind]:
        for kind in FingerprintKind:
            if await self.store.get(fingerprint_key(kind.value, fingerprint_id)) is not None:
                return kind
        if required:
            raise FingerprintNotFound(fingerprint_id)
        return None

    async def _write(
        self,
        kind: FingerprintKind,
        fingerprint_id: str,
        apply: Callable[[FingerprintRecord], None],
        create: Optional[Callable[[], FingerprintRecord]] = None,
    ) -> tuple[Fingerprint, bool]:
        """
        Read-modify-write one fingerprint under its lock with CAS retries.

        Returns:
            (record as written, True if it was created)
        """
        key = fingerprint_key(kind.value, fingerprint_id)
        model = _MODELS[kind]

        def mutate(current: Optional[dict]) -> dict:
            if current is None:
                if create is None:
                    raise FingerprintNotFound(fingerprint_id)
                return create().model_dump(mode="json")
            record = model.model_validate(current)
            apply(record)
            return record.model_dump(mode="json")

        async with self._locks.hold(key):
            value, replaced = await cas_update(
                self.store, key, mutate, self.settings.cas_max_retries, "fingerprints"
            )
        return model.model_validate(value), replaced is None
