"""
Usage Ledger Tests

Tests for appends, windowed queries, flag derivation and retention.
"""

from datetime import datetime, timedelta, UTC

import pytest

from fraud_engine.detection import VelocityCheck
from fraud_engine.errors import ConcurrentModification
from fraud_engine.ledger import fingerprint_index
from fraud_engine.schemas import RiskFactorFlags, UsageOutcome


@pytest.fixture
def now() -> datetime:
    return datetime.now(UTC)


class TestRecord:
    """Tests for appending usage records."""

    @pytest.mark.asyncio
    async def test_record_assigns_monotonic_ids(self, ledger):
        first = await ledger.record("fp_1", "user_a", "txn_1", 1000, UsageOutcome.SUCCESS)
        second = await ledger.record("fp_1", "user_a", "txn_2", 1000, UsageOutcome.SUCCESS)

        assert second.sequence > first.sequence
        assert first.id == f"usage_{first.sequence}"

    @pytest.mark.asyncio
    async def test_default_currency(self, ledger):
        record = await ledger.record("fp_1", "user_a", "txn_1", 1000, UsageOutcome.SUCCESS)
        assert record.currency == "NOK"

    @pytest.mark.asyncio
    async def test_explicit_flags_kept(self, ledger):
        flags = RiskFactorFlags(geo_mismatch=True)
        record = await ledger.record("fp_1", "user_a", "txn_1", 1000, UsageOutcome.SUCCESS, flags=flags)
        assert record.flags == flags
        assert record.flags.count() == 1

    @pytest.mark.asyncio
    async def test_derived_flags_for_shared_card(self, registry, ledger, card):
        await registry.resolve_or_create(card, "user_a")
        fingerprint = await registry.resolve_or_create(card, "user_b")

        record = await ledger.record(fingerprint.id, "user_b", "txn_1", 1000, UsageOutcome.SUCCESS)

        assert record.flags.new_instrument
        assert record.flags.multi_user
        assert not record.flags.velocity_flag

    @pytest.mark.asyncio
    async def test_velocity_flag_after_three_uses(self, ledger):
        for i in range(3):
            await ledger.record("fp_1", "user_a", f"txn_{i}", 1000, UsageOutcome.SUCCESS)
        fourth = await ledger.record("fp_1", "user_a", "txn_3", 1000, UsageOutcome.SUCCESS)
        fifth = await ledger.record("fp_1", "user_a", "txn_4", 1000, UsageOutcome.SUCCESS)

        assert not fourth.flags.velocity_flag
        assert fifth.flags.velocity_flag

    @pytest.mark.asyncio
    async def test_failed_outcome_raises_fingerprint_risk(self, registry, ledger, card):
        fingerprint = await registry.resolve_or_create(card, "user_a")

        await ledger.record(fingerprint.id, "user_a", "txn_1", 1000, UsageOutcome.DECLINED)
        await ledger.record(
            fingerprint.id, "user_a", "txn_2", 1000, UsageOutcome.SUCCESS,
            fraud_flags=["mismatched_billing"],
        )

        stored = await registry.get_payment(fingerprint.id)
        assert stored.risk_score == 15

    @pytest.mark.asyncio
    async def test_record_kept_when_risk_update_fails(self, ledger, monkeypatch):
        async def conflicting(*args, **kwargs):
            raise ConcurrentModification("fingerprints:payment:fp_1", 5)

        monkeypatch.setattr(ledger.registry, "apply_usage_outcome", conflicting)

        record = await ledger.record("fp_1", "user_a", "txn_1", 1000, UsageOutcome.DECLINED)

        recent = await ledger.recent("fp_1", 60)
        assert [r.id for r in recent] == [record.id]


class TestWindows:
    """Tests for windowed queries."""

    @pytest.mark.asyncio
    async def test_recent_excludes_old_records(self, ledger, now):
        await ledger.record("fp_1", "user_a", "old", 1000, UsageOutcome.SUCCESS, timestamp=now - timedelta(hours=2))
        await ledger.record("fp_1", "user_a", "new", 1000, UsageOutcome.SUCCESS, timestamp=now - timedelta(minutes=5))

        recent = await ledger.recent("fp_1", 60, now=now)
        assert [r.transaction_id for r in recent] == ["new"]

    @pytest.mark.asyncio
    async def test_recent_is_ordered_oldest_first(self, ledger, now):
        for minutes in (10, 30, 20):
            await ledger.record(
                "fp_1", "user_a", f"txn_{minutes}", 1000, UsageOutcome.SUCCESS,
                timestamp=now - timedelta(minutes=minutes),
            )

        recent = await ledger.recent("fp_1", 60, now=now)
        assert [r.transaction_id for r in recent] == ["txn_30", "txn_20", "txn_10"]

    @pytest.mark.asyncio
    async def test_recent_for_user_spans_fingerprints(self, ledger, now):
        await ledger.record("fp_1", "user_a", "txn_1", 1000, UsageOutcome.SUCCESS, timestamp=now)
        await ledger.record("fp_2", "user_a", "txn_2", 1000, UsageOutcome.FAILED, timestamp=now)
        await ledger.record("fp_2", "user_b", "txn_3", 1000, UsageOutcome.SUCCESS, timestamp=now)

        records = await ledger.recent_for_user("user_a", 60, now=now)
        assert {r.transaction_id for r in records} == {"txn_1", "txn_2"}

    @pytest.mark.asyncio
    async def test_latest(self, ledger, now):
        for i in range(5):
            await ledger.record(
                "fp_1", "user_a", f"txn_{i}", 1000, UsageOutcome.SUCCESS,
                timestamp=now - timedelta(minutes=5 - i),
            )

        latest = await ledger.latest("fp_1", 2)
        assert [r.transaction_id for r in latest] == ["txn_3", "txn_4"]

    @pytest.mark.asyncio
    async def test_active_fingerprints(self, ledger, now):
        await ledger.record("fp_1", "user_a", "txn_1", 1000, UsageOutcome.SUCCESS, timestamp=now)
        await ledger.record("fp_2", "user_a", "txn_2", 1000, UsageOutcome.SUCCESS, timestamp=now - timedelta(days=1))

        assert await ledger.active_fingerprints(60, now=now) == ["fp_1"]

    @pytest.mark.asyncio
    async def test_fingerprint_ids_with_colons(self, ledger, now):
        for i in range(6):
            await ledger.record(
                "ext:card1", f"user_{i % 2}", f"txn_{i}", 1000, UsageOutcome.SUCCESS,
                timestamp=now - timedelta(minutes=i),
            )

        assert len(await ledger.recent("ext:card1", 60, now=now)) == 6
        assert await ledger.active_fingerprints(60, now=now) == ["ext:card1"]

        pattern = await VelocityCheck(ledger).detect(now)
        assert pattern.affected_fingerprints == ["ext:card1"]


class TestRetention:
    """Tests for the usage retention purge."""

    @pytest.mark.asyncio
    async def test_purge_expired(self, ledger, now):
        await ledger.record("fp_1", "user_a", "old", 1000, UsageOutcome.SUCCESS, timestamp=now - timedelta(days=120))
        await ledger.record("fp_1", "user_a", "new", 1000, UsageOutcome.SUCCESS, timestamp=now - timedelta(days=1))

        removed = await ledger.purge_expired(now=now)

        assert removed == 1
        remaining = await ledger.recent("fp_1", 200 * 24 * 60, now=now)
        assert [r.transaction_id for r in remaining] == ["new"]
        by_user = await ledger.recent_for_user("user_a", 200 * 24 * 60, now=now)
        assert [r.transaction_id for r in by_user] == ["new"]

    @pytest.mark.asyncio
    async def test_purge_nothing(self, ledger):
        assert await ledger.purge_expired() == 0

    @pytest.mark.asyncio
    async def test_purge_trims_index_of_colon_id(self, ledger, now):
        await ledger.record("ext:card1", "user_a", "old", 1000, UsageOutcome.SUCCESS, timestamp=now - timedelta(days=120))
        await ledger.record("ext:card1", "user_a", "new", 1000, UsageOutcome.SUCCESS, timestamp=now - timedelta(days=1))

        assert await ledger.purge_expired(now=now) == 1
        assert len(await ledger.store.index_range(fingerprint_index("ext:card1"), 0, 2**62)) == 1
