"""
Fingerprint Registry Tests

Tests for signal hashing, sharing detection, risk scoring and
blacklisting.
"""

import asyncio

import pytest

from fraud_engine.config import Settings
from fraud_engine.errors import FingerprintingFailed, FingerprintNotFound
from fraud_engine.fingerprints import FingerprintRegistry, SignalHasher, card_brand, sharing_risk_level
from fraud_engine.schemas import (
    CardBrand,
    DeviceSignals,
    PaymentSignals,
    RiskLevel,
    UsageOutcome,
)
from fraud_engine.storage import MemoryStore


class TestSignalHasher:
    """Tests for deterministic fingerprint ids."""

    def test_payment_id_is_deterministic(self, card):
        hasher = SignalHasher("key")
        assert hasher.payment_id(card) == hasher.payment_id(card.model_copy())

    def test_payment_id_ignores_formatting(self, card):
        hasher = SignalHasher("key")
        reformatted = PaymentSignals(
            card_number="4111111111111111",
            expiry_month="12",
            expiry_year="27",
            cardholder_name="  KARI   nordmann ",
        )
        assert hasher.payment_id(card) == hasher.payment_id(reformatted)

    def test_different_cards_differ(self, card, other_card):
        hasher = SignalHasher("key")
        assert hasher.payment_id(card) != hasher.payment_id(other_card)

    def test_key_changes_ids(self, card):
        assert SignalHasher("key-a").payment_id(card) != SignalHasher("key-b").payment_id(card)

    def test_raw_card_number_not_in_id(self, card):
        fingerprint_id = SignalHasher("key").payment_id(card)
        assert "4111" not in fingerprint_id
        assert len(fingerprint_id) == 64

    def test_device_id_is_deterministic(self, device):
        hasher = SignalHasher("key")
        assert hasher.device_id(device) == hasher.device_id(device.model_copy())

    def test_device_without_user_agent_fails(self):
        with pytest.raises(FingerprintingFailed):
            SignalHasher("key").device_id(DeviceSignals(user_agent="   "))

    @pytest.mark.parametrize("number", ["4111", "4111-1111-1111-1111-1111", "not a card"])
    def test_malformed_card_number_fails(self, number):
        signals = PaymentSignals(card_number=number, expiry_month="01", expiry_year="30")
        with pytest.raises(FingerprintingFailed):
            SignalHasher("key").payment_id(signals)

    def test_malformed_expiry_fails(self):
        signals = PaymentSignals(card_number="4111111111111111", expiry_month="13", expiry_year="30")
        with pytest.raises(FingerprintingFailed):
            SignalHasher("key").payment_id(signals)

    def test_card_brand(self):
        assert card_brand("4111111111111111") == CardBrand.VISA
        assert card_brand("5500000000000004") == CardBrand.MASTERCARD
        assert card_brand("340000000000009") == CardBrand.AMEX
        assert card_brand("6011000000000004") == CardBrand.DISCOVER
        assert card_brand("9999999999999") == CardBrand.UNKNOWN


class TestSharingRiskLevel:
    @pytest.mark.parametrize(
        "users,level",
        [(0, RiskLevel.LOW), (2, RiskLevel.LOW), (3, RiskLevel.MEDIUM), (4, RiskLevel.MEDIUM), (5, RiskLevel.HIGH)],
    )
    def test_levels(self, users, level):
        assert sharing_risk_level(users) == level


class TestResolveOrCreate:
    """Tests for first sightings and repeat sightings."""

    @pytest.mark.asyncio
    async def test_first_sighting_creates(self, registry, card):
        fingerprint = await registry.resolve_or_create(card, "user_a")

        assert fingerprint.associated_user_ids == ["user_a"]
        assert fingerprint.usage_count == 1
        assert fingerprint.risk_score == 0
        assert fingerprint.card_brand == CardBrand.VISA
        assert fingerprint.version == 1

    @pytest.mark.asyncio
    async def test_same_user_again_no_penalty(self, registry, card):
        await registry.resolve_or_create(card, "user_a")
        fingerprint = await registry.resolve_or_create(card, "user_a")

        assert fingerprint.user_count == 1
        assert fingerprint.usage_count == 2
        assert fingerprint.risk_score == 0

    @pytest.mark.asyncio
    async def test_second_user_shares_card(self, registry, card):
        """User A then user B present the same card."""
        first = await registry.resolve_or_create(card, "user_a")
        second = await registry.resolve_or_create(card, "user_b")

        assert second.id == first.id
        assert second.associated_user_ids == ["user_a", "user_b"]
        assert second.risk_score == 25

        sharing = await registry.check_sharing(first.id)
        assert sharing.is_shared
        assert sharing.user_count == 2
        assert sharing.users == ["user_a", "user_b"]
        assert sharing.risk_level == RiskLevel.LOW

    @pytest.mark.asyncio
    async def test_shared_card_penalized_on_every_sighting(self, registry, card):
        await registry.resolve_or_create(card, "user_a")
        await registry.resolve_or_create(card, "user_b")
        fingerprint = await registry.resolve_or_create(card, "user_a")

        assert fingerprint.risk_score == 50

    @pytest.mark.asyncio
    async def test_risk_capped_at_100(self, registry, card):
        for i in range(8):
            fingerprint = await registry.resolve_or_create(card, f"user_{i}")
        assert fingerprint.risk_score == 100

    @pytest.mark.asyncio
    async def test_sharing_never_shrinks(self, registry, card):
        counts = []
        for user in ["a", "b", "a", "c", "b", "d"]:
            fingerprint = await registry.resolve_or_create(card, user)
            counts.append(fingerprint.user_count)
        assert counts == sorted(counts)
        assert counts[-1] == 4

    @pytest.mark.asyncio
    async def test_device_fingerprint(self, registry, device):
        fingerprint = await registry.resolve_or_create(device, "user_a")

        assert fingerprint.platform == "MacIntel"
        assert fingerprint.timezone == "Europe/Oslo"
        assert fingerprint.distinct_user_count == 1
        assert await registry.get_device(fingerprint.id) is not None
        assert await registry.get_payment(fingerprint.id) is None

    @pytest.mark.asyncio
    async def test_concurrent_sightings_lose_no_users(self, registry, card):
        await asyncio.gather(*(registry.resolve_or_create(card, f"user_{i}") for i in range(10)))

        fingerprint = await registry.get_payment(registry.compute_payment_id(card))
        assert fingerprint.user_count == 10
        assert fingerprint.usage_count == 10

    @pytest.mark.asyncio
    async def test_concurrent_registries_on_one_store(self, card):
        """Two registries (two processes) sharing one store keep every user."""
        store = MemoryStore()
        settings = Settings(_env_file=None, fingerprint_hash_key="shared-key")
        first = FingerprintRegistry(store, settings)
        second = FingerprintRegistry(store, settings)

        await asyncio.gather(*(
            (first if i % 2 else second).resolve_or_create(card, f"user_{i}")
            for i in range(6)
        ))

        fingerprint = await first.get_payment(first.compute_payment_id(card))
        assert fingerprint.user_count == 6


class TestLookups:
    """Unknown ids report "no data" rather than raising."""

    @pytest.mark.asyncio
    async def test_unknown_sharing(self, registry):
        sharing = await registry.check_sharing("unknown")
        assert not sharing.is_shared
        assert sharing.user_count == 0
        assert sharing.users == []

    @pytest.mark.asyncio
    async def test_unknown_not_blacklisted(self, registry):
        assert await registry.is_blacklisted("unknown") is False

    @pytest.mark.asyncio
    async def test_check_sharing_is_read_only(self, registry, card):
        fingerprint = await registry.resolve_or_create(card, "user_a")
        await registry.check_sharing(fingerprint.id)
        after = await registry.get_payment(fingerprint.id)
        assert after.version == fingerprint.version


class TestBlacklist:
    """Tests for blacklisting and risk resets."""

    @pytest.mark.asyncio
    async def test_blacklist_sets_max_risk(self, registry, card):
        fingerprint = await registry.resolve_or_create(card, "user_a")

        assert await registry.blacklist(fingerprint.id, "chargeback fraud", "analyst") is True
        assert await registry.is_blacklisted(fingerprint.id)
        stored = await registry.get_payment(fingerprint.id)
        assert stored.risk_score == 100

    @pytest.mark.asyncio
    async def test_blacklist_is_idempotent(self, registry, card):
        fingerprint = await registry.resolve_or_create(card, "user_a")

        await registry.blacklist(fingerprint.id, "fraud", "analyst")
        once = await registry.get_payment(fingerprint.id)
        await registry.blacklist(fingerprint.id, "fraud", "analyst")
        twice = await registry.get_payment(fingerprint.id)

        assert once.is_blacklisted and twice.is_blacklisted
        assert once.risk_score == twice.risk_score == 100
        assert once.associated_user_ids == twice.associated_user_ids

    @pytest.mark.asyncio
    async def test_blacklist_writes_audit_entries(self, registry, card):
        fingerprint = await registry.resolve_or_create(card, "user_a")
        await registry.blacklist(fingerprint.id, "fraud", "analyst")
        await registry.blacklist(fingerprint.id, "fraud again", "analyst")

        entries = await registry.blacklist_entries(fingerprint.id)
        assert [e.reason for e in entries] == ["fraud", "fraud again"]
        assert entries[0].affected_users == ["user_a"]

    @pytest.mark.asyncio
    async def test_blacklist_unknown_raises(self, registry):
        with pytest.raises(FingerprintNotFound):
            await registry.blacklist("unknown", "fraud", "analyst")

    @pytest.mark.asyncio
    async def test_reset_risk_lifts_blacklist(self, registry, card):
        fingerprint = await registry.resolve_or_create(card, "user_a")
        await registry.blacklist(fingerprint.id, "fraud", "analyst")

        reset = await registry.reset_risk(fingerprint.id, "analyst")

        assert reset.risk_score == 0
        assert not reset.is_blacklisted

    @pytest.mark.asyncio
    async def test_reset_unknown_raises(self, registry):
        with pytest.raises(FingerprintNotFound):
            await registry.reset_risk("unknown", "analyst")


class TestUsageOutcomes:
    """Tests for risk increases from transaction outcomes."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "outcome,flags,expected",
        [
            (UsageOutcome.SUCCESS, 0, 0),
            (UsageOutcome.FAILED, 0, 10),
            (UsageOutcome.DECLINED, 0, 10),
            (UsageOutcome.FRAUD_BLOCKED, 0, 50),
            (UsageOutcome.SUCCESS, 2, 10),
            (UsageOutcome.FRAUD_BLOCKED, 20, 100),
        ],
    )
    async def test_outcome_penalties(self, registry, card, outcome, flags, expected):
        fingerprint = await registry.resolve_or_create(card, "user_a")
        updated = await registry.apply_usage_outcome(fingerprint.id, outcome, flags)
        assert updated.risk_score == expected

    @pytest.mark.asyncio
    async def test_unknown_fingerprint_ignored(self, registry):
        assert await registry.apply_usage_outcome("unknown", UsageOutcome.FAILED) is None
