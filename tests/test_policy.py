"""
Rule Engine and Rule Repository Tests

Tests for per-category rule evaluation, confidence gating, failure
handling, and rule administration.
"""

from pathlib import Path
from typing import Optional

import pytest
import pytest_asyncio

from fraud_engine.errors import RuleNotFound, RuleValidationError
from fraud_engine.policy import (
    AccountConditions,
    BehaviorConditions,
    DeviceConditions,
    FraudRule,
    GeoIpProvider,
    GeographicConditions,
    PaymentConditions,
    ResolvedIdentities,
    RuleActions,
    RuleCategory,
    RuleCreate,
    RuleEngine,
    RuleRepository,
    RuleUpdate,
    RuleWeights,
    StaticPatternGeoIpProvider,
    VelocityConditions,
)
from fraud_engine.schemas import RecommendedAction, RequestContext, UsageOutcome
from fraud_engine.storage import MemoryStore

RULES_FILE = Path(__file__).resolve().parent.parent / "config" / "rules.yaml"


def make_rule(
    rule_id: str,
    conditions,
    threshold: float = 0.5,
    multiplier: float = 1.0,
    actions: Optional[RuleActions] = None,
) -> FraudRule:
    return FraudRule(
        id=rule_id,
        name=rule_id.replace("_", " ").title(),
        description=f"Test rule {rule_id}",
        category=conditions.category,
        conditions=conditions,
        actions=actions or RuleActions(flag_for_review=True),
        weights=RuleWeights(risk_multiplier=multiplier, confidence_threshold=threshold),
    )


class FailingGeoProvider(GeoIpProvider):
    async def is_vpn_or_proxy(self, ip: str) -> bool:
        raise ConnectionError("geo service down")


@pytest.fixture
def rule_engine(engine) -> RuleEngine:
    return engine.rule_engine


class TestRuleEngine:
    """Tests for rule evaluation semantics."""

    @pytest.mark.asyncio
    async def test_disposable_email(self, engine, rule_engine):
        rule = await engine.get_rule("disposable_email")
        context = RequestContext(email="someone@mailinator.com")

        result = await rule_engine.evaluate(rule, "user_a", context)

        assert result.triggered
        assert result.confidence == pytest.approx(0.95)
        assert result.evidence == ["Disposable email domain: mailinator.com"]
        assert result.risk_contribution == pytest.approx(1.3 * 10 * 0.95)
        assert result.recommended_action == RecommendedAction.FLAG
        assert result.reason == (
            "Detect accounts using temporary/disposable email addresses "
            "(Disposable email domain: mailinator.com)"
        )

    @pytest.mark.asyncio
    async def test_regular_email_not_triggered(self, engine, rule_engine):
        rule = await engine.get_rule("disposable_email")
        result = await rule_engine.evaluate(rule, "user_a", RequestContext(email="kari@example.no"))

        assert not result.triggered
        assert result.risk_contribution == 0
        assert result.recommended_action == RecommendedAction.ALLOW
        assert result.reason == "Rule not triggered"

    @pytest.mark.asyncio
    async def test_confidence_gating(self, rule_engine):
        """A VPN match (0.6) cannot trigger a rule demanding 0.9."""
        strict = make_rule("strict_vpn", GeographicConditions(vpn_detection=True), threshold=0.9)
        lenient = make_rule("lenient_vpn", GeographicConditions(vpn_detection=True), threshold=0.6)
        context = RequestContext(ip="185.220.101.4")

        strict_result = await rule_engine.evaluate(strict, "user_a", context)
        lenient_result = await rule_engine.evaluate(lenient, "user_a", context)

        assert not strict_result.triggered
        assert strict_result.risk_contribution == 0
        assert lenient_result.triggered
        assert lenient_result.evidence == ["VPN/Proxy IP detected: 185.220.101.4"]

    @pytest.mark.asyncio
    async def test_evaluator_failure_does_not_trigger(self, engine):
        failing = RuleEngine(engine.registry, engine.ledger, engine.ip_index, FailingGeoProvider())
        rule = make_rule("vpn", GeographicConditions(vpn_detection=True), threshold=0.0)

        result = await failing.evaluate(rule, "user_a", RequestContext(ip="10.0.0.1"))

        assert not result.triggered
        assert result.confidence == 0.0
        assert result.risk_contribution == 0.0

    @pytest.mark.asyncio
    async def test_missing_inputs_do_not_trigger(self, engine, rule_engine):
        for rule in await engine.list_rules():
            result = await rule_engine.evaluate(rule, "user_a", RequestContext())
            assert not result.triggered, rule.id

    @pytest.mark.asyncio
    async def test_velocity_six_vs_five(self, engine, rule_engine, ledger):
        """rapid_transactions allows 5 per hour and triggers on the 6th."""
        rule = await engine.get_rule("rapid_transactions")
        for i in range(5):
            await ledger.record("fp_card", "user_a", f"txn_{i}", 1000, UsageOutcome.SUCCESS)

        at_limit = await rule_engine.evaluate(rule, "user_a", RequestContext())
        await ledger.record("fp_card", "user_a", "txn_5", 1000, UsageOutcome.SUCCESS)
        over_limit = await rule_engine.evaluate(rule, "user_a", RequestContext())

        assert not at_limit.triggered
        assert over_limit.triggered
        assert over_limit.confidence == pytest.approx(0.75)
        assert "6 transactions in last hour" in over_limit.evidence

    @pytest.mark.asyncio
    async def test_velocity_counts_presented_card(self, engine, rule_engine, registry, ledger, card):
        """Uses of the presented card by other users count too."""
        rule = await engine.get_rule("rapid_transactions")
        fingerprint = await registry.resolve_or_create(card, "user_a")
        for i in range(6):
            await ledger.record(fingerprint.id, f"user_{i}", f"txn_{i}", 1000, UsageOutcome.SUCCESS)

        result = await rule_engine.evaluate(
            rule, "user_new", RequestContext(), ResolvedIdentities(payment=fingerprint)
        )
        assert result.triggered

    @pytest.mark.asyncio
    async def test_shared_payment_method(self, engine, rule_engine, registry, card):
        rule = await engine.get_rule("shared_payment_method")
        for user in ("user_a", "user_b"):
            fingerprint = await registry.resolve_or_create(card, user)

        two_users = await rule_engine.evaluate(
            rule, "user_b", RequestContext(), ResolvedIdentities(payment=fingerprint)
        )
        fingerprint = await registry.resolve_or_create(card, "user_c")
        three_users = await rule_engine.evaluate(
            rule, "user_c", RequestContext(), ResolvedIdentities(payment=fingerprint)
        )

        assert not two_users.triggered
        assert three_users.triggered
        assert three_users.confidence == pytest.approx(0.9)
        assert three_users.evidence == ["Payment method shared by 3 users"]
        assert three_users.recommended_action == RecommendedAction.BLOCK

    @pytest.mark.asyncio
    async def test_failed_payments(self, engine, rule_engine, ledger):
        rule = await engine.get_rule("failed_payment_pattern")
        for i in range(4):
            await ledger.record(f"fp_{i}", "user_a", f"txn_{i}", 1000, UsageOutcome.DECLINED)
        await ledger.record("fp_9", "user_a", "txn_ok", 1000, UsageOutcome.SUCCESS)

        result = await rule_engine.evaluate(rule, "user_a", RequestContext())

        assert result.triggered
        assert result.evidence == ["4 failed payments in last hour"]
        assert result.recommended_action == RecommendedAction.BLOCK

    @pytest.mark.asyncio
    async def test_blacklisted_payment_method(self, rule_engine, registry, card):
        rule = make_rule(
            "blacklisted",
            PaymentConditions(blacklisted_payment_method=True),
            actions=RuleActions(block_user=True),
        )
        fingerprint = await registry.resolve_or_create(card, "user_a")
        await registry.blacklist(fingerprint.id, "fraud", "analyst")

        result = await rule_engine.evaluate(
            rule, "user_a", RequestContext(), ResolvedIdentities(payment=fingerprint)
        )
        assert result.triggered
        assert result.confidence == 1.0

    @pytest.mark.asyncio
    async def test_multiple_accounts_device(self, engine, rule_engine, registry, device):
        rule = await engine.get_rule("multiple_accounts_device")
        for i in range(4):
            fingerprint = await registry.resolve_or_create(device, f"user_{i}")

        result = await rule_engine.evaluate(
            rule, "user_3", RequestContext(), ResolvedIdentities(device=fingerprint)
        )
        assert result.triggered
        assert result.evidence == ["4 accounts on device (limit: 3)"]

    @pytest.mark.asyncio
    async def test_new_account_high_spend(self, engine, rule_engine):
        rule = await engine.get_rule("new_account_high_spend")

        young = await rule_engine.evaluate(
            rule, "user_a", RequestContext(account_age_hours=2, amount=60000)
        )
        old = await rule_engine.evaluate(
            rule, "user_a", RequestContext(account_age_hours=48, amount=60000)
        )
        small = await rule_engine.evaluate(
            rule, "user_a", RequestContext(account_age_hours=2, amount=5000)
        )

        assert young.triggered
        assert young.confidence == pytest.approx(0.8)
        assert not old.triggered
        assert not small.triggered

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "email,expected",
        [
            ("test123@example.com", True),
            ("ab12345@example.com", True),
            ("kari+20240101@example.com", True),
            ("kari.nordmann@example.com", False),
        ],
    )
    async def test_suspicious_email_pattern(self, rule_engine, email, expected):
        rule = make_rule("patterned_email", AccountConditions(suspicious_email_pattern=True), threshold=0.6)
        result = await rule_engine.evaluate(rule, "user_a", RequestContext(email=email))
        assert result.triggered is expected

    @pytest.mark.asyncio
    async def test_accounts_per_ip(self, engine, rule_engine):
        rule = make_rule("ip_accounts", AccountConditions(max_accounts_per_ip=2))
        for user in ("user_a", "user_b", "user_c"):
            await engine.ip_index.add("84.210.10.20", user)

        result = await rule_engine.evaluate(rule, "user_c", RequestContext(ip="84.210.10.20"))

        assert result.triggered
        assert result.evidence == ["3 accounts from IP"]

    @pytest.mark.asyncio
    async def test_high_risk_country(self, engine):
        provider = StaticPatternGeoIpProvider(patterns=(), countries={"41.": "NG"})
        rule_engine = RuleEngine(engine.registry, engine.ledger, engine.ip_index, provider)
        rule = make_rule("countries", GeographicConditions(high_risk_countries=["ng"]))

        result = await rule_engine.evaluate(rule, "user_a", RequestContext(ip="41.58.1.1"))

        assert result.triggered
        assert result.confidence == pytest.approx(0.7)
        assert result.evidence == ["High-risk country: NG"]

    @pytest.mark.asyncio
    async def test_highest_confidence_wins(self, engine):
        provider = StaticPatternGeoIpProvider(countries={"185.": "RU"})
        rule_engine = RuleEngine(engine.registry, engine.ledger, engine.ip_index, provider)
        rule = make_rule(
            "geo", GeographicConditions(vpn_detection=True, high_risk_countries=["RU"])
        )

        result = await rule_engine.evaluate(rule, "user_a", RequestContext(ip="185.1.2.3"))

        assert result.confidence == pytest.approx(0.7)
        assert len(result.evidence) == 2

    @pytest.mark.asyncio
    async def test_evaluate_all_keeps_rule_order(self, engine, rule_engine):
        rules = await engine.list_rules()
        results = await rule_engine.evaluate_all(rules, "user_a", RequestContext())
        assert [r.rule_id for r in results] == [rule.id for rule in rules]


class TestRuleRepository:
    """Tests for rule administration."""

    @pytest_asyncio.fixture
    async def repository(self, test_settings) -> RuleRepository:
        return RuleRepository(MemoryStore(), test_settings)

    @pytest.fixture
    def new_rule(self) -> RuleCreate:
        return RuleCreate(
            id="large_bonus_claim",
            name="Large Bonus Claim",
            description="New accounts claiming large bonuses",
            conditions=BehaviorConditions(min_account_age_hours=72, max_transaction_amount=100000),
            actions=RuleActions(flag_for_review=True, block_bonuses=True),
        )

    @pytest.mark.asyncio
    async def test_load_defaults_once(self, repository):
        assert await repository.load_defaults() == 7
        assert await repository.load_defaults() == 0
        assert len(await repository.list_rules()) == 7

    @pytest.mark.asyncio
    async def test_create_and_get(self, repository, new_rule):
        created = await repository.create_rule(new_rule, actor="analyst")

        assert created.category == RuleCategory.BEHAVIOR
        assert created.version == 1
        assert created.metadata.created_by == "analyst"
        stored = await repository.get_rule("large_bonus_claim")
        assert stored.conditions.max_transaction_amount == 100000

    @pytest.mark.asyncio
    async def test_create_generates_id(self, repository, new_rule):
        created = await repository.create_rule(new_rule.model_copy(update={"id": None}))
        assert created.id.startswith("rule_")

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, repository, new_rule):
        await repository.create_rule(new_rule)
        with pytest.raises(RuleValidationError):
            await repository.create_rule(new_rule)

    @pytest.mark.asyncio
    async def test_rule_without_checks_rejected(self, repository):
        empty = RuleCreate(id="empty", name="Empty", conditions=VelocityConditions())
        with pytest.raises(RuleValidationError):
            await repository.create_rule(empty)

    @pytest.mark.asyncio
    async def test_category_mismatch_rejected(self, repository):
        mismatched = RuleCreate(
            id="mismatch",
            name="Mismatch",
            category=RuleCategory.DEVICE,
            conditions=PaymentConditions(max_accounts_per_payment_method=2),
        )
        with pytest.raises(RuleValidationError):
            await repository.create_rule(mismatched)

    @pytest.mark.asyncio
    async def test_partial_update(self, repository, new_rule):
        await repository.create_rule(new_rule)

        updated = await repository.update_rule(
            "large_bonus_claim",
            RuleUpdate(weights=RuleWeights(risk_multiplier=2.5)),
            actor="analyst",
        )

        assert updated.weights.risk_multiplier == 2.5
        assert updated.name == "Large Bonus Claim"
        assert updated.version == 2
        assert updated.metadata.updated_by == "analyst"
        assert updated.metadata.created_by == "system"

    @pytest.mark.asyncio
    async def test_update_conditions_changes_category(self, repository, new_rule):
        await repository.create_rule(new_rule)

        updated = await repository.update_rule(
            "large_bonus_claim",
            RuleUpdate(conditions=DeviceConditions(max_accounts_per_device=2)),
        )

        assert updated.category == RuleCategory.DEVICE
        assert updated.conditions.max_accounts_per_device == 2

    @pytest.mark.asyncio
    async def test_deactivate_rule(self, repository):
        await repository.load_defaults()
        await repository.update_rule("vpn_detection", RuleUpdate(is_active=False))

        active = await repository.active_rules()
        assert "vpn_detection" not in {rule.id for rule in active}
        assert len(active) == 6

    @pytest.mark.asyncio
    async def test_update_unknown_rule(self, repository):
        with pytest.raises(RuleNotFound):
            await repository.update_rule("missing", RuleUpdate(name="x"))

    @pytest.mark.asyncio
    async def test_delete(self, repository, new_rule):
        await repository.create_rule(new_rule)
        await repository.delete_rule("large_bonus_claim")

        with pytest.raises(RuleNotFound):
            await repository.get_rule("large_bonus_claim")
        with pytest.raises(RuleNotFound):
            await repository.delete_rule("large_bonus_claim")

    @pytest.mark.asyncio
    async def test_record_trigger(self, repository, new_rule):
        await repository.create_rule(new_rule)
        await repository.record_trigger("large_bonus_claim")
        rule = await repository.record_trigger("large_bonus_claim")

        assert rule.metadata.trigger_count == 2
        assert rule.metadata.last_triggered is not None

    @pytest.mark.asyncio
    async def test_record_review_effectiveness(self, repository, new_rule):
        await repository.create_rule(new_rule)
        for verdict in (True, True, True, False):
            rule = await repository.record_review("large_bonus_claim", verdict)

        assert rule.metadata.true_positive_count == 3
        assert rule.metadata.false_positive_count == 1
        assert rule.metadata.effectiveness == pytest.approx(0.75)

    @pytest.mark.asyncio
    async def test_load_from_yaml(self, repository):
        rules = await repository.load_from_yaml(RULES_FILE)

        ids = {rule.id for rule in rules}
        assert {"shared_payment_method", "blacklisted_payment_method", "accounts_per_ip"} <= ids
        assert len(await repository.list_rules()) == len(rules)

    @pytest.mark.asyncio
    async def test_reload_yaml_keeps_counters(self, repository):
        await repository.load_from_yaml(RULES_FILE)
        await repository.record_trigger("vpn_detection")
        await repository.load_from_yaml(RULES_FILE)

        rule = await repository.get_rule("vpn_detection")
        assert rule.metadata.trigger_count == 1

    @pytest.mark.asyncio
    async def test_invalid_yaml_rule(self, repository, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text(
            "rules:\n"
            "  - id: broken\n"
            "    name: Broken\n"
            "    category: velocity\n"
            "    conditions:\n"
            "      max_accounts_per_device: 3\n"
        )
        with pytest.raises(RuleValidationError):
            await repository.load_from_yaml(path)

    @pytest.mark.asyncio
    async def test_missing_yaml_file(self, repository, tmp_path):
        with pytest.raises(RuleValidationError):
            await repository.load_from_yaml(tmp_path / "missing.yaml")
