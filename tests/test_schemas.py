"""
Schema Tests - Fraud & Risk Assessment Engine

Tests for data validation and schema behavior.
"""

import pytest
from pydantic import ValidationError

from fraud_engine.policy import (
    AccountConditions,
    FraudRule,
    RuleActions,
    RuleCategory,
    RuleCreate,
    RuleMetadata,
    VelocityConditions,
    default_rules,
)
from fraud_engine.schemas import (
    AssessmentRequest,
    FraudAssessment,
    PaymentFingerprint,
    Recommendation,
    RequestContext,
    RiskFactorFlags,
    UsageEvent,
    UsageOutcome,
)


class TestRuleModels:
    """Tests for rule definitions."""

    def test_category_from_conditions(self):
        rule = FraudRule.model_validate({
            "id": "velocity_rule",
            "name": "Velocity",
            "conditions": {"category": "velocity", "max_transactions_per_hour": 5},
        })

        assert rule.category == RuleCategory.VELOCITY
        assert isinstance(rule.conditions, VelocityConditions)

    def test_conditions_from_category(self):
        rule = FraudRule.model_validate({
            "id": "account_rule",
            "name": "Account",
            "category": "account",
            "conditions": {"disposable_email": True},
        })

        assert isinstance(rule.conditions, AccountConditions)
        assert "mailinator.com" in rule.conditions.disposable_domains

    def test_category_mismatch_rejected(self):
        with pytest.raises(ValidationError):
            FraudRule.model_validate({
                "id": "bad",
                "name": "Bad",
                "category": "device",
                "conditions": {"category": "payment", "max_accounts_per_payment_method": 2},
            })

    def test_unknown_condition_rejected(self):
        with pytest.raises(ValidationError):
            RuleCreate.model_validate({
                "name": "Bad",
                "category": "velocity",
                "conditions": {"max_accounts_per_device": 3},
            })

    def test_rule_id_pattern(self):
        with pytest.raises(ValidationError):
            RuleCreate(id="has spaces", name="Bad", conditions=VelocityConditions(max_transactions_per_hour=1))

    def test_threshold_bounds(self):
        with pytest.raises(ValidationError):
            FraudRule.model_validate({
                "id": "bad",
                "name": "Bad",
                "conditions": {"category": "velocity", "max_transactions_per_hour": 1},
                "weights": {"confidence_threshold": 1.5},
            })

    def test_actions_describe_order(self):
        actions = RuleActions(send_alert=True, block_user=True, block_bonuses=True)
        assert actions.describe() == [
            "Block user account",
            "Block bonus eligibility",
            "Send fraud alert",
        ]

    def test_metadata_effectiveness(self):
        metadata = RuleMetadata()
        assert metadata.effectiveness == 0.0

        metadata.record_review(True)
        metadata.record_review(False)
        metadata.record_review(True)
        metadata.record_review(True)

        assert metadata.effectiveness == pytest.approx(0.75)

    def test_default_rules_are_fresh_copies(self):
        first = default_rules()
        first[0].metadata.trigger_count = 10

        assert default_rules()[0].metadata.trigger_count == 0
        assert len(first) == 7


class TestFingerprintRecords:
    def test_users_deduplicated(self):
        fingerprint = PaymentFingerprint(
            id="fp",
            bin_range_hash="bin",
            last_four_hash="last4",
            associated_user_ids=["b", "a", "b"],
        )
        assert fingerprint.associated_user_ids == ["a", "b"]
        assert fingerprint.add_user("a") is False
        assert fingerprint.add_user("c") is True
        assert fingerprint.user_count == 3

    def test_risk_capped(self):
        fingerprint = PaymentFingerprint(id="fp", bin_range_hash="bin", last_four_hash="last4")
        fingerprint.raise_risk(80)
        fingerprint.raise_risk(80)
        assert fingerprint.risk_score == 100

    def test_risk_bounds_validated(self):
        with pytest.raises(ValidationError):
            PaymentFingerprint(id="fp", bin_range_hash="bin", last_four_hash="last4", risk_score=101)


class TestUsage:
    @pytest.mark.parametrize(
        "outcome,failure",
        [
            (UsageOutcome.SUCCESS, False),
            (UsageOutcome.FAILED, True),
            (UsageOutcome.DECLINED, True),
            (UsageOutcome.FRAUD_BLOCKED, False),
        ],
    )
    def test_is_failure(self, outcome, failure):
        assert outcome.is_failure is failure

    def test_flag_count(self):
        assert RiskFactorFlags().count() == 0
        assert RiskFactorFlags(multi_user=True, velocity_flag=True).count() == 2

    def test_usage_event_requires_instrument(self):
        with pytest.raises(ValidationError):
            UsageEvent(user_id="u", transaction_id="t", amount=100, outcome=UsageOutcome.SUCCESS)

    def test_usage_event_negative_amount(self):
        with pytest.raises(ValidationError):
            UsageEvent(
                user_id="u",
                transaction_id="t",
                amount=-1,
                outcome=UsageOutcome.SUCCESS,
                fingerprint_id="fp",
            )


class TestAssessmentModels:
    def test_empty_context_allowed(self):
        request = AssessmentRequest(user_id="user_a")
        assert request.context == RequestContext()

    def test_empty_user_rejected(self):
        with pytest.raises(ValidationError):
            AssessmentRequest(user_id="")

    def test_negative_amount_rejected(self):
        with pytest.raises(ValidationError):
            RequestContext(amount=-5)

    def test_assessment_is_immutable(self):
        assessment = FraudAssessment(
            assessment_id="assess_1",
            user_id="user_a",
            overall_risk_score=0.0,
            confidence=0.0,
            recommendation=Recommendation.ALLOW,
        )
        with pytest.raises(ValidationError):
            assessment.recommendation = Recommendation.BLOCK

    def test_score_bounds(self):
        with pytest.raises(ValidationError):
            FraudAssessment(
                assessment_id="assess_1",
                user_id="user_a",
                overall_risk_score=120.0,
                confidence=0.5,
                recommendation=Recommendation.BLOCK,
            )
