"""
Rule Engine

Evaluates fraud rules against a request context, the fingerprint
registry and the usage ledger. Each category has one evaluator that
produces (triggered, confidence, evidence); the engine then applies
the rule's weights and actions.

Per-rule contract:
1. Dispatch on the rule category
2. Confidence gating: a match below weights.confidence_threshold does
   not trigger
3. Fail closed: any error inside an evaluator yields a non-triggering
   result with confidence 0, logged and counted, never raised
4. risk_contribution = risk_multiplier * 10 * confidence when triggered
5. recommended_action: block if block_user, flag if flag_for_review,
   else allow

Evaluations of different rules are independent, so evaluate_all runs
them concurrently.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from ..errors import RuleEvaluationError
from ..fingerprints import FingerprintRegistry
from ..ledger import UsageLedger
from ..metrics import metrics
from ..schemas import (
    DeviceFingerprint,
    PaymentFingerprint,
    RecommendedAction,
    RequestContext,
    RuleEvaluation,
)
from .geo import GeoIpProvider, StaticPatternGeoIpProvider
from .ip_index import IpAccountIndex
from .rules import (
    AccountConditions,
    BehaviorConditions,
    DeviceConditions,
    FraudRule,
    GeographicConditions,
    PaymentConditions,
    RuleCategory,
    VelocityConditions,
)

logger = logging.getLogger("fraud_engine.policy")


# Confidence assigned by each check when it matches
DEVICE_SHARING_CONFIDENCE = 0.8
PAYMENT_SHARING_CONFIDENCE = 0.9
FAILED_PAYMENTS_CONFIDENCE = 0.85
BLACKLISTED_PAYMENT_CONFIDENCE = 1.0
DISPOSABLE_EMAIL_CONFIDENCE = 0.95
ACCOUNTS_PER_IP_CONFIDENCE = 0.7
SUSPICIOUS_EMAIL_CONFIDENCE = 0.6
NEW_ACCOUNT_SPEND_CONFIDENCE = 0.8
VELOCITY_CONFIDENCE = 0.75
VPN_CONFIDENCE = 0.6
HIGH_RISK_COUNTRY_CONFIDENCE = 0.7

HOUR_MINUTES = 60
DAY_MINUTES = 24 * 60

SUSPICIOUS_EMAIL_PATTERNS = [
    re.compile(r"\+[0-9]{3,}@"),  # Plus addressing with long numeric tags
    re.compile(r"^[a-z]{1,2}[0-9]{3,}@", re.IGNORECASE),  # Very short name with many numbers
    re.compile(r"^(test|temp|fake|spam|admin|user)[0-9]+@", re.IGNORECASE),
]


@dataclass
class ResolvedIdentities:
    """Fingerprints resolved for the request before rules run."""
    payment: Optional[PaymentFingerprint] = None
    device: Optional[DeviceFingerprint] = None


@dataclass
class ConditionResult:
    """
    Raw outcome of a category evaluator.

    When several checks of one rule match, the rule keeps the highest
    confidence and every piece of evidence.
    """
    triggered: bool = False
    confidence: float = 0.0
    evidence: list[str] = field(default_factory=list)

    def hit(self, confidence: float, evidence: str) -> None:
        self.triggered = True
        self.confidence = max(self.confidence, confidence)
        self.evidence.append(evidence)


Evaluator = Callable[
    [FraudRule, str, RequestContext, ResolvedIdentities],
    Awaitable[ConditionResult],
]


def _email_domain(email: str) -> Optional[str]:
    if "@" not in email:
        return None
    return email.rsplit("@", 1)[1].strip().lower() or None


class RuleEngine:
    """
    Evaluates rules for one user and request context.

    Reads registry, ledger and IP index state; never writes it.
    """

    def __init__(
        self,
        registry: FingerprintRegistry,
        ledger: UsageLedger,
        ip_index: IpAccountIndex,
        geo_provider: Optional[GeoIpProvider] = None,
    ):
        """
        Initialize rule engine.

        Args:
            registry: Fingerprint registry (sharing, blacklist lookups)
            ledger: Usage ledger (velocity and failed-payment windows)
            ip_index: Accounts-per-IP index
            geo_provider: VPN/country lookups (default: static prefix table)
        """
        self.registry = registry
        self.ledger = ledger
        self.ip_index = ip_index
        self.geo = geo_provider or StaticPatternGeoIpProvider()

        self._evaluators: dict[RuleCategory, Evaluator] = {
            RuleCategory.DEVICE: self._evaluate_device,
            RuleCategory.PAYMENT: self._evaluate_payment,
            RuleCategory.ACCOUNT: self._evaluate_account,
            RuleCategory.BEHAVIOR: self._evaluate_behavior,
            RuleCategory.VELOCITY: self._evaluate_velocity,
            RuleCategory.GEOGRAPHIC: self._evaluate_geographic,
        }

    async def evaluate(
        self,
        rule: FraudRule,
        user_id: str,
        context: RequestContext,
        resolved: Optional[ResolvedIdentities] = None,
    ) -> RuleEvaluation:
        """
        Evaluate a single rule.

        Never raises: evaluator failures become non-triggering results.
        """
        resolved = resolved or ResolvedIdentities()

        try:
            evaluator = self._evaluators.get(rule.category)
            if evaluator is None:
                raise RuleEvaluationError(rule.id, f"no evaluator for category '{rule.category}'")
            result = await evaluator(rule, user_id, context, resolved)
        except Exception as e:
            error = e if isinstance(e, RuleEvaluationError) else RuleEvaluationError(rule.id, repr(e))
            logger.warning("Error evaluating rule %s: %s", rule.id, error)
            metrics.rule_evaluation_errors.labels(rule_id=rule.id).inc()
            result = ConditionResult()

        triggered = result.triggered
        if triggered and result.confidence < rule.weights.confidence_threshold:
            logger.debug(
                "Rule %s matched below its confidence threshold (%.2f < %.2f)",
                rule.id, result.confidence, rule.weights.confidence_threshold,
            )
            triggered = False

        action = RecommendedAction.ALLOW
        if triggered:
            if rule.actions.block_user:
                action = RecommendedAction.BLOCK
            elif rule.actions.flag_for_review:
                action = RecommendedAction.FLAG

        reason = "Rule not triggered"
        if triggered:
            reason = f"{rule.description or rule.name} ({', '.join(result.evidence)})"

        return RuleEvaluation(
            rule_id=rule.id,
            rule_name=rule.name,
            triggered=triggered,
            confidence=result.confidence,
            evidence=result.evidence,
            reason=reason,
            risk_contribution=rule.weights.risk_multiplier * 10 * result.confidence if triggered else 0.0,
            recommended_action=action,
        )

    async def evaluate_all(
        self,
        rules: list[FraudRule],
        user_id: str,
        context: RequestContext,
        resolved: Optional[ResolvedIdentities] = None,
    ) -> list[RuleEvaluation]:
        """Evaluate rules concurrently; results keep the order of rules."""
        return list(
            await asyncio.gather(
                *(self.evaluate(rule, user_id, context, resolved) for rule in rules)
            )
        )

    # =========================================================================
    # Category Evaluators
    # =========================================================================

    async def _evaluate_device(
        self,
        rule: FraudRule,
        user_id: str,
        context: RequestContext,
        resolved: ResolvedIdentities,
    ) -> ConditionResult:
        conditions: DeviceConditions = rule.conditions
        result = ConditionResult()

        limit = conditions.max_accounts_per_device
        if limit is not None and resolved.device is not None:
            accounts = resolved.device.distinct_user_count
            if accounts > limit:
                result.hit(
                    DEVICE_SHARING_CONFIDENCE,
                    f"{accounts} accounts on device (limit: {limit})",
                )
        return result

    async def _evaluate_payment(
        self,
        rule: FraudRule,
        user_id: str,
        context: RequestContext,
        resolved: ResolvedIdentities,
    ) -> ConditionResult:
        conditions: PaymentConditions = rule.conditions
        result = ConditionResult()

        limit = conditions.max_accounts_per_payment_method
        if limit is not None and resolved.payment is not None:
            sharing = await self.registry.check_sharing(resolved.payment.id)
            if sharing.user_count > limit:
                result.hit(
                    PAYMENT_SHARING_CONFIDENCE,
                    f"Payment method shared by {sharing.user_count} users",
                )

        limit = conditions.max_failed_payments_per_hour
        if limit is not None:
            recent = await self.ledger.recent_for_user(user_id, HOUR_MINUTES)
            failures = sum(1 for record in recent if record.outcome.is_failure)
            if failures > limit:
                result.hit(
                    FAILED_PAYMENTS_CONFIDENCE,
                    f"{failures} failed payments in last hour",
                )

        if conditions.blacklisted_payment_method and resolved.payment is not None:
            if await self.registry.is_blacklisted(resolved.payment.id):
                result.hit(BLACKLISTED_PAYMENT_CONFIDENCE, "Payment method is blacklisted")

        return result

    async def _evaluate_account(
        self,
        rule: FraudRule,
        user_id: str,
        context: RequestContext,
        resolved: ResolvedIdentities,
    ) -> ConditionResult:
        conditions: AccountConditions = rule.conditions
        result = ConditionResult()

        if conditions.disposable_email and context.email:
            domain = _email_domain(context.email)
            disposable = {d.lower() for d in conditions.disposable_domains}
            if domain in disposable:
                result.hit(DISPOSABLE_EMAIL_CONFIDENCE, f"Disposable email domain: {domain}")

        limit = conditions.max_accounts_per_ip
        if limit is not None and context.ip:
            accounts = await self.ip_index.account_count(context.ip)
            if accounts > limit:
                result.hit(ACCOUNTS_PER_IP_CONFIDENCE, f"{accounts} accounts from IP")

        if conditions.suspicious_email_pattern and context.email:
            if any(pattern.search(context.email) for pattern in SUSPICIOUS_EMAIL_PATTERNS):
                result.hit(SUSPICIOUS_EMAIL_CONFIDENCE, "Suspicious email pattern")

        return result

    async def _evaluate_behavior(
        self,
        rule: FraudRule,
        user_id: str,
        context: RequestContext,
        resolved: ResolvedIdentities,
    ) -> ConditionResult:
        conditions: BehaviorConditions = rule.conditions
        result = ConditionResult()

        min_age = conditions.min_account_age_hours
        max_amount = conditions.max_transaction_amount
        if min_age is None or max_amount is None:
            return result
        if context.account_age_hours is None or context.amount is None:
            return result

        if context.account_age_hours < min_age and context.amount > max_amount:
            result.hit(
                NEW_ACCOUNT_SPEND_CONFIDENCE,
                f"New account ({context.account_age_hours:g}h old) "
                f"with high transaction ({context.amount} minor units)",
            )
        return result

    async def _evaluate_velocity(
        self,
        rule: FraudRule,
        user_id: str,
        context: RequestContext,
        resolved: ResolvedIdentities,
    ) -> ConditionResult:
        conditions: VelocityConditions = rule.conditions
        result = ConditionResult()

        windows = (
            (conditions.max_transactions_per_hour, HOUR_MINUTES, "last hour"),
            (conditions.max_transactions_per_day, DAY_MINUTES, "last 24 hours"),
        )
        for limit, minutes, label in windows:
            if limit is None:
                continue
            count = await self._transaction_count(user_id, resolved, minutes)
            if count > limit:
                result.hit(VELOCITY_CONFIDENCE, f"{count} transactions in {label}")
        return result

    async def _transaction_count(
        self,
        user_id: str,
        resolved: ResolvedIdentities,
        window_minutes: int,
    ) -> int:
        """Larger of the user's own usage and the presented instrument's usage."""
        count = len(await self.ledger.recent_for_user(user_id, window_minutes))
        if resolved.payment is not None:
            count = max(count, len(await self.ledger.recent(resolved.payment.id, window_minutes)))
        return count

    async def _evaluate_geographic(
        self,
        rule: FraudRule,
        user_id: str,
        context: RequestContext,
        resolved: ResolvedIdentities,
    ) -> ConditionResult:
        conditions: GeographicConditions = rule.conditions
        result = ConditionResult()
        if not context.ip:
            return result

        if conditions.vpn_detection and await self.geo.is_vpn_or_proxy(context.ip):
            result.hit(VPN_CONFIDENCE, f"VPN/Proxy IP detected: {context.ip}")

        if conditions.high_risk_countries:
            country = await self.geo.country_of(context.ip)
            high_risk = {c.upper() for c in conditions.high_risk_countries}
            if country and country.upper() in high_risk:
                result.hit(HIGH_RISK_COUNTRY_CONFIDENCE, f"High-risk country: {country.upper()}")

        return result
