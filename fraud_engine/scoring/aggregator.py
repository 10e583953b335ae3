"""
Risk Aggregator

Combines rule evaluations into one fraud assessment:
- Overall risk score: sum of triggered contributions, capped at 100
- Confidence: risk-multiplier-weighted mean of triggered confidences
- Recommendation: block > review > allow, from the triggered rules'
  actions and the score thresholds

Assessments are stored under assessments:{id} and indexed by time, so
history, review outcomes and rule performance can be served later.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, UTC
from typing import Optional
from uuid import uuid4

from ..config import Settings
from ..errors import AssessmentNotFound, FraudEngineError
from ..fingerprints import FingerprintRegistry
from ..metrics import metrics, telemetry
from ..policy import FraudRule, ResolvedIdentities, RuleEngine, RuleRepository
from ..schemas import (
    FraudAssessment,
    Recommendation,
    RecommendedAction,
    RequestContext,
    ReviewOutcome,
    RuleEvaluation,
    RulePerformanceReport,
    RuleStats,
)
from ..storage import KeyValueStore, assessment_key, family_prefix, review_key

logger = logging.getLogger("fraud_engine.scoring")

ASSESSMENT_INDEX = "assessment_index:all"


def assessment_user_index(user_id: str) -> str:
    return f"assessment_user_index:{user_id}"


def _to_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _dedupe(items: list[str]) -> list[str]:
    """Drop repeats, keeping first-seen order."""
    return list(dict.fromkeys(items))


def combine_scores(
    triggered: list[RuleEvaluation],
    multipliers: dict[str, float],
) -> tuple[float, float]:
    """
    Overall risk score and confidence of a set of triggered evaluations.

    Returns:
        (min(100, sum of contributions), weighted confidence or 0.0)
    """
    overall = min(100.0, sum(e.risk_contribution for e in triggered))

    total_weight = sum(multipliers.get(e.rule_id, 1.0) for e in triggered)
    if total_weight <= 0:
        return overall, 0.0
    weighted = sum(e.confidence * multipliers.get(e.rule_id, 1.0) for e in triggered)
    return overall, min(1.0, weighted / total_weight)


def recommend(
    triggered: list[RuleEvaluation],
    overall_score: float,
    block_threshold: float,
    review_threshold: float,
) -> Recommendation:
    """Block beats review beats allow."""
    actions = {e.recommended_action for e in triggered}
    if RecommendedAction.BLOCK in actions or overall_score >= block_threshold:
        return Recommendation.BLOCK
    if RecommendedAction.FLAG in actions or overall_score >= review_threshold:
        return Recommendation.REVIEW
    return Recommendation.ALLOW


class RiskAggregator:
    """
    Produces, stores and reviews fraud assessments.

    Only FingerprintingFailed is expected to escape assess(); rule
    failures have already been folded into non-triggering evaluations.
    """

    def __init__(
        self,
        registry: FingerprintRegistry,
        rules: RuleRepository,
        engine: RuleEngine,
        store: KeyValueStore,
        settings: Settings,
    ):
        """
        Initialize aggregator.

        Args:
            registry: Fingerprint registry (identity resolution)
            rules: Rule repository (active rule snapshot, counters)
            engine: Rule engine
            store: Backing key-value store for assessments
            settings: Engine settings (thresholds, retention)
        """
        self.registry = registry
        self.rules = rules
        self.engine = engine
        self.store = store
        self.settings = settings

    # =========================================================================
    # Assessment
    # =========================================================================

    async def assess(self, user_id: str, context: RequestContext) -> FraudAssessment:
        """
        Assess one user action.

        Args:
            user_id: User being assessed
            context: Request context (signals, email, IP, amount, ...)

        Returns:
            The stored, immutable assessment

        Raises:
            FingerprintingFailed: presented signals cannot be fingerprinted
        """
        start_time = time.perf_counter()

        resolved = await self._resolve(user_id, context)
        if context.ip:
            try:
                await self.engine.ip_index.add(context.ip, user_id)
            except FraudEngineError as e:
                logger.warning("Could not record IP for user %s: %s", user_id, e)

        rules = await self.rules.active_rules()
        evaluations = await self.engine.evaluate_all(rules, user_id, context, resolved)
        triggered = sorted(
            (e for e in evaluations if e.triggered),
            key=lambda e: e.risk_contribution,
            reverse=True,
        )

        multipliers = {rule.id: rule.weights.risk_multiplier for rule in rules}
        overall, confidence = combine_scores(triggered, multipliers)
        recommendation = recommend(
            triggered,
            overall,
            self.settings.block_score_threshold,
            self.settings.review_score_threshold,
        )

        assessment = FraudAssessment(
            assessment_id=f"assess_{uuid4().hex}",
            user_id=user_id,
            overall_risk_score=overall,
            confidence=confidence,
            recommendation=recommendation,
            triggered_rules=triggered,
            risk_factors=_dedupe([item for e in triggered for item in e.evidence]),
            suggested_actions=self._suggested_actions(triggered, rules),
            payment_fingerprint_id=resolved.payment.id if resolved.payment else None,
            device_fingerprint_id=resolved.device.id if resolved.device else None,
        )

        await self._save(assessment)
        await self._record_triggers(assessment)

        latency_ms = (time.perf_counter() - start_time) * 1000
        metrics.assessments_total.labels(recommendation=recommendation.value).inc()
        metrics.assessment_latency.observe(latency_ms)
        metrics.risk_score_distribution.observe(overall)
        telemetry.record(recommendation.value, overall, latency_ms)

        if recommendation != Recommendation.ALLOW:
            logger.info(
                "Assessment %s for user %s: %s (score %.1f, rules %s)",
                assessment.assessment_id,
                user_id,
                recommendation.value,
                overall,
                ", ".join(e.rule_id for e in triggered),
            )
        return assessment

    async def _resolve(self, user_id: str, context: RequestContext) -> ResolvedIdentities:
        """Resolve payment and device fingerprints concurrently."""
        payment, device = await asyncio.gather(
            self.registry.resolve_or_create(context.payment, user_id) if context.payment else _none(),
            self.registry.resolve_or_create(context.device, user_id) if context.device else _none(),
        )
        return ResolvedIdentities(payment=payment, device=device)

    @staticmethod
    def _suggested_actions(triggered: list[RuleEvaluation], rules: list[FraudRule]) -> list[str]:
        by_id = {rule.id: rule for rule in rules}
        return _dedupe([
            action
            for e in triggered
            if e.rule_id in by_id
            for action in by_id[e.rule_id].actions.describe()
        ])

    async def _save(self, assessment: FraudAssessment) -> None:
        key = assessment_key(assessment.assessment_id)
        score = _to_ms(assessment.timestamp)
        await self.store.put(key, assessment.model_dump(mode="json"))
        await asyncio.gather(
            self.store.index_add(ASSESSMENT_INDEX, assessment.assessment_id, score),
            self.store.index_add(assessment_user_index(assessment.user_id), assessment.assessment_id, score),
        )

    async def _record_triggers(self, assessment: FraudAssessment) -> None:
        """Bump rule trigger counters; failures are logged, never raised."""
        for evaluation in assessment.triggered_rules:
            try:
                await self.rules.record_trigger(evaluation.rule_id, assessment.timestamp)
            except FraudEngineError as e:
                logger.warning("Could not record trigger of rule %s: %s", evaluation.rule_id, e)

    # =========================================================================
    # History and Review
    # =========================================================================

    async def get_assessment(self, assessment_id: str) -> FraudAssessment:
        """
        Raises:
            AssessmentNotFound: no stored assessment with this id
        """
        raw = await self.store.get(assessment_key(assessment_id))
        if raw is None:
            raise AssessmentNotFound(assessment_id)
        return FraudAssessment.model_validate(raw)

    async def get_assessment_history(
        self,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[FraudAssessment]:
        """Stored assessments, newest first, optionally for one user."""
        limit = max(0, min(limit, self.settings.assessment_history_limit))
        if limit == 0:
            return []

        index = assessment_user_index(user_id) if user_id else ASSESSMENT_INDEX
        ids = await self.store.index_tail(index, limit)
        rows = await self.store.get_many([assessment_key(i) for i in reversed(ids)])
        return [FraudAssessment.model_validate(row) for row in rows]

    async def record_review_outcome(
        self,
        assessment_id: str,
        was_true_positive: bool,
        reviewer: str = "system",
    ) -> ReviewOutcome:
        """
        Record the manual review verdict of an assessment.

        Every rule the assessment triggered gains a true or false positive
        and its effectiveness becomes tp / (tp + fp). The first verdict
        for an assessment is kept; repeated calls return it unchanged.

        Raises:
            AssessmentNotFound: no stored assessment with this id
        """
        assessment = await self.get_assessment(assessment_id)

        outcome = ReviewOutcome(
            assessment_id=assessment_id,
            was_true_positive=was_true_positive,
            reviewer=reviewer,
        )
        created = await self.store.compare_and_set(
            review_key(assessment_id), outcome.model_dump(mode="json"), None
        )
        if not created:
            existing = await self.store.get(review_key(assessment_id))
            logger.info("Assessment %s already reviewed; keeping the first verdict", assessment_id)
            return ReviewOutcome.model_validate(existing)

        for evaluation in assessment.triggered_rules:
            try:
                await self.rules.record_review(evaluation.rule_id, was_true_positive)
            except FraudEngineError as e:
                logger.warning("Could not record review for rule %s: %s", evaluation.rule_id, e)

        logger.info(
            "Assessment %s reviewed by %s: %s",
            assessment_id, reviewer, "true positive" if was_true_positive else "false positive",
        )
        return outcome

    async def rule_performance(self) -> RulePerformanceReport:
        """Rule set totals and per-rule trigger/review statistics."""
        rules = await self.rules.list_rules()
        rows = await self.store.scan(family_prefix("assessments"))

        total = len(rows)
        blocked = sum(1 for row in rows if row["recommendation"] == Recommendation.BLOCK.value)
        reviewed = sum(1 for row in rows if row["recommendation"] == Recommendation.REVIEW.value)
        avg_score = sum(row["overall_risk_score"] for row in rows) / total if total else 0.0

        stats = []
        for rule in rules:
            meta = rule.metadata
            stats.append(RuleStats(
                rule_id=rule.id,
                name=rule.name,
                category=rule.category.value,
                is_active=rule.is_active,
                trigger_count=meta.trigger_count,
                true_positive_count=meta.true_positive_count,
                false_positive_count=meta.false_positive_count,
                effectiveness=meta.effectiveness,
                false_positive_rate=(
                    meta.false_positive_count / meta.trigger_count if meta.trigger_count else 0.0
                ),
            ))

        return RulePerformanceReport(
            total_rules=len(rules),
            active_rules=sum(1 for rule in rules if rule.is_active),
            total_assessments=total,
            avg_risk_score=round(avg_score, 2),
            block_rate=round(blocked / total * 100, 2) if total else 0.0,
            review_rate=round(reviewed / total * 100, 2) if total else 0.0,
            rules=stats,
        )

    # =========================================================================
    # Retention
    # =========================================================================

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """
        Drop assessments (and their reviews) older than the retention window.

        Returns:
            Number of assessments removed
        """
        now = now or datetime.now(UTC)
        cutoff_ms = _to_ms(now - timedelta(days=self.settings.assessment_retention_days))

        expired = await self.store.index_remove_below(ASSESSMENT_INDEX, cutoff_ms)
        if not expired:
            return 0

        rows = await self.store.get_many([assessment_key(i) for i in expired])
        users = {row["user_id"] for row in rows}

        removed = 0
        for assessment_id in expired:
            if await self.store.delete(assessment_key(assessment_id)):
                removed += 1
            await self.store.delete(review_key(assessment_id))
        for user_id in users:
            await self.store.index_remove_below(assessment_user_index(user_id), cutoff_ms)

        logger.info(
            "Purged %d assessments older than %d days",
            removed, self.settings.assessment_retention_days,
        )
        return removed


async def _none() -> None:
    return None
