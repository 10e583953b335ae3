"""
Fraud Assessment API

FastAPI application exposing the fraud engine.

Endpoints:
- POST /assess: Assess a registration, purchase or bonus claim
- POST /usage: Record a transaction attempt in the usage ledger
- /fingerprints/{kind}/{id}/...: Sharing, blacklist status, blacklisting
- /rules: Rule CRUD and rule performance
- /assessments: Assessment history and review outcomes
- /patterns: Pattern detection runs and results
- GET /health: Health check
- GET /metrics: Prometheus metrics
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..config import settings
from ..engine import FraudEngine
from ..errors import (
    AssessmentNotFound,
    ConcurrentModification,
    FingerprintingFailed,
    FingerprintNotFound,
    RuleNotFound,
    RuleValidationError,
)
from ..metrics import metrics, setup_metrics, telemetry
from ..policy import FraudRule, RuleCreate, RuleUpdate
from ..schemas import (
    AssessmentRequest,
    BlacklistRequest,
    CardRiskPattern,
    FingerprintKind,
    FraudAssessment,
    ReviewOutcome,
    ReviewRequest,
    RulePerformanceReport,
    SharingInfo,
    UsageEvent,
    UsageRecord,
)
from ..utils.logger import get_logger
from .auth import require_admin_token, require_api_token, require_metrics_token
from .dependencies import get_engine, set_engine

logger = logging.getLogger("fraud_engine.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Creates the engine on the configured store backend, loads the rule
    set, and closes the store on shutdown.
    """
    get_logger("fraud_engine")

    engine = FraudEngine(settings=settings)
    await engine.start()
    set_engine(engine)

    if settings.metrics_enabled:
        setup_metrics()

    yield

    set_engine(None)
    await engine.close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Fraud & Risk Assessment API",
        description="Rule-based fraud assessment with payment and device fingerprinting",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return app


app = create_app()


@app.get("/health")
async def health_check():
    """
    Health check endpoint.

    Returns service health status and component availability.
    """
    health = {
        "status": "healthy",
        "components": {
            "store": False,
            "rules": False,
        },
    }

    try:
        engine = get_engine()
    except HTTPException:
        health["status"] = "unavailable"
        return health

    health["store_backend"] = engine.store.backend
    try:
        health["components"]["store"] = await engine.health_check()
        if health["components"]["store"]:
            active = await engine.list_rules(active_only=True)
            health["components"]["rules"] = bool(active)
            health["active_rules"] = len(active)
    except Exception as e:
        logger.warning("Health check failed: %s", e)

    for component, healthy in health["components"].items():
        metrics.component_health.labels(component=component).set(1 if healthy else 0)

    if not all(health["components"].values()):
        health["status"] = "degraded"

    return health


@app.get("/metrics")
def metrics_endpoint(_: None = Depends(require_metrics_token)):
    """Expose Prometheus metrics with optional token auth."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/metrics/summary")
def metrics_summary(hours: int = 24, _: None = Depends(require_metrics_token)):
    """Return recent assessment telemetry for dashboards."""
    return telemetry.snapshot(hours=hours)


# =============================================================================
# ASSESSMENT
# =============================================================================

@app.post("/assess", response_model=FraudAssessment)
async def assess(
    request: AssessmentRequest,
    _: None = Depends(require_api_token),
):
    """
    Assess a user action.

    Any failure returns 503 "assessment unavailable"; callers must not
    treat the absence of an assessment as "allow".
    """
    metrics.requests_total.labels(endpoint="/assess").inc()

    try:
        engine = get_engine()
        return await engine.assess(request.user_id, request.context)
    except Exception as e:
        metrics.errors_total.labels(error_type=type(e).__name__).inc()
        metrics.assessments_unavailable.inc()
        logger.error("Assessment failed for user %s: %s", request.user_id, e)
        raise HTTPException(status_code=503, detail="assessment unavailable")


@app.get("/assessments", response_model=list[FraudAssessment])
async def list_assessments(
    user_id: Optional[str] = None,
    limit: int = 100,
    engine: FraudEngine = Depends(get_engine),
    _: None = Depends(require_api_token),
):
    """Stored assessments, newest first."""
    return await engine.get_assessment_history(user_id=user_id, limit=limit)


@app.get("/assessments/{assessment_id}", response_model=FraudAssessment)
async def get_assessment(
    assessment_id: str,
    engine: FraudEngine = Depends(get_engine),
    _: None = Depends(require_api_token),
):
    try:
        return await engine.get_assessment(assessment_id)
    except AssessmentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.post("/assessments/{assessment_id}/review", response_model=ReviewOutcome)
async def review_assessment(
    assessment_id: str,
    review: ReviewRequest,
    engine: FraudEngine = Depends(get_engine),
    _: None = Depends(require_admin_token),
):
    """Record a manual review verdict; updates rule effectiveness."""
    try:
        return await engine.record_review_outcome(
            assessment_id, review.was_true_positive, review.reviewer
        )
    except AssessmentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


# =============================================================================
# USAGE AND FINGERPRINTS
# =============================================================================

@app.post("/usage", response_model=UsageRecord)
async def record_usage(
    event: UsageEvent,
    engine: FraudEngine = Depends(get_engine),
    _: None = Depends(require_api_token),
):
    """Append a transaction attempt to the usage ledger."""
    metrics.requests_total.labels(endpoint="/usage").inc()

    try:
        fingerprint_id = event.fingerprint_id or engine.registry.compute_payment_id(event.payment)
    except FingerprintingFailed as e:
        raise HTTPException(status_code=400, detail=str(e))

    return await engine.record_usage(
        fingerprint_id,
        event.user_id,
        event.transaction_id,
        event.amount,
        event.outcome,
        currency=event.currency,
        ip=event.ip,
        user_agent=event.user_agent,
        fraud_flags=event.fraud_flags,
        timestamp=event.timestamp,
    )


@app.get("/fingerprints/{kind}/{fingerprint_id}")
async def get_fingerprint(
    kind: FingerprintKind,
    fingerprint_id: str,
    engine: FraudEngine = Depends(get_engine),
    _: None = Depends(require_api_token),
):
    if kind == FingerprintKind.PAYMENT:
        record = await engine.registry.get_payment(fingerprint_id)
    else:
        record = await engine.registry.get_device(fingerprint_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Fingerprint '{fingerprint_id}' not found")
    return record


@app.get("/fingerprints/{kind}/{fingerprint_id}/sharing", response_model=SharingInfo)
async def check_sharing(
    kind: FingerprintKind,
    fingerprint_id: str,
    engine: FraudEngine = Depends(get_engine),
    _: None = Depends(require_api_token),
):
    """Users sharing a fingerprint; unknown ids report zero users."""
    return await engine.check_sharing(fingerprint_id)


@app.get("/fingerprints/{kind}/{fingerprint_id}/blacklisted")
async def is_blacklisted(
    kind: FingerprintKind,
    fingerprint_id: str,
    engine: FraudEngine = Depends(get_engine),
    _: None = Depends(require_api_token),
):
    return {
        "fingerprint_id": fingerprint_id,
        "blacklisted": await engine.is_blacklisted(fingerprint_id),
    }


@app.post("/fingerprints/{kind}/{fingerprint_id}/blacklist")
async def blacklist_fingerprint(
    kind: FingerprintKind,
    fingerprint_id: str,
    request: BlacklistRequest,
    engine: FraudEngine = Depends(get_engine),
    _: None = Depends(require_admin_token),
):
    """Blacklist a fingerprint (idempotent)."""
    try:
        await engine.blacklist(fingerprint_id, request.reason, request.actor)
    except FingerprintNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConcurrentModification as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {
        "status": "success",
        "fingerprint_id": fingerprint_id,
        "blacklisted": True,
    }


@app.post("/fingerprints/{kind}/{fingerprint_id}/reset")
async def reset_fingerprint_risk(
    kind: FingerprintKind,
    fingerprint_id: str,
    actor: str = "system",
    engine: FraudEngine = Depends(get_engine),
    _: None = Depends(require_admin_token),
):
    """Reset risk score to 0 and lift a blacklist."""
    try:
        return await engine.reset_risk(fingerprint_id, actor)
    except FingerprintNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConcurrentModification as e:
        raise HTTPException(status_code=409, detail=str(e))


# =============================================================================
# RULE MANAGEMENT ENDPOINTS
# =============================================================================

@app.get("/rules", response_model=list[FraudRule])
async def list_rules(
    active_only: bool = False,
    engine: FraudEngine = Depends(get_engine),
    _: None = Depends(require_api_token),
):
    return await engine.list_rules(active_only=active_only)


@app.get("/rules/performance", response_model=RulePerformanceReport)
async def rule_performance(
    engine: FraudEngine = Depends(get_engine),
    _: None = Depends(require_api_token),
):
    """Trigger counts, effectiveness and block/review rates."""
    return await engine.rule_performance()


@app.get("/rules/{rule_id}", response_model=FraudRule)
async def get_rule(
    rule_id: str,
    engine: FraudEngine = Depends(get_engine),
    _: None = Depends(require_api_token),
):
    try:
        return await engine.get_rule(rule_id)
    except RuleNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.post("/rules", response_model=FraudRule, status_code=201)
async def create_rule(
    rule: RuleCreate,
    changed_by: str = "system",
    engine: FraudEngine = Depends(get_engine),
    _: None = Depends(require_admin_token),
):
    """Add a new fraud rule."""
    try:
        return await engine.create_rule(rule, actor=changed_by)
    except RuleValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.put("/rules/{rule_id}", response_model=FraudRule)
async def update_rule(
    rule_id: str,
    update: RuleUpdate,
    changed_by: str = "system",
    engine: FraudEngine = Depends(get_engine),
    _: None = Depends(require_admin_token),
):
    """Update an existing fraud rule."""
    try:
        return await engine.update_rule(rule_id, update, actor=changed_by)
    except RuleNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RuleValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ConcurrentModification as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.delete("/rules/{rule_id}")
async def delete_rule(
    rule_id: str,
    engine: FraudEngine = Depends(get_engine),
    _: None = Depends(require_admin_token),
):
    """Delete a fraud rule."""
    try:
        await engine.delete_rule(rule_id)
    except RuleNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {"status": "success", "rule_id": rule_id}


# =============================================================================
# PATTERNS AND RETENTION
# =============================================================================

@app.post("/patterns/run", response_model=list[CardRiskPattern])
async def run_pattern_detection(
    engine: FraudEngine = Depends(get_engine),
    _: None = Depends(require_admin_token),
):
    """Run pattern detection once and return the new patterns."""
    return await engine.run_pattern_detection()


@app.get("/patterns", response_model=list[CardRiskPattern])
async def list_patterns(
    since: Optional[datetime] = None,
    engine: FraudEngine = Depends(get_engine),
    _: None = Depends(require_api_token),
):
    return await engine.list_patterns(since=since)


@app.post("/admin/purge")
async def purge_expired(
    engine: FraudEngine = Depends(get_engine),
    _: None = Depends(require_admin_token),
):
    """Apply the usage, assessment and pattern retention windows."""
    return {"status": "success", "removed": await engine.purge_expired()}
