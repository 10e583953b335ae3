"""
Prometheus Metrics

Defines all metrics exposed by the fraud engine.
Metrics are critical for:
- Latency monitoring of the assessment path
- Business metrics (block rate, review rate, rule hit rates)
- Operational health (rule failures, write conflicts, error rates)
"""

import logging

from prometheus_client import Counter, Histogram, Gauge, start_http_server

from ..config import settings

logger = logging.getLogger("fraud_engine.metrics")


class EngineMetrics:
    """
    Container for all Prometheus metrics.

    Organized by category:
    - Request metrics
    - Assessment metrics
    - Rule metrics
    - Registry metrics
    - Pattern metrics
    """

    def __init__(self):
        """Initialize all metrics."""

        # =====================================================================
        # Request Metrics
        # =====================================================================
        self.requests_total = Counter(
            "fraud_engine_requests_total",
            "Total number of API requests",
            labelnames=["endpoint"],
        )

        self.errors_total = Counter(
            "fraud_engine_errors_total",
            "Total number of errors",
            labelnames=["error_type"],
        )

        # =====================================================================
        # Assessment Metrics
        # =====================================================================
        self.assessments_total = Counter(
            "fraud_engine_assessments_total",
            "Total number of assessments by recommendation",
            labelnames=["recommendation"],
        )

        self.assessment_latency = Histogram(
            "fraud_engine_assessment_latency_ms",
            "Assessment latency in milliseconds",
            buckets=[1, 2, 5, 10, 25, 50, 100, 250, 500, 1000],
        )

        self.risk_score_distribution = Histogram(
            "fraud_engine_risk_score",
            "Distribution of overall risk scores",
            buckets=[10, 20, 30, 40, 50, 60, 70, 80, 90, 100],
        )

        self.assessments_unavailable = Counter(
            "fraud_engine_assessments_unavailable_total",
            "Assessments that could not be produced",
        )

        # =====================================================================
        # Rule Metrics
        # =====================================================================
        self.rule_triggers = Counter(
            "fraud_engine_rule_triggers_total",
            "Number of times each rule triggered",
            labelnames=["rule_id"],
        )

        self.rule_evaluation_errors = Counter(
            "fraud_engine_rule_evaluation_errors_total",
            "Rule evaluations that failed and were treated as not triggered",
            labelnames=["rule_id"],
        )

        self.active_rules = Gauge(
            "fraud_engine_active_rules",
            "Number of active rules in the current rule set",
        )

        # =====================================================================
        # Registry Metrics
        # =====================================================================
        self.fingerprint_resolutions = Counter(
            "fraud_engine_fingerprint_resolutions_total",
            "Fingerprint resolutions by kind and result",
            labelnames=["kind", "result"],
        )

        self.cas_conflicts = Counter(
            "fraud_engine_cas_conflicts_total",
            "Optimistic write conflicts by key family",
            labelnames=["family"],
        )

        self.blacklisted_total = Counter(
            "fraud_engine_blacklisted_total",
            "Blacklist calls by fingerprint kind",
            labelnames=["kind"],
        )

        self.usage_records_total = Counter(
            "fraud_engine_usage_records_total",
            "Usage records appended by outcome",
            labelnames=["outcome"],
        )

        # =====================================================================
        # Pattern Metrics
        # =====================================================================
        self.patterns_detected = Counter(
            "fraud_engine_patterns_detected_total",
            "Risk patterns emitted by detection runs",
            labelnames=["pattern_type"],
        )

        # =====================================================================
        # System Metrics
        # =====================================================================
        self.component_health = Gauge(
            "fraud_engine_component_health",
            "Component health status (1=healthy, 0=unhealthy)",
            labelnames=["component"],
        )


# Global metrics instance
metrics = EngineMetrics()


def setup_metrics() -> None:
    """
    Setup standalone Prometheus metrics server.

    Starts HTTP server on configured port when the external server is
    enabled; otherwise metrics are only served through the API.
    """
    if settings.metrics_enabled and settings.metrics_external_enabled:
        try:
            start_http_server(settings.metrics_port)
            logger.info("Metrics server started on port %d", settings.metrics_port)
        except OSError as e:
            logger.warning("Failed to start metrics server: %s", e)
