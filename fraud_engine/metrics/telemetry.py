"""
Lightweight in-memory telemetry for admin dashboards.
"""

from collections import deque
from datetime import datetime, UTC, timedelta
from statistics import mean
from typing import Deque, Dict


class AssessmentTelemetry:
    """Ring buffer of recent assessments for dashboarding."""

    def __init__(self, maxlen: int = 2000) -> None:
        self._events: Deque[dict] = deque(maxlen=maxlen)

    def record(self, recommendation: str, risk_score: float, latency_ms: float) -> None:
        self._events.append(
            {
                "ts": datetime.now(UTC),
                "recommendation": recommendation,
                "risk_score": risk_score,
                "latency_ms": latency_ms,
            }
        )

    def clear(self) -> None:
        self._events.clear()

    def snapshot(self, hours: int = 24) -> dict:
        cutoff = datetime.now(UTC) - timedelta(hours=hours)
        events = [e for e in self._events if e["ts"] >= cutoff]

        latencies = [e["latency_ms"] for e in events]
        recommendations: Dict[str, int] = {}
        for e in events:
            recommendations[e["recommendation"]] = recommendations.get(e["recommendation"], 0) + 1

        p95 = None
        if latencies:
            latencies_sorted = sorted(latencies)
            index = int(round(0.95 * (len(latencies_sorted) - 1)))
            p95 = latencies_sorted[index]

        return {
            "window_hours": hours,
            "counts": recommendations,
            "avg_risk_score": mean(e["risk_score"] for e in events) if events else None,
            "avg_latency_ms": mean(latencies) if latencies else None,
            "p95_latency_ms": p95,
            "events": [
                {
                    "ts": e["ts"].isoformat(),
                    "recommendation": e["recommendation"],
                    "risk_score": e["risk_score"],
                    "latency_ms": e["latency_ms"],
                }
                for e in events
            ],
        }


telemetry = AssessmentTelemetry()
