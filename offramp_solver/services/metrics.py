"""Prometheus metrics for the solver.

Each `SolverMetrics` owns its own CollectorRegistry so tests and embedded
apps can create as many as they like.
"""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

_PREFIX = "offramp_solver"
_STEP_BUCKETS = (1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0)
_ATTEST_BUCKETS = (0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0)


class SolverMetrics:
    """Counters and histograms for quoting and fulfillment."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        r = self.registry
        self.intents_seen = Counter(
            f"{_PREFIX}_intents_seen_total", "Intents seen by currency.", ("currency",), registry=r
        )
        self.quotes_submitted = Counter(
            f"{_PREFIX}_quotes_submitted_total", "Quotes submitted by route.", ("route",), registry=r
        )
        self.intents_fulfilled = Counter(
            f"{_PREFIX}_intents_fulfilled_total",
            "Intents settled, by route and outcome (claimed / by_other).",
            ("route", "outcome"),
            registry=r,
        )
        self.intents_failed = Counter(
            f"{_PREFIX}_intents_failed_total",
            "Permanent intent failures by stage and whether fiat was sent.",
            ("stage", "fiat_sent"),
            registry=r,
        )
        self.retries_scheduled = Counter(
            f"{_PREFIX}_retries_scheduled_total", "Retries scheduled by stage.", ("stage",), registry=r
        )
        self.fiat_sent_claim_failed = Counter(
            f"{_PREFIX}_fiat_sent_claim_failed_total",
            "Intents that failed permanently after fiat was sent.",
            registry=r,
        )
        self.transfer_duration = Histogram(
            f"{_PREFIX}_transfer_duration_seconds",
            "Fiat transfer duration.",
            ("route", "status"),
            buckets=_STEP_BUCKETS,
            registry=r,
        )
        self.proof_duration = Histogram(
            f"{_PREFIX}_proof_duration_seconds",
            "Proof capture duration.",
            ("status",),
            buckets=_STEP_BUCKETS,
            registry=r,
        )
        self.attestation_duration = Histogram(
            f"{_PREFIX}_attestation_duration_seconds",
            "Attestation request duration.",
            ("status",),
            buckets=_ATTEST_BUCKETS,
            registry=r,
        )

    def record_failure(self, stage: str, fiat_sent: bool, permanent: bool, alert: bool) -> None:
        if not permanent:
            self.retries_scheduled.labels(stage=stage).inc()
            return
        self.intents_failed.labels(stage=stage, fiat_sent=str(fiat_sent).lower()).inc()
        if alert:
            self.fiat_sent_claim_failed.inc()

    def render(self) -> bytes:
        return generate_latest(self.registry)
