# FILE: shopedge/metrics.py
from __future__ import annotations

from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, Info, generate_latest

_LATENCY_BUCKETS = (0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0)


class EdgeMetrics:
    """
    Prometheus instruments for the edge pipeline.

    All instruments live on one registry owned by the app, so several apps
    (tests, embedded use) can coexist in a process without name clashes.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry(auto_describe=True)

        self.build_info = Info(
            "shopedge_build",
            "shopedge build metadata",
            registry=self.registry,
        )
        self.decisions = Counter(
            "shopedge_decisions_total",
            "Edge decisions by kind",
            ["kind"],
            registry=self.registry,
        )
        self.rejects = Counter(
            "shopedge_rejects_total",
            "Rejected requests by reason",
            ["reason"],
            registry=self.registry,
        )
        self.rate_limit_blocks = Counter(
            "shopedge_rate_limit_blocks_total",
            "Requests blocked by the rate limiter",
            ["tier"],
            registry=self.registry,
        )
        self.session_refresh = Counter(
            "shopedge_session_refresh_total",
            "Silent session refresh outcomes",
            ["outcome"],
            registry=self.registry,
        )
        self.tracked_keys = Gauge(
            "shopedge_rate_limit_tracked_keys",
            "Rate-limit windows currently held in memory",
            registry=self.registry,
        )
        self.latency = Histogram(
            "shopedge_decision_latency_seconds",
            "Time spent deciding a request at the edge",
            buckets=_LATENCY_BUCKETS,
            registry=self.registry,
        )

    def publish_build(self, *, version: str, config_hash: str, profile: str) -> None:
        self.build_info.info({"version": version, "config_hash": config_hash, "profile": profile})

    def observe_decision(self, kind: str, latency_s: float) -> None:
        self.decisions.labels(kind).inc()
        self.latency.observe(max(0.0, latency_s))

    def observe_reject(self, reason: str) -> None:
        self.rejects.labels(reason).inc()

    def observe_rate_limited(self, tier: str) -> None:
        self.rate_limit_blocks.labels(tier).inc()

    def observe_refresh(self, outcome: str) -> None:
        self.session_refresh.labels(outcome).inc()

    def set_tracked_keys(self, n: int) -> None:
        self.tracked_keys.set(n)

    def render(self) -> bytes:
        return generate_latest(self.registry)


__all__ = ["EdgeMetrics"]
