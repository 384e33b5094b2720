"""Prometheus metrics for the relay.

Counters are bumped from the direction pipelines; the record gauges are
refreshed by the status reporter from the dedup store, so they survive
restarts.
"""

import logging
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

logger = logging.getLogger(__name__)

OUTCOMES = ("dropped", "duplicate", "confirmed", "failed", "retried")


class RelayMetrics:
    """Metrics held in their own registry (one per relay instance)."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.events_total = Counter(
            "bridge_relay_events_total",
            "Lock events by direction and outcome",
            ["direction", "outcome"],
            registry=self.registry,
        )
        self.records = Gauge(
            "bridge_relay_records",
            "Processed records by direction and status",
            ["direction", "status"],
            registry=self.registry,
        )
        self.dispatch_duration = Histogram(
            "bridge_relay_dispatch_duration_seconds",
            "Time from claim to terminal status",
            ["direction"],
            buckets=[1, 5, 15, 30, 60, 120, 300, 600],
            registry=self.registry,
        )
        self.watcher_up = Gauge(
            "bridge_relay_watcher_up",
            "1 while the direction's watcher is subscribed",
            ["direction"],
            registry=self.registry,
        )

    def record_event(self, direction: str, outcome: str) -> None:
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown outcome: {outcome}")
        self.events_total.labels(direction=direction, outcome=outcome).inc()

    def observe_dispatch(self, direction: str, seconds: float) -> None:
        self.dispatch_duration.labels(direction=direction).observe(seconds)

    def set_record_counts(self, direction: str, counts: dict[str, int]) -> None:
        for status, count in counts.items():
            self.records.labels(direction=direction, status=status).set(count)

    def set_watcher_up(self, direction: str, up: bool) -> None:
        self.watcher_up.labels(direction=direction).set(1 if up else 0)

    def event_count(self, direction: str, outcome: str) -> float:
        """Current counter value (used by status output and tests)."""
        value = self.registry.get_sample_value(
            "bridge_relay_events_total", {"direction": direction, "outcome": outcome}
        )
        return value or 0.0

    def render(self) -> bytes:
        return generate_latest(self.registry)

    def serve(self, port: int) -> None:
        """Expose the registry over HTTP."""
        start_http_server(port, registry=self.registry)
        logger.info(f"Metrics exposed on :{port}/metrics")
