"""
Prometheus metrics for monitoring the ingestion engine.

Defines and exposes metrics for:
- Poll cycles and their latency
- Item flow (found, filtered, duplicate, accepted)
- Adapter errors
- Realtime connection status, webhook traffic and buffer overflow
- Plugin registry health

Metrics are exposed via HTTP endpoint for Prometheus scraping.
"""

import logging

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from src.config.settings import get_settings

logger = logging.getLogger(__name__)

# Poll cycles include network round trips, so buckets reach further than
# typical request latency buckets
POLL_LATENCY_BUCKETS = (0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0)

_CONNECTION_STATUS_VALUES = {
    "disconnected": 0,
    "connecting": 1,
    "reconnecting": 2,
    "connected": 3,
    "disconnecting": 4,
}


class MetricsCollector:
    """
    Prometheus metrics collector for the ingest engine.

    Usage:
        metrics = MetricsCollector()
        metrics.start_server()

        metrics.record_poll("slack-eng", "slack", status="success", latency=0.8)
        metrics.record_items("slack-eng", found=5, filtered=1, duplicate=2, accepted=2)
    """

    def __init__(self):
        """Initialize Prometheus metrics."""

        self.poll_cycles = Counter(
            "ingest_poll_cycles_total",
            "Total poll cycles run",
            ["source_id", "adapter_type", "status"],  # status: success, error
        )

        self.poll_latency = Histogram(
            "ingest_poll_latency_seconds",
            "Duration of a full poll cycle",
            ["adapter_type"],
            buckets=POLL_LATENCY_BUCKETS,
        )

        self.items = Counter(
            "ingest_items_total",
            "Items seen by the engine, by outcome",
            ["source_id", "outcome"],  # found, filtered, duplicate, accepted
        )

        self.adapter_errors = Counter(
            "ingest_adapter_errors_total",
            "Total adapter errors",
            ["adapter_type", "error_type"],
        )

        self.source_backoff = Gauge(
            "ingest_source_backoff_seconds",
            "Current backoff applied to a source after consecutive failures",
            ["source_id"],
        )

        self.realtime_status = Gauge(
            "ingest_realtime_connection_status",
            "Realtime connection status (0=disconnected, 1=connecting, "
            "2=reconnecting, 3=connected, 4=disconnecting)",
            ["source_id"],
        )

        self.webhook_requests = Counter(
            "ingest_webhook_requests_total",
            "Inbound webhook requests",
            ["adapter_type", "outcome"],  # accepted, rejected
        )

        self.buffer_dropped = Counter(
            "ingest_buffer_dropped_total",
            "Pushed items dropped because the realtime buffer was full",
            ["adapter_type"],
        )

        self.plugins_loaded = Gauge(
            "ingest_plugins",
            "Plugins discovered by the registry",
            ["status"],  # loaded, failed
        )

    def start_server(self, port: int | None = None) -> None:
        """
        Start Prometheus metrics HTTP server.

        Args:
            port: Port to expose metrics on (default from settings)
        """
        settings = get_settings()
        port = port or settings.metrics_port

        start_http_server(port, registry=REGISTRY)
        logger.info(f"Prometheus metrics server started on port {port}")

    # Convenience methods

    def record_poll(
        self,
        source_id: str,
        adapter_type: str,
        status: str,
        latency: float | None = None,
    ) -> None:
        self.poll_cycles.labels(
            source_id=source_id, adapter_type=adapter_type, status=status
        ).inc()
        if latency is not None:
            self.poll_latency.labels(adapter_type=adapter_type).observe(latency)

    def record_items(
        self,
        source_id: str,
        found: int = 0,
        filtered: int = 0,
        duplicate: int = 0,
        accepted: int = 0,
    ) -> None:
        for outcome, count in (
            ("found", found),
            ("filtered", filtered),
            ("duplicate", duplicate),
            ("accepted", accepted),
        ):
            if count:
                self.items.labels(source_id=source_id, outcome=outcome).inc(count)

    def record_error(self, adapter_type: str, error_type: str) -> None:
        self.adapter_errors.labels(
            adapter_type=adapter_type, error_type=error_type
        ).inc()

    def set_backoff(self, source_id: str, seconds: float) -> None:
        self.source_backoff.labels(source_id=source_id).set(seconds)

    def set_connection_status(self, source_id: str, status: str) -> None:
        self.realtime_status.labels(source_id=source_id).set(
            _CONNECTION_STATUS_VALUES.get(status, 0)
        )

    def record_webhook(self, adapter_type: str, accepted: bool) -> None:
        outcome = "accepted" if accepted else "rejected"
        self.webhook_requests.labels(adapter_type=adapter_type, outcome=outcome).inc()

    def record_buffer_drop(self, adapter_type: str) -> None:
        self.buffer_dropped.labels(adapter_type=adapter_type).inc()

    def set_plugin_counts(self, loaded: int, failed: int) -> None:
        self.plugins_loaded.labels(status="loaded").set(loaded)
        self.plugins_loaded.labels(status="failed").set(failed)


# Global metrics instance
_metrics: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get global metrics collector instance."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
