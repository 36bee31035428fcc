"""
OpenTelemetry metrics instrumentation for the migration bridge.

This module provides metrics collection for:
- Migration outcomes (batch, single and JIT)
- The inconsistent-state failure window that needs manual reconciliation
- Microsoft Graph request and retry counts
- Temporary password notification delivery

Instruments are no-ops until a meter provider is configured by the host.
"""

import logging
import time
from contextlib import contextmanager
from typing import Optional

from opentelemetry import metrics
from opentelemetry.metrics import Counter, Histogram

logger = logging.getLogger(__name__)


class MetricsCollector:
    """
    Centralized metrics collection for the application.

    Keeps business logic decoupled from the OpenTelemetry APIs.
    """

    def __init__(self):
        """Initialize the metrics collector with OpenTelemetry meter."""
        self.meter = metrics.get_meter(__name__)
        self._initialize_migration_metrics()
        self._initialize_graph_metrics()
        self._initialize_notification_metrics()

    def _initialize_migration_metrics(self) -> None:
        self.migration_outcomes: Counter = self.meter.create_counter(
            name="bridge.migration.outcomes",
            description="Per-user migration outcomes",
            unit="1",
        )

        self.inconsistent_state: Counter = self.meter.create_counter(
            name="bridge.migration.inconsistent_state",
            description="Remote identities created whose local record could not be marked",
            unit="1",
        )

        self.batch_duration: Histogram = self.meter.create_histogram(
            name="bridge.migration.batch.duration",
            description="Duration of bulk migration runs",
            unit="ms",
        )

    def _initialize_graph_metrics(self) -> None:
        self.graph_requests: Counter = self.meter.create_counter(
            name="bridge.graph.requests",
            description="Microsoft Graph requests by outcome",
            unit="1",
        )

        self.graph_retries: Counter = self.meter.create_counter(
            name="bridge.graph.retries",
            description="Microsoft Graph requests retried after throttling or errors",
            unit="1",
        )

    def _initialize_notification_metrics(self) -> None:
        self.notifications: Counter = self.meter.create_counter(
            name="bridge.notifications",
            description="Temporary password notifications by outcome",
            unit="1",
        )

    # Migration helpers

    def record_migration_outcome(self, status: str, mode: str) -> None:
        """
        Record a per-user migration outcome.

        Args:
            status: migrated, skipped or failed
            mode: batch, single or jit
        """
        self.migration_outcomes.add(1, {"status": status, "mode": mode})

    def record_inconsistent_state(self, mode: str) -> None:
        self.inconsistent_state.add(1, {"mode": mode})

    @contextmanager
    def track_batch(self):
        """
        Context manager to track bulk migration duration.

        Usage:
            with metrics.track_batch():
                await run()
        """
        start_time = time.perf_counter()
        try:
            yield
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self.batch_duration.record(duration_ms)

    # Graph helpers

    def record_graph_request(self, method: str, status_code: int) -> None:
        self.graph_requests.add(
            1, {"http.method": method, "http.status_code": str(status_code)}
        )

    def record_graph_retry(self, reason: str) -> None:
        self.graph_retries.add(1, {"reason": reason})

    # Notification helpers

    def record_notification(self, status: str) -> None:
        """
        Record a notification delivery attempt.

        Args:
            status: sent, retried, dropped or failed
        """
        self.notifications.add(1, {"status": status})


_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """
    Get the global metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector instance
    """
    global _metrics_collector

    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
        logger.debug("Metrics collector initialized")
    return _metrics_collector


def shutdown_metrics() -> None:
    """Drop the global collector so the next call rebinds to the current provider."""
    global _metrics_collector
    _metrics_collector = None
    logger.info("Metrics collector shutdown")
