"""CloudWatch custom metrics with background batching.

Two families of metrics are published:

* ``ExternalAPI/*`` — count, latency and errors for every collaborator call
  (``anthropic`` for the LLM, ``crm`` for the appointment store).
* ``Conversation/TurnOutcome`` — one data point per processed turn,
  dimensioned by flow (``chat`` / ``guided``) and outcome (``booked``,
  ``in_progress``, ``canned`` or the lower-cased error code).

Metrics are buffered in memory and flushed by a daemon thread every
``FLUSH_INTERVAL_SECONDS``.  Unless ``METRICS_ENABLED=true`` they are only
logged at DEBUG level and never pushed.

>>> from appointment_assistant.services.metrics import metrics
>>> metrics.record_success("crm", "GET query", latency_ms=85.0)
>>> metrics.record_turn_outcome("chat", "booked")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "BankAppointments"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self) -> None:
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None

        if self._enabled:
            self._start_flush_thread()

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Public API ────────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        """Record a successful collaborator call."""
        now = datetime.now(UTC)
        dims = [{"Name": "Service", "Value": service}]
        self._append(self._point(
            "ExternalAPI/RequestCount",
            dims + [{"Name": "Status", "Value": "success"}],
            now, 1, "Count",
        ))
        self._append(self._point(
            "ExternalAPI/Latency",
            dims + [{"Name": "Operation", "Value": operation}],
            now, latency_ms, "Milliseconds",
        ))
        logger.debug("Metric: %s %s success latency=%.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Record a failed collaborator call."""
        now = datetime.now(UTC)
        dims = [{"Name": "Service", "Value": service}]
        self._append(self._point(
            "ExternalAPI/RequestCount",
            dims + [{"Name": "Status", "Value": "failure"}],
            now, 1, "Count",
        ))
        self._append(self._point(
            "ExternalAPI/ErrorCount",
            dims + [{"Name": "ErrorType", "Value": error_type}],
            now, 1, "Count",
        ))
        if latency_ms > 0:
            self._append(self._point(
                "ExternalAPI/Latency",
                dims + [{"Name": "Operation", "Value": operation}],
                now, latency_ms, "Milliseconds",
            ))
        logger.debug(
            "Metric: %s %s failure error=%s latency=%.1fms",
            service, operation, error_type, latency_ms,
        )

    def record_turn_outcome(self, flow: str, outcome: str) -> None:
        """Count one processed turn by flow and outcome."""
        self._append(self._point(
            "Conversation/TurnOutcome",
            [{"Name": "Flow", "Value": flow}, {"Name": "Outcome", "Value": outcome}],
            datetime.now(UTC), 1, "Count",
        ))
        logger.debug("Metric: turn flow=%s outcome=%s", flow, outcome)

    def flush(self) -> int:
        """Send buffered metrics to CloudWatch.  Returns count sent."""
        with self._lock:
            if not self._buffer:
                return 0
            batch = self._buffer[:]
            self._buffer.clear()

        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    # ── Internal ──────────────────────────────────────────────────────

    @staticmethod
    def _point(
        name: str,
        dimensions: list[dict[str, str]],
        timestamp: datetime,
        value: float,
        unit: str,
    ) -> dict[str, Any]:
        return {
            "MetricName": name,
            "Dimensions": dimensions,
            "Timestamp": timestamp,
            "Value": value,
            "Unit": unit,
        }

    def _append(self, metric_data: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.append(metric_data)

    def _start_flush_thread(self) -> None:
        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        t = threading.Thread(target=_loop, daemon=True, name="metrics-flush")
        t.start()
        atexit.register(self.flush)
        logger.info("Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS)


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
