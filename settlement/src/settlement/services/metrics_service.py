"""
Metrics Service
===============

Prometheus metrics for the settlement workers.  Stage outcomes and circuit
breaker transitions are recorded directly by the code that observes them;
terminal receipts and failure messages are counted by
:class:`MetricsService`, which consumes them from the event bus as its own
consumer group.

Configuration
-------------

* ``PROMETHEUS_PORT``: port on which to expose the metrics HTTP endpoint.
  If the server is already running on the port, it is reused.

Metrics
-------

* ``settlement_stage_messages_total{stage,outcome}``: messages handled per stage.
* ``settlement_stage_seconds{stage}``: handling latency per stage.
* ``settlement_failures_total{stage,reason}``: typed failures.
* ``settlement_receipts_total{status}``: terminal receipts emitted.
* ``settlement_circuit_state{backend}``: 0 closed, 1 half-open, 2 open.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from ..models_events import ORDER_COMPLETED, ORDER_FAILED, STAGE_FAILED, TRANSFER_FAILED
from ..resilience import CircuitState

logger = logging.getLogger(__name__)

STAGE_MESSAGES = Counter(
    "settlement_stage_messages_total",
    "Messages handled per stage and outcome",
    labelnames=["stage", "outcome"],
)
STAGE_SECONDS = Histogram(
    "settlement_stage_seconds",
    "Time spent handling one message per stage",
    labelnames=["stage"],
)
FAILURES = Counter(
    "settlement_failures_total",
    "Typed failures per stage and reason",
    labelnames=["stage", "reason"],
)
RECEIPTS = Counter(
    "settlement_receipts_total",
    "Terminal receipts emitted",
    labelnames=["status"],
)
CIRCUIT_STATE = Gauge(
    "settlement_circuit_state",
    "Circuit breaker state per backend (0=closed,1=half_open,2=open)",
    labelnames=["backend"],
)

_CIRCUIT_VALUES = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}

METRICS_GROUP = "metrics"
METRICS_TOPICS = (ORDER_COMPLETED, ORDER_FAILED, STAGE_FAILED, TRANSFER_FAILED)


def record_stage(stage: str, outcome: str, seconds: Optional[float] = None) -> None:
    STAGE_MESSAGES.labels(stage=stage, outcome=outcome).inc()
    if seconds is not None:
        STAGE_SECONDS.labels(stage=stage).observe(seconds)


def record_circuit_state(backend: str, state: CircuitState) -> None:
    CIRCUIT_STATE.labels(backend=backend).set(_CIRCUIT_VALUES[state])


def start_metrics_server(port: int) -> None:
    try:
        start_http_server(port)
    except OSError as exc:
        logger.debug("Prometheus server likely already running: %s", exc)


class MetricsService:
    """Count receipts and failures seen on the event bus."""

    def __init__(self, event_bus: Any) -> None:
        self.event_bus = event_bus
        event_bus.declare(METRICS_GROUP, METRICS_TOPICS)

    def observe(self, topic: str, message: Any) -> None:
        if not isinstance(message, dict):
            return
        if topic in (ORDER_COMPLETED, ORDER_FAILED):
            status = (message.get("receipt") or {}).get("status", "UNKNOWN")
            RECEIPTS.labels(status=status).inc()
        elif topic == STAGE_FAILED:
            FAILURES.labels(stage=message.get("stage", "?"), reason=message.get("reason", "?")).inc()
        elif topic == TRANSFER_FAILED:
            FAILURES.labels(stage="transfer", reason=message.get("reason", "?")).inc()

    async def _consume(self, partition: int) -> None:
        async for topic, message in self.event_bus.subscribe(METRICS_GROUP, partition):
            self.observe(topic, message)

    async def run(self) -> None:
        """Consume every partition concurrently and never return."""
        await asyncio.gather(*(self._consume(p) for p in range(self.event_bus.partitions)))
