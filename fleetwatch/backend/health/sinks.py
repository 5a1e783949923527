"""
MetricsSink Interface

Pluggable metric emission for the health prober. The prober always updates
the Prometheus collectors in fleetwatch.core.metrics; a sink forwards the
same probe outcomes to an additional backend supplied by the embedding
application.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Optional

logger = logging.getLogger(__name__)

STATE_VALUES = {"healthy": 2, "degraded": 1, "offline": 0}


class MetricsSink(ABC):
    """Abstract interface for metric emission."""

    @abstractmethod
    def emit(
        self,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
        timestamp: Optional[datetime] = None
    ) -> None:
        """Emit a gauge-style metric.

        Args:
            name: Metric name (e.g., "node_success_rate")
            value: Metric value
            tags: Optional key-value pairs for labeling
            timestamp: Optional timestamp (defaults to now)
        """
        ...

    @abstractmethod
    def emit_histogram(
        self,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """Emit a histogram observation."""
        ...

    def emit_probe(
        self,
        node_id: str,
        state: str,
        latency_ms: float,
        success_rate: float
    ) -> None:
        """Emit one node's probe outcome as state, success-rate and latency.

        Args:
            node_id: Probed node
            state: healthy, degraded or offline
            latency_ms: Probe latency in milliseconds
            success_rate: Rolling success rate (0-100)
        """
        tags = {"node_id": node_id}
        self.emit("node_state", STATE_VALUES.get(state, -1), tags=tags)
        self.emit("node_success_rate", success_rate, tags=tags)
        self.emit_histogram("probe_latency_ms", latency_ms, tags=tags)


class NoOpMetricsSink(MetricsSink):
    """Default sink - swallows all metrics."""

    def emit(self, name, value, tags=None, timestamp=None) -> None:
        pass

    def emit_histogram(self, name, value, tags=None) -> None:
        pass
