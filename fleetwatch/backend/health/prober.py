"""
Fleet Health Prober

Periodically probes the registered worker/relay nodes and tracks:
- Three-state health classification (healthy / degraded / offline)
- Last probe time and response latency
- Rolling success rate over a bounded ring buffer of probe outcomes
- Priority-ordered healthy pools for work routing
- Per-pool task completion counters

Probes run concurrently with a per-probe timeout and a soft cycle
deadline; one hung or failing node never blocks or crashes the cycle.
"""

import asyncio
import copy
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set

from fleetwatch.backend.events.bus import FleetEventBus
from fleetwatch.backend.events.types import EventType
from fleetwatch.backend.health.checks import MetricSource, StatusProbeResult
from fleetwatch.backend.health.sinks import MetricsSink, NoOpMetricsSink
from fleetwatch.core.error_handling import ProbeError, classify_error, log_error
from fleetwatch.core.metrics import (
    HEALTH_TRANSITIONS_TOTAL,
    NODE_STATE,
    NODE_SUCCESS_RATE,
    PROBE_CYCLE_DURATION,
    PROBE_LATENCY_SECONDS,
)
from fleetwatch.logging_config import get_logger, log_health_transition

logger = logging.getLogger(__name__)
struct_logger = get_logger(__name__)

HISTORY_SIZE = 60
CYCLE_HISTORY_SIZE = 500
REPORT_HISTORY_SAMPLES = 10
DEFAULT_PROBE_TIMEOUT = 10.0
DEFAULT_DEGRADED_THRESHOLD_MS = 5000
DEFAULT_CYCLE_DEADLINE = 60.0


class NodeHealth(str, Enum):
    """Node health classification."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


_STATE_GAUGE_VALUES = {
    NodeHealth.OFFLINE: 0,
    NodeHealth.DEGRADED: 1,
    NodeHealth.HEALTHY: 2,
    NodeHealth.UNKNOWN: -1,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProbeSample:
    """One entry of a node's probe ring buffer."""
    timestamp: datetime
    state: NodeHealth
    latency_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "state": self.state.value,
            "latency_ms": self.latency_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProbeSample":
        if not isinstance(data, dict):
            raise TypeError(f"probe sample must be a mapping, not {type(data).__name__}")
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            state=NodeHealth(data["state"]),
            latency_ms=int(data.get("latency_ms", 0)),
        )


def compute_success_rate(samples: Iterable[ProbeSample]) -> int:
    """Percentage of non-offline samples, rounded; 100 for no samples."""
    samples = list(samples)
    if not samples:
        return 100
    up = sum(1 for s in samples if s.state != NodeHealth.OFFLINE)
    return round(100 * up / len(samples))


def classify_probe(online: bool, latency_ms: float,
                   degraded_threshold_ms: float = DEFAULT_DEGRADED_THRESHOLD_MS) -> NodeHealth:
    """Map a probe outcome to a health state."""
    if not online:
        return NodeHealth.OFFLINE
    if latency_ms > degraded_threshold_ms:
        return NodeHealth.DEGRADED
    return NodeHealth.HEALTHY


@dataclass
class Node:
    """A worker/relay node tracked by the prober.

    ``success_rate`` is derived from ``history`` on every read and is never
    stored separately.
    """
    node_id: str
    name: str = ""
    address: str = ""
    capacity: int = 0
    priority: int = 99
    always_local: bool = False
    state: NodeHealth = NodeHealth.UNKNOWN
    last_probe: Optional[datetime] = None
    latency_ms: int = 0
    history: Deque[ProbeSample] = field(default_factory=lambda: deque(maxlen=HISTORY_SIZE))

    def __post_init__(self):
        if not self.name:
            self.name = self.node_id
        if self.always_local and self.state == NodeHealth.UNKNOWN:
            self.state = NodeHealth.HEALTHY

    @property
    def success_rate(self) -> int:
        return compute_success_rate(self.history)

    def record(self, sample: ProbeSample) -> None:
        self.state = sample.state
        self.last_probe = sample.timestamp
        self.latency_ms = sample.latency_ms
        self.history.append(sample)

    def to_dict(self, recent: int = REPORT_HISTORY_SAMPLES) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "name": self.name,
            "address": self.address,
            "capacity": self.capacity,
            "priority": self.priority,
            "always_local": self.always_local,
            "state": self.state.value,
            "last_probe": self.last_probe.isoformat() if self.last_probe else None,
            "latency_ms": self.latency_ms,
            "success_rate": self.success_rate,
            "recent_history": [s.to_dict() for s in list(self.history)[-recent:]],
        }


@dataclass
class ProbeResult:
    """Outcome of probing one node during a cycle."""
    node_id: str
    state: NodeHealth
    previous_state: NodeHealth
    latency_ms: int
    success_rate: int
    status_code: int = 0
    error: Optional[str] = None
    abandoned: bool = False
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.state != self.previous_state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "state": self.state.value,
            "previous_state": self.previous_state.value,
            "latency_ms": self.latency_ms,
            "success_rate": self.success_rate,
            "status_code": self.status_code,
            "error": self.error,
            "abandoned": self.abandoned,
        }


class HealthProber:
    """
    Concurrent health prober for a small fleet of nodes.

    Every cycle probes each registered node (except the always-local one)
    with its own timeout, classifies the outcome, appends it to the node's
    ring buffer and publishes ``health-changed`` only when a node's
    classification differs from its previous one.

    Readers get copies of node state; nothing outside the prober mutates it.
    """

    def __init__(
        self,
        source: MetricSource,
        bus: Optional[FleetEventBus] = None,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        degraded_threshold_ms: float = DEFAULT_DEGRADED_THRESHOLD_MS,
        cycle_deadline: float = DEFAULT_CYCLE_DEADLINE,
        history_size: int = HISTORY_SIZE,
        metrics_sink: Optional[MetricsSink] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize prober.

        Args:
            source: MetricSource used to request node status
            bus: Optional event bus for health-changed events
            probe_timeout: Per-probe timeout in seconds
            degraded_threshold_ms: Latency above which an online node is degraded
            cycle_deadline: Soft deadline for a whole cycle in seconds
            history_size: Ring buffer capacity per node
            metrics_sink: Optional MetricsSink (default: NoOpMetricsSink)
            clock: Returns the current UTC time
        """
        self.source = source
        self.bus = bus
        self.probe_timeout = probe_timeout
        self.degraded_threshold_ms = degraded_threshold_ms
        self.cycle_deadline = cycle_deadline
        self.history_size = history_size
        self.metrics_sink = metrics_sink or NoOpMetricsSink()
        self._clock = clock

        self._nodes: Dict[str, Node] = {}
        self._task_stats: Dict[str, Any] = {"total": 0, "completed": 0, "failed": 0, "by_pool": {}}
        self._cycle_history: Deque[Dict[str, Any]] = deque(maxlen=CYCLE_HISTORY_SIZE)
        self._abandoned: Set[asyncio.Task] = set()
        self._lock = Lock()

        logger.info(
            f"HealthProber initialized: timeout={probe_timeout}s, "
            f"degraded>{degraded_threshold_ms}ms, history={history_size}"
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, node: Node) -> Node:
        """Register a node. Re-registering updates its static attributes."""
        with self._lock:
            existing = self._nodes.get(node.node_id)
            if existing is not None:
                existing.name = node.name
                existing.address = node.address
                existing.capacity = node.capacity
                existing.priority = node.priority
                existing.always_local = node.always_local
                return copy.deepcopy(existing)

            if node.history.maxlen != self.history_size:
                node.history = deque(node.history, maxlen=self.history_size)
            self._nodes[node.node_id] = node
            logger.info(f"Registered node {node.node_id} ({node.address or 'local'}, priority={node.priority})")
            return copy.deepcopy(node)

    def get_node(self, node_id: str) -> Optional[Node]:
        with self._lock:
            node = self._nodes.get(node_id)
            return copy.deepcopy(node) if node else None

    def get_nodes(self) -> List[Node]:
        with self._lock:
            return [copy.deepcopy(n) for n in self._nodes.values()]

    # ------------------------------------------------------------------
    # Probe cycle
    # ------------------------------------------------------------------

    async def _probe(self, node: Node, semaphore: asyncio.Semaphore) -> StatusProbeResult:
        async with semaphore:
            start = time.monotonic()
            try:
                return await asyncio.wait_for(
                    self.source.status(node.address, self.probe_timeout),
                    timeout=self.probe_timeout,
                )
            except asyncio.TimeoutError:
                return StatusProbeResult(
                    ok=False,
                    latency_ms=int(self.probe_timeout * 1000),
                    error=f"timed out after {self.probe_timeout}s",
                )
            except Exception as e:
                log_error(classify_error(
                    ProbeError(f"Probe of {node.node_id} raised {type(e).__name__}: {e}", component="prober"),
                    "prober",
                    {"node_id": node.node_id},
                ), logger)
                return StatusProbeResult(
                    ok=False,
                    latency_ms=int((time.monotonic() - start) * 1000),
                    error=f"{type(e).__name__}: {e}",
                )

    async def run_cycle(self, nodes: Optional[Iterable[Node]] = None) -> List[ProbeResult]:
        """
        Probe nodes concurrently and record the outcomes.

        Args:
            nodes: Nodes to probe (default: every registered node). Unknown
                nodes are registered first.

        Returns:
            One ProbeResult per node, in input order
        """
        if nodes is None:
            targets = self.get_nodes()
        else:
            targets = [self.register(n) for n in nodes]

        started = time.monotonic()
        remote = [n for n in targets if not n.always_local]
        semaphore = asyncio.Semaphore(max(1, len(remote)))
        tasks: Dict[str, asyncio.Task] = {
            n.node_id: asyncio.ensure_future(self._probe(n, semaphore)) for n in remote
        }

        done: Set[asyncio.Task] = set()
        if tasks:
            done, pending = await asyncio.wait(tasks.values(), timeout=self.cycle_deadline)
            for task in pending:
                # Left to finish on its own probe timeout
                self._abandoned.add(task)
                task.add_done_callback(self._abandoned.discard)
            if pending:
                logger.warning(f"Probe cycle deadline hit: {len(pending)} probe(s) abandoned")

        now = self._clock()
        results = []
        for node in targets:
            abandoned = False
            if node.always_local:
                outcome = StatusProbeResult(ok=True, status_code=200, latency_ms=0)
            else:
                task = tasks[node.node_id]
                if task in done:
                    outcome = task.result()
                else:
                    abandoned = True
                    outcome = StatusProbeResult(
                        ok=False,
                        latency_ms=int(self.cycle_deadline * 1000),
                        error="abandoned at cycle deadline",
                    )
            results.append(self._apply(node.node_id, outcome, now, abandoned))

        duration = time.monotonic() - started
        PROBE_CYCLE_DURATION.set(duration)
        self.metrics_sink.emit("probe_cycle_duration_seconds", duration)

        with self._lock:
            self._cycle_history.append({
                "timestamp": now.isoformat(),
                "results": {
                    r.node_id: {
                        "status": r.state.value,
                        "latency_ms": r.latency_ms,
                        "success_rate": r.success_rate,
                    }
                    for r in results
                },
            })
        return results

    def _apply(self, node_id: str, outcome: StatusProbeResult, now: datetime,
               abandoned: bool = False) -> ProbeResult:
        """Record a probe outcome on the stored node."""
        state = classify_probe(outcome.ok, outcome.latency_ms, self.degraded_threshold_ms)
        with self._lock:
            node = self._nodes[node_id]
            previous = node.state
            node.record(ProbeSample(timestamp=now, state=state, latency_ms=outcome.latency_ms))
            result = ProbeResult(
                node_id=node_id,
                state=state,
                previous_state=previous,
                latency_ms=outcome.latency_ms,
                success_rate=node.success_rate,
                status_code=outcome.status_code,
                error=outcome.error,
                abandoned=abandoned,
                payload=dict(outcome.payload),
            )

        NODE_STATE.labels(node_id=node_id).set(_STATE_GAUGE_VALUES[state])
        NODE_SUCCESS_RATE.labels(node_id=node_id).set(result.success_rate)
        PROBE_LATENCY_SECONDS.labels(node_id=node_id).observe(outcome.latency_ms / 1000.0)
        self.metrics_sink.emit_probe(node_id, state.value, outcome.latency_ms, result.success_rate)

        if result.changed:
            HEALTH_TRANSITIONS_TOTAL.labels(node_id=node_id, to_state=state.value).inc()
            log_health_transition(
                struct_logger,
                node_id,
                previous.value,
                state.value,
                latency_ms=outcome.latency_ms,
                success_rate=result.success_rate,
                error=outcome.error,
            )
            if self.bus is not None:
                self.bus.emit(
                    EventType.HEALTH_CHANGED,
                    "prober",
                    node_id=node_id,
                    previous_state=previous.value,
                    state=state.value,
                    latency_ms=outcome.latency_ms,
                    success_rate=result.success_rate,
                )
        return result

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def get_healthy_pools(self) -> List[str]:
        """Non-offline node IDs, ascending by priority rank then ID."""
        with self._lock:
            pools = [n for n in self._nodes.values() if n.state != NodeHealth.OFFLINE]
            return [n.node_id for n in sorted(pools, key=lambda n: (n.priority, n.node_id))]

    def get_health_report(self) -> Dict[str, Any]:
        """Full per-node health snapshot for dashboards."""
        with self._lock:
            nodes = {node_id: n.to_dict() for node_id, n in self._nodes.items()}
            task_stats = copy.deepcopy(self._task_stats)
            states = [n.state for n in self._nodes.values()]

        return {
            "timestamp": self._clock().isoformat(),
            "nodes": nodes,
            "task_stats": task_stats,
            "summary": {
                "total_nodes": len(states),
                "healthy_nodes": states.count(NodeHealth.HEALTHY),
                "degraded_nodes": states.count(NodeHealth.DEGRADED),
                "offline_nodes": states.count(NodeHealth.OFFLINE),
                "unknown_nodes": states.count(NodeHealth.UNKNOWN),
            },
            "healthy_pools": self.get_healthy_pools(),
        }

    def get_cycle_history(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(list(self._cycle_history)[-limit:])

    def record_task(self, pool: str, success: bool) -> None:
        """Count a task completion against a pool."""
        outcome = "completed" if success else "failed"
        with self._lock:
            stats = self._task_stats
            stats["total"] += 1
            stats[outcome] += 1
            pool_stats = stats["by_pool"].setdefault(pool, {"total": 0, "completed": 0, "failed": 0})
            pool_stats["total"] += 1
            pool_stats[outcome] += 1

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def export_state(self) -> Dict[str, Any]:
        """Serializable snapshot of probe history, task stats and cycle history."""
        with self._lock:
            return {
                "node_history": {
                    node_id: [s.to_dict() for s in n.history]
                    for node_id, n in self._nodes.items()
                },
                "task_stats": copy.deepcopy(self._task_stats),
                "cycle_history": copy.deepcopy(list(self._cycle_history)),
            }

    def parse_state(self, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Validate a snapshot from export_state() without applying it.

        Raises:
            TypeError: a section or entry has the wrong type
            ValueError: a sample or counter has an invalid value
        """
        data = _expect(data, dict, "prober state", {})
        node_history = {}
        for node_id, samples in _expect(data.get("node_history"), dict, "node_history", {}).items():
            samples = _expect(samples, list, f"history of {node_id}", [])
            node_history[node_id] = [
                ProbeSample.from_dict(s) for s in samples[-self.history_size:]
            ]

        task_stats = {"total": 0, "completed": 0, "failed": 0, "by_pool": {}}
        raw_stats = _expect(data.get("task_stats"), dict, "task_stats", {})
        for key in ("total", "completed", "failed"):
            task_stats[key] = _count(raw_stats.get(key, 0), f"task_stats.{key}")
        for pool, counts in _expect(raw_stats.get("by_pool"), dict, "task_stats.by_pool", {}).items():
            counts = _expect(counts, dict, f"task stats of {pool}", {})
            task_stats["by_pool"][pool] = {
                key: _count(counts.get(key, 0), f"task stats of {pool}.{key}")
                for key in ("total", "completed", "failed")
            }

        cycle_history = _expect(data.get("cycle_history"), list, "cycle_history", [])
        for entry in cycle_history:
            _expect(entry, dict, "cycle_history entry", {})

        return {
            "node_history": node_history,
            "task_stats": task_stats,
            "cycle_history": copy.deepcopy(cycle_history),
        }

    def apply_state(self, state: Dict[str, Any]) -> None:
        """Apply a snapshot returned by parse_state(). Unknown nodes are ignored.

        Ring buffers, task stats and cycle history are replaced; node
        classifications stay as they are until the next probe.
        """
        with self._lock:
            for node_id, samples in state["node_history"].items():
                node = self._nodes.get(node_id)
                if node is None:
                    continue
                node.history = deque(samples, maxlen=self.history_size)
            self._task_stats = state["task_stats"]
            self._cycle_history.extend(state["cycle_history"])

    def restore_state(self, data: Optional[Dict[str, Any]]) -> None:
        """Validate and apply a snapshot from export_state(); nothing changes on error."""
        self.apply_state(self.parse_state(data))


def _expect(value: Any, kind: type, what: str, default: Any) -> Any:
    if value is None:
        return default
    if not isinstance(value, kind):
        raise TypeError(f"{what} must be a {kind.__name__}, not {type(value).__name__}")
    return value


def _count(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"{what} must be a non-negative integer, got {value!r}")
    return value
