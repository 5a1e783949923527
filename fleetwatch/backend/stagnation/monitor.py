"""
Stagnation Monitor

Watches a per-node progress metric (e.g. throughput). A node that claims
to be active while its metric stays at zero (or invalid) for longer than
the threshold gets one corrective-action request, then a cooldown.

State machine per node:
    NORMAL -> SUSPECT(since) -> ACTION(cooldown_until)

The monitor never performs the corrective action itself; it publishes a
``corrective-action`` event and returns the record.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import Lock
from typing import Any, Dict, List, Optional

from fleetwatch.backend.events.bus import FleetEventBus
from fleetwatch.backend.events.types import EventType
from fleetwatch.core.metrics import CORRECTIVE_ACTIONS_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = timedelta(minutes=5)
DEFAULT_COOLDOWN = timedelta(minutes=15)
ACTION_LOG_SIZE = 200


class StagnationState(str, Enum):
    NORMAL = "normal"
    SUSPECT = "suspect"
    ACTION = "action"


@dataclass
class NodeStagnation:
    """Per-node stagnation tracking."""
    state: StagnationState = StagnationState.NORMAL
    suspect_since: Optional[datetime] = None
    cooldown_until: Optional[datetime] = None

    def in_cooldown(self, now: datetime) -> bool:
        return self.cooldown_until is not None and self.cooldown_until > now


@dataclass(frozen=True)
class CorrectiveActionRecord:
    node_id: str
    reason: str
    timestamp: datetime
    cooldown_until: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
            "cooldown_until": self.cooldown_until.isoformat(),
        }


def format_duration(delta: timedelta) -> str:
    """Render a duration as e.g. '5m 1s' or '45s'."""
    seconds = int(delta.total_seconds())
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def is_progressing(metric: Optional[float]) -> bool:
    """True for a finite, positive metric."""
    if metric is None:
        return False
    try:
        value = float(metric)
    except (TypeError, ValueError):
        return False
    return math.isfinite(value) and value > 0


class StagnationMonitor:
    """Detects nodes that claim activity but make no progress."""

    def __init__(
        self,
        bus: Optional[FleetEventBus] = None,
        threshold: timedelta = DEFAULT_THRESHOLD,
        cooldown: timedelta = DEFAULT_COOLDOWN,
    ):
        """
        Args:
            bus: Optional event bus for corrective-action events
            threshold: How long a node may stay stagnant before action
            cooldown: Minimum time between actions for the same node
        """
        self.bus = bus
        self.threshold = threshold
        self.cooldown = cooldown
        self._nodes: Dict[str, NodeStagnation] = {}
        self._actions: List[CorrectiveActionRecord] = []
        self._lock = Lock()

    def check(
        self,
        node_id: str,
        metric: Optional[float],
        claimed_active: bool,
        now: Optional[datetime] = None,
    ) -> Optional[CorrectiveActionRecord]:
        """
        Feed one metric observation for a node.

        Returns:
            The corrective action record when this observation moves the
            node into ACTION, otherwise None
        """
        now = now or datetime.now(timezone.utc)
        with self._lock:
            tracking = self._nodes.setdefault(node_id, NodeStagnation())

            if is_progressing(metric) or not claimed_active:
                # Cooldown outlives the reset
                tracking.state = StagnationState.NORMAL
                tracking.suspect_since = None
                return None

            if tracking.in_cooldown(now):
                tracking.suspect_since = now
                return None

            if tracking.state == StagnationState.NORMAL or tracking.suspect_since is None:
                tracking.state = StagnationState.SUSPECT
                tracking.suspect_since = now
                logger.debug(f"Node {node_id} suspected stagnant (metric={metric})")
                return None

            stagnant_for = now - tracking.suspect_since
            if stagnant_for <= self.threshold:
                tracking.state = StagnationState.SUSPECT
                return None

            tracking.state = StagnationState.ACTION
            tracking.cooldown_until = now + self.cooldown
            record = CorrectiveActionRecord(
                node_id=node_id,
                reason=f"no progress for {format_duration(stagnant_for)}",
                timestamp=now,
                cooldown_until=tracking.cooldown_until,
            )
            self._actions.append(record)
            if len(self._actions) > ACTION_LOG_SIZE:
                self._actions = self._actions[-ACTION_LOG_SIZE:]

        CORRECTIVE_ACTIONS_TOTAL.labels(node_id=node_id).inc()
        logger.warning(f"Node {node_id} stagnant: {record.reason}; corrective action requested")
        if self.bus is not None:
            self.bus.emit(
                EventType.CORRECTIVE_ACTION,
                "stagnation",
                node_id=node_id,
                reason=record.reason,
                cooldown_until=record.cooldown_until.isoformat(),
            )
        return record

    def get_state(self, node_id: str) -> StagnationState:
        with self._lock:
            tracking = self._nodes.get(node_id)
            return tracking.state if tracking else StagnationState.NORMAL

    def get_actions(self, limit: int = 50) -> List[CorrectiveActionRecord]:
        with self._lock:
            return list(self._actions[-limit:])

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "nodes": {
                    node_id: {
                        "state": t.state.value,
                        "suspect_since": t.suspect_since.isoformat() if t.suspect_since else None,
                        "cooldown_until": t.cooldown_until.isoformat() if t.cooldown_until else None,
                    }
                    for node_id, t in self._nodes.items()
                },
                "recent_actions": [a.to_dict() for a in self._actions[-20:]],
            }
