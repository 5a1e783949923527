"""
FleetEvent types published on the fleet event bus.

Every state change in the fleet core is published as an immutable
FleetEvent: health transitions, presence changes, fallback breaker
transitions and corrective-action requests.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict


class EventType(str, Enum):
    """Event categories emitted by the fleet core."""
    HEALTH_CHANGED = "health-changed"
    NODE_JOINED = "joined"
    NODE_LEFT = "left"
    NODE_RETURNED = "returned"
    FALLBACK_ACTIVATED = "activated"
    FALLBACK_DEACTIVATED = "deactivated"
    FALLBACK_UNAVAILABLE = "fallback-unavailable"
    API_CHECK_DUE = "api-check-due"
    CORRECTIVE_ACTION = "corrective-action"
    DISPATCH_FAILED = "dispatch-failed"
    PERSISTENCE_FAILED = "persistence-failed"


@dataclass(frozen=True)
class FleetEvent:
    """Immutable fleet event.

    Attributes:
        type: Event category
        source: Producer name (e.g., "prober", "breaker:primary")
        payload: Event data; producers hand over copies, never live state
        timestamp: UTC time the event was created
        sequence: Bus-assigned publish sequence number
    """
    type: EventType
    source: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "type": self.type.value,
            "source": self.source,
            "payload": dict(self.payload),
            "timestamp": self.timestamp.isoformat(),
            "sequence": self.sequence,
        }
