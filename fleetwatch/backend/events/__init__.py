"""Fleet event bus."""

from .bus import FleetEventBus, Subscription
from .types import EventType, FleetEvent

__all__ = ["FleetEventBus", "Subscription", "EventType", "FleetEvent"]
