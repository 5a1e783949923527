"""Fleet composition root."""

from .coordinator import STATS_KEY, FleetCoordinator

__all__ = ["FleetCoordinator", "STATS_KEY"]
