"""Stagnation detection and corrective command dispatch."""

from .dispatch import RelayCommandSink
from .monitor import CorrectiveActionRecord, StagnationMonitor, StagnationState

__all__ = ["CorrectiveActionRecord", "RelayCommandSink", "StagnationMonitor", "StagnationState"]
