"""Pytest configuration and fixtures for the FleetWatch test suite."""
import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

# Ensure project modules are importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent))

from fleetwatch.backend.events.bus import FleetEventBus
from fleetwatch.backend.health.checks import MetricSource, StatusProbeResult


# ============================================================================
# FAKE COLLABORATORS
# ============================================================================

class ScriptedSource(MetricSource):
    """MetricSource whose status answers are scripted per address.

    Each address maps to a list of outcomes consumed one per probe; the
    last outcome repeats. An outcome is a StatusProbeResult, an exception
    instance (raised), or a float (seconds to sleep before answering ok).
    """

    def __init__(self, script: Optional[Dict[str, list]] = None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.calls: List[str] = []
        self.metrics: Dict[str, Tuple[float, bool]] = {}
        self.snapshot: Dict[str, Dict] = {}

    def set(self, address: str, *outcomes) -> None:
        self.script[address] = list(outcomes)

    async def status(self, address: str, timeout: float) -> StatusProbeResult:
        self.calls.append(address)
        outcomes = self.script.get(address) or [StatusProbeResult(ok=True, status_code=200, latency_ms=10)]
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, (int, float)):
            await asyncio.sleep(outcome)
            return StatusProbeResult(ok=True, status_code=200, latency_ms=int(outcome * 1000))
        return outcome

    def metric(self, node_id: str) -> Tuple[float, bool]:
        return self.metrics.get(node_id, (1.0, True))

    async def presence_snapshot(self) -> Dict[str, Dict]:
        return dict(self.snapshot)


def ok(latency_ms: int = 10) -> StatusProbeResult:
    return StatusProbeResult(ok=True, status_code=200, latency_ms=latency_ms)


def down(status_code: int = 0, error: str = "connection refused") -> StatusProbeResult:
    return StatusProbeResult(ok=False, status_code=status_code, latency_ms=5, error=error)


class FakeUsableCheck:
    """Fallback usable check with a settable answer and call counter."""

    def __init__(self, usable: bool = True, model: Optional[str] = "llama3.1:8b"):
        self.usable = usable
        self.detected_model = model
        self.available = None
        self.calls = 0

    async def __call__(self) -> bool:
        self.calls += 1
        self.available = self.usable
        return self.usable


class ManualClock:
    """Deterministic UTC clock for time-dependent components."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def source():
    return ScriptedSource()


@pytest.fixture
def bus():
    return FleetEventBus()


@pytest.fixture
def usable_check():
    return FakeUsableCheck()


@pytest.fixture
def clock():
    return ManualClock()


def drain(subscription) -> list:
    """Collect every event currently queued on a subscription."""
    events = []
    while True:
        event = subscription.get_nowait()
        if event is None:
            return events
        events.append(event)
