"""
Unit tests for fleetwatch/backend/stagnation/monitor.py

Tests the Normal -> Suspect -> Action state machine, the per-node
cooldown and corrective-action events.
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import drain
from fleetwatch.backend.events.types import EventType
from fleetwatch.backend.stagnation.monitor import (
    StagnationMonitor,
    StagnationState,
    format_duration,
    is_progressing,
)

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def minutes(n: float) -> datetime:
    return T0 + timedelta(minutes=n)


class TestHelpers:
    def test_format_duration(self):
        assert format_duration(timedelta(seconds=45)) == "45s"
        assert format_duration(timedelta(minutes=5, seconds=1)) == "5m 1s"
        assert format_duration(timedelta(hours=2, minutes=3)) == "2h 3m"

    def test_is_progressing(self):
        assert is_progressing(0.5)
        assert not is_progressing(0)
        assert not is_progressing(-1)
        assert not is_progressing(None)
        assert not is_progressing(float("nan"))
        assert not is_progressing("fast")


class TestStagnationMonitor:
    """Test StagnationMonitor transitions"""

    @pytest.fixture
    def monitor(self, bus):
        return StagnationMonitor(bus=bus, threshold=timedelta(minutes=5), cooldown=timedelta(minutes=15))

    def test_first_stagnant_reading_is_suspect(self, monitor):
        assert monitor.check("alpha", 0, True, now=T0) is None
        assert monitor.get_state("alpha") == StagnationState.SUSPECT

    def test_not_before_threshold(self, monitor):
        monitor.check("alpha", 0, True, now=T0)
        assert monitor.check("alpha", 0, True, now=minutes(5)) is None
        assert monitor.get_state("alpha") == StagnationState.SUSPECT

    @pytest.mark.asyncio
    async def test_action_after_threshold(self, monitor, bus):
        sub = bus.subscribe([EventType.CORRECTIVE_ACTION])
        monitor.check("alpha", 0, True, now=T0)
        record = monitor.check("alpha", 0, True, now=T0 + timedelta(minutes=5, seconds=1))

        assert record is not None
        assert record.reason == "no progress for 5m 1s"
        assert record.cooldown_until == T0 + timedelta(minutes=20, seconds=1)
        assert monitor.get_state("alpha") == StagnationState.ACTION

        events = drain(sub)
        assert len(events) == 1
        assert events[0].payload["node_id"] == "alpha"
        assert events[0].payload["reason"] == "no progress for 5m 1s"

    def test_progress_resets_to_normal(self, monitor):
        monitor.check("alpha", 0, True, now=T0)
        monitor.check("alpha", 3.2, True, now=minutes(3))
        assert monitor.get_state("alpha") == StagnationState.NORMAL
        # Timer restarts from the next stagnant reading
        monitor.check("alpha", 0, True, now=minutes(4))
        assert monitor.check("alpha", 0, True, now=minutes(8)) is None

    def test_idle_node_never_acted_on(self, monitor):
        for m in range(0, 30):
            assert monitor.check("alpha", 0, False, now=minutes(m)) is None
        assert monitor.get_state("alpha") == StagnationState.NORMAL

    def test_single_action_per_cooldown(self, monitor):
        """Minute-by-minute stagnant readings: one action per cooldown window"""
        actions = [m for m in range(0, 26) if monitor.check("alpha", 0, True, now=minutes(m))]
        assert actions == [6]
        assert monitor.check("alpha", 0, True, now=minutes(26)) is not None
        assert len(monitor.get_actions()) == 2

    def test_cooldown_survives_progress(self, monitor):
        monitor.check("alpha", 0, True, now=T0)
        assert monitor.check("alpha", 0, True, now=minutes(6)) is not None
        monitor.check("alpha", 1.0, True, now=minutes(7))
        monitor.check("alpha", 0, True, now=minutes(8))
        assert monitor.check("alpha", 0, True, now=minutes(14)) is None

    def test_nodes_tracked_independently(self, monitor):
        monitor.check("alpha", 0, True, now=T0)
        monitor.check("beta", 5.0, True, now=T0)
        assert monitor.check("alpha", 0, True, now=minutes(6)) is not None
        assert monitor.get_state("beta") == StagnationState.NORMAL

    def test_to_dict(self, monitor):
        monitor.check("alpha", 0, True, now=T0)
        monitor.check("alpha", 0, True, now=minutes(6))
        data = monitor.to_dict()
        assert data["nodes"]["alpha"]["state"] == "action"
        assert data["recent_actions"][0]["node_id"] == "alpha"
