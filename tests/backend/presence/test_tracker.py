"""
Unit tests for fleetwatch/backend/presence/tracker.py

Tests the pure reconciliation function, timestamp parsing and the
tracker's event publishing and join callback.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest

from conftest import drain
from fleetwatch.backend.events.types import EventType
from fleetwatch.backend.presence.tracker import (
    KnownIdentity,
    PresenceEventKind,
    PresenceStatus,
    PresenceTracker,
    parse_seen_at,
    reconcile_presence,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class TestParseSeenAt:
    def test_missing_means_now(self):
        assert parse_seen_at({}, NOW) == NOW

    def test_epoch_seconds(self):
        assert parse_seen_at({"timestamp": NOW.timestamp()}, NOW) == NOW

    def test_epoch_milliseconds(self):
        assert parse_seen_at({"lastSeen": NOW.timestamp() * 1000}, NOW) == NOW

    def test_iso_string(self):
        assert parse_seen_at({"last_seen": "2024-01-01T11:59:00+00:00"}, NOW) == NOW - timedelta(minutes=1)

    def test_naive_datetime_is_utc(self):
        assert parse_seen_at({"timestamp": datetime(2024, 1, 1, 12, 0)}, NOW) == NOW

    def test_garbage_means_now(self):
        assert parse_seen_at({"timestamp": "yesterday-ish"}, NOW) == NOW

    @pytest.mark.parametrize("value", [1e20, -1e20, float("inf"), float("nan"), 10 ** 30])
    def test_out_of_range_epoch_means_now(self, value):
        assert parse_seen_at({"timestamp": value}, NOW) == NOW

    def test_out_of_range_epoch_falls_through_to_next_key(self):
        attrs = {"timestamp": 1e20, "last_seen": "2024-01-01T11:59:00+00:00"}
        assert parse_seen_at(attrs, NOW) == NOW - timedelta(minutes=1)


class TestReconcilePresence:
    """reconcile_presence is pure and deterministic"""

    def test_new_identities_join_in_sorted_order(self):
        known, events = reconcile_presence({}, {"w2": {}, "w1": {"host": "a"}}, NOW)
        assert [(e.kind, e.key) for e in events] == [
            (PresenceEventKind.JOINED, "w1"),
            (PresenceEventKind.JOINED, "w2"),
        ]
        assert known["w1"].attributes == {"host": "a"}
        assert known["w1"].status == PresenceStatus.ONLINE

    def test_inputs_not_mutated(self):
        before = {"w1": KnownIdentity("w1", NOW, NOW)}
        snapshot = {"w2": {}}
        reconcile_presence(before, snapshot, NOW)
        assert list(before) == ["w1"]
        assert snapshot == {"w2": {}}

    def test_same_inputs_same_outputs(self):
        known = {"w1": KnownIdentity("w1", NOW, NOW)}
        snapshot = {"w2": {}, "w3": {}}
        assert reconcile_presence(known, snapshot, NOW) == reconcile_presence(known, snapshot, NOW)

    def test_absent_identity_leaves(self):
        known, _ = reconcile_presence({}, {"w1": {}}, NOW)
        known, events = reconcile_presence(known, {}, NOW + timedelta(seconds=5))
        assert [(e.kind, e.key) for e in events] == [(PresenceEventKind.LEFT, "w1")]
        assert known["w1"].status == PresenceStatus.OFFLINE

    def test_offline_identity_returns(self):
        known, _ = reconcile_presence({}, {"w1": {}}, NOW)
        known, _ = reconcile_presence(known, {}, NOW)
        later = NOW + timedelta(minutes=10)
        known, events = reconcile_presence(known, {"w1": {}}, later)
        assert [e.kind for e in events] == [PresenceEventKind.RETURNED]
        assert known["w1"].first_seen == NOW
        assert known["w1"].last_seen == later

    def test_refresh_is_silent(self):
        known, _ = reconcile_presence({}, {"w1": {"v": 1}}, NOW)
        known, events = reconcile_presence(known, {"w1": {"v": 2}}, NOW + timedelta(seconds=30))
        assert events == []
        assert known["w1"].attributes == {"v": 2}

    def test_stale_identity_in_snapshot_leaves(self):
        known, _ = reconcile_presence({}, {"w1": {}}, NOW)
        stale = {"w1": {"timestamp": (NOW - timedelta(seconds=61)).isoformat()}}
        known, events = reconcile_presence(known, stale, NOW, stale_after=timedelta(seconds=60))
        assert [e.kind for e in events] == [PresenceEventKind.LEFT]

    def test_stale_unknown_identity_ignored(self):
        stale = {"w1": {"timestamp": (NOW - timedelta(hours=1)).isoformat()}}
        known, events = reconcile_presence({}, stale, NOW)
        assert known == {}
        assert events == []

    def test_offline_identity_not_left_twice(self):
        known, _ = reconcile_presence({}, {"w1": {}}, NOW)
        known, _ = reconcile_presence(known, {}, NOW)
        _, events = reconcile_presence(known, {}, NOW)
        assert events == []

    def test_bad_timestamp_does_not_abort_reconcile(self):
        snapshot = {"w1": {"timestamp": 1e20}, "w2": {"timestamp": NOW.timestamp()}}
        known, events = reconcile_presence({}, snapshot, NOW)
        assert [e.key for e in events] == ["w1", "w2"]
        assert known["w1"].last_seen == NOW


class TestPresenceTracker:
    """Test PresenceTracker publishing"""

    @pytest.mark.asyncio
    async def test_events_published(self, bus):
        tracker = PresenceTracker(bus=bus)
        sub = bus.subscribe()
        tracker.reconcile({"w1": {}}, now=NOW)
        tracker.reconcile({}, now=NOW + timedelta(seconds=1))
        tracker.reconcile({"w1": {}}, now=NOW + timedelta(seconds=2))

        assert [e.type for e in drain(sub)] == [
            EventType.NODE_JOINED,
            EventType.NODE_LEFT,
            EventType.NODE_RETURNED,
        ]
        assert [h["event"] for h in tracker.get_history()] == ["joined", "left", "returned"]

    def test_join_callback_runs_once_per_join(self):
        joined = []
        tracker = PresenceTracker(on_join=lambda key, attrs: joined.append((key, attrs)))
        tracker.reconcile({"w1": {"host": "a"}}, now=NOW)
        tracker.reconcile({"w1": {"host": "a"}}, now=NOW + timedelta(seconds=1))
        tracker.reconcile({}, now=NOW + timedelta(seconds=2))
        tracker.reconcile({"w1": {}}, now=NOW + timedelta(seconds=3))
        assert joined == [("w1", {"host": "a"})]

    def test_raising_join_callback_is_contained(self):
        def boom(key, attrs):
            raise RuntimeError("callback failed")

        tracker = PresenceTracker(on_join=boom)
        events = tracker.reconcile({"w1": {}, "w2": {}}, now=NOW)
        assert len(events) == 2
        assert tracker.get_online() == ["w1", "w2"]

    @pytest.mark.asyncio
    async def test_async_join_callback_is_awaited(self):
        joined = asyncio.Event()
        seen = []

        async def on_join(key, attrs):
            await asyncio.sleep(0)
            seen.append(key)
            joined.set()

        tracker = PresenceTracker(on_join=on_join)
        tracker.reconcile({"w1": {}}, now=NOW)
        await asyncio.wait_for(joined.wait(), timeout=1)
        assert seen == ["w1"]

    @pytest.mark.asyncio
    async def test_failing_async_join_callback_is_logged(self, caplog):
        async def on_join(key, attrs):
            raise RuntimeError("async callback failed")

        tracker = PresenceTracker(on_join=on_join)
        with caplog.at_level(logging.ERROR, logger="fleetwatch.backend.presence.tracker"):
            tracker.reconcile({"w1": {}}, now=NOW)
            for _ in range(5):
                await asyncio.sleep(0)
        assert tracker.get_online() == ["w1"]
        assert any("async callback failed" in r.getMessage() for r in caplog.records)

    def test_async_join_callback_without_loop_is_closed(self, caplog):
        calls = []

        async def on_join(key, attrs):
            calls.append(key)

        tracker = PresenceTracker(on_join=on_join)
        with caplog.at_level(logging.ERROR, logger="fleetwatch.backend.presence.tracker"):
            tracker.reconcile({"w1": {}}, now=NOW)
        assert calls == []
        assert any("no event loop" in r.getMessage() for r in caplog.records)

    def test_snapshot_views(self):
        tracker = PresenceTracker()
        tracker.reconcile({"w1": {}, "w2": {}}, now=NOW)
        tracker.reconcile({"w2": {}}, now=NOW)
        assert tracker.get_online() == ["w2"]
        assert set(tracker.get_identities()) == {"w1", "w2"}
        data = tracker.to_dict()
        assert data["online"] == ["w2"]
        assert data["identities"]["w1"]["status"] == "offline"
