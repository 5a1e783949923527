"""
Presence Tracker

Diffs periodic snapshots of currently reachable identities against the
known-identity map and emits joined / returned / left events.

The reconciliation step is a pure function of (known map, snapshot, now):
the same triple always produces the same resulting map and event list.
"""

import asyncio
import copy
import inspect
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Set, Tuple

from fleetwatch.backend.events.bus import FleetEventBus
from fleetwatch.backend.events.types import EventType
from fleetwatch.core.metrics import PRESENCE_ONLINE

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(seconds=60)
PRESENCE_HISTORY_SIZE = 10000

# Snapshot attribute keys that carry the identity's last-seen time
SEEN_KEYS = ("timestamp", "last_seen", "lastSeen")


class PresenceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class PresenceEventKind(str, Enum):
    JOINED = "joined"
    RETURNED = "returned"
    LEFT = "left"


_EVENT_TYPES = {
    PresenceEventKind.JOINED: EventType.NODE_JOINED,
    PresenceEventKind.RETURNED: EventType.NODE_RETURNED,
    PresenceEventKind.LEFT: EventType.NODE_LEFT,
}


@dataclass(frozen=True)
class KnownIdentity:
    """An identity seen at least once by the presence tracker."""
    key: str
    first_seen: datetime
    last_seen: datetime
    status: PresenceStatus = PresenceStatus.ONLINE
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "status": self.status.value,
            "attributes": dict(self.attributes),
        }


@dataclass(frozen=True)
class PresenceEvent:
    kind: PresenceEventKind
    key: str
    timestamp: datetime
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.kind.value,
            "key": self.key,
            "timestamp": self.timestamp.isoformat(),
        }


def parse_seen_at(attributes: Mapping[str, Any], now: datetime) -> datetime:
    """Extract when an identity was last seen from its snapshot attributes.

    Accepts datetimes, epoch seconds, epoch milliseconds and ISO strings.
    Missing or unparseable values mean "seen now".
    """
    for key in SEEN_KEYS:
        value = attributes.get(key)
        if value is None:
            continue
        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            seconds = value / 1000.0 if value > 1e11 else float(value)
            try:
                return datetime.fromtimestamp(seconds, tz=timezone.utc)
            except (ValueError, OverflowError, OSError):
                continue
        if isinstance(value, str):
            try:
                parsed = datetime.fromisoformat(value)
            except ValueError:
                continue
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return now


def reconcile_presence(
    known: Mapping[str, KnownIdentity],
    snapshot: Mapping[str, Mapping[str, Any]],
    now: datetime,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> Tuple[Dict[str, KnownIdentity], List[PresenceEvent]]:
    """
    Reconcile a presence snapshot against the known-identity map.

    Neither input is mutated.

    Args:
        known: Current known identities by key
        snapshot: Reachable identities and their attribute bags
        now: Reconciliation time
        stale_after: Staleness window

    Returns:
        (new known map, events in deterministic order)
    """
    result: Dict[str, KnownIdentity] = dict(known)
    events: List[PresenceEvent] = []
    fresh = set()

    for key in sorted(snapshot):
        attributes = dict(snapshot[key] or {})
        seen_at = parse_seen_at(attributes, now)
        if now - seen_at > stale_after:
            continue
        fresh.add(key)

        current = result.get(key)
        if current is None:
            result[key] = KnownIdentity(key, seen_at, seen_at, PresenceStatus.ONLINE, attributes)
            events.append(PresenceEvent(PresenceEventKind.JOINED, key, now, attributes))
        elif current.status == PresenceStatus.OFFLINE:
            result[key] = KnownIdentity(key, current.first_seen, seen_at, PresenceStatus.ONLINE, attributes)
            events.append(PresenceEvent(PresenceEventKind.RETURNED, key, now, attributes))
        else:
            last_seen = max(current.last_seen, seen_at)
            result[key] = KnownIdentity(key, current.first_seen, last_seen, PresenceStatus.ONLINE, attributes)

    for key in sorted(result):
        identity = result[key]
        if identity.status == PresenceStatus.ONLINE and key not in fresh:
            result[key] = KnownIdentity(
                key, identity.first_seen, identity.last_seen,
                PresenceStatus.OFFLINE, identity.attributes,
            )
            events.append(PresenceEvent(PresenceEventKind.LEFT, key, now, identity.attributes))

    return result, events


class PresenceTracker:
    """
    Live "who is present" registry.

    Holds the known-identity map, applies reconcile_presence() to each
    snapshot, publishes the resulting events and runs the optional
    ``on_join`` callback once per joined identity.
    """

    def __init__(
        self,
        bus: Optional[FleetEventBus] = None,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        on_join: Optional[Callable[[str, Mapping[str, Any]], Any]] = None,
        history_size: int = PRESENCE_HISTORY_SIZE,
    ):
        self.bus = bus
        self.stale_after = stale_after
        self.on_join = on_join
        self._join_tasks: Set["asyncio.Future"] = set()
        self._known: Dict[str, KnownIdentity] = {}
        self._history: Deque[Dict[str, Any]] = deque(maxlen=history_size)
        self._lock = Lock()

    def reconcile(
        self,
        snapshot: Mapping[str, Mapping[str, Any]],
        now: Optional[datetime] = None,
    ) -> List[PresenceEvent]:
        """Apply a snapshot and return the presence events it produced."""
        now = now or datetime.now(timezone.utc)
        with self._lock:
            self._known, events = reconcile_presence(self._known, snapshot, now, self.stale_after)
            self._history.extend(e.to_dict() for e in events)
            online = sum(1 for i in self._known.values() if i.status == PresenceStatus.ONLINE)

        PRESENCE_ONLINE.set(online)
        for event in events:
            logger.info(f"Identity {event.key} {event.kind.value}")
            if self.bus is not None:
                self.bus.emit(
                    _EVENT_TYPES[event.kind],
                    "presence",
                    key=event.key,
                    attributes=dict(event.attributes),
                )
            if event.kind == PresenceEventKind.JOINED and self.on_join is not None:
                self._run_join_callback(event)
        return events

    def _run_join_callback(self, event: PresenceEvent) -> None:
        try:
            result = self.on_join(event.key, dict(event.attributes))
        except Exception as e:
            logger.error(f"Join callback failed for {event.key}: {e}", exc_info=True)
            return
        if not inspect.isawaitable(result):
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no running loop to schedule a coroutine callback on
            if inspect.iscoroutine(result):
                result.close()
            logger.error(f"Join callback for {event.key} is async but no event loop is running")
            return
        task = asyncio.ensure_future(result, loop=loop)
        self._join_tasks.add(task)
        task.add_done_callback(lambda t, key=event.key: self._join_done(key, t))

    def _join_done(self, key: str, task: "asyncio.Future") -> None:
        self._join_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Join callback failed for {key}: {exc}", exc_info=exc)

    def get_identities(self) -> Dict[str, KnownIdentity]:
        with self._lock:
            return dict(self._known)

    def get_online(self) -> List[str]:
        with self._lock:
            return sorted(k for k, i in self._known.items() if i.status == PresenceStatus.ONLINE)

    def get_history(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(list(self._history)[-limit:])

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            identities = {k: i.to_dict() for k, i in sorted(self._known.items())}
        return {
            "identities": identities,
            "online": [k for k, i in identities.items() if i["status"] == PresenceStatus.ONLINE.value],
        }
