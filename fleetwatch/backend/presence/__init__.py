"""Live presence registry."""

from .tracker import (
    KnownIdentity,
    PresenceEvent,
    PresenceEventKind,
    PresenceStatus,
    PresenceTracker,
    parse_seen_at,
    reconcile_presence,
)

__all__ = [
    "KnownIdentity",
    "PresenceEvent",
    "PresenceEventKind",
    "PresenceStatus",
    "PresenceTracker",
    "parse_seen_at",
    "reconcile_presence",
]
