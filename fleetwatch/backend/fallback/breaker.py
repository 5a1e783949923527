"""
Fallback Circuit Breaker

Trips from the primary provider (a remote, rate-limited or quota-bound
API) to a local fallback provider when a classified failure occurs:
- CLOSED: primary in use
- OPEN: fallback in use, re-check of the primary scheduled
- HALF_OPEN: re-check due, waiting for the owner to try the primary

The breaker never talks to the primary itself. When a re-check is due it
publishes ``api-check-due`` and runs the ``on_check_due`` callback; the
owner makes one real primary call and reports back with deactivate() or
recheck_failed().
"""

import asyncio
import logging
import re
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import RLock
from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional, Union

from fleetwatch.backend.events.bus import FleetEventBus
from fleetwatch.backend.events.types import EventType
from fleetwatch.core.error_handling import FallbackUnavailableError, classify_error, log_error
from fleetwatch.core.metrics import (
    BREAKER_ACTIVATIONS_TOTAL,
    BREAKER_RECOVERIES_TOTAL,
    BREAKER_REFUSALS_TOTAL,
    BREAKER_STATE,
)
from fleetwatch.logging_config import get_logger, log_circuit_breaker_event

logger = logging.getLogger(__name__)
struct_logger = get_logger(__name__)

DEFAULT_BASE_INTERVAL = 60.0
DEFAULT_MAX_INTERVAL = 300.0
BACKOFF_FACTOR = 1.5

# Status codes that trigger the fallback
FALLBACK_TRIGGERS = {
    429: "Rate limit exceeded",
    402: "Payment required / quota exceeded",
    401: "Invalid or expired API key",
    403: "Access denied",
    500: "Server error",
    502: "Bad gateway",
    503: "Service unavailable",
    529: "API overloaded",
}

# (pattern, reason) pairs checked in order against the error message
MESSAGE_TRIGGERS = [
    (re.compile(r"rate.?limit|too many requests", re.I), "Rate limit exceeded"),
    (re.compile(r"quota|billing|credit|insufficient", re.I), "API quota exceeded"),
    (re.compile(r"invalid.*key|expired|unauthorized|authentication", re.I), "Invalid or expired API key"),
    (re.compile(r"timeout|timed out|ETIMEDOUT|ECONNREFUSED|ECONNRESET|socket hang up|network error", re.I),
     "API connection failed"),
]

CONNECTION_ERRORS = (TimeoutError, asyncio.TimeoutError, ConnectionError)


class CircuitState(str, Enum):
    """Fallback breaker states"""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_GAUGE_VALUES = {CircuitState.CLOSED: 0, CircuitState.OPEN: 1, CircuitState.HALF_OPEN: 2}


class FailureClassification(NamedTuple):
    trigger: bool
    reason: str = ""


def classify_failure(error: Any = None, status_code: Optional[int] = None) -> FailureClassification:
    """
    Decide whether a primary-provider failure should trip the breaker.

    Status codes are checked first, then the error message. Unrecognized
    failures never trigger. Never raises.

    Args:
        error: Exception or message string (may be None)
        status_code: HTTP status code, when one is available

    Returns:
        FailureClassification(trigger, reason)
    """
    try:
        if status_code is not None and int(status_code) in FALLBACK_TRIGGERS:
            code = int(status_code)
            return FailureClassification(True, f"{FALLBACK_TRIGGERS[code]} (HTTP {code})")

        if error is None:
            return FailureClassification(False)

        message = error if isinstance(error, str) else str(error)
        for pattern, reason in MESSAGE_TRIGGERS:
            if pattern.search(message):
                return FailureClassification(True, reason)

        if isinstance(error, CONNECTION_ERRORS):
            return FailureClassification(True, "API connection failed")
    except Exception as e:
        logger.debug(f"Failure classification skipped: {e}")
    return FailureClassification(False)


def compute_backoff(consecutive_failures: int,
                    base_interval: float = DEFAULT_BASE_INTERVAL,
                    max_interval: float = DEFAULT_MAX_INTERVAL) -> float:
    """min(base * 1.5^(failures - 1), max) in seconds."""
    exponent = max(consecutive_failures, 1) - 1
    return min(base_interval * BACKOFF_FACTOR ** exponent, max_interval)


@dataclass
class FallbackStats:
    """Cumulative breaker counters. Only grow; survive restarts."""
    activations: int = 0
    requests_served: int = 0
    recoveries: int = 0
    primary_failures: int = 0
    refused_activations: int = 0
    recheck_failures: int = 0
    total_tripped_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FallbackStats":
        """Build stats from a persisted mapping. Unknown keys are ignored.

        Raises:
            TypeError: data is not a mapping or a counter is not a number
            ValueError: a counter is negative
        """
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise TypeError(f"breaker stats must be a mapping, not {type(data).__name__}")
        values = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise TypeError(f"breaker stat {f.name!r} must be a number, not {type(value).__name__}")
            if value < 0:
                raise ValueError(f"breaker stat {f.name!r} must not be negative")
            values[f.name] = int(value) if f.type is int else float(value)
        return cls(**values)


class FallbackCircuitBreaker:
    """
    Circuit breaker that swaps the primary provider for a local fallback.

    Activation only completes if the fallback passes its usable check.
    Re-checks of the primary are scheduled with exponential backoff
    ``min(base * 1.5^(failures-1), max)``.
    """

    def __init__(
        self,
        usable_check: Callable[[], Awaitable[bool]],
        bus: Optional[FleetEventBus] = None,
        name: str = "primary",
        primary_name: str = "primary",
        fallback_name: str = "fallback",
        base_interval: float = DEFAULT_BASE_INTERVAL,
        max_interval: float = DEFAULT_MAX_INTERVAL,
        enabled: bool = True,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        on_check_due: Optional[Callable[[], Any]] = None,
    ):
        """
        Initialize breaker.

        Args:
            usable_check: Async check that the fallback provider can serve
            bus: Optional event bus for breaker events
            name: Breaker identifier
            primary_name: Name reported while the primary is active
            fallback_name: Name reported while the fallback is active
            base_interval: First re-check delay in seconds
            max_interval: Upper bound for re-check delay in seconds
            enabled: A disabled breaker never triggers
            clock: Returns the current UTC time
            on_check_due: Optional callable run when a re-check is due, in
                addition to the ``api-check-due`` event
        """
        self.usable_check = usable_check
        self.bus = bus
        self.name = name
        self.primary_name = primary_name
        self.fallback_name = fallback_name
        self.base_interval = base_interval
        self.max_interval = max_interval
        self.enabled = enabled
        self._clock = clock
        self.on_check_due = on_check_due

        self._lock = RLock()
        self._state = CircuitState.CLOSED
        self._activating = False
        self._active_since: Optional[datetime] = None
        self._reason: Optional[str] = None
        self._consecutive_failures = 0
        self._current_backoff: Optional[float] = None
        self._check_handle: Optional[asyncio.TimerHandle] = None
        self._next_check_at: Optional[datetime] = None
        self.stats = FallbackStats()

        BREAKER_STATE.labels(breaker_name=name).set(0)
        logger.info(
            f"Fallback breaker '{name}' initialized: "
            f"backoff={base_interval}s..{max_interval}s, enabled={enabled}"
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def is_active(self) -> bool:
        """True while the fallback provider is in use."""
        return self.state != CircuitState.CLOSED

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    @property
    def current_backoff(self) -> Optional[float]:
        """Delay used for the pending re-check, None when closed."""
        with self._lock:
            return self._current_backoff

    @property
    def reason(self) -> Optional[str]:
        with self._lock:
            return self._reason

    def active_provider_name(self) -> str:
        if not self.is_active:
            return self.primary_name
        model = getattr(self.usable_check, "detected_model", None)
        return f"{self.fallback_name}:{model}" if model else self.fallback_name

    def _set_state(self, state: CircuitState) -> None:
        self._state = state
        BREAKER_STATE.labels(breaker_name=self.name).set(_STATE_GAUGE_VALUES[state])

    def _emit(self, event_type: EventType, **payload) -> None:
        if self.bus is not None:
            self.bus.emit(event_type, f"breaker:{self.name}", **payload)

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify_failure(self, error: Any = None, status_code: Optional[int] = None) -> FailureClassification:
        if not self.enabled:
            return FailureClassification(False)
        return classify_failure(error, status_code)

    async def report_failure(self, error: Any = None, status_code: Optional[int] = None) -> bool:
        """
        Classify a primary failure and activate the fallback if it triggers.

        Returns:
            True if this call activated the fallback
        """
        trigger, reason = self.classify_failure(error, status_code)
        if not trigger:
            return False
        with self._lock:
            self.stats.primary_failures += 1
        return await self.activate(reason)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def activate(self, reason: str) -> bool:
        """
        Switch to the fallback provider.

        No-op while already active. Refused (with a
        ``fallback-unavailable`` event) when the fallback fails its usable
        check.

        Returns:
            True if the breaker opened
        """
        with self._lock:
            if self._state != CircuitState.CLOSED or self._activating:
                return False
            self._activating = True

        try:
            try:
                await self._require_fallback()
            except FallbackUnavailableError as e:
                log_error(classify_error(e, e.component, {"reason": reason}), logger)
                with self._lock:
                    self.stats.refused_activations += 1
                BREAKER_REFUSALS_TOTAL.labels(breaker_name=self.name).inc()
                log_circuit_breaker_event(
                    struct_logger, "refused", self.name, CircuitState.CLOSED.value, reason
                )
                self._emit(EventType.FALLBACK_UNAVAILABLE, reason=reason, fallback=self.fallback_name)
                return False

            with self._lock:
                self._set_state(CircuitState.OPEN)
                self._active_since = self._clock()
                self._reason = reason
                self.stats.activations += 1
                self._consecutive_failures += 1
                backoff = self._schedule_check()
                since = self._active_since
        finally:
            with self._lock:
                self._activating = False

        BREAKER_ACTIVATIONS_TOTAL.labels(breaker_name=self.name).inc()
        log_circuit_breaker_event(
            struct_logger, "activated", self.name, CircuitState.OPEN.value, reason,
            provider=self.active_provider_name(), backoff_seconds=backoff,
        )
        self._emit(
            EventType.FALLBACK_ACTIVATED,
            reason=reason,
            provider=self.active_provider_name(),
            since=since.isoformat(),
            next_check_seconds=backoff,
        )
        return True

    async def _require_fallback(self) -> None:
        """Raise FallbackUnavailableError unless the fallback passes its usable check."""
        component = f"breaker:{self.name}"
        try:
            usable = bool(await self.usable_check())
        except Exception as e:
            raise FallbackUnavailableError(
                f"Usable check for '{self.fallback_name}' raised: {e}", component=component
            ) from e
        if not usable:
            raise FallbackUnavailableError(
                f"Fallback provider '{self.fallback_name}' is not usable", component=component
            )

    def deactivate(self) -> bool:
        """
        Resume the primary provider.

        Returns:
            True if the breaker was active
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return False
            duration = (self._clock() - self._active_since).total_seconds() if self._active_since else 0.0
            self._cancel_check()
            self._set_state(CircuitState.CLOSED)
            reason = self._reason
            self._active_since = None
            self._reason = None
            self._consecutive_failures = 0
            self._current_backoff = None
            self.stats.recoveries += 1
            self.stats.total_tripped_seconds += max(0.0, duration)

        BREAKER_RECOVERIES_TOTAL.labels(breaker_name=self.name).inc()
        log_circuit_breaker_event(
            struct_logger, "deactivated", self.name, CircuitState.CLOSED.value, reason,
            tripped_seconds=round(duration, 1),
        )
        self._emit(EventType.FALLBACK_DEACTIVATED, duration_seconds=duration, previous_reason=reason)
        return True

    def recheck_failed(self) -> bool:
        """
        Record that a re-check of the primary failed and back off further.

        Returns:
            True if a new re-check was scheduled
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return False
            self._consecutive_failures += 1
            self.stats.recheck_failures += 1
            self._set_state(CircuitState.OPEN)
            backoff = self._schedule_check()
            failures = self._consecutive_failures
        logger.info(
            f"Primary still failing for '{self.name}' "
            f"(attempt {failures}); next check in {backoff:.0f}s"
        )
        return True

    def record_fallback_request(self) -> None:
        """Count a request served by the fallback while tripped."""
        with self._lock:
            self.stats.requests_served += 1

    # ------------------------------------------------------------------
    # Re-check scheduling
    # ------------------------------------------------------------------

    def _schedule_check(self) -> float:
        """Schedule the next re-check. Caller holds the lock."""
        self._cancel_check()
        backoff = compute_backoff(self._consecutive_failures, self.base_interval, self.max_interval)
        self._current_backoff = backoff
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop; re-check for '{self.name}' not scheduled")
            self._next_check_at = None
            return backoff
        self._check_handle = loop.call_later(backoff, self._on_check_due)
        self._next_check_at = self._clock() + timedelta(seconds=backoff)
        return backoff

    def close(self) -> None:
        """Cancel any pending re-check without changing state."""
        with self._lock:
            self._cancel_check()

    def _cancel_check(self) -> None:
        if self._check_handle is not None:
            self._check_handle.cancel()
            self._check_handle = None
        self._next_check_at = None

    def _on_check_due(self) -> None:
        with self._lock:
            self._check_handle = None
            self._next_check_at = None
            if self._state == CircuitState.CLOSED:
                return
            self._set_state(CircuitState.HALF_OPEN)
            backoff = self._current_backoff
            failures = self._consecutive_failures
            reason = self._reason
        log_circuit_breaker_event(
            struct_logger, "check_due", self.name, CircuitState.HALF_OPEN.value, reason,
        )
        self._emit(EventType.API_CHECK_DUE, backoff_seconds=backoff,
                   consecutive_failures=failures, reason=reason)
        if self.on_check_due is not None:
            try:
                self.on_check_due()
            except Exception as e:
                logger.error(f"Re-check callback for '{self.name}' failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Snapshots / persistence
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "enabled": self.enabled,
                "state": self._state.value,
                "active": self._state != CircuitState.CLOSED,
                "active_since": self._active_since.isoformat() if self._active_since else None,
                "reason": self._reason,
                "consecutive_failures": self._consecutive_failures,
                "current_backoff_seconds": self._current_backoff,
                "next_check_at": self._next_check_at.isoformat() if self._next_check_at else None,
                "provider": self.active_provider_name(),
                "fallback_available": getattr(self.usable_check, "available", None),
                "stats": self.stats.to_dict(),
            }

    def export_stats(self) -> Dict[str, Any]:
        with self._lock:
            return self.stats.to_dict()

    def restore_stats(self, stats: Union[FallbackStats, Dict[str, Any]]) -> None:
        if not isinstance(stats, FallbackStats):
            stats = FallbackStats.from_dict(stats)
        with self._lock:
            self.stats = stats
