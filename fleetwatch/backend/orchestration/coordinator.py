"""
Fleet Coordinator

Composition root for the fleet core. Owns the prober, presence tracker,
stagnation monitor, fallback breaker and event bus, and runs one asyncio
task per cadence:

- probe cycle            (prober.run_cycle)
- presence reconciliation (presence source -> tracker)
- stagnation check        (metric source -> monitor)
- stats persistence       (prober + breaker stats -> storage)

plus one consumer task that dispatches ``corrective-action`` events. The
breaker triggers primary re-checks through a direct callback, and every
re-check and dispatch runs under a timeout. A slow cadence never delays
another.
"""

import asyncio
import inspect
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from fleetwatch.backend.events.bus import FleetEventBus, Subscription
from fleetwatch.backend.events.types import EventType, FleetEvent
from fleetwatch.backend.fallback.breaker import FallbackCircuitBreaker, FallbackStats
from fleetwatch.backend.health.checks import (
    MetricSource,
    OllamaUsableCheck,
    PresenceSource,
    RelayMetricSource,
)
from fleetwatch.backend.health.prober import HealthProber, Node
from fleetwatch.backend.health.sinks import MetricsSink
from fleetwatch.backend.presence.tracker import PresenceTracker
from fleetwatch.backend.stagnation.dispatch import RelayCommandSink
from fleetwatch.backend.stagnation.monitor import StagnationMonitor
from fleetwatch.backend.storage.base import Storage
from fleetwatch.backend.storage.json_file import JsonFileStorage
from fleetwatch.backend.storage.memory import MemoryStorage
from fleetwatch.core.error_handling import (
    PersistenceError,
    classify_error,
    handle_component_error,
    log_error,
)

logger = logging.getLogger(__name__)

STATS_KEY = "fleet:stats"
STATS_VERSION = 1
LOCAL_NODE_ID = "local"

CorrectiveActionSink = Callable[[str, str], Any]
PrimaryCheck = Callable[[], Awaitable[bool]]


class FleetCoordinator:
    """
    Wires the fleet components together and drives their cadences.

    Readers get copies of coordinator state; only the coordinator's own
    tasks mutate it.
    """

    def __init__(
        self,
        source: MetricSource,
        usable_check: Callable[[], Awaitable[bool]],
        presence_source: Optional[PresenceSource] = None,
        action_sink: Optional[CorrectiveActionSink] = None,
        primary_check: Optional[PrimaryCheck] = None,
        storage: Optional[Storage] = None,
        bus: Optional[FleetEventBus] = None,
        nodes: Iterable[Node] = (),
        probe_interval: float = 60.0,
        probe_timeout: float = 10.0,
        degraded_threshold_ms: float = 5000,
        history_size: int = 60,
        presence_interval: float = 30.0,
        stale_after: timedelta = timedelta(seconds=60),
        stagnation_interval: float = 60.0,
        stagnation_threshold: timedelta = timedelta(minutes=5),
        stagnation_cooldown: timedelta = timedelta(minutes=15),
        persist_interval: float = 60.0,
        breaker_options: Optional[Dict[str, Any]] = None,
        on_join: Optional[Callable[[str, Dict[str, Any]], Any]] = None,
        metrics_sink: Optional[MetricsSink] = None,
        recheck_timeout: float = 30.0,
        dispatch_timeout: float = 30.0,
    ):
        """
        Initialize coordinator.

        Args:
            source: MetricSource for status probes and progress metrics
            usable_check: Async check that the fallback provider can serve
            presence_source: Optional PresenceSource (default: source, when it
                implements presence_snapshot)
            action_sink: Optional callable(node_id, reason) for corrective
                actions; may be sync or async
            primary_check: Optional async check of the primary provider run
                when a re-check is due
            storage: Storage for cumulative stats (default: MemoryStorage)
            bus: Event bus (default: a new FleetEventBus)
            nodes: Nodes to register up front
            probe_interval: Probe cadence; also the cycle soft deadline
            presence_interval: Presence reconciliation cadence
            stagnation_interval: Stagnation check cadence
            persist_interval: Stats persistence cadence
            breaker_options: Extra FallbackCircuitBreaker keyword arguments
            recheck_timeout: Upper bound on one primary_check call; a timeout
                counts as a failed re-check
            dispatch_timeout: Upper bound on one corrective action; a timeout
                counts as a failed dispatch
        """
        self.source = source
        self.bus = bus or FleetEventBus()
        self.storage = storage or MemoryStorage()
        self.action_sink = action_sink
        self.primary_check = primary_check
        if presence_source is None and isinstance(source, PresenceSource):
            presence_source = source
        self.presence_source = presence_source

        self.probe_interval = probe_interval
        self.presence_interval = presence_interval
        self.stagnation_interval = stagnation_interval
        self.persist_interval = persist_interval
        self.recheck_timeout = recheck_timeout
        self.dispatch_timeout = dispatch_timeout

        self.prober = HealthProber(
            source,
            bus=self.bus,
            probe_timeout=probe_timeout,
            degraded_threshold_ms=degraded_threshold_ms,
            cycle_deadline=probe_interval,
            history_size=history_size,
            metrics_sink=metrics_sink,
        )
        self.presence = PresenceTracker(bus=self.bus, stale_after=stale_after, on_join=on_join)
        self.stagnation = StagnationMonitor(
            bus=self.bus, threshold=stagnation_threshold, cooldown=stagnation_cooldown
        )
        self.breaker = FallbackCircuitBreaker(
            usable_check, bus=self.bus, on_check_due=self._on_check_due, **(breaker_options or {})
        )

        for node in nodes:
            self.prober.register(node)

        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []
        self._subscription: Optional[Subscription] = None
        self._recheck_task: Optional[asyncio.Task] = None
        self._running = False
        self._closing = False

    @classmethod
    def from_settings(
        cls,
        settings,
        source: Optional[MetricSource] = None,
        usable_check: Optional[Callable[[], Awaitable[bool]]] = None,
        **kwargs,
    ) -> "FleetCoordinator":
        """Build a coordinator from FleetSettings.

        The relay-backed source and command sink, the Ollama usable check
        and the JSON file store are used unless overridden.
        """
        relay = settings.relay
        fallback = settings.fallback
        if source is None:
            source = RelayMetricSource(relay.url, relay.secret)
        if usable_check is None:
            usable_check = OllamaUsableCheck(fallback.ollama_url, fallback.preferred_model)
        if "action_sink" not in kwargs and relay.url:
            kwargs["action_sink"] = RelayCommandSink(
                relay.url, relay.secret, timeout_seconds=relay.command_timeout_seconds
            )
        if "storage" not in kwargs:
            path = settings.persistence.path
            kwargs["storage"] = JsonFileStorage(path) if path else MemoryStorage()

        nodes = [
            Node(
                node_id=n.id,
                name=n.name or n.id,
                address=n.address,
                capacity=n.capacity,
                priority=n.priority,
                always_local=n.always_local,
            )
            for n in settings.nodes
        ]
        if not any(n.always_local for n in nodes):
            nodes.insert(0, Node(node_id=LOCAL_NODE_ID, name="Local", priority=0, always_local=True))

        return cls(
            source,
            usable_check,
            bus=FleetEventBus(max_backlog=settings.event_bus.max_backlog),
            nodes=nodes,
            probe_interval=settings.prober.interval_seconds,
            probe_timeout=settings.prober.timeout_seconds,
            degraded_threshold_ms=settings.prober.degraded_threshold_ms,
            history_size=settings.prober.history_size,
            presence_interval=settings.presence.interval_seconds,
            stale_after=timedelta(seconds=settings.presence.stale_after_seconds),
            stagnation_interval=settings.stagnation.interval_seconds,
            stagnation_threshold=timedelta(seconds=settings.stagnation.threshold_seconds),
            stagnation_cooldown=timedelta(seconds=settings.stagnation.cooldown_seconds),
            persist_interval=settings.persistence.interval_seconds,
            recheck_timeout=fallback.recheck_timeout_seconds,
            dispatch_timeout=settings.stagnation.dispatch_timeout_seconds,
            breaker_options={
                "name": fallback.primary_name,
                "primary_name": fallback.primary_name,
                "fallback_name": fallback.fallback_name,
                "base_interval": fallback.base_interval_seconds,
                "max_interval": fallback.max_interval_seconds,
                "enabled": fallback.enabled,
            },
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Load persisted stats and start every cadence task."""
        if self._running:
            return
        self._running = True
        self._closing = False
        self._stop_event = asyncio.Event()

        await self.load_stats()

        self._subscription = self._subscribe_actions()
        self._tasks = [
            asyncio.create_task(self._consume(), name="fleet-events"),
            asyncio.create_task(self._every("probe", self.probe_interval, self.probe_once)),
            asyncio.create_task(self._every("stagnation", self.stagnation_interval, self.check_stagnation)),
            asyncio.create_task(self._every("persistence", self.persist_interval, self.save_stats)),
        ]
        if self.presence_source is not None:
            self._tasks.append(
                asyncio.create_task(self._every("presence", self.presence_interval, self.reconcile_presence))
            )
        logger.info(f"Fleet coordinator started with {len(self.prober.get_nodes())} nodes")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop scheduling, wait for in-flight work, save stats, close the bus.

        Every wait is bounded; work still running after the grace period is
        cancelled.

        Args:
            timeout: Upper bound on each wait for in-flight work
                (default: probe timeout plus a second)
        """
        if not self._running:
            return
        self._running = False
        self._closing = True
        self._stop_event.set()
        grace = timeout if timeout is not None else self.prober.probe_timeout + 1.0

        loops = [t for t in self._tasks if t.get_name() != "fleet-events"]
        await self._finish(loops, grace)

        await self.save_stats()

        if self._subscription is not None:
            self._subscription.close()
        reactions = [t for t in self._tasks if t.get_name() == "fleet-events"]
        if self._recheck_task is not None:
            reactions.append(self._recheck_task)
        await self._finish(reactions, grace)
        self.breaker.close()
        self._tasks = []
        self._recheck_task = None
        self.bus.close()
        logger.info("Fleet coordinator stopped")

    @staticmethod
    async def _finish(tasks: List[asyncio.Task], timeout: float) -> None:
        tasks = [t for t in tasks if not t.done()]
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            logger.warning(f"Cancelling {task.get_name()} after {timeout}s shutdown grace")
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _every(self, name: str, interval: float, step: Callable[[], Awaitable[Any]]) -> None:
        while not self._stop_event.is_set():
            await step()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
        logger.debug(f"{name} loop stopped")

    # ------------------------------------------------------------------
    # Cadence steps
    # ------------------------------------------------------------------

    @handle_component_error("prober", fallback_value=[])
    async def probe_once(self):
        return await self.prober.run_cycle()

    @handle_component_error("presence", fallback_value=[])
    async def reconcile_presence(self):
        if self.presence_source is None:
            return []
        snapshot = await self.presence_source.presence_snapshot()
        return self.presence.reconcile(snapshot)

    @handle_component_error("stagnation", fallback_value=[])
    async def check_stagnation(self, now: Optional[datetime] = None):
        """Feed the latest progress metric of every remote node to the monitor."""
        actions = []
        for node in self.prober.get_nodes():
            if node.always_local:
                continue
            value, claimed_active = self.source.metric(node.node_id)
            record = self.stagnation.check(node.node_id, value, claimed_active, now=now)
            if record is not None:
                actions.append(record)
        return actions

    # ------------------------------------------------------------------
    # Event reactions
    # ------------------------------------------------------------------

    def _subscribe_actions(self) -> Subscription:
        return self.bus.subscribe([EventType.CORRECTIVE_ACTION], max_backlog=1024)

    async def _consume(self) -> None:
        while True:
            async for event in self._subscription:
                try:
                    await self.handle_event(event)
                except Exception as e:
                    logger.error(f"Failed to handle {event.type.value} event: {e}", exc_info=True)
            if not self._running or self.bus.closed or not self._subscription.dropped:
                return
            logger.warning("Corrective-action subscription was dropped; resubscribing")
            self._subscription = self._subscribe_actions()

    async def handle_event(self, event: FleetEvent) -> None:
        if event.type == EventType.CORRECTIVE_ACTION:
            await self._dispatch_corrective_action(event.payload["node_id"], event.payload["reason"])

    def _on_check_due(self) -> None:
        """Breaker callback: start one primary re-check unless one is running."""
        if self.primary_check is None:
            # External owner reports back through primary_recovered()/primary_still_failing()
            return
        if self._closing:
            return
        if self._recheck_task is not None and not self._recheck_task.done():
            return
        self._recheck_task = asyncio.get_running_loop().create_task(
            self._recheck_primary(), name="fleet-recheck"
        )

    async def _recheck_primary(self) -> bool:
        """Run primary_check once and report the outcome to the breaker."""
        try:
            ok = bool(await asyncio.wait_for(self.primary_check(), timeout=self.recheck_timeout))
        except asyncio.TimeoutError:
            logger.warning(f"Primary re-check timed out after {self.recheck_timeout}s")
            ok = False
        except Exception as e:
            logger.info(f"Primary re-check raised: {e}")
            ok = False
        if ok:
            self.breaker.deactivate()
        else:
            self.breaker.recheck_failed()
        return ok

    async def _dispatch_corrective_action(self, node_id: str, reason: str) -> bool:
        if self.action_sink is None:
            logger.info(f"No corrective action sink; {node_id} left as is ({reason})")
            return False
        error = None
        try:
            result = self.action_sink(node_id, reason)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=self.dispatch_timeout)
            ok = result is not False
        except asyncio.TimeoutError:
            ok = False
            error = f"timed out after {self.dispatch_timeout}s"
        except Exception as e:
            ok = False
            error = f"{type(e).__name__}: {e}"
        if not ok:
            logger.warning(f"Corrective action for {node_id} failed: {error or 'rejected'}")
            self.bus.emit(EventType.DISPATCH_FAILED, "coordinator", node_id=node_id, reason=reason, error=error)
        return ok

    # ------------------------------------------------------------------
    # Primary provider reporting
    # ------------------------------------------------------------------

    async def report_primary_failure(self, error: Any = None, status_code: Optional[int] = None) -> bool:
        """Report a failed primary call. Returns True if the fallback was activated."""
        return await self.breaker.report_failure(error, status_code)

    def primary_recovered(self) -> bool:
        return self.breaker.deactivate()

    def primary_still_failing(self) -> bool:
        return self.breaker.recheck_failed()

    def record_fallback_request(self) -> None:
        self.breaker.record_fallback_request()

    def record_task(self, pool: str, success: bool) -> None:
        self.prober.record_task(pool, success)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persistence_failed(self, exc: BaseException, operation: str) -> None:
        if not isinstance(exc, PersistenceError):
            exc = PersistenceError(f"{type(exc).__name__}: {exc}", component="persistence")
        log_error(classify_error(exc, "persistence", {"operation": operation}), logger)
        self.bus.emit(
            EventType.PERSISTENCE_FAILED,
            "coordinator",
            operation=operation,
            error=exc.message,
        )

    async def load_stats(self) -> bool:
        """Restore cumulative stats. Missing or unusable data starts empty.

        The whole payload is validated before anything is applied, so a
        rejected payload leaves every counter untouched.
        """
        try:
            data = await self.storage.get(STATS_KEY)
        except Exception as e:
            self._persistence_failed(e, "load")
            return False
        if data is None:
            logger.info("No persisted fleet stats; starting empty")
            return False

        try:
            if not isinstance(data, dict):
                raise TypeError(f"stats payload must be a mapping, not {type(data).__name__}")
            prober_state = self.prober.parse_state(data.get("prober"))
            breaker_stats = FallbackStats.from_dict(data.get("breaker"))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            self._persistence_failed(
                PersistenceError(f"Unusable stats payload: {e}", component="persistence"), "load"
            )
            return False

        self.prober.apply_state(prober_state)
        self.breaker.restore_stats(breaker_stats)
        logger.info(f"Restored fleet stats saved at {data.get('saved_at')}")
        return True

    async def save_stats(self) -> bool:
        payload = {
            "version": STATS_VERSION,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "breaker": self.breaker.export_stats(),
            "prober": self.prober.export_state(),
        }
        try:
            await self.storage.set(STATS_KEY, payload)
        except Exception as e:
            self._persistence_failed(e, "save")
            return False
        return True

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def get_healthy_pools(self) -> List[str]:
        return self.prober.get_healthy_pools()

    def get_health_report(self) -> Dict[str, Any]:
        report = self.prober.get_health_report()
        report["fallback"] = self.breaker.get_status()
        report["stagnation"] = self.stagnation.to_dict()
        return report

    def is_fallback_active(self) -> bool:
        return self.breaker.is_active

    def get_active_provider_name(self) -> str:
        return self.breaker.active_provider_name()

    def get_known_nodes(self) -> List[Dict[str, Any]]:
        return [n.to_dict() for n in self.prober.get_nodes()]

    def get_presence(self) -> Dict[str, Any]:
        return self.presence.to_dict()

    def subscribe(self, event_types: Optional[Iterable[EventType]] = None) -> Subscription:
        return self.bus.subscribe(event_types)
