"""
Metric Source Adapters and Fallback Usable Checks

Provides:
- MetricSource: "ask a node for its status" and "read a locally reported
  per-node metric" behind one interface
- RelayMetricSource: aiohttp implementation against relay /api/status
- OllamaUsableCheck: reachability check for the local fallback provider
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

import aiohttp

from fleetwatch.core.error_handling import ProbeError

logger = logging.getLogger(__name__)

STATUS_PATH = "/api/status"
SECRET_HEADER = "X-Relay-Secret"


@dataclass
class StatusProbeResult:
    """Outcome of a single status request."""
    ok: bool
    status_code: int = 0
    latency_ms: int = 0
    payload: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "status_code": self.status_code,
            "latency_ms": self.latency_ms,
            "payload": self.payload,
            "error": self.error,
        }


def build_url(address: str, path: str) -> str:
    """Join a node address (host:port or URL) with a request path."""
    base = address if address.startswith(("http://", "https://")) else f"http://{address}"
    return base.rstrip("/") + path


class MetricSource(ABC):
    """Leaf adapter: node status requests and locally reported metrics.

    Owns no fleet state; the prober and stagnation monitor call into it.
    """

    @abstractmethod
    async def status(self, address: str, timeout: float) -> StatusProbeResult:
        """Request a node's status within ``timeout`` seconds."""
        ...

    @abstractmethod
    def metric(self, node_id: str) -> Tuple[float, bool]:
        """Return ``(value, claimed_active)`` for a node's progress metric."""
        ...


@runtime_checkable
class PresenceSource(Protocol):
    """Supplies the currently reachable identities."""

    async def presence_snapshot(self) -> Dict[str, Dict[str, Any]]:
        ...


class RelayMetricSource(MetricSource):
    """MetricSource backed by relay HTTP endpoints.

    Status probes hit ``GET <address>/api/status``. Progress metrics are
    pushed in by whatever supervises the nodes through report_metric().
    The presence snapshot is the ``workers`` map of the relay's own status.
    """

    def __init__(self, relay_url: str = "", secret: str = ""):
        self.relay_url = relay_url
        self.secret = secret
        self._metrics: Dict[str, Tuple[float, bool]] = {}
        self._lock = Lock()

    def _headers(self) -> Dict[str, str]:
        return {SECRET_HEADER: self.secret} if self.secret else {}

    async def status(self, address: str, timeout: float) -> StatusProbeResult:
        url = build_url(address, STATUS_PATH)
        start = time.monotonic()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    url,
                    headers=self._headers(),
                    timeout=aiohttp.ClientTimeout(total=timeout),
                ) as response:
                    try:
                        payload = await response.json(content_type=None)
                    except ValueError:
                        payload = {}
                    latency_ms = int((time.monotonic() - start) * 1000)
                    return StatusProbeResult(
                        ok=200 <= response.status < 400,
                        status_code=response.status,
                        latency_ms=latency_ms,
                        payload=payload if isinstance(payload, dict) else {},
                    )
        except Exception as e:
            return StatusProbeResult(
                ok=False,
                latency_ms=int((time.monotonic() - start) * 1000),
                error=f"{type(e).__name__}: {e}",
            )

    def report_metric(self, node_id: str, value: float, claimed_active: bool) -> None:
        """Record the latest progress metric reported for a node."""
        with self._lock:
            self._metrics[node_id] = (value, claimed_active)

    def metric(self, node_id: str) -> Tuple[float, bool]:
        with self._lock:
            return self._metrics.get(node_id, (0.0, False))

    def reported_nodes(self) -> List[str]:
        with self._lock:
            return sorted(self._metrics)

    async def presence_snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Fetch the relay roster.

        Raises:
            ProbeError: the relay is unreachable or its roster is malformed,
                so the previous presence state is kept
        """
        if not self.relay_url:
            return {}
        result = await self.status(self.relay_url, timeout=10.0)
        if not result.ok:
            raise ProbeError(
                f"Relay roster unavailable: {result.error or result.status_code}",
                component="presence",
                context={"relay_url": self.relay_url},
            )
        workers = result.payload.get("workers") or {}
        if not isinstance(workers, dict):
            raise ProbeError(
                f"Relay roster has unexpected type {type(workers).__name__}",
                component="presence",
                context={"relay_url": self.relay_url},
            )
        return {str(k): dict(v) if isinstance(v, dict) else {} for k, v in workers.items()}


# ============================================================================
# FALLBACK USABLE CHECK
# ============================================================================

MODEL_PRIORITY = [
    "deepseek-r1:14b", "deepseek-r1:7b", "deepseek-r1",
    "qwen2.5:14b", "qwen2.5:7b", "qwen2.5",
    "llama3.1:8b", "llama3.1", "llama3:8b", "llama3",
    "mistral", "phi3:mini", "phi3", "gemma2", "gemma",
    "codellama", "tinyllama",
]


def select_best_model(models: List[str], preferred: str = "auto") -> Optional[str]:
    """Pick the model to serve from the fallback provider.

    The preferred model wins when installed; otherwise the first installed
    model matching MODEL_PRIORITY, otherwise the first installed model.
    """
    if not models:
        return None
    if preferred != "auto" and preferred in models:
        return preferred
    for candidate in MODEL_PRIORITY:
        for model in models:
            if model.startswith(candidate):
                return model
    return models[0]


class OllamaUsableCheck:
    """Checks that a local Ollama server is up and has a model installed."""

    def __init__(
        self,
        url: str = "http://localhost:11434",
        preferred_model: str = "auto",
        timeout_seconds: float = 5.0,
    ):
        self.url = url.rstrip("/")
        self.preferred_model = preferred_model
        self.timeout_seconds = timeout_seconds
        self.available: Optional[bool] = None
        self.detected_model: Optional[str] = None

    async def list_models(self) -> List[str]:
        async with aiohttp.ClientSession() as session:
            async with session.get(
                f"{self.url}/api/tags",
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            ) as response:
                data = await response.json(content_type=None)
        return [m.get("name") or m.get("model") for m in data.get("models", []) if isinstance(m, dict)]

    async def __call__(self) -> bool:
        try:
            models = [m for m in await self.list_models() if m]
        except Exception as e:
            logger.info(f"Fallback provider not reachable at {self.url}: {e}")
            self.available = False
            return False

        self.detected_model = select_best_model(models, self.preferred_model)
        self.available = self.detected_model is not None
        return self.available
