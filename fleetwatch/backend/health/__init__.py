"""Fleet health probing, metric sources and metrics sinks."""

from .checks import (
    MetricSource,
    OllamaUsableCheck,
    PresenceSource,
    RelayMetricSource,
    StatusProbeResult,
    select_best_model,
)
from .prober import (
    HealthProber,
    Node,
    NodeHealth,
    ProbeResult,
    ProbeSample,
    classify_probe,
    compute_success_rate,
)
from .sinks import MetricsSink, NoOpMetricsSink

__all__ = [
    "HealthProber",
    "MetricSource",
    "MetricsSink",
    "Node",
    "NodeHealth",
    "NoOpMetricsSink",
    "OllamaUsableCheck",
    "PresenceSource",
    "ProbeResult",
    "ProbeSample",
    "RelayMetricSource",
    "StatusProbeResult",
    "classify_probe",
    "compute_success_rate",
    "select_best_model",
]
