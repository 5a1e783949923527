"""
Prometheus Metrics for FleetWatch

Exposes metrics for:
- Node health state, probe latency and success rate
- Fallback breaker state, activations and recoveries
- Corrective actions issued by the stagnation monitor
- Presence roster size
- Event bus subscriber drops
"""

from prometheus_client import (
    Counter, Gauge, Histogram,
    CollectorRegistry, generate_latest,
    CONTENT_TYPE_LATEST
)

# Create a registry for FleetWatch metrics
REGISTRY = CollectorRegistry()

# ============================================================================
# Node Health Metrics
# ============================================================================

NODE_STATE = Gauge(
    'fleetwatch_node_state',
    'Node health state (0=OFFLINE, 1=DEGRADED, 2=HEALTHY, -1=UNKNOWN)',
    ['node_id'],
    registry=REGISTRY
)

NODE_SUCCESS_RATE = Gauge(
    'fleetwatch_node_success_rate',
    'Rolling probe success rate (0-100)',
    ['node_id'],
    registry=REGISTRY
)

PROBE_LATENCY_SECONDS = Histogram(
    'fleetwatch_probe_latency_seconds',
    'Status probe latency',
    ['node_id'],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=REGISTRY
)

PROBE_CYCLE_DURATION = Gauge(
    'fleetwatch_probe_cycle_duration_seconds',
    'Time to complete the last probe cycle',
    registry=REGISTRY
)

HEALTH_TRANSITIONS_TOTAL = Counter(
    'fleetwatch_health_transitions_total',
    'Total node health classification changes',
    ['node_id', 'to_state'],
    registry=REGISTRY
)

# ============================================================================
# Fallback Breaker Metrics
# ============================================================================

BREAKER_STATE = Gauge(
    'fleetwatch_breaker_state',
    'Fallback breaker state (0=CLOSED, 1=OPEN, 2=HALF_OPEN)',
    ['breaker_name'],
    registry=REGISTRY
)

BREAKER_ACTIVATIONS_TOTAL = Counter(
    'fleetwatch_breaker_activations_total',
    'Total times the fallback provider was activated',
    ['breaker_name'],
    registry=REGISTRY
)

BREAKER_RECOVERIES_TOTAL = Counter(
    'fleetwatch_breaker_recoveries_total',
    'Total times the primary provider was resumed',
    ['breaker_name'],
    registry=REGISTRY
)

BREAKER_REFUSALS_TOTAL = Counter(
    'fleetwatch_breaker_refusals_total',
    'Activations refused because the fallback was unusable',
    ['breaker_name'],
    registry=REGISTRY
)

# ============================================================================
# Stagnation / Presence / Bus Metrics
# ============================================================================

CORRECTIVE_ACTIONS_TOTAL = Counter(
    'fleetwatch_corrective_actions_total',
    'Corrective actions requested for stagnant nodes',
    ['node_id'],
    registry=REGISTRY
)

PRESENCE_ONLINE = Gauge(
    'fleetwatch_presence_online',
    'Identities currently online in the presence roster',
    registry=REGISTRY
)

BUS_SUBSCRIBERS_DROPPED_TOTAL = Counter(
    'fleetwatch_bus_subscribers_dropped_total',
    'Subscribers dropped for exceeding their backlog limit',
    registry=REGISTRY
)


def get_metrics_endpoint():
    """Render the registry in Prometheus text format."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
