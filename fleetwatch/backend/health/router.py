"""
Read-only fleet HTTP surface.

Exposes the coordinator's derived views for dashboards and the Prometheus
scraper. Nothing here mutates fleet state.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Response

from fleetwatch.backend.orchestration.coordinator import FleetCoordinator
from fleetwatch.core.metrics import get_metrics_endpoint

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/fleet", tags=["fleet"], responses={500: {"description": "Server error"}}
)

# Set by whoever starts the coordinator
_coordinator: Optional[FleetCoordinator] = None


def set_coordinator(coordinator: Optional[FleetCoordinator]):
    """Attach the running coordinator to the router."""
    global _coordinator
    _coordinator = coordinator
    logger.info("Fleet router attached to coordinator" if coordinator else "Fleet router detached")


def get_coordinator() -> FleetCoordinator:
    if _coordinator is None:
        raise HTTPException(status_code=503, detail="Fleet coordinator not initialized")
    return _coordinator


def _server_error(endpoint: str, e: Exception, detail: str) -> HTTPException:
    logger.error(
        f"Error serving {endpoint}: {e}",
        extra={"component": "fleet_router", "endpoint": endpoint, "error_type": type(e).__name__},
        exc_info=True,
    )
    return HTTPException(status_code=500, detail=detail)


@router.get("/pools")
async def healthy_pools():
    """Non-offline node IDs in routing priority order."""
    coordinator = get_coordinator()
    try:
        return {"pools": coordinator.get_healthy_pools()}
    except Exception as e:
        raise _server_error("/pools", e, "Failed to list healthy pools")


@router.get("/report")
async def health_report():
    """
    Full health snapshot for dashboards.

    Per-node classification, latency, success rate and recent samples,
    task stats, fallback breaker status and stagnation tracking.
    """
    coordinator = get_coordinator()
    try:
        return coordinator.get_health_report()
    except Exception as e:
        raise _server_error("/report", e, "Failed to build health report")


@router.get("/provider")
async def active_provider():
    coordinator = get_coordinator()
    try:
        return {
            "provider": coordinator.get_active_provider_name(),
            "fallback_active": coordinator.is_fallback_active(),
            "breaker": coordinator.breaker.get_status(),
        }
    except Exception as e:
        raise _server_error("/provider", e, "Failed to read provider state")


@router.get("/presence")
async def presence():
    coordinator = get_coordinator()
    try:
        return coordinator.get_presence()
    except Exception as e:
        raise _server_error("/presence", e, "Failed to read presence")


@router.get("/metrics")
async def prometheus_metrics():
    """Prometheus text exposition of the fleet registry."""
    try:
        content, content_type = get_metrics_endpoint()
        return Response(content=content, media_type=content_type)
    except Exception as e:
        raise _server_error("/metrics", e, "Failed to generate metrics")
