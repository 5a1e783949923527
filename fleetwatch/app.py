"""
FleetWatch HTTP service.

Builds the FastAPI application whose lifespan starts and stops the fleet
coordinator and mounts the read-only /fleet router.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from fleetwatch import __version__
from fleetwatch.backend.health.router import router as fleet_router
from fleetwatch.backend.health.router import set_coordinator
from fleetwatch.backend.orchestration.coordinator import FleetCoordinator
from fleetwatch.config.settings import FleetSettings

logger = logging.getLogger(__name__)


def create_app(settings: FleetSettings, coordinator: Optional[FleetCoordinator] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Validated FleetSettings
        coordinator: Pre-built coordinator (default: FleetCoordinator.from_settings)
    """
    coordinator = coordinator or FleetCoordinator.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # ========== STARTUP ==========
        logger.info("FleetWatch starting...")
        await coordinator.start()
        set_coordinator(coordinator)
        app.state.coordinator = coordinator

        yield

        # ========== SHUTDOWN ==========
        logger.info("FleetWatch shutting down...")
        set_coordinator(None)
        await coordinator.stop()

    app = FastAPI(
        title="FleetWatch",
        description="Fleet health and adaptive failover",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(fleet_router)
    return app
