"""
Tests for the read-only /fleet HTTP surface.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import FakeUsableCheck, ScriptedSource
from fleetwatch.backend.health.prober import Node
from fleetwatch.backend.health.router import get_coordinator, router, set_coordinator
from fleetwatch.backend.orchestration.coordinator import FleetCoordinator


@pytest.fixture
def coordinator():
    c = FleetCoordinator(
        ScriptedSource(),
        FakeUsableCheck(),
        nodes=[
            Node(node_id="local", always_local=True, priority=0),
            Node(node_id="alpha", address="alpha:1", priority=1),
        ],
    )
    set_coordinator(c)
    yield c
    set_coordinator(None)


@pytest.fixture
def client():
    app = FastAPI()
    app.include_router(router)
    return TestClient(app)


class TestFleetRouter:
    def test_not_initialized_returns_503(self, client):
        set_coordinator(None)
        response = client.get("/fleet/pools")
        assert response.status_code == 503

    def test_pools(self, client, coordinator):
        response = client.get("/fleet/pools")
        assert response.status_code == 200
        assert response.json() == {"pools": ["local", "alpha"]}

    def test_report(self, client, coordinator):
        data = client.get("/fleet/report").json()
        assert data["summary"]["total_nodes"] == 2
        assert data["nodes"]["alpha"]["state"] == "unknown"
        assert data["fallback"]["active"] is False

    def test_provider(self, client, coordinator):
        data = client.get("/fleet/provider").json()
        assert data == {
            "provider": "primary",
            "fallback_active": False,
            "breaker": coordinator.breaker.get_status(),
        }

    def test_presence(self, client, coordinator):
        coordinator.presence.reconcile({"worker-1": {}})
        data = client.get("/fleet/presence").json()
        assert data["online"] == ["worker-1"]

    def test_metrics(self, client, coordinator):
        response = client.get("/fleet/metrics")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "fleetwatch_breaker_state" in response.text

    def test_get_coordinator(self, coordinator):
        assert get_coordinator() is coordinator
