"""
Tests for metric source adapters and the fallback usable check.
"""

from unittest.mock import AsyncMock, patch

import pytest

from fleetwatch.backend.health.checks import (
    MODEL_PRIORITY,
    OllamaUsableCheck,
    PresenceSource,
    RelayMetricSource,
    StatusProbeResult,
    build_url,
    select_best_model,
)
from fleetwatch.core.error_handling import ProbeError


class TestBuildUrl:
    def test_bare_address_gets_scheme(self):
        assert build_url("10.0.0.1:8080", "/api/status") == "http://10.0.0.1:8080/api/status"

    def test_url_kept(self):
        assert build_url("https://relay.example/", "/api/status") == "https://relay.example/api/status"


class TestRelayMetricSource:
    """Locally reported metrics and roster parsing"""

    def test_unreported_metric_defaults_idle(self):
        source = RelayMetricSource()
        assert source.metric("alpha") == (0.0, False)

    def test_report_metric(self):
        source = RelayMetricSource()
        source.report_metric("beta", 0.0, True)
        source.report_metric("alpha", 12.5, True)
        assert source.metric("alpha") == (12.5, True)
        assert source.reported_nodes() == ["alpha", "beta"]

    def test_is_presence_source(self):
        assert isinstance(RelayMetricSource(), PresenceSource)

    @pytest.mark.asyncio
    async def test_presence_snapshot_without_relay_is_empty(self):
        assert await RelayMetricSource().presence_snapshot() == {}

    @pytest.mark.asyncio
    async def test_presence_snapshot_reads_workers(self):
        source = RelayMetricSource("relay:9000", secret="s3cret")
        payload = {"workers": {"w1": {"hostname": "box-1"}, "w2": "garbage"}}
        with patch.object(source, "status", AsyncMock(return_value=StatusProbeResult(
                ok=True, status_code=200, payload=payload))) as status:
            snapshot = await source.presence_snapshot()
        assert snapshot == {"w1": {"hostname": "box-1"}, "w2": {}}
        status.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_presence_snapshot_unreachable_relay_raises(self):
        """An unreachable relay must not look like an empty roster"""
        source = RelayMetricSource("relay:9000")
        with patch.object(source, "status", AsyncMock(return_value=StatusProbeResult(ok=False, error="refused"))):
            with pytest.raises(ProbeError, match="refused"):
                await source.presence_snapshot()

    @pytest.mark.asyncio
    async def test_presence_snapshot_malformed_roster_raises(self):
        source = RelayMetricSource("relay:9000")
        with patch.object(source, "status", AsyncMock(return_value=StatusProbeResult(
                ok=True, status_code=200, payload={"workers": ["w1"]}))):
            with pytest.raises(ProbeError):
                await source.presence_snapshot()

    @pytest.mark.asyncio
    async def test_status_connection_error_is_not_ok(self):
        """An unreachable address yields ok=False instead of raising"""
        source = RelayMetricSource()
        result = await source.status("127.0.0.1:1", timeout=1.0)
        assert result.ok is False
        assert result.error


class TestSelectBestModel:
    def test_no_models(self):
        assert select_best_model([]) is None

    def test_preferred_wins_when_installed(self):
        assert select_best_model(["mistral:latest", "phi3:mini"], preferred="phi3:mini") == "phi3:mini"

    def test_priority_order(self):
        models = ["tinyllama:latest", "llama3.1:8b", "mistral:7b"]
        assert select_best_model(models) == "llama3.1:8b"

    def test_unknown_models_fall_back_to_first(self):
        assert select_best_model(["custom-a", "custom-b"]) == "custom-a"

    def test_priority_list_prefers_larger_models(self):
        assert MODEL_PRIORITY.index("qwen2.5:14b") < MODEL_PRIORITY.index("qwen2.5:7b")


class TestOllamaUsableCheck:
    @pytest.mark.asyncio
    async def test_usable_with_models(self):
        check = OllamaUsableCheck(preferred_model="auto")
        with patch.object(check, "list_models", AsyncMock(return_value=["mistral:7b", "llama3:8b"])):
            assert await check() is True
        assert check.available is True
        assert check.detected_model == "llama3:8b"

    @pytest.mark.asyncio
    async def test_not_usable_without_models(self):
        check = OllamaUsableCheck()
        with patch.object(check, "list_models", AsyncMock(return_value=[])):
            assert await check() is False
        assert check.detected_model is None

    @pytest.mark.asyncio
    async def test_not_usable_when_unreachable(self):
        check = OllamaUsableCheck()
        with patch.object(check, "list_models", AsyncMock(side_effect=OSError("connection refused"))):
            assert await check() is False
        assert check.available is False
