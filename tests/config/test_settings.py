"""
Tests for configuration loading and validation.
"""

import json

import pytest

from fleetwatch.config.config_loader import find_config_file, load_config_file
from fleetwatch.config.settings import FleetSettings, apply_env_overrides, load_settings
from fleetwatch.core.error_handling import ConfigurationError

YAML_CONFIG = """
log_level: debug
relay:
  url: http://relay:8080
  secret: abc
fallback:
  preferred_model: mistral
  base_interval_seconds: 30
  max_interval_seconds: 120
nodes:
  - id: local
    always_local: true
    priority: 0
  - id: alpha
    address: " 10.0.0.11:8080 "
    capacity: 4
    priority: 1
"""


@pytest.fixture
def yaml_file(tmp_path):
    path = tmp_path / "fleet.yaml"
    path.write_text(YAML_CONFIG)
    return str(path)


class TestConfigLoader:
    def test_yaml(self, yaml_file):
        data = load_config_file(yaml_file)
        assert data["relay"]["url"] == "http://relay:8080"

    def test_json(self, tmp_path):
        path = tmp_path / "fleet.json"
        path.write_text(json.dumps({"log_level": "INFO"}))
        assert load_config_file(str(path)) == {"log_level": "INFO"}

    def test_unknown_extension_sniffs_content(self, tmp_path):
        path = tmp_path / "fleet.conf"
        path.write_text("log_level: WARNING\n")
        assert load_config_file(str(path)) == {"log_level": "WARNING"}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config_file(str(tmp_path / "nope.yaml"))

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        with pytest.raises(ValueError):
            load_config_file(str(path))

    def test_find_config_file(self, tmp_path):
        (tmp_path / "fleet.yml").write_text("log_level: INFO\n")
        assert find_config_file("fleet", [str(tmp_path)]) == str(tmp_path / "fleet.yml")
        assert find_config_file("other", [str(tmp_path)]) is None


class TestFleetSettings:
    def test_defaults(self):
        settings = FleetSettings()
        assert settings.prober.timeout_seconds == 10
        assert settings.prober.degraded_threshold_ms == 5000
        assert settings.prober.history_size == 60
        assert settings.presence.stale_after_seconds == 60
        assert settings.stagnation.threshold_seconds == 300
        assert settings.stagnation.cooldown_seconds == 900
        assert settings.fallback.base_interval_seconds == 60
        assert settings.fallback.max_interval_seconds == 300
        assert settings.event_bus.max_backlog == 256
        assert settings.nodes == []

    def test_load_yaml(self, yaml_file):
        settings = load_settings(yaml_file, environ={})
        assert settings.log_level == "DEBUG"
        assert settings.fallback.preferred_model == "mistral"
        assert settings.nodes[1].address == "10.0.0.11:8080"
        assert settings.nodes[1].name is None

    def test_env_overrides(self, yaml_file):
        settings = load_settings(yaml_file, environ={
            "FLEETWATCH_RELAY__SECRET": "from-env",
            "FLEETWATCH_PROBER__TIMEOUT_SECONDS": "3.5",
            "FLEETWATCH_LOG_LEVEL": "warning",
            "UNRELATED": "x",
        })
        assert settings.relay.secret == "from-env"
        assert settings.relay.url == "http://relay:8080"
        assert settings.prober.timeout_seconds == 3.5
        assert settings.log_level == "WARNING"

    def test_env_overrides_do_not_mutate_input(self):
        data = {"relay": {"url": "a"}}
        merged = apply_env_overrides(data, {"FLEETWATCH_RELAY__URL": "b"})
        assert merged["relay"]["url"] == "b"
        assert data["relay"]["url"] == "a"

    def test_unknown_env_section_ignored(self):
        merged = apply_env_overrides({}, {"FLEETWATCH_BOGUS__X": "1", "FLEETWATCH_NODES": "[]"})
        assert merged == {}

    def test_misspelled_env_override_is_rejected(self):
        with pytest.raises(ConfigurationError, match="timeout_second"):
            load_settings(None, environ={"FLEETWATCH_PROBER__TIMEOUT_SECOND": "5"})

    def test_timeout_defaults(self):
        settings = FleetSettings()
        assert settings.fallback.recheck_timeout_seconds == 30
        assert settings.stagnation.dispatch_timeout_seconds == 30

    @pytest.mark.parametrize("data", [
        {"log_level": "LOUD"},
        {"unknown_field": 1},
        {"prober": {"timeout_seconds": 0}},
        {"prober": {"timeout_second": 5}},
        {"fallback": {"primary": "x"}},
        {"fallback": {"base_interval_seconds": 60, "max_interval_seconds": 30}},
        {"nodes": [{"id": "a", "address": "x"}, {"id": "a", "address": "y"}]},
        {"nodes": [{"id": "a"}]},
        {"nodes": [{"id": "l1", "always_local": True}, {"id": "l2", "always_local": True}]},
    ])
    def test_invalid_configuration(self, tmp_path, data):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps(data))
        with pytest.raises(ConfigurationError):
            load_settings(str(path), environ={})

    def test_unreadable_file_is_configuration_error(self, tmp_path):
        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(str(tmp_path / "missing.yaml"), environ={})
        assert exc_info.value.component == "config"

    def test_no_file_uses_defaults(self):
        settings = load_settings(None, environ={"FLEETWATCH_ENVIRONMENT": "production"})
        assert settings.environment == "production"
