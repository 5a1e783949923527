"""
FleetWatch settings.

Settings are read from a YAML/JSON file and then overridden by
environment variables of the form ``FLEETWATCH_<SECTION>__<FIELD>``
(e.g. ``FLEETWATCH_RELAY__SECRET``) or ``FLEETWATCH_<FIELD>`` for
top-level fields (e.g. ``FLEETWATCH_LOG_LEVEL``).
"""

import logging
import os
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from fleetwatch.config.config_loader import load_config_file
from fleetwatch.core.error_handling import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "FLEETWATCH_"
ENV_SECTION_SEPARATOR = "__"


class NodeConfig(BaseModel):
    """A statically configured fleet node."""
    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1, description="Unique node ID")
    name: Optional[str] = Field(None, description="Display name (defaults to id)")
    address: str = Field("", description="host:port of the node's status endpoint")
    capacity: int = Field(1, ge=0, description="Declared worker count")
    priority: int = Field(99, ge=0, description="Routing rank, lower is preferred")
    always_local: bool = Field(False, description="Local node, never probed")

    @field_validator("address")
    @classmethod
    def strip_address(cls, v):
        return v.strip()


class ProberSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    interval_seconds: float = Field(60.0, gt=0, description="Probe cycle cadence")
    timeout_seconds: float = Field(10.0, gt=0, description="Per-probe timeout")
    degraded_threshold_ms: float = Field(5000, gt=0)
    history_size: int = Field(60, ge=1)


class PresenceSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    interval_seconds: float = Field(30.0, gt=0)
    stale_after_seconds: float = Field(60.0, gt=0)


class StagnationSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    interval_seconds: float = Field(60.0, gt=0)
    threshold_seconds: float = Field(300.0, gt=0, description="Time without progress before acting")
    cooldown_seconds: float = Field(900.0, ge=0, description="Minimum time between actions per node")
    dispatch_timeout_seconds: float = Field(30.0, gt=0, description="Upper bound on one corrective action")


class FallbackSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    primary_name: str = "primary"
    fallback_name: str = "ollama"
    ollama_url: str = "http://localhost:11434"
    preferred_model: str = "auto"
    base_interval_seconds: float = Field(60.0, gt=0)
    max_interval_seconds: float = Field(300.0, gt=0)
    recheck_timeout_seconds: float = Field(30.0, gt=0, description="Upper bound on one primary re-check")

    @field_validator("max_interval_seconds")
    @classmethod
    def max_not_below_base(cls, v, info):
        base = info.data.get("base_interval_seconds")
        if base is not None and v < base:
            raise ValueError("max_interval_seconds must be >= base_interval_seconds")
        return v


class EventBusSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_backlog: int = Field(256, ge=1, description="Per-subscriber queue size")


class PersistenceSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: Optional[str] = Field("data/fleet-stats.json", description="State file (None keeps state in memory)")
    interval_seconds: float = Field(60.0, gt=0)


class RelaySettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str = ""
    secret: str = ""
    command_timeout_seconds: float = Field(10.0, gt=0)


class FleetSettings(BaseModel):
    """Top-level FleetWatch configuration."""
    model_config = ConfigDict(extra="forbid")

    log_level: str = "INFO"
    environment: str = "development"
    prober: ProberSettings = Field(default_factory=ProberSettings)
    presence: PresenceSettings = Field(default_factory=PresenceSettings)
    stagnation: StagnationSettings = Field(default_factory=StagnationSettings)
    fallback: FallbackSettings = Field(default_factory=FallbackSettings)
    event_bus: EventBusSettings = Field(default_factory=EventBusSettings)
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)
    relay: RelaySettings = Field(default_factory=RelaySettings)
    nodes: List[NodeConfig] = Field(default_factory=list)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("nodes")
    @classmethod
    def validate_nodes(cls, v):
        seen = set()
        local = 0
        for node in v:
            if node.id in seen:
                raise ValueError(f"Duplicate node id: {node.id}")
            seen.add(node.id)
            if node.always_local:
                local += 1
            elif not node.address:
                raise ValueError(f"Node {node.id} needs an address")
        if local > 1:
            raise ValueError("At most one node may be always_local")
        return v


def apply_env_overrides(data: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Overlay ``FLEETWATCH_*`` environment variables onto raw config data.

    Values stay strings; pydantic coerces them during validation.
    """
    environ = os.environ if environ is None else environ
    merged = {k: (dict(v) if isinstance(v, dict) else v) for k, v in data.items()}

    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        path = key[len(ENV_PREFIX):].lower()
        if not path or path == "config":
            continue
        if ENV_SECTION_SEPARATOR in path:
            section, field_name = path.split(ENV_SECTION_SEPARATOR, 1)
            if section not in FleetSettings.model_fields or section == "nodes":
                logger.warning(f"Ignoring unknown config override {key}")
                continue
            merged.setdefault(section, {})
            if not isinstance(merged[section], dict):
                raise ConfigurationError(f"Section '{section}' is not a mapping", component="config")
            merged[section][field_name] = value
        elif path in FleetSettings.model_fields and path != "nodes":
            merged[path] = value
        else:
            logger.warning(f"Ignoring unknown config override {key}")
    return merged


def load_settings(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> FleetSettings:
    """
    Load and validate settings.

    Args:
        path: Optional YAML/JSON config file
        environ: Environment mapping (default: os.environ)

    Returns:
        Validated FleetSettings

    Raises:
        ConfigurationError: If the file cannot be read or validation fails
    """
    data: Dict[str, Any] = {}
    if path:
        try:
            data = load_config_file(path)
        except (OSError, ValueError) as e:
            raise ConfigurationError(
                f"Cannot load configuration: {e}", component="config", context={"path": path}
            ) from e

    data = apply_env_overrides(data, environ)
    try:
        settings = FleetSettings(**data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration: {e}", component="config", context={"path": path}
        ) from e

    logger.info(f"Loaded settings: {len(settings.nodes)} nodes, fallback enabled={settings.fallback.enabled}")
    return settings
