"""FleetWatch configuration."""

from .config_loader import find_config_file, load_config_file
from .settings import FleetSettings, NodeConfig, apply_env_overrides, load_settings

__all__ = [
    "FleetSettings",
    "NodeConfig",
    "apply_env_overrides",
    "find_config_file",
    "load_config_file",
    "load_settings",
]
