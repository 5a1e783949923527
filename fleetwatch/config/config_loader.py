"""
Configuration File Loader Utility

Loads YAML and JSON configuration files with format detection by
extension, falling back to content sniffing.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


def load_config_file(file_path: str) -> Dict[str, Any]:
    """
    Load configuration from a YAML or JSON file.

    Args:
        file_path: Path to the configuration file

    Returns:
        Dict containing the loaded configuration

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the content is empty, not a mapping, or unparseable
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"Configuration file not found: {file_path}")

    file_extension = Path(file_path).suffix.lower()

    try:
        with open(file_path, "r", encoding="utf-8") as f:
            content = f.read()

        if file_extension == ".json":
            data = json.loads(content)
        elif file_extension in (".yaml", ".yml"):
            data = yaml.safe_load(content)
        else:
            try:
                data = json.loads(content)
            except json.JSONDecodeError:
                try:
                    data = yaml.safe_load(content)
                except yaml.YAMLError:
                    raise ValueError(f"Unsupported configuration file format: {file_path}")

        if data is None:
            raise ValueError("Configuration file is empty")
        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping, got {type(data).__name__}")
        return data

    except Exception as e:
        logger.error(f"Failed to load configuration file {file_path}: {e}")
        raise


def find_config_file(base_name: str, search_paths: Optional[List[str]] = None) -> Optional[str]:
    """
    Find a configuration file by trying known extensions and locations.

    Args:
        base_name: Base name of the config file (without extension)
        search_paths: Directories to search (default: config/ then cwd)

    Returns:
        Path to the found config file, or None if not found
    """
    if search_paths is None:
        search_paths = ["config", ""]

    for search_path in search_paths:
        for ext in (".yaml", ".yml", ".json"):
            candidate = os.path.join(search_path, f"{base_name}{ext}")
            if os.path.exists(candidate):
                logger.info(f"Found configuration file: {candidate}")
                return candidate

    return None
