"""Config I/O utilities."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from ..exceptions import ConfigurationError
from .models import CuratorConfig, validate_config

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "ROMCURATOR_CONFIG"
DEFAULT_CONFIG_NAME = "romcurator.yaml"


def get_config_path() -> Optional[Path]:
    """Return the config path from the environment or the working directory, if any exists."""
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    for name in (DEFAULT_CONFIG_NAME, "romcurator.yml", "romcurator.json"):
        candidate = Path.cwd() / name
        if candidate.exists():
            return candidate
    return None


def _read_mapping(path: Path) -> Dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Cannot read config: {exc}", file_path=str(path)) from exc

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(raw) if raw.strip() else {}
        else:
            data = yaml.safe_load(raw) or {}
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Malformed config: {exc}", error_code="CONFIG_PARSE_ERROR", file_path=str(path)) from exc

    if not isinstance(data, dict):
        raise ConfigurationError("Config root must be a mapping", file_path=str(path))
    return data


def load_config(config_path: Optional[Union[str, Path]] = None) -> CuratorConfig:
    """Load and validate a YAML or JSON config. Defaults apply when no file exists."""
    path = Path(config_path) if config_path is not None else get_config_path()
    if path is None:
        logger.debug("No config file found, using defaults")
        return CuratorConfig()
    if not path.exists():
        if config_path is not None:
            raise ConfigurationError("Config file not found", file_path=str(path))
        return CuratorConfig()
    config = validate_config(_read_mapping(path))
    logger.debug("Loaded config from %s", path)
    return config


def save_config(config: CuratorConfig, config_path: Union[str, Path]) -> Path:
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json")
    if path.suffix.lower() == ".json":
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    else:
        path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    return path
