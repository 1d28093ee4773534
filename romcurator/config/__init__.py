"""Configuration models and loaders."""

from .io import load_config, save_config, get_config_path
from .models import (
    CatalogConfig,
    ConversionConfig,
    CuratorConfig,
    LoggingConfig,
    MatchingConfig,
    OrganizeConfig,
    PerformanceConfig,
    PreferenceConfig,
    validate_config,
)

__all__ = [
    "CatalogConfig",
    "ConversionConfig",
    "CuratorConfig",
    "LoggingConfig",
    "MatchingConfig",
    "OrganizeConfig",
    "PerformanceConfig",
    "PreferenceConfig",
    "get_config_path",
    "load_config",
    "save_config",
    "validate_config",
]
