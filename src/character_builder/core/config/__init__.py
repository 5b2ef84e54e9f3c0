"""
Configuration management for the Character Builder core.

Provides a clean public API for all configuration components.
"""

from .base import DEFAULT_CONFIG_PATH, ENV_PREFIX, Environment
from .main import Config
from .runtime import (
    GenerationConfig,
    MonitoringConfig,
    NotifierConfig,
    StorageConfig,
    VersioningConfig,
)
from .yaml_loader import YAMLConfigLoader

__all__ = [
    "Config",
    "Environment",
    "DEFAULT_CONFIG_PATH",
    "ENV_PREFIX",
    "GenerationConfig",
    "MonitoringConfig",
    "NotifierConfig",
    "StorageConfig",
    "VersioningConfig",
    "YAMLConfigLoader",
]
