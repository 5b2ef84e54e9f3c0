"""
Main configuration class for the Character Builder core.

Contains the Config class that groups all configuration sections and knows
how to load them from YAML files and environment variables.
"""

import logging
import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from ..exceptions import ConfigurationError
from .base import ENV_PREFIX, Environment
from .runtime import (
    GenerationConfig,
    MonitoringConfig,
    NotifierConfig,
    StorageConfig,
    VersioningConfig,
)
from .yaml_loader import YAMLConfigLoader

logger = logging.getLogger(__name__)

_SECTIONS = ("versioning", "generation", "notifier", "monitoring", "storage")


def _coerce(value: str, current: Any) -> Any:
    """Convert an environment string to the type of the current value."""
    if isinstance(current, bool):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, Path):
        return Path(value)
    return value


def _apply_section(section: Any, data: Mapping[str, Any], name: str) -> None:
    known = {f.name: f for f in fields(section)}
    for key, value in data.items():
        if key not in known:
            raise ConfigurationError(
                f"Unknown option '{name}.{key}'",
                error_code="UNKNOWN_OPTION",
                component="Config",
            )
        current = getattr(section, key)
        if isinstance(current, Path) and not isinstance(value, Path):
            value = Path(value)
        setattr(section, key, value)


@dataclass
class Config:
    """Main configuration class for the Character Builder core."""

    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False

    versioning: VersioningConfig = field(default_factory=VersioningConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    def __post_init__(self) -> None:
        """Apply environment-specific defaults."""
        if self.environment == Environment.PRODUCTION:
            self.debug = False
            self.monitoring.json_logs = True
        elif self.environment == Environment.TESTING:
            self.debug = True
            # Keep contention retries fast under test
            self.versioning.base_delay_s = 0.0
            self.versioning.jitter = False
            self.generation.base_delay_s = 0.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Config":
        """Build a configuration from a nested dictionary."""
        env_value = data.get("environment", Environment.DEVELOPMENT.value)
        try:
            environment = (
                env_value
                if isinstance(env_value, Environment)
                else Environment(env_value)
            )
        except ValueError as e:
            raise ConfigurationError(
                f"Unknown environment: {env_value}", component="Config"
            ) from e

        config = cls(environment=environment, debug=bool(data.get("debug", False)))
        for name in _SECTIONS:
            section_data = data.get(name) or {}
            if not isinstance(section_data, Mapping):
                raise ConfigurationError(
                    f"Section '{name}' must be a mapping", component="Config"
                )
            _apply_section(getattr(config, name), section_data, name)
        return config

    @classmethod
    def from_file(cls, config_path: Union[str, Path]) -> "Config":
        """Load configuration from a YAML file."""
        data = YAMLConfigLoader.load_yaml(Path(config_path))
        config = cls.from_dict(data)
        logger.info(f"Loaded configuration from {config_path}")
        return config

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        base: Optional["Config"] = None,
    ) -> "Config":
        """Load configuration overrides from CB_<SECTION>__<OPTION> variables."""
        environ = os.environ if environ is None else environ
        config = base or cls(
            environment=Environment(
                environ.get(f"{ENV_PREFIX}ENVIRONMENT", Environment.DEVELOPMENT.value)
            )
        )

        for key, raw in environ.items():
            if not key.startswith(ENV_PREFIX) or "__" not in key:
                continue
            section_name, _, option = key[len(ENV_PREFIX) :].lower().partition("__")
            if section_name not in _SECTIONS:
                continue
            section = getattr(config, section_name)
            if not hasattr(section, option):
                logger.warning(f"Ignoring unknown config override {key}")
                continue
            try:
                setattr(section, option, _coerce(raw, getattr(section, option)))
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid value for {key}: {raw!r}", component="Config"
                ) from e

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a YAML-friendly dictionary."""

        def dump(section: Any) -> Dict[str, Any]:
            result = {}
            for f in fields(section):
                value = getattr(section, f.name)
                if isinstance(value, Path):
                    value = str(value)
                elif is_dataclass(value):
                    value = dump(value)
                result[f.name] = value
            return result

        data: Dict[str, Any] = {
            "environment": self.environment.value,
            "debug": self.debug,
        }
        for name in _SECTIONS:
            data[name] = dump(getattr(self, name))
        return data

    def save(self, config_path: Union[str, Path]) -> None:
        """Save configuration to a YAML file."""
        YAMLConfigLoader.save_yaml(self.to_dict(), Path(config_path))
