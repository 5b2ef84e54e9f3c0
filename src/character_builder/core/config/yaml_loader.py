"""
YAML reading and writing for configuration files.
"""

import logging
from pathlib import Path
from typing import Any, Dict

import yaml

from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class YAMLConfigLoader:
    """Loads and saves configuration mappings as YAML."""

    @staticmethod
    def load_yaml(path: Path) -> Dict[str, Any]:
        """
        Load a YAML mapping.

        Args:
            path: Path to YAML file

        Returns:
            The mapping, or an empty dict for an empty file

        Raises:
            ConfigurationError: If the file is missing, unparsable or not a mapping
        """
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                error_code="CONFIG_NOT_FOUND",
                component="YAMLConfigLoader",
            )

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Failed to parse YAML file {path}: {e}")
            raise ConfigurationError(
                f"Invalid YAML in {path}: {e}", component="YAMLConfigLoader"
            ) from e

        if data is None:
            logger.warning(f"Configuration file is empty: {path}")
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration file {path} must contain a mapping",
                component="YAMLConfigLoader",
            )
        return data

    @staticmethod
    def save_yaml(data: Dict[str, Any], path: Path) -> None:
        """Write a mapping to ``path``, creating parent directories."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        logger.debug(f"Saved configuration to {path}")
