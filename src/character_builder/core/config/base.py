"""
Base configuration infrastructure for the Character Builder core.

Contains shared constants and the Environment enum.
"""

import logging
from enum import Enum

logger = logging.getLogger(__name__)

# Prefix for environment variable overrides, e.g. CB_VERSIONING__MAX_ATTEMPTS
ENV_PREFIX = "CB_"

DEFAULT_CONFIG_PATH = "configs/character_builder.yaml"


class Environment(Enum):
    """Environment types for configuration."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"
