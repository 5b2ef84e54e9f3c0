"""
Runtime configuration for the Character Builder core.

Contains the per-component configuration sections.
"""

from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class VersioningConfig:
    """Version number allocation and transaction retry settings."""

    max_attempts: int = 5
    base_delay_s: float = 0.02
    max_delay_s: float = 0.5
    jitter: bool = True
    initial_commit_message: str = "Initial character creation"
    draft_commit_message: str = "Draft via AI chat"


@dataclass
class GenerationConfig:
    """Inference collaborator settings."""

    max_attempts: int = 3  # transient collaborator failures only
    base_delay_s: float = 0.5
    max_delay_s: float = 5.0
    max_history_messages: int = 40


@dataclass
class NotifierConfig:
    """Change notifier settings."""

    subscriber_queue_size: int = 16
    replay_latest_on_subscribe: bool = True


@dataclass
class MonitoringConfig:
    """Logging configuration."""

    log_level: str = "INFO"
    json_logs: bool = True


@dataclass
class StorageConfig:
    """Document store settings."""

    data_file: Path = field(
        default_factory=lambda: Path.cwd() / "data" / "characters.json"
    )
