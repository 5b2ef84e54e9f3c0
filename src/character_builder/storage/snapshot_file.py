"""
JSON snapshot files for the in-memory document store.

A snapshot is a single JSON object::

    {"format_version": 1, "documents": {"characters/c1": {...}, ...}}

Writes go to a temporary file in the target directory which then replaces
the snapshot, so a crashed CLI command never leaves a half-written store.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict

from ..core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT_VERSION = 1


def read_snapshot(path: Path) -> Dict[str, Dict[str, Any]]:
    """
    Read the documents stored in a snapshot file.

    Args:
        path: Snapshot file; a missing file is an empty store

    Returns:
        Mapping of document path to document

    Raises:
        ConfigurationError: If the file is not a snapshot this version can read
    """
    if not path.exists():
        logger.debug(f"No snapshot at {path}, starting empty")
        return {}

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f"Corrupted data file {path}: {e}", component="SnapshotFile"
        ) from e

    if not isinstance(data, dict) or not isinstance(data.get("documents"), dict):
        raise ConfigurationError(
            f"Data file {path} is not a document store snapshot",
            component="SnapshotFile",
        )
    version = data.get("format_version", SNAPSHOT_FORMAT_VERSION)
    if version != SNAPSHOT_FORMAT_VERSION:
        raise ConfigurationError(
            f"Data file {path} has format version {version}, "
            f"expected {SNAPSHOT_FORMAT_VERSION}",
            error_code="UNSUPPORTED_FORMAT",
            component="SnapshotFile",
        )
    return data["documents"]


def write_snapshot(path: Path, documents: Dict[str, Dict[str, Any]]) -> None:
    """Atomically replace ``path`` with a snapshot of ``documents``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"format_version": SNAPSHOT_FORMAT_VERSION, "documents": documents}

    fd, temp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, sort_keys=True, ensure_ascii=False)
        os.replace(temp_name, path)
    except BaseException:
        os.unlink(temp_name)
        raise
