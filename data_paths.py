"""Centralized helpers for resolving the upgrader's working directory."""
from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

LOGGER = logging.getLogger(__name__)

DEFAULT_WORKDIR_ROOT = Path("/root")
WORKDIR_PREFIX = "roundcube-upgrade-"
TIMESTAMP_FORMAT = "%Y-%m-%d-%H%M%S"


def make_timestamp(now: Optional[datetime] = None) -> str:
    """Return the timestamp used to name the working directory and backups."""
    return (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


def create_workdir(root: Optional[Path] = None, timestamp: Optional[str] = None) -> Path:
    """Create a fresh, uniquely named working directory below *root*.

    A run never reuses an existing directory: when another run already
    claimed the timestamped name, a numeric suffix is appended.
    """
    root = Path(root) if root else DEFAULT_WORKDIR_ROOT
    timestamp = timestamp or make_timestamp()
    root.mkdir(parents=True, exist_ok=True)

    candidate = root / f"{WORKDIR_PREFIX}{timestamp}"
    suffix = 0
    while True:
        try:
            candidate.mkdir()
        except FileExistsError:
            suffix += 1
            LOGGER.debug("Working directory %s already exists", candidate)
            candidate = root / f"{WORKDIR_PREFIX}{timestamp}-{suffix}"
            continue
        return candidate
