"""Thin wrapper around :mod:`subprocess` shared by the upgrade steps."""
from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path
from typing import Optional, Protocol, Sequence

LOGGER = logging.getLogger(__name__)


class CommandRunner(Protocol):
    """Callable protocol used to execute external commands."""

    def __call__(
        self, args: Sequence[str], *, cwd: Optional[Path] = None
    ) -> subprocess.CompletedProcess[str]:
        ...


def run_command(args: Sequence[str], *, cwd: Optional[Path] = None) -> subprocess.CompletedProcess[str]:
    LOGGER.debug("+ %s", shlex.join(str(arg) for arg in args))
    return subprocess.run(
        [str(arg) for arg in args],
        cwd=str(cwd) if cwd else None,
        check=True,
        capture_output=True,
        text=True,
    )
