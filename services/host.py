"""Host-level helpers: privilege and tool checks, runtime directories, services."""
from __future__ import annotations

import grp
import logging
import os
import pwd
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence, Tuple

from services.commands import CommandRunner, run_command

LOGGER = logging.getLogger(__name__)

REQUIRED_TOOLS = ("mysqldump", "php", "systemctl")
PHP_FPM_CANDIDATES = ("php-fpm", "php-fpm80", "php-fpm81", "php-fpm82")
DEFAULT_PHP_FPM_SERVICE = "php-fpm"
WEB_SERVICE = "nginx"
RUNTIME_DIRS = ("cache", "temp")
RUNTIME_DIR_MODE = 0o775


class HostError(RuntimeError):
    """Raised when the host does not meet the upgrade's requirements."""


def is_root() -> bool:
    return os.geteuid() == 0


def require_root(check: Callable[[], bool] = is_root) -> None:
    if not check():
        raise HostError("Run as root.")


def ensure_tools(
    tools: Iterable[str] = REQUIRED_TOOLS,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> None:
    missing = [tool for tool in tools if which(tool) is None]
    if missing:
        raise HostError(f"Required tools not found: {', '.join(missing)}.")


def prepare_runtime_dirs(rc_path: Path, user: str, group: str) -> None:
    """Make sure ``cache/`` and ``temp/`` exist and belong to the web server.

    Ownership and mode changes are best effort: failures are logged and the
    upgrade carries on. Both directories are writable by the web server, so
    symlinks inside them are re-owned themselves and never followed.
    """
    try:
        owner: Optional[Tuple[int, int]] = _resolve_owner(user, group)
    except LookupError as exc:
        LOGGER.warning("Could not change ownership to %s:%s: %s", user, group, exc)
        owner = None

    for name in RUNTIME_DIRS:
        directory = rc_path / name
        directory.mkdir(parents=True, exist_ok=True)
        if owner is not None:
            try:
                for path in _walk(directory):
                    os.chown(path, *owner, follow_symlinks=False)
            except OSError as exc:
                LOGGER.warning("Could not change ownership of %s to %s:%s: %s", directory, user, group, exc)
        try:
            directory.chmod(RUNTIME_DIR_MODE)
        except OSError as exc:
            LOGGER.warning("Could not change mode of %s: %s", directory, exc)


def clear_runtime_dirs(rc_path: Path) -> None:
    """Empty ``cache/`` and ``temp/``, keeping dot-files such as ``.htaccess``."""
    for name in RUNTIME_DIRS:
        directory = rc_path / name
        if not directory.is_dir():
            continue
        for entry in directory.iterdir():
            if entry.name.startswith("."):
                continue
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            except OSError as exc:
                LOGGER.warning("Could not remove %s: %s", entry, exc)


def _resolve_owner(user: str, group: str) -> Tuple[int, int]:
    try:
        uid = pwd.getpwnam(user).pw_uid
    except KeyError as exc:
        raise LookupError(f"no such user: {user}") from exc
    try:
        gid = grp.getgrnam(group).gr_gid
    except KeyError as exc:
        raise LookupError(f"no such group: {group}") from exc
    return uid, gid


def _walk(directory: Path) -> Iterable[Path]:
    yield directory
    # os.walk does not descend into symlinked directories.
    for root, dirs, files in os.walk(directory):
        for name in dirs + files:
            yield Path(root) / name


class ServiceManager:
    """Best-effort wrapper around ``systemctl``."""

    def __init__(self, runner: Optional[CommandRunner] = None) -> None:
        self._runner = runner or run_command
        self._logger = logging.getLogger("roundcube_upgrade.services")

    def detect_php_fpm(self, candidates: Sequence[str] = PHP_FPM_CANDIDATES) -> str:
        """Return the first PHP-FPM unit that ``systemctl status`` knows about."""
        for unit in candidates:
            if self._succeeds(["systemctl", "status", unit]):
                return unit
        self._logger.debug("No PHP-FPM unit answered; falling back to %s", DEFAULT_PHP_FPM_SERVICE)
        return DEFAULT_PHP_FPM_SERVICE

    def restart(self, unit: str) -> bool:
        if self._succeeds(["systemctl", "restart", unit]):
            return True
        self._logger.warning("Warning: failed to restart %s", unit)
        return False

    def reload(self, unit: str) -> bool:
        if self._succeeds(["systemctl", "reload", unit]):
            return True
        self._logger.warning("Warning: failed to reload %s", unit)
        return False

    def _succeeds(self, command: Sequence[str]) -> bool:
        try:
            self._runner(list(command))
        except subprocess.CalledProcessError as exc:
            stderr = exc.stderr.strip() if exc.stderr else str(exc)
            self._logger.debug("%s failed: %s", " ".join(command), stderr)
            return False
        except OSError as exc:
            self._logger.debug("%s could not be started: %s", command[0], exc)
            return False
        return True
