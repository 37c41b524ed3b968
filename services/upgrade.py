"""Utilities for upgrading a Roundcube installation in-place."""
from __future__ import annotations

import argparse
import logging
import shutil
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import requests
from dotenv import load_dotenv

from data_paths import create_workdir, make_timestamp
from services.backup import DEFAULT_CLIENT_CONFIG, BackupError, BackupSet, create_backup_set
from services.commands import CommandRunner, run_command
from services.host import (
    REQUIRED_TOOLS,
    WEB_SERVICE,
    HostError,
    ServiceManager,
    clear_runtime_dirs,
    ensure_tools,
    is_root,
    prepare_runtime_dirs,
    require_root,
)
from services.installation import (
    Installation,
    InstallationError,
    compare_versions,
    detect_version,
    load_installation,
    locate_installation,
)
from services.release import (
    ChecksumMismatchError,
    ReleaseArtifact,
    ReleaseError,
    download_release,
    extract_release,
    run_installer,
    verify_checksum,
)
from services.settings import (
    DEFAULT_SHA256,
    DEFAULT_SOURCE_URL,
    DEFAULT_VERSION,
    SettingsError,
    UpgradeSettings,
    load_settings,
)

LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class UpgradeError(RuntimeError):
    """Raised when the upgrade process fails."""

    completed_steps: Tuple[str, ...] = ()


class UpgradeEnvironmentError(UpgradeError):
    """The host, installation or settings rule the upgrade out before any change."""


class DowngradeRefusedError(UpgradeError):
    """The requested version is older than the installed one."""


class BackupFailedError(UpgradeError):
    """The code archive or database dump could not be produced."""


class IntegrityError(UpgradeError):
    """The downloaded archive does not match its pinned checksum."""


class InstallFailedError(UpgradeError):
    """Downloading, unpacking or installing the release failed."""


@dataclass
class Toolkit:
    """External capabilities the workflow depends on."""

    runner: CommandRunner = run_command
    session: Optional[requests.Session] = None
    which: Callable[[str], Optional[str]] = shutil.which
    is_root: Callable[[], bool] = is_root
    sleep: Callable[[float], None] = time.sleep
    client_config: Path = DEFAULT_CLIENT_CONFIG


@dataclass(frozen=True)
class UpgradeResult:
    """Structured results returned by :func:`perform_upgrade`."""

    previous_version: Optional[str]
    current_version: Optional[str]
    target_version: str
    up_to_date: bool = False
    workdir: Optional[Path] = None
    backup: Optional[BackupSet] = None
    completed_steps: Tuple[str, ...] = ()


@dataclass
class _RunState:
    settings: UpgradeSettings
    toolkit: Toolkit
    rc_path: Optional[Path] = None
    previous_version: Optional[str] = None
    installation: Optional[Installation] = None
    php_fpm_service: Optional[str] = None
    timestamp: Optional[str] = None
    workdir: Optional[Path] = None
    backup: Optional[BackupSet] = None
    artifact: Optional[ReleaseArtifact] = None
    final_version: Optional[str] = None
    up_to_date: bool = False
    completed_steps: List[str] = field(default_factory=list)


def perform_upgrade(
    settings: Optional[UpgradeSettings] = None,
    *,
    toolkit: Optional[Toolkit] = None,
) -> UpgradeResult:
    """Upgrade the Roundcube installation to ``settings.version``.

    The steps run in a fixed order and the first hard failure stops the run
    with an :class:`UpgradeError` carrying the steps that did complete. A
    backup of code and database always exists before the vendor installer
    touches the installation; there is no automatic rollback.
    """

    state = _RunState(settings=settings or load_settings(), toolkit=toolkit or Toolkit())

    for name, step in _STEPS:
        try:
            step(state)
        except UpgradeError as exc:
            exc.completed_steps = tuple(state.completed_steps)
            LOGGER.error("Upgrade stopped at step '%s': %s", name, exc)
            if state.completed_steps:
                LOGGER.error("Completed steps: %s", ", ".join(state.completed_steps))
            if state.backup is not None:
                LOGGER.error("Backups are available in %s", state.workdir)
            raise
        state.completed_steps.append(name)
        if state.up_to_date:
            break

    if not state.up_to_date:
        LOGGER.info("Done. Backups in %s", state.workdir)

    return UpgradeResult(
        previous_version=state.previous_version,
        current_version=state.final_version,
        target_version=state.settings.version,
        up_to_date=state.up_to_date,
        workdir=state.workdir,
        backup=state.backup,
        completed_steps=tuple(state.completed_steps),
    )


def _check_privileges(state: _RunState) -> None:
    try:
        require_root(state.toolkit.is_root)
    except HostError as exc:
        raise UpgradeEnvironmentError(str(exc)) from exc


def _locate_installation(state: _RunState) -> None:
    try:
        state.rc_path = locate_installation(state.settings.rc_path)
    except InstallationError as exc:
        raise UpgradeEnvironmentError(str(exc)) from exc
    LOGGER.info("Roundcube path: %s", state.rc_path)

    state.previous_version = detect_version(state.rc_path)
    LOGGER.info("Current Roundcube version: %s", state.previous_version or "unknown")


def _check_version_policy(state: _RunState) -> None:
    current, target = state.previous_version, state.settings.version
    if not current:
        return
    try:
        ordering = compare_versions(current, target)
    except InstallationError:
        LOGGER.warning("Installed version %r is not comparable; continuing as unknown", current)
        return

    if ordering == 0:
        LOGGER.info("Already at target %s. Nothing to do.", target)
        state.final_version = current
        state.up_to_date = True
    elif ordering > 0:
        raise DowngradeRefusedError(
            f"Target version {target} is lower than current {current}. Refusing downgrade."
        )


def _read_database_settings(state: _RunState) -> None:
    try:
        state.installation = load_installation(state.rc_path, state.previous_version)
    except InstallationError as exc:
        raise UpgradeEnvironmentError(str(exc)) from exc
    dsn = state.installation.dsn
    LOGGER.info("DB: %s on %s (user: %s)", dsn.database, dsn.host, dsn.user)


def _check_host(state: _RunState) -> None:
    try:
        ensure_tools(REQUIRED_TOOLS, which=state.toolkit.which)
    except HostError as exc:
        raise UpgradeEnvironmentError(str(exc)) from exc
    state.php_fpm_service = ServiceManager(state.toolkit.runner).detect_php_fpm()


def _prepare_runtime_dirs(state: _RunState) -> None:
    try:
        prepare_runtime_dirs(state.rc_path, state.settings.web_user, state.settings.web_group)
    except OSError as exc:
        raise UpgradeEnvironmentError(f"Cannot create cache/temp directories: {exc}") from exc


def _back_up(state: _RunState) -> None:
    state.timestamp = make_timestamp()
    try:
        state.workdir = create_workdir(state.settings.workdir_root, state.timestamp)
    except OSError as exc:
        raise UpgradeEnvironmentError(f"Cannot create working directory: {exc}") from exc
    LOGGER.info("Workdir: %s", state.workdir)

    try:
        state.backup = create_backup_set(
            state.installation,
            state.workdir,
            state.timestamp,
            state.toolkit.runner,
            client_config=state.toolkit.client_config,
        )
    except BackupError as exc:
        raise BackupFailedError(f"Failed to back up the installation: {exc}") from exc


def _download_release(state: _RunState) -> None:
    settings = state.settings
    artifact = ReleaseArtifact(
        version=settings.version,
        source_url=settings.source_url,
        expected_sha256=settings.expected_sha256,
    )
    LOGGER.info("Downloading Roundcube %s from %s", artifact.version, artifact.source_url)
    try:
        artifact.archive_path = download_release(
            artifact.source_url,
            state.workdir / artifact.archive_name,
            session=state.toolkit.session,
            sleep=state.toolkit.sleep,
        )
    except ReleaseError as exc:
        raise InstallFailedError(str(exc)) from exc
    state.artifact = artifact


def _verify_checksum(state: _RunState) -> None:
    artifact = state.artifact
    if not state.settings.verify_checksum:
        LOGGER.warning("Checksum verification disabled; using the archive unverified")
        return
    try:
        artifact.actual_sha256 = verify_checksum(artifact.archive_path, artifact.expected_sha256)
    except ChecksumMismatchError as exc:
        raise IntegrityError(str(exc)) from exc
    except OSError as exc:
        raise IntegrityError(f"Cannot read {artifact.archive_path}: {exc}") from exc
    LOGGER.info("Checksum verified: %s", artifact.actual_sha256)


def _extract_release(state: _RunState) -> None:
    artifact = state.artifact
    try:
        artifact.source_dir = extract_release(
            artifact.archive_path, state.workdir / "src", artifact.version
        )
    except ReleaseError as exc:
        raise InstallFailedError(str(exc)) from exc


def _run_installer(state: _RunState) -> None:
    if state.backup is None:  # pragma: no cover - guarded by step order
        raise InstallFailedError("Refusing to run the installer without a backup set.")
    try:
        run_installer(state.artifact.source_dir, state.rc_path, state.toolkit.runner)
    except ReleaseError as exc:
        raise InstallFailedError(str(exc)) from exc


def _clear_cache(state: _RunState) -> None:
    LOGGER.info("Clearing cache")
    clear_runtime_dirs(state.rc_path)


def _restart_services(state: _RunState) -> None:
    services = ServiceManager(state.toolkit.runner)
    LOGGER.info("Restarting %s and reloading %s", state.php_fpm_service, WEB_SERVICE)
    services.restart(state.php_fpm_service)
    services.reload(WEB_SERVICE)


def _verify_version(state: _RunState) -> None:
    state.final_version = detect_version(state.rc_path)
    if not state.final_version:
        LOGGER.info("Could not auto-detect version. Verify via web UI.")
        return

    LOGGER.info("Roundcube version now: %s", state.final_version)
    try:
        behind = compare_versions(state.final_version, state.settings.version) < 0
    except InstallationError:
        behind = False
    if behind:
        LOGGER.warning(
            "WARNING: Detected %s < target %s. Check manually.",
            state.final_version,
            state.settings.version,
        )


_STEPS: Tuple[Tuple[str, Callable[[_RunState], None]], ...] = (
    ("check privileges", _check_privileges),
    ("locate installation", _locate_installation),
    ("check version", _check_version_policy),
    ("read database settings", _read_database_settings),
    ("check host", _check_host),
    ("prepare runtime directories", _prepare_runtime_dirs),
    ("back up", _back_up),
    ("download release", _download_release),
    ("verify checksum", _verify_checksum),
    ("extract release", _extract_release),
    ("run installer", _run_installer),
    ("clear cache", _clear_cache),
    ("restart services", _restart_services),
    ("verify version", _verify_version),
)


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Upgrade a Roundcube installation in place.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Defaults:\n"
            f"  --version   {DEFAULT_VERSION}\n"
            f"  --src-url   {DEFAULT_SOURCE_URL}\n"
            f"  --sha256    {DEFAULT_SHA256}\n"
            "Environment overrides: RC_PATH, VERSION, SRC_URL, SHA256_EXPECTED, DEBUG=1.\n"
            'To disable checksum verification: SHA256_EXPECTED=""'
        ),
    )
    parser.add_argument("--rc-path", type=Path, help="Roundcube installation directory (default: auto-detect)")
    parser.add_argument("--version", dest="version", help="Target Roundcube version")
    parser.add_argument("--src-url", help="URL of the release tarball")
    parser.add_argument("--sha256", help="Expected SHA-256 of the tarball (empty string disables the check)")
    parser.add_argument("--workdir-root", type=Path, help="Directory that receives the timestamped working directory")
    parser.add_argument("--debug", action="store_true", help="Log every external command")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry-point used by ``upgrade.py`` for a small CLI."""

    args = build_parser().parse_args(argv)
    load_dotenv(Path.cwd() / ".env")

    try:
        settings = load_settings(
            version=args.version,
            source_url=args.src_url,
            expected_sha256=args.sha256,
            rc_path=args.rc_path,
            workdir_root=args.workdir_root,
            debug=True if args.debug else None,
        )
    except SettingsError as exc:
        configure_logging()
        LOGGER.error("ERROR: %s", exc)
        print(f"Upgrade failed: {exc}", file=sys.stderr)
        return 1

    configure_logging(settings.debug)

    try:
        result = perform_upgrade(settings)
    except UpgradeError as exc:
        print(f"Upgrade failed: {exc}", file=sys.stderr)
        return 1

    if result.up_to_date:
        print(f"Roundcube is already at {result.target_version}; nothing to do.")
        return 0

    print("Upgrade completed successfully.")
    print(f"Previous version: {result.previous_version or 'unknown'}")
    print(f"Current version: {result.current_version or 'unknown'}")
    if result.backup is not None:
        print(f"Code backup: {result.backup.code_archive}")
        print(f"Database backup: {result.backup.database_dump}")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI behavior
    raise SystemExit(main())
