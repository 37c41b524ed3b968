"""Helpers for backing up a Roundcube installation before it is upgraded."""
from __future__ import annotations

import logging
import os
import subprocess
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from services.commands import CommandRunner, run_command
from services.installation import DatabaseDsn, Installation

LOGGER = logging.getLogger(__name__)

__all__ = [
    "BackupError",
    "BackupSet",
    "create_backup_set",
    "create_code_archive",
    "dump_database",
]

DEFAULT_CLIENT_CONFIG = Path("/root/.my.cnf")
MYSQLDUMP_OPTIONS = ("--single-transaction", "--quick", "--routines", "--triggers")


class BackupError(RuntimeError):
    """Raised when a code archive or database dump cannot be produced."""


@dataclass(frozen=True)
class BackupSet:
    timestamp: str
    code_archive: Path
    database_dump: Path


def create_code_archive(rc_path: Path, destination_dir: Path, timestamp: str) -> Path:
    """Create a gzip tarball of the installation directory.

    The archive holds a single top-level entry named after the installation
    directory, so it can be unpacked next to the live installation.
    """

    if not rc_path.is_dir():
        raise BackupError(f"Installation directory not found: {rc_path}")
    destination_dir.mkdir(parents=True, exist_ok=True)

    archive_path = destination_dir / f"roundcube-code-{timestamp}.tar.gz"
    LOGGER.info("Backing up code to %s", archive_path)
    try:
        with tarfile.open(archive_path, mode="w:gz") as archive:
            archive.add(str(rc_path), arcname=rc_path.name)
    except (OSError, tarfile.TarError) as exc:
        archive_path.unlink(missing_ok=True)
        raise BackupError(f"Failed to archive {rc_path}: {exc}") from exc

    if archive_path.stat().st_size == 0:
        archive_path.unlink(missing_ok=True)
        raise BackupError("Code backup archive was empty.")

    return archive_path


def dump_database(
    dsn: DatabaseDsn,
    destination_dir: Path,
    timestamp: str,
    runner: Optional[CommandRunner] = None,
    *,
    client_config: Path = DEFAULT_CLIENT_CONFIG,
) -> Path:
    """Write a logical dump of the Roundcube database with ``mysqldump``.

    The password never appears on the command line: it goes through a
    private options file that is removed once the dump finishes. Without a
    password the client's own ``~/.my.cnf`` has to provide credentials.
    """

    runner = runner or run_command
    destination_dir.mkdir(parents=True, exist_ok=True)
    dump_path = destination_dir / f"roundcube-db-{dsn.database}-{timestamp}.sql"

    options_file: Optional[Path] = None
    if dsn.password:
        options_file = _write_options_file(destination_dir, dsn)
    elif not client_config.is_file():
        raise BackupError(f"No DB password available and {client_config} not present.")

    args = ["mysqldump"]
    if options_file is not None:
        # mysqldump only honours this option in first position.
        args.append(f"--defaults-extra-file={options_file}")
    args.extend(["-h", dsn.host])
    if dsn.port:
        args.extend(["-P", str(dsn.port)])
    args.extend(["-u", dsn.user, *MYSQLDUMP_OPTIONS, f"--result-file={dump_path}", dsn.database])

    LOGGER.info("Backing up DB to %s", dump_path)
    try:
        runner(args, cwd=destination_dir)
    except subprocess.CalledProcessError as exc:
        LOGGER.error("mysqldump failed: %s", exc.stderr or exc.stdout)
        raise BackupError(f"Failed to dump database {dsn.database}.") from exc
    except FileNotFoundError as exc:
        raise BackupError("mysqldump not found.") from exc
    finally:
        if options_file is not None:
            options_file.unlink(missing_ok=True)

    if not dump_path.is_file():
        raise BackupError(f"Database dump was not written to {dump_path}.")
    return dump_path


def create_backup_set(
    installation: Installation,
    destination_dir: Path,
    timestamp: str,
    runner: Optional[CommandRunner] = None,
    *,
    client_config: Path = DEFAULT_CLIENT_CONFIG,
) -> BackupSet:
    code_archive = create_code_archive(installation.path, destination_dir, timestamp)
    database_dump = dump_database(
        installation.dsn,
        destination_dir,
        timestamp,
        runner,
        client_config=client_config,
    )
    return BackupSet(timestamp=timestamp, code_archive=code_archive, database_dump=database_dump)


def _write_options_file(destination_dir: Path, dsn: DatabaseDsn) -> Path:
    path = destination_dir / ".mysqldump.cnf"
    escaped = dsn.password.replace("\\", "\\\\").replace('"', '\\"')
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(f'[client]\npassword="{escaped}"\n')
    return path
