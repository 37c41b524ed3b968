"""Fetching, verifying and applying a pinned Roundcube release archive."""
from __future__ import annotations

import hashlib
import logging
import subprocess
import tarfile
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Optional

import requests

from services.commands import CommandRunner, run_command

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ChecksumMismatchError",
    "ReleaseArtifact",
    "ReleaseError",
    "compute_sha256",
    "download_release",
    "extract_release",
    "run_installer",
    "verify_checksum",
]

DOWNLOAD_RETRIES = 3
DOWNLOAD_RETRY_DELAY = 2.0
DOWNLOAD_TIMEOUT = 60
RETRYABLE_STATUS = frozenset({408, 429})
INSTALLER_SCRIPT = "bin/installto.sh"
RELEASE_DIR_PREFIX = "roundcubemail-"
_CHUNK_SIZE = 1024 * 1024


class ReleaseError(RuntimeError):
    """Raised when a release cannot be downloaded, unpacked or installed."""


class ChecksumMismatchError(ReleaseError):
    """Raised when a downloaded archive does not match its pinned digest."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"Checksum mismatch. Expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


@dataclass
class ReleaseArtifact:
    """A release archive as it moves from download to installation."""

    version: str
    source_url: str
    expected_sha256: str
    archive_path: Optional[Path] = None
    actual_sha256: Optional[str] = None
    source_dir: Optional[Path] = None

    @property
    def archive_name(self) -> str:
        return f"{RELEASE_DIR_PREFIX}{self.version}-complete.tar.gz"


def download_release(
    url: str,
    destination: Path,
    *,
    session: Optional[requests.Session] = None,
    retries: int = DOWNLOAD_RETRIES,
    delay: float = DOWNLOAD_RETRY_DELAY,
    timeout: float = DOWNLOAD_TIMEOUT,
    sleep: Callable[[float], None] = time.sleep,
) -> Path:
    """Stream *url* into *destination*, retrying transient failures.

    Connection errors, timeouts, HTTP 408/429 and 5xx responses are retried
    up to *retries* times with a fixed *delay*; any other HTTP error fails
    immediately.
    """

    session = session or requests.Session()
    destination.parent.mkdir(parents=True, exist_ok=True)
    attempts = max(0, int(retries)) + 1

    for attempt in range(1, attempts + 1):
        try:
            with session.get(url, stream=True, timeout=timeout) as response:
                status = int(response.status_code)
                if status >= 400 and not _is_retryable(status):
                    raise ReleaseError(f"HTTP {status} while downloading {url}")
                response.raise_for_status()
                with open(destination, "wb") as handle:
                    for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                        if chunk:
                            handle.write(chunk)
            return destination
        except requests.RequestException as exc:
            destination.unlink(missing_ok=True)
            if attempt >= attempts:
                raise ReleaseError(f"Failed to download {url}: {exc}") from exc
            LOGGER.warning(
                "Download failed (attempt %s/%s): %s. Retrying in %.0fs",
                attempt,
                attempts,
                exc,
                delay,
            )
            sleep(delay)
        except OSError as exc:
            destination.unlink(missing_ok=True)
            raise ReleaseError(f"Cannot write {destination}: {exc}") from exc

    raise ReleaseError(f"Failed to download {url}")  # pragma: no cover - loop always returns or raises


def _is_retryable(status: int) -> bool:
    return status in RETRYABLE_STATUS or status >= 500


def compute_sha256(path: Path) -> str:
    hasher = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def verify_checksum(path: Path, expected: str) -> str:
    """Return the archive's digest, raising when it differs from *expected*."""
    actual = compute_sha256(path)
    if actual.lower() != expected.strip().lower():
        raise ChecksumMismatchError(expected, actual)
    return actual


def extract_release(archive_path: Path, destination: Path, version: Optional[str] = None) -> Path:
    """Unpack the release and return its ``roundcubemail-*`` directory.

    Every member is checked before anything is written: absolute paths,
    ``..`` components and links pointing outside *destination* abort the
    extraction.
    """

    destination.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive_path, mode="r:*") as archive:
            members = archive.getmembers()
            for member in members:
                _check_member(member)
            if hasattr(tarfile, "data_filter"):
                archive.extractall(destination, members=members, filter="data")
            else:  # pragma: no cover - interpreters without extraction filters
                archive.extractall(destination, members=members)
    except (tarfile.TarError, OSError) as exc:
        raise ReleaseError(f"Cannot extract {archive_path.name}: {exc}") from exc

    candidates = sorted(
        entry
        for entry in destination.iterdir()
        if entry.is_dir() and entry.name.startswith(RELEASE_DIR_PREFIX)
    )
    if not candidates:
        raise ReleaseError("Extracted directory not found.")
    if version:
        for candidate in candidates:
            if candidate.name == f"{RELEASE_DIR_PREFIX}{version}":
                return candidate
    if len(candidates) > 1:
        LOGGER.warning(
            "Archive holds several release directories; using %s", candidates[0].name
        )
    return candidates[0]


def _check_member(member: tarfile.TarInfo) -> None:
    name = PurePosixPath(member.name)
    if name.is_absolute() or ".." in name.parts:
        raise ReleaseError(f"Release archive contains unsafe path: {member.name}")
    if member.issym() or member.islnk():
        # Symlinks resolve from their own directory, hard links from the root.
        base = name.parent if member.issym() else PurePosixPath()
        if not _stays_inside(base, PurePosixPath(member.linkname)):
            raise ReleaseError(f"Release archive contains unsafe link: {member.name}")


def _stays_inside(base: PurePosixPath, target: PurePosixPath) -> bool:
    if target.is_absolute():
        return False
    depth = len(base.parts)
    for part in target.parts:
        if part == "..":
            depth -= 1
            if depth < 0:
                return False
        elif part != ".":
            depth += 1
    return True


def run_installer(
    source_dir: Path,
    rc_path: Path,
    runner: Optional[CommandRunner] = None,
) -> subprocess.CompletedProcess[str]:
    """Run the vendor's ``installto.sh`` from *source_dir* against *rc_path*."""

    runner = runner or run_command
    script = source_dir / INSTALLER_SCRIPT
    if not script.is_file():
        raise ReleaseError(f"Installer not found: {script}")

    LOGGER.info("Running installto.sh")
    try:
        result = runner(["php", INSTALLER_SCRIPT, "-y", str(rc_path)], cwd=source_dir)
    except subprocess.CalledProcessError as exc:
        LOGGER.error("installto.sh failed: %s", exc.stderr or exc.stdout)
        raise ReleaseError("installto.sh failed; restore from the backup set if needed.") from exc
    except FileNotFoundError as exc:
        raise ReleaseError("php not found.") from exc

    output = (getattr(result, "stdout", "") or "").strip()
    if output:
        LOGGER.debug("installto.sh output:\n%s", output)
    return result
