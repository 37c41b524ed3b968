"""Runtime configuration for the Roundcube upgrader."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

from packaging.version import InvalidVersion, Version

from data_paths import DEFAULT_WORKDIR_ROOT

__all__ = [
    "DEFAULT_SHA256",
    "DEFAULT_SOURCE_URL",
    "DEFAULT_VERSION",
    "SettingsError",
    "UpgradeSettings",
    "load_settings",
]

DEFAULT_VERSION = "1.6.11"
DEFAULT_SOURCE_URL = (
    "https://raw.githubusercontent.com/alphagg/mailinstaller/main/"
    "roundcubemail-1.6.11-complete.tar.gz"
)
DEFAULT_SHA256 = "2ab4ddd8ff3e010ae1e7cacc29402ee82b5121153d55cbec56feb1746844d575"
DEFAULT_WEB_USER = "nginx"

_SHA256_PATTERN = re.compile(r"^[0-9a-f]{64}$")
_TRUTHY = {"1", "true", "yes", "on"}


class SettingsError(ValueError):
    """Raised when an override cannot be used as given."""


@dataclass(frozen=True)
class UpgradeSettings:
    """Everything a single upgrade run needs to know up front.

    ``expected_sha256`` set to an empty string disables checksum
    verification.
    """

    version: str = DEFAULT_VERSION
    source_url: str = DEFAULT_SOURCE_URL
    expected_sha256: str = DEFAULT_SHA256
    rc_path: Optional[Path] = None
    workdir_root: Path = DEFAULT_WORKDIR_ROOT
    web_user: str = DEFAULT_WEB_USER
    web_group: str = DEFAULT_WEB_USER
    debug: bool = False

    @property
    def verify_checksum(self) -> bool:
        return bool(self.expected_sha256)

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None) -> "UpgradeSettings":
        """Build settings from defaults overlaid with environment variables."""
        env = os.environ if environ is None else environ
        base = cls()
        rc_path = env.get("RC_PATH", "").strip()
        workdir_root = env.get("RC_WORKDIR_ROOT", "").strip()
        web_user = env.get("RC_WEB_USER", "").strip() or base.web_user

        return cls(
            version=env.get("VERSION", "").strip() or base.version,
            source_url=env.get("SRC_URL", "").strip() or base.source_url,
            # Unlike the other overrides an empty value is meaningful here.
            expected_sha256=env.get("SHA256_EXPECTED", base.expected_sha256).strip(),
            rc_path=Path(rc_path) if rc_path else None,
            workdir_root=Path(workdir_root) if workdir_root else base.workdir_root,
            web_user=web_user,
            web_group=env.get("RC_WEB_GROUP", "").strip() or web_user,
            debug=env.get("DEBUG", "0").strip().lower() in _TRUTHY,
        )

    def with_overrides(
        self,
        *,
        version: Optional[str] = None,
        source_url: Optional[str] = None,
        expected_sha256: Optional[str] = None,
        rc_path: Optional[Path] = None,
        workdir_root: Optional[Path] = None,
        debug: Optional[bool] = None,
    ) -> "UpgradeSettings":
        """Return a copy with every non-``None`` override applied."""
        changes = {
            "version": version,
            "source_url": source_url,
            "expected_sha256": expected_sha256.strip() if expected_sha256 is not None else None,
            "rc_path": Path(rc_path) if rc_path else None,
            "workdir_root": Path(workdir_root) if workdir_root else None,
            "debug": debug,
        }
        return replace(self, **{key: value for key, value in changes.items() if value is not None})

    def validated(self) -> "UpgradeSettings":
        """Return a normalised copy, raising :class:`SettingsError` on bad values."""
        version = self.version.strip()
        try:
            Version(version)
        except InvalidVersion as exc:
            raise SettingsError(f"Invalid target version: {self.version!r}") from exc

        source_url = self.source_url.strip()
        if "://" not in source_url:
            raise SettingsError(f"Invalid source URL: {self.source_url!r}")

        expected = self.expected_sha256.strip().lower()
        if expected and not _SHA256_PATTERN.match(expected):
            raise SettingsError("Expected SHA-256 must be 64 hexadecimal characters.")

        return replace(self, version=version, source_url=source_url, expected_sha256=expected)


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    **overrides,
) -> UpgradeSettings:
    """Resolve settings: defaults, then environment, then explicit overrides."""
    return UpgradeSettings.from_environment(environ).with_overrides(**overrides).validated()
