# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
liveslot Install Paths

Resolves the home directory (correcting for `sudo -H`), lays out the
install slot and its working directory, and names the sibling directories
used for backups and failed attempts.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .config import InstallConfig
from .errors import HomeDirectoryMissing

logger = logging.getLogger(__name__)

ELEVATION_MARKERS = ("SUDO_USER", "SUDO_UID", "SUDO_GID")

BACKUP_TAG = "backup"
BROKEN_TAG = "broken"
STALE_TAG = "stale"


def sibling_path(base_path: Path, tag: str, version: str) -> Path:
    """Name a sibling of base_path tagged with a purpose and a version.

    /x/c9local, "backup", "1.2.0" -> /x/c9local-backup-1.2.0
    """
    return base_path.with_name(f"{base_path.name}-{tag}-{version}")


@dataclass(frozen=True)
class ElevationContext:
    """Impersonation markers taken from the environment."""
    elevated: bool = False
    user: Optional[str] = None
    uid: Optional[str] = None
    gid: Optional[str] = None

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "ElevationContext":
        if not any(marker in env for marker in ELEVATION_MARKERS):
            return cls()
        return cls(
            elevated=True,
            user=env.get("SUDO_USER"),
            uid=env.get("SUDO_UID"),
            gid=env.get("SUDO_GID"),
        )

    @property
    def owner(self) -> Optional[str]:
        """Owner argument for chown: 'uid:gid', falling back to the user name."""
        who = self.uid or self.user
        if not who:
            return None
        return f"{who}:{self.gid}" if self.gid else who


def resolve_home(
    env: Mapping[str, str],
    elevation: ElevationContext,
    override: Optional[Path] = None,
    search_roots: tuple = ("/home", "/Users"),
) -> Path:
    """Find the invoking user's home directory.

    When run as `sudo -H`, HOME is /root; the files belong in the invoking
    user's home instead, so look for it under the usual roots.

    Raises:
        HomeDirectoryMissing: If HOME is unset or does not exist.
    """
    if override is not None:
        home = Path(override)
    else:
        raw = env.get("HOME")
        if not raw:
            raise HomeDirectoryMissing("`HOME` environment variable not set!")
        home = Path(raw)

        if elevation.elevated and elevation.user and str(home) == "/root":
            for root in search_roots:
                candidate = Path(root) / elevation.user
                if candidate.exists():
                    logger.debug("Running under sudo; using %s instead of /root", candidate)
                    home = candidate
                    break

    if not home.exists():
        raise HomeDirectoryMissing(
            f"Path `{home}` found in `HOME` environment variable does not exist!"
        )
    return home


@dataclass(frozen=True)
class InstallPaths:
    """Filesystem layout of a single product install."""
    root: Path
    base_dir: Path
    slot: Path
    working: Path
    metadata: Path
    executable: Path

    @classmethod
    def from_config(cls, home: Path, config: InstallConfig) -> "InstallPaths":
        root = home / config.root_dir_name
        base_dir = root / config.installs_dir_name
        slot = base_dir / config.package_name
        return cls(
            root=root,
            base_dir=base_dir,
            slot=slot,
            working=base_dir / "node_modules" / config.package_name,
            metadata=slot / config.metadata_file,
            executable=slot / "bin" / config.command_name,
        )

    def ensure_base(self) -> None:
        """Create the install base and the installer's working parent."""
        self.working.parent.mkdir(parents=True, exist_ok=True)
