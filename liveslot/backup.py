# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
liveslot Backup Manager

Moves the live install slot aside before it is mutated and moves it back
if the update fails.

Design principles:
  - Rename, never copy: taking and restoring a backup are single renames
  - Never delete: backups are retained after a successful commit, and a
    failed attempt is set aside as a "broken" sibling for inspection
  - Idempotent restore: a second restore is a no-op
"""

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import BackupFailed, RestoreFailed
from .paths import BACKUP_TAG, BROKEN_TAG, sibling_path

logger = logging.getLogger(__name__)

UNKNOWN_VERSION = "unknown"


@dataclass
class BackupHandle:
    """Tracks one update attempt's backup."""
    slot_path: Path
    target_version: str
    backup_path: Optional[Path] = None
    previous_version: Optional[str] = None
    committed: bool = False

    @property
    def has_backup(self) -> bool:
        return self.backup_path is not None


def _unique(path: Path) -> Path:
    """path if free, otherwise path with a millisecond timestamp appended."""
    if not os.path.lexists(path):
        return path
    return path.with_name(f"{path.name}-{int(time.time() * 1000)}")


class BackupManager:
    """Takes and restores the single install slot's backup."""

    def __init__(self):
        self._restoring = False

    @property
    def restoring(self) -> bool:
        return self._restoring

    def begin_mutation(
        self,
        slot_path: Path,
        current_version: Optional[str],
        target_version: str,
    ) -> BackupHandle:
        """Rename the live slot to a version-tagged sibling.

        Raises:
            BackupFailed: The rename could not complete. The slot is untouched.
        """
        handle = BackupHandle(
            slot_path=slot_path,
            target_version=target_version,
            previous_version=current_version,
        )
        if not os.path.lexists(slot_path):
            logger.debug("No existing install at %s; nothing to back up", slot_path)
            return handle

        backup_path = sibling_path(slot_path, BACKUP_TAG, current_version or UNKNOWN_VERSION)
        if os.path.lexists(backup_path):
            raise BackupFailed(f"Backup destination already exists: {backup_path}")
        try:
            os.rename(slot_path, backup_path)
        except OSError as e:
            raise BackupFailed(f"Could not move {slot_path} to {backup_path}: {e}") from e

        handle.backup_path = backup_path
        logger.info("Backed up %s to %s", slot_path, backup_path)
        return handle

    def commit(self, handle: BackupHandle) -> None:
        """The new install is authoritative. The backup stays on disk."""
        handle.committed = True
        if handle.backup_path:
            logger.info("Keeping previous install at %s", handle.backup_path)

    def set_aside(self, path: Path, tag: str, version: str) -> Optional[Path]:
        """Rename path to a unique tagged sibling. Returns the new location."""
        if not os.path.lexists(path):
            return None
        destination = _unique(sibling_path(path, tag, version))
        os.rename(path, destination)
        logger.info("Moved %s aside to %s", path, destination)
        return destination

    def restore(self, handle: BackupHandle) -> Optional[Path]:
        """Put the pre-update slot back.

        Any new (possibly partial) slot content is renamed aside as a
        broken install first. Calling this again is a no-op.

        Returns:
            Where the broken attempt was moved, if anything was there.

        Raises:
            RestoreFailed: A rename failed.
        """
        if self._restoring:
            logger.debug("Restore already performed; skipping")
            return None
        self._restoring = True

        try:
            broken = self.set_aside(handle.slot_path, BROKEN_TAG, handle.target_version)
            if handle.backup_path is not None:
                os.rename(handle.backup_path, handle.slot_path)
                logger.info("Restored %s from %s", handle.slot_path, handle.backup_path)
        except OSError as e:
            raise RestoreFailed(f"Could not restore {handle.slot_path}: {e}") from e
        return broken
