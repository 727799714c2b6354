# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
liveslot Permission Fixer

When the installer runs under sudo, everything it writes is owned by root.
Hand the product tree back to the invoking user afterwards.
"""

import asyncio
import logging
from pathlib import Path
from typing import Union

from .errors import PermissionFixFailed
from .paths import ElevationContext

logger = logging.getLogger(__name__)


class PermissionFixer:
    """Recursively re-owns a directory tree when running elevated."""

    def __init__(self, elevation: ElevationContext, chown: str = "chown"):
        self.elevation = elevation
        self.chown = chown

    async def fix(self, path: Path) -> None:
        """Re-own path to the invoking user; no-op when not elevated."""
        if not self.elevation.elevated:
            return
        owner = self.elevation.owner
        if owner is None:
            raise PermissionFixFailed("Running under sudo but SUDO_UID/SUDO_USER is not set")
        uid, _, gid = owner.partition(":")
        await self.fix_ownership(path, uid, gid or None)

    async def fix_ownership(
        self,
        path: Path,
        uid: Union[int, str],
        gid: Union[int, str, None] = None,
    ) -> None:
        """Run `chown -R uid:gid path`.

        Raises:
            PermissionFixFailed: chown failed or wrote to stderr.
        """
        if not self.elevation.elevated:
            return

        owner = f"{uid}:{gid}" if gid is not None else str(uid)
        logger.info("Updating permissions: chown -R %s %s", owner, path)
        try:
            proc = await asyncio.create_subprocess_exec(
                self.chown, "-R", owner, str(path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await proc.communicate()
        except OSError as e:
            raise PermissionFixFailed(str(e)) from e

        diagnostic = stderr.decode(errors="replace").strip()
        if proc.returncode != 0 or diagnostic:
            raise PermissionFixFailed(diagnostic or f"{self.chown} exited with status {proc.returncode}")
