# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
liveslot Errors

Every failure the installer can report derives from InstallerError.
Errors raised before the install slot is touched abort cleanly; anything
raised after a backup has been taken sends the orchestrator into rollback.
"""

from typing import Optional


class InstallerError(Exception):
    """Base class for all installer failures."""
    pass


# =============================================================================
# CHECK PHASE (no filesystem side effects)
# =============================================================================

class HomeDirectoryMissing(InstallerError):
    """HOME is unset or points at a directory that does not exist."""
    pass


class RemoteUnavailable(InstallerError):
    """The manifest request failed or returned a non-200 status."""
    pass


class ManifestMalformed(InstallerError):
    """The manifest body is not JSON or does not match the expected schema."""
    pass


class MetadataCorrupt(InstallerError):
    """The installed metadata file exists but cannot be parsed."""
    pass


class BackupFailed(InstallerError):
    """The live slot could not be moved aside; nothing was changed."""
    pass


# =============================================================================
# MUTATION PHASE (rollback required)
# =============================================================================

class SpawnFailed(InstallerError):
    """The install subprocess could not be started."""
    pass


class InstallFailed(InstallerError):
    """The install subprocess exited with a non-zero status."""

    def __init__(self, exit_code: int, message: Optional[str] = None):
        self.exit_code = exit_code
        super().__init__(message or f"Install subprocess exited with status {exit_code}")


class CommitFailed(InstallerError):
    """The fetched package could not be moved into the install slot."""
    pass


class PermissionFixFailed(InstallerError):
    """Re-owning the install tree failed."""

    def __init__(self, diagnostic: str):
        self.diagnostic = diagnostic
        super().__init__(f"Failed to fix ownership: {diagnostic}")


class RestoreFailed(InstallerError):
    """Rollback itself failed. There is no further recovery."""
    pass


class Cancelled(InstallerError):
    """The user interrupted the update."""
    pass


class InvalidTransition(InstallerError):
    """The state machine received an event not legal in its current state."""
    pass


# Failures that can only happen before the slot is mutated
PRE_MUTATION_ERRORS = (
    HomeDirectoryMissing,
    RemoteUnavailable,
    ManifestMalformed,
    MetadataCorrupt,
    BackupFailed,
)
