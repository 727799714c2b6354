# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
liveslot Version Resolver

Fetches the remote release manifest, reads the version recorded in the
live install slot, and decides whether an upgrade is warranted.

Only a strictly greater release version triggers an install; a missing
install always does.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Tuple

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from . import __version__
from .errors import ManifestMalformed, MetadataCorrupt, RemoteUnavailable

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)(?:[-+].*)?$")


# =============================================================================
# VERSION COMPARISON
# =============================================================================

def parse_version(version_str: str) -> Tuple[int, int, int]:
    """Parse a semantic version string into a (major, minor, patch) tuple.

    A leading 'v' and any pre-release or build suffix are ignored.

    Raises:
        ValueError: If the string is not MAJOR.MINOR.PATCH.
    """
    match = _VERSION_RE.match(version_str.strip())
    if not match:
        raise ValueError(f"Not a semantic version: {version_str!r}")
    return (int(match.group(1)), int(match.group(2)), int(match.group(3)))


def compare_versions(a: str, b: str) -> int:
    """Return 1 if a > b, -1 if a < b, 0 if equal."""
    left, right = parse_version(a), parse_version(b)
    if left > right:
        return 1
    if left < right:
        return -1
    return 0


def is_newer_version(latest: str, current: str) -> bool:
    """Check if latest version is newer than current version."""
    return compare_versions(latest, current) == 1


def build_download_url(base_url: str, package_name: str, version: str) -> str:
    """Archive location for a release."""
    return f"{base_url.rstrip('/')}/{package_name}-{version}.tgz"


# =============================================================================
# DATA MODELS
# =============================================================================

class ReleaseManifest(BaseModel):
    """The latest release as described by the remote manifest."""
    version: str = Field(..., description="Semantic version of the latest release")
    download_url: Optional[str] = Field(default=None, alias="downloadUrl", description="Archive URL")

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        parse_version(value)
        return value.strip()

    def resolved_download_url(self, base_url: str, package_name: str) -> str:
        return self.download_url or build_download_url(base_url, package_name, self.version)


@dataclass(frozen=True)
class UpgradeDecision:
    """Whether to install, and what is being replaced."""
    should_install: bool
    target_version: str
    current_version: Optional[str] = None


# =============================================================================
# RESOLVER
# =============================================================================

class VersionResolver:
    """Answers "is there anything newer than what is installed?"

    Usage:
        resolver = VersionResolver(manifest_url, metadata_path)
        manifest = await resolver.fetch_manifest()
        decision = resolver.decide(manifest, resolver.read_installed_version())
    """

    def __init__(self, manifest_url: str, metadata_path: Path, timeout: int = 30):
        self.manifest_url = manifest_url
        self.metadata_path = metadata_path
        self.timeout = timeout

    def _get_headers(self) -> dict:
        return {
            "Accept": "application/json",
            "User-Agent": f"liveslot/{__version__}",
        }

    async def fetch_manifest(self) -> ReleaseManifest:
        """Fetch and validate the remote release manifest.

        Raises:
            RemoteUnavailable: Transport error or non-200 status.
            ManifestMalformed: Body is not JSON or fails validation.
        """
        logger.debug("Fetching release manifest from %s", self.manifest_url)
        try:
            async with aiohttp.ClientSession() as session:
                timeout = aiohttp.ClientTimeout(total=self.timeout)
                async with session.get(self.manifest_url, headers=self._get_headers(), timeout=timeout) as resp:
                    if resp.status != 200:
                        raise RemoteUnavailable(
                            f"Did not get status 200 when checking for latest version "
                            f"(got {resp.status})! Try again in a few minutes."
                        )
                    body = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Manifest request failed: %s", e)
            raise RemoteUnavailable(f"Failed to check for updates: {e}") from e

        return self.parse_manifest(body)

    @staticmethod
    def parse_manifest(body: str) -> ReleaseManifest:
        try:
            data: Any = json.loads(body)
        except ValueError as e:
            raise ManifestMalformed(f"Error '{e}' while parsing JSON: {body[:200]}") from e
        try:
            return ReleaseManifest.model_validate(data)
        except ValidationError as e:
            raise ManifestMalformed(f"Unexpected manifest structure: {e}") from e

    def read_installed_version(self) -> Optional[str]:
        """Version recorded in the live slot, or None if nothing is installed.

        Raises:
            MetadataCorrupt: The metadata file exists but cannot be parsed.
        """
        if not self.metadata_path.is_file():
            return None
        try:
            with open(self.metadata_path) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise MetadataCorrupt(f"Cannot read {self.metadata_path}: {e}") from e

        version = data.get("version") if isinstance(data, dict) else None
        if not isinstance(version, str):
            raise MetadataCorrupt(f"No version string in {self.metadata_path}")
        try:
            parse_version(version)
        except ValueError as e:
            raise MetadataCorrupt(str(e)) from e
        return version

    @staticmethod
    def decide(manifest: ReleaseManifest, installed: Optional[str]) -> UpgradeDecision:
        if installed is None:
            return UpgradeDecision(True, manifest.version, None)
        return UpgradeDecision(
            should_install=is_newer_version(manifest.version, installed),
            target_version=manifest.version,
            current_version=installed,
        )

    @staticmethod
    def pinned(version: str, installed: Optional[str]) -> UpgradeDecision:
        """Decision for an explicitly requested version (downgrades allowed)."""
        parse_version(version)
        if installed is None:
            return UpgradeDecision(True, version, None)
        return UpgradeDecision(
            should_install=compare_versions(version, installed) != 0,
            target_version=version,
            current_version=installed,
        )
