# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2025 The liveslot Authors

"""
Shared fixtures for liveslot tests.

The external installer is simulated by a real child Python process that
writes a package.json for the version named in the download URL into
node_modules/<package>, the way `npm install <tarball>` would.
"""

import json
import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from liveslot.backup import BackupManager
from liveslot.config import InstallConfig
from liveslot.fetcher import PackageFetcher
from liveslot.orchestrator import InstallOrchestrator
from liveslot.paths import ElevationContext, InstallPaths
from liveslot.permissions import PermissionFixer
from liveslot.resolver import ReleaseManifest, VersionResolver

DOWNLOAD_BASE = "http://downloads.example.test/prod"

FAKE_INSTALLER = r"""
import json, os, re, sys, time
url = sys.argv[1]
version = re.search(r"-(\d+\.\d+\.\d+)\.tgz$", url).group(1)
print("fetching " + url, flush=True)
if not os.environ.get("FAKE_INSTALL_SKIP_WRITE"):
    target = os.path.join("node_modules", "c9local")
    os.makedirs(target, exist_ok=True)
    with open(os.path.join(target, "package.json"), "w") as f:
        json.dump({"name": "c9local", "version": version}, f)
print("unpacked", flush=True)
if os.environ.get("FAKE_INSTALL_SLEEP"):
    time.sleep(float(os.environ["FAKE_INSTALL_SLEEP"]))
sys.exit(int(os.environ.get("FAKE_INSTALL_EXIT", "0")))
"""

FAKE_INSTALL_COMMAND = [sys.executable, "-c", FAKE_INSTALLER, "{url}"]


def write_install(slot: Path, version: str) -> None:
    """Create a live install recording version."""
    slot.mkdir(parents=True, exist_ok=True)
    (slot / "package.json").write_text(json.dumps({"name": "c9local", "version": version}))
    (slot / "README").write_text(f"release {version}\n")


def read_version(slot: Path) -> str:
    return json.loads((slot / "package.json").read_text())["version"]


@pytest.fixture
def paths(tmp_path):
    home = tmp_path / "home"
    home.mkdir()
    return InstallPaths.from_config(home, InstallConfig())


@pytest.fixture
def child_env():
    """Environment for the fake installer, free of sudo markers."""
    return {
        key: value for key, value in os.environ.items()
        if not key.startswith("SUDO_") and not key.startswith("FAKE_INSTALL")
    }


@pytest.fixture
def make_orchestrator(paths, child_env):
    """Build an orchestrator whose manifest reports manifest_version."""

    def _make(
        manifest_version="1.3.0",
        env_overrides=None,
        command=None,
        elevation=None,
        chown="chown",
    ):
        env = dict(child_env)
        env.update(env_overrides or {})
        resolver = VersionResolver("http://manifest.example.test/latest.json", paths.metadata)
        resolver.fetch_manifest = AsyncMock(return_value=ReleaseManifest(version=manifest_version))
        return InstallOrchestrator(
            paths=paths,
            resolver=resolver,
            backups=BackupManager(),
            fetcher=PackageFetcher(command or FAKE_INSTALL_COMMAND, terminate_timeout=2),
            fixer=PermissionFixer(elevation or ElevationContext(), chown=chown),
            download_base_url=DOWNLOAD_BASE,
            package_name="c9local",
            env=env,
        )

    return _make
