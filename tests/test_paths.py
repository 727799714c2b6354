# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2025 The liveslot Authors

"""
liveslot Install Path Tests

Run with: pytest tests/test_paths.py -v
"""

import pytest

from liveslot.config import InstallConfig
from liveslot.errors import HomeDirectoryMissing
from liveslot.paths import ElevationContext, InstallPaths, resolve_home


def test_resolve_home_plain(tmp_path):
    assert resolve_home({"HOME": str(tmp_path)}, ElevationContext()) == tmp_path


def test_resolve_home_unset():
    with pytest.raises(HomeDirectoryMissing):
        resolve_home({}, ElevationContext())


def test_resolve_home_missing_dir(tmp_path):
    with pytest.raises(HomeDirectoryMissing):
        resolve_home({"HOME": str(tmp_path / "gone")}, ElevationContext())


def test_resolve_home_corrects_sudo_h(tmp_path):
    (tmp_path / "Users" / "alice").mkdir(parents=True)
    elevation = ElevationContext(elevated=True, user="alice")

    home = resolve_home(
        {"HOME": "/root"},
        elevation,
        search_roots=(str(tmp_path / "home"), str(tmp_path / "Users")),
    )

    assert home == tmp_path / "Users" / "alice"


def test_resolve_home_override(tmp_path):
    assert resolve_home({}, ElevationContext(), override=tmp_path) == tmp_path


def test_install_paths_layout(tmp_path):
    paths = InstallPaths.from_config(tmp_path, InstallConfig())

    assert paths.root == tmp_path / ".c9"
    assert paths.base_dir == tmp_path / ".c9" / "installs"
    assert paths.slot == tmp_path / ".c9" / "installs" / "c9local"
    assert paths.working == tmp_path / ".c9" / "installs" / "node_modules" / "c9local"
    assert paths.metadata == paths.slot / "package.json"
    assert paths.executable == paths.slot / "bin" / "c9"


def test_ensure_base_creates_working_parent(tmp_path):
    paths = InstallPaths.from_config(tmp_path, InstallConfig(package_name="demo"))
    paths.ensure_base()

    assert paths.working.parent.is_dir()
    assert not paths.working.exists()
