# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2025 The liveslot Authors

"""
liveslot Package Fetcher Tests

These run real child processes (the current Python interpreter) in place
of the package manager.
Run with: pytest tests/test_fetcher.py -v
"""

import asyncio
import io
import sys

import pytest

from liveslot.errors import Cancelled, InstallFailed, SpawnFailed
from liveslot.fetcher import PackageFetcher, sanitized_env


def _fetcher(script, **kwargs):
    out, err = io.StringIO(), io.StringIO()
    fetcher = PackageFetcher(
        [sys.executable, "-c", script, "{url}"],
        stdout=out,
        stderr=err,
        **kwargs,
    )
    return fetcher, out, err


def test_sanitized_env_strips_prefixes():
    env = {"PATH": "/bin", "npm_config_prefix": "/usr", "NPM_CONFIG_CACHE": "/tmp", "HOME": "/h"}
    assert sanitized_env(env, ["npm_"]) == {"PATH": "/bin", "HOME": "/h"}
    assert sanitized_env(env, []) == env


def test_build_args_substitutes_url():
    fetcher = PackageFetcher(["npm", "install", "{url}"])
    assert fetcher.build_args("http://x/a.tgz") == ["npm", "install", "http://x/a.tgz"]


@pytest.mark.asyncio
async def test_fetch_success_streams_output(tmp_path):
    script = "import sys; print('got', sys.argv[1]); print('warn', file=sys.stderr)"
    fetcher, out, err = _fetcher(script)

    handle = await fetcher.fetch("http://x/c9local-1.0.0.tgz", tmp_path, {})
    assert handle.pid > 0
    assert await fetcher.wait(handle) == 0

    assert handle.exit_code == 0
    assert "got http://x/c9local-1.0.0.tgz" in out.getvalue()
    assert "warn" in err.getvalue()


@pytest.mark.asyncio
async def test_fetch_runs_in_target_dir(tmp_path):
    fetcher, out, _ = _fetcher("import os; print(os.getcwd())")

    handle = await fetcher.fetch("u", tmp_path, {})
    await fetcher.wait(handle)

    assert out.getvalue().strip().endswith(tmp_path.name)


@pytest.mark.asyncio
async def test_fetch_nonzero_exit(tmp_path):
    fetcher, _, _ = _fetcher("import sys; sys.exit(3)")

    handle = await fetcher.fetch("u", tmp_path, {})
    with pytest.raises(InstallFailed) as exc_info:
        await fetcher.wait(handle)

    assert exc_info.value.exit_code == 3
    assert handle.exit_code == 3


@pytest.mark.asyncio
async def test_fetch_spawn_failure(tmp_path):
    fetcher = PackageFetcher([str(tmp_path / "no-such-installer"), "{url}"])
    with pytest.raises(SpawnFailed):
        await fetcher.fetch("u", tmp_path, {})


@pytest.mark.asyncio
async def test_fetch_env_is_sanitized(tmp_path):
    script = "import os; print(os.environ.get('npm_config_prefix', 'absent'), os.environ.get('KEEP'))"
    fetcher, out, _ = _fetcher(script)

    handle = await fetcher.fetch("u", tmp_path, {"npm_config_prefix": "/evil", "KEEP": "yes"})
    await fetcher.wait(handle)

    assert out.getvalue().split() == ["absent", "yes"]


@pytest.mark.asyncio
async def test_suppressed_output_is_dropped(tmp_path):
    fetcher, out, err = _fetcher("import sys; print('noise'); print('more', file=sys.stderr)")
    fetcher.suppress_output()

    handle = await fetcher.fetch("u", tmp_path, {})
    await fetcher.wait(handle)

    assert out.getvalue() == ""
    assert err.getvalue() == ""


@pytest.mark.asyncio
async def test_cancel_kills_subprocess(tmp_path):
    fetcher, _, _ = _fetcher("import time; time.sleep(30)")

    handle = await fetcher.fetch("u", tmp_path, {})
    fetcher.cancel(handle)
    fetcher.cancel(handle)
    with pytest.raises(Cancelled):
        await fetcher.wait(handle)

    assert handle.cancelled
    assert handle.exit_code != 0
    assert not handle.running


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
async def test_cancel_escalates_to_kill(tmp_path):
    script = (
        "import signal, sys, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(30)\n"
    )
    fetcher, out, _ = _fetcher(script, terminate_timeout=0.5)

    handle = await fetcher.fetch("u", tmp_path, {})
    for _ in range(200):
        if "ready" in out.getvalue():
            break
        await asyncio.sleep(0.05)
    fetcher.cancel(handle)
    with pytest.raises(Cancelled):
        await fetcher.wait(handle)

    assert handle.exit_code != 0


@pytest.mark.asyncio
async def test_overlong_output_line_is_forwarded(tmp_path):
    script = (
        "import sys\n"
        "sys.stdout.write('x' * 200000)\n"
        "for i in range(20000):\n"
        "    print(i)\n"
    )
    fetcher, out, _ = _fetcher(script)

    handle = await fetcher.fetch("u", tmp_path, {})
    assert await asyncio.wait_for(fetcher.wait(handle), timeout=30) == 0

    text = out.getvalue()
    assert text.startswith("x" * 200000)
    assert text.rstrip().endswith("19999")


@pytest.mark.asyncio
async def test_multibyte_output_split_across_reads(tmp_path):
    script = "import sys; sys.stdout.buffer.write(b'a' * 65535 + 'é done'.encode())"
    fetcher, out, _ = _fetcher(script)

    handle = await fetcher.fetch("u", tmp_path, {})
    await fetcher.wait(handle)

    assert out.getvalue().endswith("é done")
