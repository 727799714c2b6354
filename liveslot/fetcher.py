# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
liveslot Package Fetcher

Supervises the external install subprocess (by default `npm install <url>`
run inside the install base directory). Output is streamed through to our
own stdout/stderr until a cancellation starts, after which it is dropped
so it does not interleave with rollback messages.
"""

import asyncio
import codecs
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Iterable, List, Mapping, Optional, Sequence

from .errors import Cancelled, InstallFailed, SpawnFailed

logger = logging.getLogger(__name__)

DEFAULT_TERMINATE_TIMEOUT = 10
PUMP_CHUNK_SIZE = 65536


@dataclass
class InstallSubprocessHandle:
    """One in-flight run of the install command."""
    pid: int
    cancelled: bool = False
    exit_code: Optional[int] = None
    _process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)
    _pumps: List[asyncio.Task] = field(default_factory=list, repr=False)
    _kill_timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    @property
    def running(self) -> bool:
        return self.exit_code is None


def sanitized_env(env: Mapping[str, str], strip_prefixes: Iterable[str]) -> dict:
    """Copy of env without variables belonging to the parent tool."""
    prefixes = tuple(p.lower() for p in strip_prefixes)
    return {
        key: value
        for key, value in env.items()
        if not (prefixes and key.lower().startswith(prefixes))
    }


class PackageFetcher:
    """Runs the install command and reports success, failure or cancellation.

    Usage:
        fetcher = PackageFetcher(["npm", "install", "{url}"])
        handle = await fetcher.fetch(url, base_dir, os.environ)
        await fetcher.wait(handle)   # raises on failure
    """

    def __init__(
        self,
        command: Sequence[str],
        strip_env_prefixes: Iterable[str] = ("npm_",),
        terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT,
        stdout: Optional[IO[str]] = None,
        stderr: Optional[IO[str]] = None,
    ):
        self.command = list(command)
        self.strip_env_prefixes = list(strip_env_prefixes)
        self.terminate_timeout = terminate_timeout
        self._stdout = stdout
        self._stderr = stderr
        self._suppressed = False

    def suppress_output(self) -> None:
        """Stop forwarding child output from now on."""
        self._suppressed = True

    def build_args(self, download_url: str) -> List[str]:
        return [part.replace("{url}", download_url) for part in self.command]

    async def fetch(
        self,
        download_url: str,
        target_dir: Path,
        env: Mapping[str, str],
    ) -> InstallSubprocessHandle:
        """Start the install command; does not wait for it to finish.

        Raises:
            SpawnFailed: The command could not be started.
        """
        args = self.build_args(download_url)
        logger.info("Running %s in %s", " ".join(args), target_dir)
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(target_dir),
                env=sanitized_env(env, self.strip_env_prefixes),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SpawnFailed(f"Could not start `{args[0]}`: {e}") from e

        handle = InstallSubprocessHandle(pid=proc.pid, _process=proc)
        handle._pumps = [
            asyncio.create_task(self._pump(proc.stdout, self._stdout or sys.stdout)),
            asyncio.create_task(self._pump(proc.stderr, self._stderr or sys.stderr)),
        ]
        return handle

    async def _pump(self, stream: Optional[asyncio.StreamReader], sink: IO[str]) -> None:
        if stream is None:
            return
        # Output lines may exceed the StreamReader limit, so read in chunks
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(PUMP_CHUNK_SIZE)
            if not chunk:
                break
            if self._suppressed:
                continue
            sink.write(decoder.decode(chunk))
            sink.flush()
        if not self._suppressed:
            sink.write(decoder.decode(b"", final=True))

    async def wait(self, handle: InstallSubprocessHandle) -> int:
        """Wait for the install command to exit.

        Returns:
            0 on success.

        Raises:
            Cancelled: The handle was cancelled.
            InstallFailed: The command exited non-zero.
        """
        exit_code = await handle._process.wait()
        if handle._kill_timer is not None:
            handle._kill_timer.cancel()
        if handle.cancelled:
            # Grandchildren may still hold the pipes open
            for pump in handle._pumps:
                pump.cancel()
        await asyncio.gather(*handle._pumps, return_exceptions=True)
        handle.exit_code = exit_code

        if handle.cancelled:
            raise Cancelled(f"Install process {handle.pid} was killed")
        if exit_code != 0:
            raise InstallFailed(exit_code)
        logger.info("Install process %d completed", handle.pid)
        return exit_code

    def cancel(self, handle: InstallSubprocessHandle) -> None:
        """Send SIGTERM to the install command, then SIGKILL if it lingers.

        Filesystem cleanup is not done here.
        """
        if handle.cancelled:
            return
        handle.cancelled = True
        proc = handle._process
        if proc is None or proc.returncode is not None:
            return
        logger.info("Terminating install process %d", handle.pid)
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        handle._kill_timer = asyncio.get_running_loop().call_later(
            self.terminate_timeout, self._force_kill, handle
        )

    @staticmethod
    def _force_kill(handle: InstallSubprocessHandle) -> None:
        proc = handle._process
        if proc is None or proc.returncode is not None:
            return
        logger.warning("Install process %d ignored SIGTERM; killing", handle.pid)
        try:
            proc.kill()
        except ProcessLookupError:
            pass
