# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
liveslot Install Orchestrator

Sequences one update run as an explicit state machine:

  IDLE -> CHECKING -> UP_TO_DATE
                   -> PREPARING -> FETCHING -> COMMITTING -> FIXING -> DONE
                   -> ABORTED                (failed before anything changed)
  PREPARING | FETCHING | COMMITTING | FIXING -> ROLLING_BACK -> ROLLED_BACK

transition() is a pure table lookup from (state, event) to (state, action);
the orchestrator performs the action and feeds the resulting event back in.
Every state in which the install slot may be mutating maps both FAILED and
CANCELLED to ROLLING_BACK, so no failure path can skip the restore.

Cancellation (SIGINT) is honoured from PREPARING onward: the handler sets
the run's token, silences installer output and kills the install process.
The driver then sees CANCELLED and rolls back.
"""

import asyncio
import logging
import os
import signal
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

from . import console
from .backup import BackupHandle, BackupManager
from .cancellation import CancellationToken
from .errors import (
    PRE_MUTATION_ERRORS,
    Cancelled,
    CommitFailed,
    InstallerError,
    InvalidTransition,
    RestoreFailed,
)
from .fetcher import InstallSubprocessHandle, PackageFetcher, sanitized_env
from .paths import BROKEN_TAG, STALE_TAG, InstallPaths
from .permissions import PermissionFixer
from .resolver import ReleaseManifest, UpgradeDecision, VersionResolver, build_download_url

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130


# =============================================================================
# STATE MACHINE
# =============================================================================

class InstallState(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    UP_TO_DATE = "up_to_date"
    AVAILABLE = "available"
    PREPARING = "preparing"
    FETCHING = "fetching"
    COMMITTING = "committing"
    FIXING = "fixing"
    DONE = "done"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"


class Event(str, Enum):
    START = "start"
    CURRENT = "current"            # nothing newer
    AVAILABLE = "available"        # newer exists, check-only run
    OUTDATED = "outdated"          # newer exists, install it
    PREPARED = "prepared"
    FETCHED = "fetched"
    COMMITTED = "committed"
    FIXED = "fixed"
    RESTORED = "restored"
    ABORT = "abort"                # failed before the slot was touched
    FAILED = "failed"
    CANCELLED = "cancelled"


class Action(str, Enum):
    CHECK = "check"
    REPORT_LATEST = "report_latest"
    REPORT_AVAILABLE = "report_available"
    BACKUP = "backup"
    FETCH = "fetch"
    COMMIT = "commit"
    FIX_PERMISSIONS = "fix_permissions"
    REPORT_SUCCESS = "report_success"
    ROLLBACK = "rollback"
    REPORT_FAILURE = "report_failure"
    REPORT_ABORT = "report_abort"


S, E, A = InstallState, Event, Action

TRANSITIONS: Dict[Tuple[InstallState, Event], Tuple[InstallState, Action]] = {
    (S.IDLE, E.START): (S.CHECKING, A.CHECK),
    (S.CHECKING, E.CURRENT): (S.UP_TO_DATE, A.REPORT_LATEST),
    (S.CHECKING, E.AVAILABLE): (S.AVAILABLE, A.REPORT_AVAILABLE),
    (S.CHECKING, E.OUTDATED): (S.PREPARING, A.BACKUP),
    (S.CHECKING, E.ABORT): (S.ABORTED, A.REPORT_ABORT),
    (S.PREPARING, E.PREPARED): (S.FETCHING, A.FETCH),
    (S.PREPARING, E.ABORT): (S.ABORTED, A.REPORT_ABORT),
    (S.FETCHING, E.FETCHED): (S.COMMITTING, A.COMMIT),
    (S.COMMITTING, E.COMMITTED): (S.FIXING, A.FIX_PERMISSIONS),
    (S.FIXING, E.FIXED): (S.DONE, A.REPORT_SUCCESS),
    (S.ROLLING_BACK, E.RESTORED): (S.ROLLED_BACK, A.REPORT_FAILURE),
    (S.ROLLING_BACK, E.FAILED): (S.ROLLED_BACK, A.REPORT_FAILURE),
}

MUTATING_STATES = (S.PREPARING, S.FETCHING, S.COMMITTING, S.FIXING)
for _state in MUTATING_STATES:
    TRANSITIONS[(_state, E.FAILED)] = (S.ROLLING_BACK, A.ROLLBACK)
    TRANSITIONS[(_state, E.CANCELLED)] = (S.ROLLING_BACK, A.ROLLBACK)

TERMINAL_STATES = frozenset({S.UP_TO_DATE, S.AVAILABLE, S.DONE, S.ROLLED_BACK, S.ABORTED})

# Actions that move the install forward; skipped once the run is cancelled
FORWARD_ACTIONS = frozenset({A.BACKUP, A.FETCH, A.COMMIT, A.FIX_PERMISSIONS})


def transition(state: InstallState, event: Event) -> Tuple[InstallState, Action]:
    """Next state and the action to perform on entering it."""
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(f"No transition from {state.value} on {event.value}") from None


# =============================================================================
# CONTEXT
# =============================================================================

@dataclass
class InstallContext:
    """Everything one run knows, threaded through every step."""
    token: CancellationToken
    pinned_version: Optional[str] = None
    check_only: bool = False
    state: InstallState = InstallState.IDLE
    history: List[InstallState] = field(default_factory=list)
    manifest: Optional[ReleaseManifest] = None
    decision: Optional[UpgradeDecision] = None
    download_url: Optional[str] = None
    backup: Optional[BackupHandle] = None
    subprocess: Optional[InstallSubprocessHandle] = None
    error: Optional[BaseException] = None
    restore_error: Optional[BaseException] = None
    exit_code: Optional[int] = None

    @property
    def target_version(self) -> Optional[str]:
        return self.decision.target_version if self.decision else None

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, Cancelled) or self.token.is_cancelled()


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class InstallOrchestrator:
    """Runs check -> backup -> fetch -> commit -> fix, rolling back on failure.

    Usage:
        orchestrator = InstallOrchestrator(paths, resolver, backups, fetcher, fixer)
        exit_code = await orchestrator.run()
    """

    def __init__(
        self,
        paths: InstallPaths,
        resolver: VersionResolver,
        backups: BackupManager,
        fetcher: PackageFetcher,
        fixer: PermissionFixer,
        download_base_url: str = "",
        package_name: str = "",
        env: Optional[Mapping[str, str]] = None,
        register_command: bool = True,
    ):
        self.paths = paths
        self.resolver = resolver
        self.backups = backups
        self.fetcher = fetcher
        self.fixer = fixer
        self.download_base_url = download_base_url
        self.package_name = package_name or paths.slot.name
        self.env = dict(os.environ if env is None else env)
        self.register_command = register_command

        self.context: Optional[InstallContext] = None
        self._signal_mode: Optional[str] = None
        self._previous_sigint = None

        self._actions = {
            A.CHECK: self._check,
            A.REPORT_LATEST: self._report_latest,
            A.REPORT_AVAILABLE: self._report_available,
            A.BACKUP: self._backup,
            A.FETCH: self._fetch,
            A.COMMIT: self._commit,
            A.FIX_PERMISSIONS: self._fix_permissions,
            A.REPORT_SUCCESS: self._report_success,
            A.ROLLBACK: self._rollback,
            A.REPORT_FAILURE: self._report_failure,
            A.REPORT_ABORT: self._report_abort,
        }

    # =========================================================================
    # DRIVER
    # =========================================================================

    async def run(self, pinned_version: Optional[str] = None, check_only: bool = False) -> int:
        """Drive one update run to a terminal state and return the exit code."""
        token = CancellationToken(run_id=f"install-{uuid.uuid4().hex[:8]}")
        ctx = self.context = InstallContext(
            token=token,
            pinned_version=pinned_version,
            check_only=check_only,
        )
        try:
            action: Optional[Action] = self._advance(E.START)
            while action is not None:
                event = await self._perform(action)
                action = self._advance(event) if event is not None else None
        finally:
            self._remove_signal_handler()

        logger.info("Install run %s finished in state %s", token.run_id, ctx.state.value)
        return EXIT_FAILURE if ctx.exit_code is None else ctx.exit_code

    def _advance(self, event: Event) -> Action:
        ctx = self.context
        new_state, action = transition(ctx.state, event)
        logger.debug("%s --%s--> %s", ctx.state.value, event.value, new_state.value)
        ctx.state = new_state
        ctx.history.append(new_state)
        if new_state is S.PREPARING:
            self._install_signal_handler()
        return action

    async def _perform(self, action: Action) -> Optional[Event]:
        ctx = self.context
        handler = self._actions[action]

        if action is A.CHECK:
            try:
                return await handler()
            except Exception as e:
                ctx.error = e
                return E.ABORT

        if action in FORWARD_ACTIONS:
            try:
                ctx.token.check_cancelled()
                event = await handler()
                ctx.token.check_cancelled()
                return event
            except Cancelled as e:
                ctx.error = e
                return E.CANCELLED
            except PRE_MUTATION_ERRORS as e:
                ctx.error = e
                # Only a failed backup leaves the slot untouched
                return E.ABORT if ctx.state is S.PREPARING and ctx.backup is None else E.FAILED
            except InstallerError as e:
                ctx.error = e
                return E.FAILED
            except Exception as e:
                logger.exception("Unexpected error during %s: %s", action.value, e)
                ctx.error = e
                return E.FAILED

        return await handler()

    # =========================================================================
    # CANCELLATION
    # =========================================================================

    def request_cancel(self) -> None:
        """SIGINT handler. Safe to call any number of times."""
        ctx = self.context
        if ctx is None or not ctx.token.cancel():
            return
        self.fetcher.suppress_output()
        if ctx.subprocess is not None and ctx.subprocess.running:
            self.fetcher.cancel(ctx.subprocess)

    def _install_signal_handler(self) -> None:
        if self._signal_mode is not None:
            return
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self.request_cancel)
            self._signal_mode = "loop"
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler
            def _handler(signum, frame):
                loop.call_soon_threadsafe(self.request_cancel)

            try:
                self._previous_sigint = signal.signal(signal.SIGINT, _handler)
                self._signal_mode = "signal"
            except ValueError as e:
                logger.warning("Cannot install SIGINT handler: %s", e)
                return
        logger.debug("SIGINT handler installed (%s)", self._signal_mode)

    def _remove_signal_handler(self) -> None:
        if self._signal_mode == "loop":
            asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
        elif self._signal_mode == "signal":
            signal.signal(signal.SIGINT, self._previous_sigint)
        self._signal_mode = None

    # =========================================================================
    # FORWARD STEPS
    # =========================================================================

    async def _check(self) -> Event:
        ctx = self.context
        if ctx.pinned_version:
            installed = self.resolver.read_installed_version()
            ctx.decision = self.resolver.pinned(ctx.pinned_version, installed)
            ctx.download_url = build_download_url(
                self.download_base_url, self.package_name, ctx.pinned_version
            )
        else:
            ctx.manifest = await self.resolver.fetch_manifest()
            installed = self.resolver.read_installed_version()
            ctx.decision = self.resolver.decide(ctx.manifest, installed)
            ctx.download_url = ctx.manifest.resolved_download_url(
                self.download_base_url, self.package_name
            )

        if not ctx.decision.should_install:
            return E.CURRENT
        if ctx.check_only:
            return E.AVAILABLE
        return E.OUTDATED

    async def _backup(self) -> Event:
        ctx = self.context
        decision = ctx.decision
        self.paths.ensure_base()
        console.print_banner(console.installing(decision.current_version, decision.target_version))
        ctx.backup = self.backups.begin_mutation(
            self.paths.slot, decision.current_version, decision.target_version
        )
        return E.PREPARED

    async def _fetch(self) -> Event:
        ctx = self.context
        # Left behind by an interrupted run; keep it rather than delete it
        self.backups.set_aside(self.paths.working, STALE_TAG, ctx.target_version)

        handle = await self.fetcher.fetch(ctx.download_url, self.paths.base_dir, self.env)
        ctx.subprocess = handle
        if ctx.token.is_cancelled():
            self.fetcher.cancel(handle)
        await self.fetcher.wait(handle)
        return E.FETCHED

    async def _commit(self) -> Event:
        ctx = self.context
        self.backups.commit(ctx.backup)
        if not self.paths.working.is_dir():
            raise CommitFailed(f"Installer did not produce {self.paths.working}")
        try:
            os.rename(self.paths.working, self.paths.slot)
        except OSError as e:
            raise CommitFailed(f"Could not move {self.paths.working} to {self.paths.slot}: {e}") from e
        self._remove_empty_working_parent()
        logger.info("Version %s is live at %s", ctx.target_version, self.paths.slot)
        return E.COMMITTED

    def _remove_empty_working_parent(self) -> None:
        parent = self.paths.working.parent
        try:
            if not any(parent.iterdir()):
                parent.rmdir()
        except OSError as e:
            logger.debug("Leaving %s in place: %s", parent, e)

    async def _fix_permissions(self) -> Event:
        await self.fixer.fix(self.paths.root)
        return E.FIXED

    # =========================================================================
    # ROLLBACK
    # =========================================================================

    async def _rollback(self) -> Event:
        ctx = self.context
        handle = ctx.subprocess
        if handle is not None and handle.running:
            self.fetcher.cancel(handle)
            try:
                await self.fetcher.wait(handle)
            except Cancelled:
                pass

        try:
            if ctx.backup is not None:
                self.backups.restore(ctx.backup)
            self.backups.set_aside(self.paths.working, BROKEN_TAG, ctx.target_version)
        except RestoreFailed as e:
            ctx.restore_error = e
            return E.FAILED
        except OSError as e:
            ctx.restore_error = RestoreFailed(str(e))
            return E.FAILED
        return E.RESTORED

    # =========================================================================
    # REPORTING
    # =========================================================================

    async def _report_latest(self) -> None:
        ctx = self.context
        console.print_banner(console.already_latest(ctx.decision.current_version))
        ctx.exit_code = EXIT_OK

    async def _report_available(self) -> None:
        ctx = self.context
        console.print_banner(
            console.update_available(ctx.decision.current_version, ctx.decision.target_version)
        )
        ctx.exit_code = EXIT_OK

    async def _report_success(self) -> None:
        ctx = self.context
        if self.register_command and self.paths.executable.exists():
            registered = await self._register_command()
        else:
            logger.info("Skipping command registration; %s does not exist", self.paths.executable)
            registered = True
        if registered:
            console.print_banner(console.installed(self.paths.executable))
        else:
            console.print_banner(console.add_to_path(self.paths.executable))
        ctx.exit_code = EXIT_OK

    async def _register_command(self) -> bool:
        exe = self.paths.executable
        try:
            proc = await asyncio.create_subprocess_exec(
                str(exe), "--install-command",
                env=sanitized_env(self.env, self.fetcher.strip_env_prefixes),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await proc.communicate()
        except OSError as e:
            logger.warning("Could not run %s --install-command: %s", exe, e)
            return False
        if proc.returncode != 0:
            logger.warning(
                "%s --install-command returned %d: %s",
                exe, proc.returncode, stderr.decode(errors="replace").strip(),
            )
            return False
        return True

    async def _report_abort(self) -> None:
        ctx = self.context
        logger.debug("Aborted before any changes", exc_info=ctx.error)
        console.print_banner(str(ctx.error), error=True)
        console.print_banner(console.install_error(ctx.target_version), error=True)
        ctx.exit_code = EXIT_FAILURE

    async def _report_failure(self) -> None:
        ctx = self.context
        backup = ctx.backup

        if ctx.cancelled:
            console.print_banner(console.cancelled(ctx.target_version), error=True)
        else:
            logger.debug("Install failed", exc_info=ctx.error)
            console.print_banner(str(ctx.error), error=True)
            console.print_banner(console.install_error(ctx.target_version), error=True)

        if ctx.restore_error is not None:
            console.print_banner(str(ctx.restore_error), error=True)
            console.print_banner(
                console.restore_failed(backup.backup_path if backup else None), error=True
            )
        elif backup is not None and backup.has_backup:
            console.print_banner(console.previous_intact(backup.previous_version, backup.slot_path))

        ctx.exit_code = EXIT_CANCELLED if ctx.cancelled else EXIT_FAILURE
