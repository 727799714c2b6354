# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
liveslot Command Line Entry Point

    liveslot                   check for a newer release and install it
    liveslot --check           only report whether an update exists
    liveslot --version 1.2.3   install a specific release
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Mapping, Optional

from . import __version__, console
from .backup import BackupManager
from .config import Config, load_config, setup_logging
from .errors import HomeDirectoryMissing
from .fetcher import PackageFetcher
from .orchestrator import EXIT_CANCELLED, EXIT_FAILURE, InstallOrchestrator
from .paths import ElevationContext, InstallPaths, resolve_home
from .permissions import PermissionFixer
from .resolver import VersionResolver, parse_version

logger = logging.getLogger(__name__)


def _version_arg(value: str) -> str:
    try:
        parse_version(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="liveslot",
        description="Check for and install the latest release into the local install slot.",
    )
    parser.add_argument("--config", help="Path to YAML config (default: $LIVESLOT_CONFIG or ./liveslot.yaml)")
    parser.add_argument("--version", dest="pinned_version", type=_version_arg, metavar="VERSION",
                        help="Install this release instead of the latest")
    parser.add_argument("--check", action="store_true", help="Only report whether an update is available")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("-V", "--self-version", action="version", version=f"liveslot {__version__}")
    return parser


def build_orchestrator(
    config: Config,
    env: Mapping[str, str],
) -> InstallOrchestrator:
    """Wire up the collaborators for one run.

    Raises:
        HomeDirectoryMissing: HOME cannot be resolved.
    """
    elevation = ElevationContext.from_env(env)
    home = resolve_home(env, elevation, override=config.install.home)
    paths = InstallPaths.from_config(home, config.install)
    logger.debug("Install slot: %s", paths.slot)

    return InstallOrchestrator(
        paths=paths,
        resolver=VersionResolver(
            config.remote.manifest_url,
            paths.metadata,
            timeout=config.remote.timeout_seconds,
        ),
        backups=BackupManager(),
        fetcher=PackageFetcher(
            config.fetcher.command,
            strip_env_prefixes=config.fetcher.strip_env_prefixes,
            terminate_timeout=config.fetcher.terminate_timeout_seconds,
        ),
        fixer=PermissionFixer(elevation),
        download_base_url=config.remote.download_base_url,
        package_name=config.install.package_name,
        env=env,
    )


def main(argv: Optional[List[str]] = None, env: Optional[Mapping[str, str]] = None) -> int:
    args = build_parser().parse_args(argv)
    env = dict(os.environ if env is None else env)

    config = load_config(args.config)
    setup_logging(config.logging, verbose=args.verbose)

    try:
        orchestrator = build_orchestrator(config, env)
    except HomeDirectoryMissing as e:
        console.print_banner(str(e), error=True)
        return EXIT_FAILURE

    try:
        return asyncio.run(orchestrator.run(pinned_version=args.pinned_version, check_only=args.check))
    except KeyboardInterrupt:
        # Interrupted before anything was touched
        console.print_banner(console.cancelled(None), error=True)
        return EXIT_CANCELLED


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
