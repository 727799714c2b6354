# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
liveslot Console Output

User-facing messages are printed as framed banners so they stand out
from the install subprocess output:

    ###
    #  Installing version 1.3.0.
    ###
"""

import sys
from pathlib import Path
from typing import IO, Iterable, Optional, Union

Message = Union[str, Iterable[str]]


def format_banner(message: Message) -> str:
    lines = message.split("\n") if isinstance(message, str) else list(message)
    return "###\n#  " + "\n#  ".join(lines) + "\n###\n"


def print_banner(message: Message, error: bool = False, stream: Optional[IO[str]] = None) -> None:
    out = stream or (sys.stderr if error else sys.stdout)
    out.write(format_banner(message))
    out.flush()


def already_latest(version: str) -> str:
    return f"You are running the latest version ({version})!"


def update_available(current: Optional[str], target: str) -> str:
    if current is None:
        return f"Version {target} is available (nothing installed yet)."
    return f"Version {target} is available (installed: {current})."


def installing(current: Optional[str], target: str) -> str:
    if current is None:
        return f"Installing version {target}."
    return f"Updating from version {current} to {target}."


def installed(executable: Path) -> list:
    return [
        "Installation complete!",
        "",
        "You can start using the command line tool. To see the options, type:",
        "",
        f"    {executable} -h",
    ]


def add_to_path(executable: Path) -> list:
    return [
        "Installation complete!",
        "",
        f"Please add `{executable.parent}` to your PATH.",
        "",
        "Alternatively you can run the following:",
        "",
        f"    sudo {executable} --install-command",
    ]


def install_error(target: Optional[str]) -> str:
    if target:
        return f"There was an ERROR installing version {target}. See above."
    return "There was an ERROR checking your install. See above."


def cancelled(target: Optional[str]) -> str:
    if target:
        return f"Installation of version {target} was cancelled."
    return "Installation was cancelled."


def previous_intact(version: Optional[str], slot: Path) -> str:
    return f"Your previous install (version {version or 'unknown'}) is intact at {slot}."


def restore_failed(backup: Optional[Path]) -> list:
    lines = ["Restoring your previous install FAILED."]
    if backup is not None:
        lines.append(f"It is still available at {backup}.")
    return lines
