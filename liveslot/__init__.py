# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
liveslot - Self-Updating Installer

Checks a remote release manifest, installs newer releases into a single
live install slot, and restores the previous install if anything goes
wrong along the way.
"""

__version__ = "1.0.0"
__author__ = "The liveslot Authors"
