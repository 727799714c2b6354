# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
liveslot Cancellation

A single cancellation flag for an install run. It is set from the SIGINT
handler and checked by the orchestrator between steps; setting it more
than once has no further effect.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from .errors import Cancelled

logger = logging.getLogger(__name__)


@dataclass
class CancellationToken:
    """
    Token for tracking and signaling cancellation of an install run.

    Thread-safe: the fallback signal path may set it from outside the loop.
    """
    run_id: str
    created_at: float = field(default_factory=time.time)
    cancelled_at: Optional[float] = field(default=None, init=False)
    _cancelled: bool = field(default=False, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    def cancel(self) -> bool:
        """Mark this run as cancelled. Returns True only on the first call."""
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            self.cancelled_at = time.time()
        logger.info("Cancellation requested for: %s", self.run_id)
        return True

    def is_cancelled(self) -> bool:
        """Check if cancellation was requested (thread-safe)."""
        with self._lock:
            return self._cancelled

    def check_cancelled(self) -> None:
        """
        Raise Cancelled if cancelled.

        Called before each forward step so a cancelled run never advances.
        """
        if self.is_cancelled():
            raise Cancelled(f"Install {self.run_id} was cancelled")
