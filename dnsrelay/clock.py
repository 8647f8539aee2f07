"""Providers of the current time."""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    """Anything that can tell the current time in seconds since the epoch."""

    def now(self) -> float:
        """Return the current time as seconds since the Unix epoch."""


class RealClock:
    """Clock backed by the system wall clock."""

    def now(self) -> float:
        """Return the current time as seconds since the Unix epoch."""
        return time.time()