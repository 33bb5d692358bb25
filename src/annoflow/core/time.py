from __future__ import annotations

"""
annoflow.core.time
==================

Clock abstraction injected into the engine so durations can be controlled in tests.
"""

import time
from typing import Protocol

from .types import MonotonicMs


class Clock(Protocol):
    """Minimal clock protocol used across the project."""

    def mono_ms(self) -> MonotonicMs: ...


class SystemClock:
    """Default clock backed by the process monotonic timer."""

    def mono_ms(self) -> MonotonicMs:
        """Process-local monotonic milliseconds (not related to wall clock)."""
        return time.monotonic_ns() // 1_000_000
