# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Resource-bounded dispatch.

Every task instance declares its cpu/memory weights; an instance may run only
while the sum of running weights stays within the fixed run budget. Waiting
instances are granted in FIFO order. The counters are the one piece of
mutable shared state in a run; they are updated only from the event loop, so
each acquire/release is atomic with respect to other coroutines.
"""

import asyncio
from collections import deque
from dataclasses import dataclass

from ..api.errors import ConfigurationError


@dataclass(frozen=True)
class Resources:
    cpus: int = 1
    memory_mb: int = 0

    def __post_init__(self) -> None:
        if self.cpus < 0 or self.memory_mb < 0:
            raise ValueError("resource requests must be >= 0")


class ResourceBudget:
    """Global cpu/memory budget shared by all task instances of a run."""

    def __init__(self, *, cpus: int, memory_mb: int) -> None:
        self.total = Resources(cpus=cpus, memory_mb=memory_mb)
        self._cpus = 0
        self._memory = 0
        self._waiters: deque[tuple[Resources, asyncio.Future[None]]] = deque()
        self.peak_cpus = 0
        self.running = 0
        self.peak_running = 0

    # ---- compile-time check

    def check(self, req: Resources, *, node: str) -> None:
        if req.cpus > self.total.cpus:
            raise ConfigurationError(
                f"{node} requests {req.cpus} cpu(s), budget is {self.total.cpus}", key="engine.cpus"
            )
        if req.memory_mb > self.total.memory_mb:
            raise ConfigurationError(
                f"{node} requests {req.memory_mb} MB, budget is {self.total.memory_mb} MB", key="engine.memory_mb"
            )

    # ---- runtime

    def _fits(self, req: Resources) -> bool:
        return self._cpus + req.cpus <= self.total.cpus and self._memory + req.memory_mb <= self.total.memory_mb

    def _take(self, req: Resources) -> None:
        self._cpus += req.cpus
        self._memory += req.memory_mb
        self.running += 1
        self.peak_cpus = max(self.peak_cpus, self._cpus)
        self.peak_running = max(self.peak_running, self.running)

    async def acquire(self, req: Resources) -> None:
        """Suspend until `req` fits in the budget, then reserve it."""
        if not self._waiters and self._fits(req):
            self._take(req)
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        entry = (req, fut)
        self._waiters.append(entry)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # granted just before the cancellation landed
                self.release(req)
            else:
                if entry in self._waiters:
                    self._waiters.remove(entry)
                self._wake()
            raise

    def release(self, req: Resources) -> None:
        self._cpus -= req.cpus
        self._memory -= req.memory_mb
        self.running -= 1
        self._wake()

    def _wake(self) -> None:
        while self._waiters:
            req, fut = self._waiters[0]
            if fut.done():
                self._waiters.popleft()
                continue
            if not self._fits(req):
                return
            self._waiters.popleft()
            self._take(req)
            fut.set_result(None)


__all__ = ["ResourceBudget", "Resources"]
