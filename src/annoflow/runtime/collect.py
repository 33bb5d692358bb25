# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Fan-in and barrier collection.

- `merge()` interleaves any number of upstream subscriptions (zero included)
  into one channel, preserving order within each source, and closes it once
  every source has closed. The set of sources is the compiled (post-pruning)
  set of producers, never a fixed count.
- `BarrierCollector` turns a whole channel into one token carrying the
  immutable, ordered tuple of everything it received. It emits exactly once,
  after the upstream closes; a partial set is never observable.

Both forward payloads they do not own. Given an AckRelay, they acknowledge
their inputs only when the forwarded token is released downstream.
"""

import asyncio
from collections.abc import Callable, Sequence

from ..api.errors import StallError
from ..api.streams import Token
from ..core.logging import get_logger
from .channel import AckRelay, Channel, Subscription

_log = get_logger("runtime.collect")


async def merge(name: str, sources: Sequence[Subscription], out: Channel, *, relay: AckRelay | None = None) -> int:
    """Forward every token of every source into `out`; close `out` after the last source closes."""

    forwarded = 0

    async def _forward(src: Subscription) -> None:
        nonlocal forwarded
        async for token in src:
            if relay is not None:
                relay.hold(token, [(src, token)])
                relay.seal(src, token)
            await out.put(token)
            forwarded += 1
            if relay is None:
                src.ack(token)

    tasks = [asyncio.create_task(_forward(s)) for s in sources]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    out.close()
    _log.debug("merge complete", event="merge.done", node=name, sources=len(sources), tokens=forwarded)
    return forwarded


class BarrierCollector:
    """
    Collect an entire channel into a single token.

    Args:
        name: Node name; also the key of the emitted token.
        stall_timeout: Seconds without a new upstream token after which the
                       upstream counts as stalled and StallError is raised.
                       The timer restarts on every token. None disables it.
        busy: Optional check; while it returns True (upstream work is still
              running) silence is not a stall and the timer restarts.
        relay: Defer acknowledging the collected tokens until the emitted
               token is released.
    """

    def __init__(
        self,
        name: str,
        *,
        stall_timeout: float | None = None,
        busy: Callable[[], bool] | None = None,
        relay: AckRelay | None = None,
    ) -> None:
        self.name = name
        self.stall_timeout = stall_timeout
        self._busy = busy
        self._relay = relay
        self._items: list[Token] = []

    @property
    def received(self) -> int:
        return len(self._items)

    async def _drain(self, source: Subscription) -> None:
        while True:
            try:
                token = await asyncio.wait_for(anext(source), timeout=self.stall_timeout)
            except StopAsyncIteration:
                return
            except TimeoutError as e:
                if self._busy is not None and self._busy():
                    continue
                raise StallError(self.name, float(self.stall_timeout or 0), self.received) from e
            self._items.append(token)

    async def collect(self, source: Subscription) -> Token:
        """Wait for the upstream to close, then build the collected token."""
        await self._drain(source)
        collected = Token(key=self.name, payload=tuple(self._items), origin=self.name)
        if self._relay is None:
            source.ack_all()
        else:
            self._relay.hold(collected, [(source, t) for t in self._items])
            for t in self._items:
                self._relay.seal(source, t)
        _log.info("barrier released", event="collect.done", node=self.name, tokens=len(self._items))
        return collected

    async def run(self, source: Subscription, out: Channel) -> Token:
        token = await self.collect(source)
        await out.put(token)
        out.close()
        return token


__all__ = ["BarrierCollector", "merge"]
