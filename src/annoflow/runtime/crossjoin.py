# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Cross join: every token of A paired with every token of B.

Both sides are consumed concurrently. When a token arrives on one side it is
paired at once with every token already seen on the other side, so pairs
stream out before either side completes and each (a, b) is produced exactly
once: whichever of the two arrives second emits the pair. Emission order
depends on arrival interleaving; the pair set does not.

With an AckRelay an input token is acknowledged only after the other side has
closed (no new pair can include it) and every pair carrying it has been
released downstream; without one, both inputs are acknowledged at the end.
"""

import asyncio
from typing import Any

from ..api.streams import Token, join_keys
from ..core.logging import get_logger
from .channel import AckRelay, Channel, Subscription

_LEFT = 0
_RIGHT = 1
_DONE = object()

_log = get_logger("runtime.crossjoin")


def pair(a: Token, b: Token, *, origin: str | None = None) -> Token:
    return Token(key=join_keys(a.key, b.key), payload=(a.payload, b.payload), origin=origin)


class CrossJoiner:
    """Streaming full cross product of two subscriptions into one channel."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.seen: tuple[list[Token], list[Token]] = ([], [])

    async def _pump(self, side: int, source: Subscription, events: asyncio.Queue[Any]) -> None:
        async for token in source:
            await events.put((side, token))
        await events.put((side, _DONE))

    async def run(
        self, left: Subscription, right: Subscription, out: Channel, *, relay: AckRelay | None = None
    ) -> int:
        """Emit |left| * |right| pairs into `out` and close it. Returns pairs emitted."""
        subs = (left, right)
        events: asyncio.Queue[Any] = asyncio.Queue()
        pumps = [
            asyncio.create_task(self._pump(_LEFT, left, events)),
            asyncio.create_task(self._pump(_RIGHT, right, events)),
        ]
        emitted = 0
        open_sides = 2
        closed = [False, False]
        try:
            while open_sides:
                side, token = await events.get()
                if token is _DONE:
                    open_sides -= 1
                    closed[side] = True
                    if relay is not None:
                        for other in self.seen[1 - side]:
                            relay.seal(subs[1 - side], other)
                    continue
                self.seen[side].append(token)
                for other in self.seen[1 - side]:
                    a, b = (token, other) if side == _LEFT else (other, token)
                    joined = pair(a, b, origin=self.name)
                    if relay is not None:
                        relay.hold(joined, [(left, a), (right, b)])
                    await out.put(joined)
                    emitted += 1
                if relay is not None and closed[1 - side]:
                    relay.seal(subs[side], token)
        finally:
            for t in pumps:
                if not t.done():
                    t.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
        if relay is None:
            left.ack_all()
            right.ack_all()
        out.close()
        _log.info(
            "cross join complete",
            event="crossjoin.done",
            node=self.name,
            left=len(self.seen[_LEFT]),
            right=len(self.seen[_RIGHT]),
            pairs=emitted,
        )
        return emitted


__all__ = ["CrossJoiner", "pair"]
