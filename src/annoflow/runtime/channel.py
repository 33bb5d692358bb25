# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Channels: ordered, single-producer conduits of tokens.

- `Channel` is append-only and FIFO. Its consumer count is fixed when the graph
  is compiled: one consumer makes it unicast, more make it a broadcast where
  every subscription receives every token in producer order. Each
  subscription owns an unbounded queue, so a slow branch never blocks the
  producer or its sibling branches.
- A token's payload is released (optional callback) once every subscription
  has acknowledged it.
- Nodes that forward upstream payloads (merge, collect, cross, expand) route
  their upstream acks through an `AckRelay`, so an upstream token is only
  acknowledged once everything built from it has been released downstream.
- `ValueChannel` holds exactly one token, assigned once and re-readable by any
  number of consumers (run-scoped facts such as a resolved basename or a
  built index).
"""

import asyncio
from collections.abc import Callable, Iterable
from typing import Any, cast

from ..api.streams import Token
from ..core.logging import get_logger

ReleaseFn = Callable[[Token], Any]

_EOS = object()  # end-of-stream marker placed on each subscription queue

_log = get_logger("runtime.channel")


class ChannelError(RuntimeError):
    """Misuse of a channel (programming error, not a run failure)."""


class Channel:
    """Queue channel with a fixed set of consumers."""

    def __init__(self, name: str, *, consumers: int = 1, on_release: ReleaseFn | None = None) -> None:
        if consumers < 0:
            raise ValueError("consumers must be >= 0")
        self.name = name
        self.consumers = consumers
        self._on_release = on_release
        self._subs: list[Subscription] = []
        self._pending: dict[int, int] = {}  # seq -> outstanding acks
        self._tokens: dict[int, Token] = {}  # seq -> token kept until released
        self._seq = 0
        self._closed = False
        self._closed_event = asyncio.Event()

    # ---- introspection

    @property
    def mode(self) -> str:
        return "broadcast" if self.consumers > 1 else "unicast"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def emitted(self) -> int:
        return self._seq

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    # ---- consumer side

    def subscribe(self, consumer: str) -> Subscription:
        """Attach one of the declared consumers. Must happen before the first token."""
        if self._seq > 0:
            raise ChannelError(f"channel '{self.name}': cannot subscribe '{consumer}' after tokens were emitted")
        if len(self._subs) >= self.consumers:
            raise ChannelError(f"channel '{self.name}' declares {self.consumers} consumer(s); '{consumer}' is one too many")
        sub = Subscription(self, consumer)
        self._subs.append(sub)
        return sub

    # ---- producer side

    async def put(self, token: Token) -> None:
        if self._closed:
            raise ChannelError(f"channel '{self.name}' is closed")
        if len(self._subs) != self.consumers:
            raise ChannelError(
                f"channel '{self.name}': {len(self._subs)} of {self.consumers} consumer(s) subscribed before first put"
            )
        self._seq += 1
        seq = self._seq
        if not self._subs:
            self._release(token)
            return
        self._pending[seq] = len(self._subs)
        self._tokens[seq] = token
        for sub in self._subs:
            sub._queue.put_nowait((seq, token))
        await asyncio.sleep(0)  # let consumers observe tokens in a timely manner

    def close(self) -> None:
        """Signal that no more tokens will be emitted. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for sub in self._subs:
            sub._queue.put_nowait(_EOS)
        self._closed_event.set()
        _log.debug("channel closed", event="channel.closed", channel=self.name, emitted=self._seq)

    # ---- release accounting

    def _ack(self, seq: int) -> None:
        left = self._pending.get(seq)
        if left is None:
            return
        if left > 1:
            self._pending[seq] = left - 1
            return
        del self._pending[seq]
        self._release(self._tokens.pop(seq))

    def _release(self, token: Token) -> None:
        if self._on_release is not None:
            self._on_release(token)


class Subscription:
    """One consumer's view of a channel: an async iterator ending at close."""

    def __init__(self, channel: Channel, consumer: str) -> None:
        self.channel = channel
        self.consumer = consumer
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._unacked: dict[int, list[int]] = {}  # id(token) -> seqs not yet acked
        self._done = False

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Token:
        if self._done:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _EOS:
            self._done = True
            raise StopAsyncIteration
        seq, token = item
        self._unacked.setdefault(id(token), []).append(seq)
        return token

    def ack(self, token: Token) -> None:
        """Mark `token` as fully consumed by this subscriber."""
        seqs = self._unacked.get(id(token))
        if not seqs:
            return
        seq = seqs.pop(0)
        if not seqs:
            del self._unacked[id(token)]
        self.channel._ack(seq)

    def ack_all(self) -> None:
        for seqs in self._unacked.values():
            for seq in seqs:
                self.channel._ack(seq)
        self._unacked.clear()


class AckRelay:
    """
    Deferred acknowledgement for nodes that forward what they consume.

    `hold(forwarded, sources)` records that `forwarded` (a token about to be put
    on the node's output) carries the payloads of `sources`, given as
    (subscription, token) pairs. `seal(sub, token)` declares that no further
    token will be built from `token`. An upstream token is acked once it is
    sealed and every token holding it has been released; `release` is meant
    to be the output channel's `on_release` callback.
    """

    def __init__(self) -> None:
        self._held: dict[int, list[tuple[Subscription, Token]]] = {}  # id(forwarded) -> sources
        self._open: dict[tuple[int, int], int] = {}  # (id(sub), id(token)) -> unreleased holders
        self._refs: dict[tuple[int, int], tuple[Subscription, Token]] = {}
        self._sealed: set[tuple[int, int]] = set()

    @staticmethod
    def _ref(sub: Subscription, token: Token) -> tuple[int, int]:
        return id(sub), id(token)

    @property
    def pending(self) -> int:
        """Upstream tokens not acknowledged yet."""
        return len(self._refs)

    def hold(self, forwarded: Token, sources: Iterable[tuple[Subscription, Token]]) -> None:
        pairs = list(sources)
        for sub, token in pairs:
            ref = self._ref(sub, token)
            self._refs[ref] = (sub, token)
            self._open[ref] = self._open.get(ref, 0) + 1
        self._held.setdefault(id(forwarded), []).extend(pairs)

    def seal(self, sub: Subscription, token: Token) -> None:
        ref = self._ref(sub, token)
        self._refs.setdefault(ref, (sub, token))
        self._sealed.add(ref)
        self._settle(ref)

    def release(self, forwarded: Token) -> None:
        for sub, token in self._held.pop(id(forwarded), ()):
            ref = self._ref(sub, token)
            self._open[ref] -= 1
            self._settle(ref)

    def _settle(self, ref: tuple[int, int]) -> None:
        if ref not in self._sealed or self._open.get(ref, 0) > 0:
            return
        self._sealed.discard(ref)
        self._open.pop(ref, None)
        sub, token = self._refs.pop(ref)
        sub.ack(token)


class ValueChannel:
    """Single-assignment channel whose one token is readable by every consumer."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._token: Token | None = None
        self._ready = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._ready.is_set()

    def set(self, token: Token) -> None:
        if self._ready.is_set():
            raise ChannelError(f"value channel '{self.name}' is already assigned")
        self._token = token
        self._ready.set()

    async def get(self) -> Token:
        await self._ready.wait()
        return cast(Token, self._token)

    def peek(self) -> Token | None:
        return self._token


__all__ = ["AckRelay", "Channel", "ChannelError", "Subscription", "ValueChannel"]
