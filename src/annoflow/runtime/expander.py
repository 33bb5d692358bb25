# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Expander: one upstream token -> zero or more downstream tokens.

The list of identifiers is only known at runtime: it is read from the
upstream token's payload (typically a file written by a resolver task). Each
identifier becomes a token keyed `<upstream key>/<identifier>`, which keeps
the upstream key as a traceable prefix. An empty list emits nothing.
"""

import inspect
import re
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import Any, Union

from ..api.errors import ExpansionFormatError
from ..api.streams import Token
from ..core.logging import get_logger
from .channel import AckRelay, Channel, Subscription

_IDENT = re.compile(r"^[A-Za-z0-9_.:-]+$")
_SPLIT = re.compile(r"[\s,]+")

Resolved = Union[str, Path, Sequence[str]]
ResolveFn = Callable[[Token], Union[Resolved, Awaitable[Resolved]]]
PayloadFn = Callable[[Token, str], Any]

_log = get_logger("runtime.expander")


def parse_identifiers(text: str) -> list[str]:
    """
    Parse a comma/whitespace/newline separated identifier list.

    Blank text is an empty list. Anything that is not a plain identifier is
    rejected with ValueError (callers wrap it into ExpansionFormatError).
    """
    out: list[str] = []
    for part in _SPLIT.split(text.strip()):
        if not part:
            continue
        if not _IDENT.match(part):
            raise ValueError(f"invalid identifier {part!r}")
        out.append(part)
    return out


def _default_resolve(token: Token) -> Resolved:
    return token.payload


def _default_payload(token: Token, ident: str) -> Any:
    return ident


class Expander:
    """
    Drive one expansion edge.

    Args:
        name: Node name (used as token origin and in diagnostics).
        resolve: Maps an upstream token to its identifier list: raw text, a
                 path to a file holding the text, or a ready list. May be async.
        payload: Builds each child payload from (upstream token, identifier).
    """

    def __init__(self, name: str, *, resolve: ResolveFn | None = None, payload: PayloadFn | None = None) -> None:
        self.name = name
        self._resolve = resolve or _default_resolve
        self._payload = payload or _default_payload

    async def identifiers(self, token: Token) -> list[str]:
        resolved = self._resolve(token)
        if inspect.isawaitable(resolved):
            resolved = await resolved
        try:
            if isinstance(resolved, Path):
                return parse_identifiers(resolved.read_text(encoding="utf-8"))
            if isinstance(resolved, str):
                return parse_identifiers(resolved)
            if isinstance(resolved, Sequence):
                return parse_identifiers(" ".join(str(x) for x in resolved))
        except (OSError, UnicodeDecodeError, ValueError) as e:
            raise ExpansionFormatError(self.name, token.key, str(e)) from e
        raise ExpansionFormatError(self.name, token.key, f"unsupported resolver result {type(resolved).__name__}")

    def expand(self, token: Token, identifiers: Sequence[str]) -> list[Token]:
        return [token.derive(ident, self._payload(token, ident), origin=self.name) for ident in identifiers]

    async def run(self, source: Subscription, out: Channel, *, relay: AckRelay | None = None) -> int:
        """
        Expand every upstream token into `out` and close it. On error `out` stays
        open, so nothing downstream mistakes a failed expansion for a complete one.
        With a relay, an upstream token is acknowledged once all its children
        have been released (custom payloads may carry the upstream payload).
        """
        emitted = 0
        async for token in source:
            idents = await self.identifiers(token)
            if not idents:
                _log.info("empty expansion", event="expander.empty", node=self.name, key=token.key)
            for child in self.expand(token, idents):
                if relay is not None:
                    relay.hold(child, [(source, token)])
                await out.put(child)
                emitted += 1
            if relay is None:
                source.ack(token)
            else:
                relay.seal(source, token)
        out.close()
        return emitted


__all__ = ["Expander", "parse_identifiers"]
