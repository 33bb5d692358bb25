# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Data plane primitive: the token.

A token is one unit of data on a channel: a stable key plus a payload
reference (usually a path to a file written by a splitter or a task). Keys are
derived once at split time and carried unchanged through every step that
concerns the same record, so independently processed branches can be
re-associated by key.
"""

from dataclasses import dataclass
from typing import Any

from ..core.types import KEY_SEP


@dataclass(frozen=True)
class Token:
    """
    Immutable unit flowing on a channel.

    Attributes:
        key: Opaque, stable identity of the logical record.
        payload: Resource handle (path, tuple of paths, identifier, or a
                 collected tuple of tokens for barrier outputs).
        origin: Name of the node that produced this token (diagnostics only).
    """

    key: str
    payload: Any = None
    origin: str | None = None

    def derive(self, suffix: str, payload: Any, *, origin: str | None = None) -> Token:
        """Child token whose key keeps this token's key as a prefix."""
        return Token(key=f"{self.key}{KEY_SEP}{suffix}", payload=payload, origin=origin)

    def with_payload(self, payload: Any, *, origin: str | None = None) -> Token:
        """Same logical record, new payload (e.g. a task's output for this record)."""
        return Token(key=self.key, payload=payload, origin=origin)


def join_keys(a: str, b: str) -> str:
    """Key of a cross-product pair: concatenation of both source keys."""
    return f"{a}{KEY_SEP}{b}"


__all__ = ["Token", "join_keys"]
