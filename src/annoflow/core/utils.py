from __future__ import annotations

"""
annoflow.core.utils
===================

Low-level helpers with **no external dependencies**:
- Stable hashing for JSON-like payloads.
- Filesystem-safe names derived from token keys.
- NanoID generator for run identifiers.
"""

import json
import re
from hashlib import blake2b
from secrets import choice
from typing import Any

from .types import DEFAULT_BLAKE2_DIGEST_SIZE, DEFAULT_NANOID_ALPHABET, DEFAULT_NANOID_SIZE

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def stable_hash(payload: Any, *, digest_size: int = DEFAULT_BLAKE2_DIGEST_SIZE) -> str:
    """
    Compute a stable hash of an arbitrary JSON-like payload.
    - Uses UTF-8 JSON with sorted keys and no whitespace for deterministic encoding.
    - BLAKE2b with configurable digest size (default 20 bytes -> 40 hex chars).

    Non-JSON values (paths, tuples of paths) are encoded via `str()`.
    """
    data = json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")
    return blake2b(data, digest_size=digest_size).hexdigest()


def safe_name(key: str, *, max_len: int = 64) -> str:
    """
    Map an arbitrary token key to a directory name.

    Keys that are already filesystem-safe are returned unchanged; otherwise the
    unsafe runs are replaced and a short digest keeps distinct keys distinct.
    """
    cleaned = _UNSAFE.sub("_", key).strip("._") or "_"
    if cleaned == key and len(key) <= max_len:
        return key
    return f"{cleaned[: max_len - 9]}-{stable_hash(key, digest_size=4)}"


def nanoid(size: int = DEFAULT_NANOID_SIZE, alphabet: str = DEFAULT_NANOID_ALPHABET) -> str:
    """Generate a URL-safe NanoID (cryptographically strong)."""
    if size <= 0:
        raise ValueError("size must be positive")
    if not alphabet:
        raise ValueError("alphabet must be a non-empty string")
    return "".join(choice(alphabet) for _ in range(size))
