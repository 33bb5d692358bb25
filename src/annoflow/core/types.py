from __future__ import annotations

"""
annoflow.core.types
===================

Shared type aliases and small constants used across the codebase.
Keep this module **tiny** and dependency-free.
"""

import os
from pathlib import Path
from typing import Final, Union

# Paths
StrPath = Union[str, os.PathLike[str], Path]

# ---- Time --------------------------------------------------------------------

MonotonicMs = int  # process-local monotonic time (ms)

# ---- Constants ---------------------------------------------------------------

# Separator used when deriving keys (expansion) and joining keys (cross product).
KEY_SEP: Final[str] = "/"

# Default digest size used by stable_hash (BLAKE2b).
DEFAULT_BLAKE2_DIGEST_SIZE: Final[int] = 20

# NanoID defaults (URL-safe alphabet).
DEFAULT_NANOID_ALPHABET: Final[str] = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz-"
DEFAULT_NANOID_SIZE: Final[int] = 12


__all__ = [
    "StrPath",
    "MonotonicMs",
    "KEY_SEP",
    "DEFAULT_BLAKE2_DIGEST_SIZE",
    "DEFAULT_NANOID_ALPHABET",
    "DEFAULT_NANOID_SIZE",
]
