# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Public data types and errors shared by the runtime, graph and pipeline layers.
"""

from .errors import (
    AnnoflowError,
    ConfigurationError,
    ExpansionFormatError,
    InputFormatError,
    InputNotFoundError,
    PreconditionError,
    RunAborted,
    StallError,
    TaskExecutionError,
)
from .streams import Token, join_keys

__all__ = [
    "AnnoflowError",
    "ConfigurationError",
    "ExpansionFormatError",
    "InputFormatError",
    "InputNotFoundError",
    "PreconditionError",
    "RunAborted",
    "StallError",
    "TaskExecutionError",
    "Token",
    "join_keys",
]
