# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Error taxonomy for annoflow.

Configuration and precondition errors are raised while the graph is compiled,
before any task is dispatched. Input, expansion and task errors are raised by
running components and abort the run after in-flight work settles. Every
error renders a single diagnostic line via `diagnostic()`.
"""


class AnnoflowError(Exception):
    """Base class for all annoflow errors."""

    component: str = "annoflow"

    def diagnostic(self) -> str:
        """One-line, user-facing description of the failure."""
        return f"[{self.component}] {self}"


class ConfigurationError(AnnoflowError):
    """A bad or missing option value, detected before scheduling."""

    component = "config"

    def __init__(self, message: str, *, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key

    def diagnostic(self) -> str:
        where = f" (fix: {self.key})" if self.key else ""
        return f"[{self.component}] {self.args[0]}{where}"


class PreconditionError(AnnoflowError):
    """A validation gate check failed (typically a missing external resource)."""

    component = "gate"

    def __init__(self, gate: str, check: str, *, key: str | None = None, value: object = None) -> None:
        msg = f"gate '{gate}': {check}"
        if value is not None:
            msg += f": {value}"
        super().__init__(msg)
        self.gate = gate
        self.check = check
        self.key = key
        self.value = value

    def diagnostic(self) -> str:
        where = f" (fix: {self.key})" if self.key else ""
        return f"[{self.component}] {self.args[0]}{where}"


class InputNotFoundError(AnnoflowError):
    """The input resource to split does not exist."""

    component = "splitter"

    def __init__(self, path: object) -> None:
        super().__init__(f"input not found: {path}")
        self.path = path


class InputFormatError(AnnoflowError):
    """The input resource cannot be parsed as the declared record format."""

    component = "splitter"

    def __init__(self, path: object, reason: str) -> None:
        super().__init__(f"malformed input {path}: {reason}")
        self.path = path
        self.reason = reason


class ExpansionFormatError(AnnoflowError):
    """A dynamically resolved identifier list is non-empty but unparsable."""

    component = "expander"

    def __init__(self, node: str, key: str, reason: str) -> None:
        super().__init__(f"{node}: cannot expand '{key}': {reason}")
        self.node = node
        self.key = key
        self.reason = reason


class TaskExecutionError(AnnoflowError):
    """An external command exited non-zero or did not produce its declared outputs."""

    component = "task"

    def __init__(self, node: str, key: str | None, reason: str, *, exit_code: int | None = None) -> None:
        where = f"{node}[{key}]" if key is not None else node
        super().__init__(f"{where}: {reason}")
        self.node = node
        self.key = key
        self.reason = reason
        self.exit_code = exit_code


class StallError(AnnoflowError):
    """A barrier collector's upstream did not close within the run's stall timeout."""

    component = "collect"

    def __init__(self, node: str, timeout_sec: float, received: int) -> None:
        super().__init__(
            f"{node}: upstream did not close within {timeout_sec:g}s ({received} token(s) received so far)"
        )
        self.node = node
        self.timeout_sec = timeout_sec
        self.received = received


class RunAborted(AnnoflowError):
    """
    Raised inside in-flight work once the run's abort signal is set.

    It marks where a node stopped, not why: the error that set the signal is
    the one the run re-raises.
    """

    component = "engine"

    def __init__(self, node: str, key: str | None = None) -> None:
        where = f"{node}[{key}]" if key is not None else node
        super().__init__(f"{where}: stopped, the run is aborting")
        self.node = node
        self.key = key


__all__ = [
    "AnnoflowError",
    "ConfigurationError",
    "PreconditionError",
    "InputNotFoundError",
    "InputFormatError",
    "ExpansionFormatError",
    "TaskExecutionError",
    "StallError",
    "RunAborted",
]
