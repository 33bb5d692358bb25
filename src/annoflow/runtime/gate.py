# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Validation gates: synchronous pre-flight checks for a gated subgraph.

A gate is evaluated once, while the graph is compiled:
- disabled  -> False: the subgraph is pruned and its checks are not run;
- enabled, a check fails -> PreconditionError naming the check and the
  configuration key to fix; nothing has been scheduled yet;
- enabled, all checks pass -> True: the subgraph becomes schedulable.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..api.errors import PreconditionError
from ..core.logging import get_logger

_log = get_logger("runtime.gate")


@dataclass(frozen=True)
class Check:
    """One boolean precondition with the configuration key that controls it."""

    description: str
    predicate: Callable[[], bool]
    key: str | None = None
    value: Any = None


def path_exists(path: Path | str | None, *, key: str) -> Check:
    return Check(
        description="required path does not exist",
        predicate=lambda: path is not None and Path(path).exists(),
        key=key,
        value=path,
    )


def _nonempty(path: Path | str | None) -> bool:
    if path is None:
        return False
    p = Path(path)
    if p.is_dir():
        return any(p.iterdir())
    return p.is_file() and p.stat().st_size > 0


def path_nonempty(path: Path | str | None, *, key: str) -> Check:
    """The path exists and is a non-empty file or a directory with at least one entry."""
    return Check(
        description="required path is missing or empty",
        predicate=lambda: _nonempty(path),
        key=key,
        value=path,
    )


@dataclass
class ValidationGate:
    name: str
    enabled: bool | Callable[[], bool] = True
    checks: Sequence[Check] = field(default_factory=tuple)
    enabled_key: str | None = None

    def is_enabled(self) -> bool:
        return bool(self.enabled()) if callable(self.enabled) else bool(self.enabled)

    def evaluate(self) -> bool:
        if not self.is_enabled():
            _log.info("gate closed, subgraph pruned", event="gate.pruned", gate=self.name, key=self.enabled_key)
            return False
        for check in self.checks:
            if not check.predicate():
                _log.error(
                    "precondition failed",
                    event="gate.failed",
                    gate=self.name,
                    check=check.description,
                    key=check.key,
                    value=str(check.value),
                )
                raise PreconditionError(self.name, check.description, key=check.key, value=check.value)
        _log.debug("gate open", event="gate.open", gate=self.name, checks=len(self.checks))
        return True


__all__ = ["Check", "ValidationGate", "path_exists", "path_nonempty"]
