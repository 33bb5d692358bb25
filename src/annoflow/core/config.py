from __future__ import annotations

"""
annoflow.core.config
====================

Strongly-typed engine configuration.
- Optional JSON file loading, then env overrides, then explicit overrides.
- Derives millisecond fields from seconds to avoid repeated conversions.

Pipeline options (input file, data locations, step toggles) live in
`annoflow.pipeline.config`; this module only covers how a run executes.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..api.errors import ConfigurationError


def _try_load_json(path: Path | None) -> dict[str, Any]:
    if not path:
        return {}
    if not path.exists():
        raise ConfigurationError(f"engine config file not found: {path}", key="engine")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"engine config is not valid JSON: {e}", key="engine") from e
    if not isinstance(data, dict):
        raise ConfigurationError("engine config must be a JSON object", key="engine")
    return data


# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Execution budget and timing knobs for one run."""

    # ---- Resource budget
    cpus: int = max(1, os.cpu_count() or 1)
    memory_mb: int = 8192

    # ---- Filesystem
    work_dir: Path = Path("work")
    keep_chunks: bool = True

    # ---- Timings (seconds)
    # A barrier fails with StallError after this long without a new upstream token
    # while no task instance is running. None disables the check.
    stall_timeout_sec: float | None = 600.0
    cancel_grace_sec: float = 10.0

    # ---- Derived (ms)
    stall_timeout_ms: int | None = None
    cancel_grace_ms: int = 0

    # ---- Methods ------------------------------------------------------------

    def __post_init__(self) -> None:
        self.work_dir = Path(self.work_dir)
        if self.cpus < 1:
            raise ConfigurationError("cpus must be >= 1", key="engine.cpus")
        if self.memory_mb < 0:
            raise ConfigurationError("memory_mb must be >= 0", key="engine.memory_mb")
        if self.stall_timeout_sec is not None and self.stall_timeout_sec <= 0:
            raise ConfigurationError("stall_timeout_sec must be > 0", key="engine.stall_timeout_sec")
        if self.cancel_grace_sec < 0:
            raise ConfigurationError("cancel_grace_sec must be >= 0", key="engine.cancel_grace_sec")
        self._derive_ms()

    def _derive_ms(self) -> None:
        """Populate millisecond fields derived from second-based values."""
        self.stall_timeout_ms = None if self.stall_timeout_sec is None else int(self.stall_timeout_sec * 1000)
        self.cancel_grace_ms = int(self.cancel_grace_sec * 1000)

    # Loader
    @classmethod
    def load(cls, path: Path | str | None = None, *, overrides: dict[str, Any] | None = None) -> EngineConfig:
        """
        Load config from JSON file (if provided), then apply env and overrides.

        Env overrides:
          - ANNOFLOW_CPUS
          - ANNOFLOW_MEMORY_MB
          - ANNOFLOW_WORK_DIR
        """
        data: dict[str, Any] = {}
        data.update(_try_load_json(Path(path) if path else None))

        try:
            if os.getenv("ANNOFLOW_CPUS"):
                data["cpus"] = int(os.environ["ANNOFLOW_CPUS"])
            if os.getenv("ANNOFLOW_MEMORY_MB"):
                data["memory_mb"] = int(os.environ["ANNOFLOW_MEMORY_MB"])
        except ValueError as e:
            raise ConfigurationError(f"invalid numeric env override: {e}", key="engine") from e
        if os.getenv("ANNOFLOW_WORK_DIR"):
            data["work_dir"] = os.environ["ANNOFLOW_WORK_DIR"]

        if overrides:
            data.update(overrides)

        unknown = sorted(set(data) - set(cls.__dataclass_fields__))
        if unknown:
            raise ConfigurationError(f"unknown engine option(s): {unknown}", key="engine")
        return cls(**data)
