from __future__ import annotations

# Runtime package version, read from the installed distribution metadata.
try:
    from importlib.metadata import version as _pkg_version

    __version__ = _pkg_version("annoflow")
except Exception:  # pragma: no cover
    # source checkout without an install
    __version__ = "0.0.0"

from .api.errors import AnnoflowError
from .api.streams import Token
from .core.config import EngineConfig
from .graph.spec import GraphSpec
from .runtime.engine import Engine, RunReport

__all__ = [
    "AnnoflowError",
    "Engine",
    "EngineConfig",
    "GraphSpec",
    "RunReport",
    "Token",
    "__version__",
]
