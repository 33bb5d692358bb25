from __future__ import annotations

"""
The sequence annotation pipeline built on the annoflow engine.
"""

from .config import PipelineConfig
from .graph import build_graph
from .run import main, run
from .tools import Toolbox

__all__ = ["PipelineConfig", "Toolbox", "build_graph", "main", "run"]
