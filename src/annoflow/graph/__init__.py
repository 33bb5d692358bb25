# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Public exports for the graph package.

Build a GraphSpec (from models or a plain mapping) and hand it to
compile_graph, or straight to Engine.run which compiles it first.
"""

from .compiler import ExecutionPlan, compile_graph
from .spec import (
    CollectNode,
    CrossNode,
    ExpandNode,
    GraphSpec,
    ItemsNode,
    MergeNode,
    ResourceSpec,
    SourceNode,
    TaskNode,
    ValueNode,
)

__all__ = [
    "CollectNode",
    "CrossNode",
    "ExecutionPlan",
    "ExpandNode",
    "GraphSpec",
    "ItemsNode",
    "MergeNode",
    "ResourceSpec",
    "SourceNode",
    "TaskNode",
    "ValueNode",
    "compile_graph",
]
