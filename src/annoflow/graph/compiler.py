# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Compiler: GraphSpec -> ExecutionPlan.

This pass runs once, synchronously, before anything is scheduled:
- reference and kind checks (queue vs value inputs), cycle detection
- validation gates (PreconditionError aborts the run here)
- pruning: disabled nodes and everything reachable only through them;
  merge nodes drop pruned sources instead of being pruned themselves
- per-channel consumer lists computed from the *pruned* graph, so broadcast
  width and fan-in width always match the producers that will actually run
- resource feasibility against the run budget
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from typing import Any

from ..api.errors import ConfigurationError
from ..core.logging import get_logger
from ..runtime.scheduler import ResourceBudget
from .spec import GraphSpec, MergeNode, NodeBase, TaskNode

_log = get_logger("graph.compiler")


@dataclass
class ExecutionPlan:
    """Top-level execution plan used by the engine."""

    name: str
    nodes: dict[str, NodeBase]  # surviving nodes, topological order
    consumers: dict[str, list[str]] = field(default_factory=dict)  # queue channel -> consumer nodes
    pruned: dict[str, str] = field(default_factory=dict)  # node -> reason
    gates: dict[str, bool] = field(default_factory=dict)  # gate -> open?

    @property
    def order(self) -> list[str]:
        return list(self.nodes)

    def inputs_of(self, name: str) -> list[str]:
        node = self.nodes[name]
        if isinstance(node, MergeNode):
            return [s for s in node.sources if s in self.nodes]
        return node.queue_inputs()


def _check_references(spec: GraphSpec) -> dict[str, NodeBase]:
    by_name = {n.name: n for n in spec.nodes}
    for n in spec.nodes:
        for ref in n.queue_inputs():
            if ref not in by_name:
                raise ConfigurationError(f"{n.name}: unknown input '{ref}'", key=f"graph.{n.name}")
            if by_name[ref].emits_value_channel:
                raise ConfigurationError(
                    f"{n.name}: '{ref}' produces a value, not a token stream", key=f"graph.{n.name}"
                )
        for ref in n.value_inputs():
            if ref not in by_name:
                raise ConfigurationError(f"{n.name}: unknown value input '{ref}'", key=f"graph.{n.name}")
            if not by_name[ref].emits_value_channel:
                raise ConfigurationError(
                    f"{n.name}: '{ref}' produces a token stream, not a value", key=f"graph.{n.name}"
                )
    return by_name


def _topological(by_name: Mapping[str, NodeBase]) -> list[str]:
    ts: TopologicalSorter[str] = TopologicalSorter()
    for name, n in by_name.items():
        ts.add(name, *n.queue_inputs(), *n.value_inputs())
    try:
        return list(ts.static_order())
    except CycleError as e:
        cycle = " -> ".join(e.args[1]) if len(e.args) > 1 else "?"
        raise ConfigurationError(f"graph has a cycle: {cycle}", key="graph") from e


def compile_graph(spec: GraphSpec | Mapping[str, Any], *, budget: ResourceBudget | None = None) -> ExecutionPlan:
    if not isinstance(spec, GraphSpec):
        spec = GraphSpec.build(spec)

    by_name = _check_references(spec)
    order = _topological(by_name)

    # Gates: evaluated once, in declaration order; a failure aborts the compile.
    gates = {g.name: g.evaluate() for g in spec.gates}

    pruned: dict[str, str] = {}
    for name in order:
        n = by_name[name]
        if n.gate is not None and not gates[n.gate]:
            pruned[name] = f"gate '{n.gate}' closed"
            continue
        if isinstance(n, TaskNode) and not n.is_enabled():
            pruned[name] = "disabled"
            continue
        if isinstance(n, MergeNode):
            continue
        dead = [ref for ref in (*n.queue_inputs(), *n.value_inputs()) if ref in pruned]
        if dead:
            pruned[name] = f"upstream pruned: {', '.join(dead)}"

    nodes = {name: by_name[name] for name in order if name not in pruned}
    plan = ExecutionPlan(name=spec.name, nodes=nodes, pruned=pruned, gates=gates)

    plan.consumers = {name: [] for name, n in nodes.items() if not n.emits_value_channel}
    for name in nodes:
        for ref in plan.inputs_of(name):
            plan.consumers[ref].append(name)

    if budget is not None:
        for n in nodes.values():
            if isinstance(n, TaskNode):
                budget.check(n.resources.to_runtime(), node=n.name)

    for name, reason in pruned.items():
        _log.info("node pruned", event="compile.pruned", node=name, reason=reason)
    _log.info(
        "graph compiled",
        event="compile.done",
        graph=spec.name,
        nodes=len(nodes),
        pruned=len(pruned),
        gates={k: ("open" if v else "closed") for k, v in gates.items()},
    )
    return plan


__all__ = ["ExecutionPlan", "compile_graph"]
