# src/annoflow/graph/spec.py
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, InstanceOf, ValidationError, field_validator, model_validator

from ..api.errors import ConfigurationError
from ..runtime.gate import ValidationGate
from ..runtime.scheduler import Resources

_NAME_RE = r"^[A-Za-z0-9_.-]+$"

# -------------------------------
# Shared pieces
# -------------------------------


class ResourceSpec(BaseModel):
    cpus: int = 1
    memory_mb: int = 0
    model_config = {"extra": "forbid"}

    @model_validator(mode="after")
    def _sanity(self) -> ResourceSpec:
        if self.cpus < 0:
            raise ValueError("resources.cpus must be >= 0")
        if self.memory_mb < 0:
            raise ValueError("resources.memory_mb must be >= 0")
        return self

    def to_runtime(self) -> Resources:
        return Resources(cpus=self.cpus, memory_mb=self.memory_mb)


class NodeBase(BaseModel):
    name: str = Field(pattern=_NAME_RE)
    gate: str | None = None
    model_config = {"extra": "forbid", "arbitrary_types_allowed": True}

    def queue_inputs(self) -> list[str]:
        """Upstream nodes read as token streams."""
        return []

    def value_inputs(self) -> list[str]:
        """Upstream nodes read as single, re-readable values."""
        return []

    @property
    def emits_value_channel(self) -> bool:
        return False


# -------------------------------
# Node kinds
# -------------------------------


class SourceNode(NodeBase):
    """Splits one FASTA input into chunk tokens."""

    kind: Literal["source"] = "source"
    path: Path
    chunk_size: int = 1000

    @field_validator("chunk_size")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("chunk_size must be >= 1")
        return v


class ValueNode(NodeBase):
    """Run-scoped constant resolved once at startup (value-channel semantics)."""

    kind: Literal["value"] = "value"
    value: Any

    @property
    def emits_value_channel(self) -> bool:
        return True


class ItemsNode(NodeBase):
    """Fixed list of tokens known at build time, e.g. configured OrthoDB levels."""

    kind: Literal["items"] = "items"
    items: dict[str, Any] = Field(default_factory=dict)


class TaskNode(NodeBase):
    """
    One external command invocation per input token.

    `over=None` runs exactly once. `values` maps aliases (visible to the command
    as `ctx.values[alias]`) to value-producing nodes; no instance becomes Ready
    before all of them are resolved.
    """

    kind: Literal["task"] = "task"
    command: Any
    over: str | None = None
    values: dict[str, str] = Field(default_factory=dict)
    outputs: list[str] = Field(default_factory=list)
    resources: ResourceSpec = Field(default_factory=ResourceSpec)
    enabled: Union[bool, Callable[[], bool]] = True
    emits_value: bool = False
    publish_dir: Path | None = None

    @field_validator("command")
    @classmethod
    def _callable(cls, v: Any) -> Any:
        if not callable(v):
            raise ValueError("command must be callable (ShellCommand, CallableCommand or async fn)")
        return v

    @model_validator(mode="after")
    def _sanity(self) -> TaskNode:
        if self.emits_value and self.over is not None:
            raise ValueError(f"{self.name}: emits_value is only allowed for run-once tasks (over=None)")
        return self

    def is_enabled(self) -> bool:
        return bool(self.enabled()) if callable(self.enabled) else bool(self.enabled)

    def queue_inputs(self) -> list[str]:
        return [self.over] if self.over else []

    def value_inputs(self) -> list[str]:
        return list(self.values.values())

    @property
    def emits_value_channel(self) -> bool:
        return self.emits_value


class ExpandNode(NodeBase):
    """Dynamic one-to-many expansion driven by a runtime-resolved identifier list."""

    kind: Literal["expand"] = "expand"
    source: str
    resolve: Callable[..., Any] | None = None
    payload: Callable[..., Any] | None = None

    def queue_inputs(self) -> list[str]:
        return [self.source]


class CrossNode(NodeBase):
    kind: Literal["cross"] = "cross"
    left: str
    right: str

    def queue_inputs(self) -> list[str]:
        return [self.left, self.right]


class MergeNode(NodeBase):
    """Fan-in. Pruned sources are dropped instead of pruning the merge."""

    kind: Literal["merge"] = "merge"
    sources: list[str]

    def queue_inputs(self) -> list[str]:
        return list(self.sources)


class CollectNode(NodeBase):
    kind: Literal["collect"] = "collect"
    source: str

    def queue_inputs(self) -> list[str]:
        return [self.source]


Node = Annotated[
    Union[SourceNode, ValueNode, ItemsNode, TaskNode, ExpandNode, CrossNode, MergeNode, CollectNode],
    Field(discriminator="kind"),
]


# -------------------------------
# Graph
# -------------------------------


class GraphSpec(BaseModel):
    name: str = "annoflow"
    nodes: list[Node]
    gates: list[InstanceOf[ValidationGate]] = Field(default_factory=list)
    model_config = {"extra": "forbid", "arbitrary_types_allowed": True}

    @model_validator(mode="after")
    def _unique(self) -> GraphSpec:
        seen: set[str] = set()
        for n in self.nodes:
            if n.name in seen:
                raise ValueError(f"duplicate node name: {n.name}")
            seen.add(n.name)
        gate_names = [g.name for g in self.gates]
        if len(gate_names) != len(set(gate_names)):
            raise ValueError("duplicate gate name")
        for n in self.nodes:
            if n.gate is not None and n.gate not in gate_names:
                raise ValueError(f"{n.name}: unknown gate '{n.gate}'")
        return self

    def node(self, name: str) -> NodeBase:
        for n in self.nodes:
            if n.name == name:
                return n
        raise KeyError(name)

    @classmethod
    def build(cls, data: Any) -> GraphSpec:
        """Validate a mapping (or kwargs-built dict) into a GraphSpec, reporting ConfigurationError."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            first = e.errors()[0]
            loc = ".".join(str(p) for p in first.get("loc", ()))
            raise ConfigurationError(f"invalid graph: {first.get('msg')}", key=loc or "graph") from e


__all__ = [
    "CollectNode",
    "CrossNode",
    "ExpandNode",
    "GraphSpec",
    "ItemsNode",
    "MergeNode",
    "Node",
    "NodeBase",
    "ResourceSpec",
    "SourceNode",
    "TaskNode",
    "ValueNode",
]
