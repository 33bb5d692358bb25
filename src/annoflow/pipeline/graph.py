from __future__ import annotations

"""
The annotation pipeline as a GraphSpec.

    chunks ──┬── interproscan ─────────────────────────────────┐
             ├── blast_nr      <- nr_index      (value)         │
             ├── blast_sprot   <- sprot_index   (value)         ├─ annotations ─ collected ─ report
             ├── blast_string  <- string_index  (value)         │
             └── orthodb_pairs ── blast_orthodb ────────────────┘
                   ^
    orthodb_levels ─ orthodb_members ─ orthodb_dbs ─ orthodb_index

Every branch sits behind a validation gate named after it; a disabled branch
is pruned along with everything that only it feeds, and `annotations` merges
whatever survives.
"""

from ..api.errors import ConfigurationError
from ..graph.spec import (
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
from ..runtime.gate import Check, ValidationGate, path_exists, path_nonempty
from ..runtime.splitter import input_stem
from .config import INDEXED_DBS, PipelineConfig
from .report import REPORT_SUFFIXES
from .tools import Toolbox


def _gates(cfg: PipelineConfig) -> list[ValidationGate]:
    gates = [ValidationGate("input", checks=[path_exists(cfg.input.file, key="input.file")])]
    for branch in ("interproscan", *INDEXED_DBS):
        gates.append(
            ValidationGate(
                branch,
                enabled=cfg.steps.enabled(branch),
                enabled_key=f"steps.{branch}.enable",
                checks=[path_nonempty(cfg.data_path(branch), key=f"data.{branch}")],
            )
        )
    levels = list(cfg.steps.orthodb.levels)
    gates.append(
        ValidationGate(
            "orthodb",
            enabled=cfg.steps.orthodb.enable,
            enabled_key="steps.orthodb.enable",
            checks=[
                path_nonempty(cfg.data.orthodb, key="data.orthodb"),
                Check("no levels configured", lambda: bool(levels), key="steps.orthodb.levels"),
            ],
        )
    )
    return gates


def build_graph(cfg: PipelineConfig, toolbox: Toolbox | None = None) -> GraphSpec:
    """Declare the full pipeline; gates and pruning are applied when it is compiled."""
    tools = toolbox or Toolbox.default(cfg)
    mode = cfg.search_mode()

    def res(node: str) -> ResourceSpec:
        return cfg.resources.get(node, ResourceSpec())

    nodes: list = [
        ValueNode(name="basename", value=input_stem(cfg.input.file)),
        ValueNode(name="search_mode", value=mode),
        SourceNode(name="chunks", path=cfg.input.file, chunk_size=cfg.chunk_size, gate="input"),
        TaskNode(
            name="interproscan",
            gate="interproscan",
            command=tools.interproscan,
            over="chunks",
            outputs=["{key}.ips.tsv"],
            resources=res("interproscan"),
        ),
    ]
    branch_outputs = ["interproscan"]

    for db in INDEXED_DBS:
        nodes += [
            TaskNode(
                name=f"{db}_index",
                gate=db,
                command=tools.makedb[db],
                outputs=["{key}.dmnd"],
                emits_value=True,
                resources=res(f"{db}_index"),
            ),
            TaskNode(
                name=f"blast_{db}",
                command=tools.search[db],
                over="chunks",
                values={"index": f"{db}_index", "mode": "search_mode"},
                outputs=[f"{{key}}.{db}.tsv"],
                resources=res(f"blast_{db}"),
            ),
        ]
        branch_outputs.append(f"blast_{db}")

    odb = cfg.steps.orthodb
    nodes += [
        ItemsNode(
            name="orthodb_levels",
            gate="orthodb",
            items={level: {"db": odb.db, "level": level} for level in odb.levels},
        ),
        TaskNode(
            name="orthodb_members",
            command=tools.orthodb_members,
            over="orthodb_levels",
            outputs=["{key}.members.txt"],
            resources=res("orthodb_members"),
        ),
        ExpandNode(name="orthodb_dbs", source="orthodb_members"),
        TaskNode(
            name="orthodb_index",
            command=tools.orthodb_index,
            over="orthodb_dbs",
            outputs=["member.dmnd"],
            resources=res("orthodb_index"),
        ),
        CrossNode(name="orthodb_pairs", left="chunks", right="orthodb_index"),
        TaskNode(
            name="blast_orthodb",
            command=tools.orthodb_search,
            over="orthodb_pairs",
            values={"mode": "search_mode"},
            outputs=["hits.tsv"],
            resources=res("blast_orthodb"),
        ),
    ]
    branch_outputs.append("blast_orthodb")

    nodes += [
        MergeNode(name="annotations", sources=branch_outputs),
        CollectNode(name="collected", source="annotations"),
        TaskNode(
            name="report",
            command=tools.report,
            over="collected",
            values={"basename": "basename"},
            outputs=[f"{{basename}}{suffix}" for suffix in REPORT_SUFFIXES],
            publish_dir=cfg.output.dir,
            resources=res("report"),
        ),
    ]

    unknown = sorted(set(cfg.resources) - {n.name for n in nodes})
    if unknown:
        raise ConfigurationError(f"resources for unknown step(s): {unknown}", key=f"resources.{unknown[0]}")
    return GraphSpec.build({"name": "annotation", "nodes": nodes, "gates": _gates(cfg)})


__all__ = ["build_graph"]
