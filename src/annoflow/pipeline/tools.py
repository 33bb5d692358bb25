from __future__ import annotations

"""
Command templates for the external programs of the annotation pipeline.

Every step is a `Command` (see annoflow.runtime.task): the defaults below are
ShellCommands building argv lists for InterProScan, DIAMOND and the OrthoDB
member resolver, plus the in-process report writer. Any entry can be replaced,
e.g. `Toolbox.default(cfg).replace(interproscan=CallableCommand(fake))`.

Each command writes its declared outputs into its instance work dir:

  interproscan     {key}.ips.tsv
  makedb           {key}.dmnd           (run-once index builds; key = node name)
  search           {key}.{db}.tsv       (chunk x index)
  orthodb_members  {key}.members.txt    (one member identifier per line)
  orthodb_index    member.dmnd
  orthodb_search   hits.tsv             (chunk x member index)
  report           {basename}.annotation.tsv / .go_terms.tsv / .summary.json
"""

import dataclasses
from dataclasses import dataclass
from pathlib import Path

from ..runtime.task import CallableCommand, Command, ShellCommand, TaskContext
from .config import INDEXED_DBS, PipelineConfig
from .report import write_report

INTERPROSCAN_EXE = "interproscan.sh"
DIAMOND_EXE = "diamond"
ORTHODB_RESOLVER_EXE = "orthodb-members"

_DIAMOND_OUTFMT = ["6", "qseqid", "sseqid", "pident", "length", "evalue", "bitscore", "stitle"]


def _threads(ctx: TaskContext) -> str:
    return str(max(1, ctx.resources.cpus))


def interproscan_command(install_dir: Path | None) -> ShellCommand:
    """`data.interproscan` is the InterProScan installation holding the launcher script."""
    exe = str(install_dir / INTERPROSCAN_EXE) if install_dir is not None else INTERPROSCAN_EXE

    def build(ctx: TaskContext) -> list[str]:
        return [
            exe,
            "-i",
            str(ctx.payload),
            "-f",
            "tsv",
            "-o",
            f"{ctx.key}.ips.tsv",
            "-goterms",
            "-cpu",
            _threads(ctx),
        ]

    return ShellCommand(build)


def makedb_command(source: Path | None) -> ShellCommand:
    def build(ctx: TaskContext) -> list[str]:
        return [DIAMOND_EXE, "makedb", "--in", str(source), "--db", ctx.node, "--threads", _threads(ctx)]

    return ShellCommand(build)


def search_command(db: str) -> ShellCommand:
    """DIAMOND search of one chunk against the value-input index; mode comes from `search_mode`."""

    def build(ctx: TaskContext) -> list[str]:
        return [
            DIAMOND_EXE,
            str(ctx.values["mode"]),
            "--query",
            str(ctx.payload),
            "--db",
            str(ctx.values["index"]),
            "--out",
            f"{ctx.key}.{db}.tsv",
            "--threads",
            _threads(ctx),
            "--outfmt",
            *_DIAMOND_OUTFMT,
        ]

    return ShellCommand(build)


def orthodb_members_command(data_dir: Path | None) -> ShellCommand:
    def build(ctx: TaskContext) -> list[str]:
        return [
            ORTHODB_RESOLVER_EXE,
            "--data-dir",
            str(data_dir),
            "--db",
            str(ctx.payload["db"]),
            "--level",
            str(ctx.payload["level"]),
            "--out",
            f"{ctx.key}.members.txt",
        ]

    return ShellCommand(build)


def orthodb_index_command(data_dir: Path | None) -> ShellCommand:
    def build(ctx: TaskContext) -> list[str]:
        fasta = Path(str(data_dir)) / f"{ctx.payload}.fa"
        return [DIAMOND_EXE, "makedb", "--in", str(fasta), "--db", "member", "--threads", _threads(ctx)]

    return ShellCommand(build)


def orthodb_search_command() -> ShellCommand:
    def build(ctx: TaskContext) -> list[str]:
        chunk, index = ctx.payload
        return [
            DIAMOND_EXE,
            str(ctx.values["mode"]),
            "--query",
            str(chunk),
            "--db",
            str(index),
            "--out",
            "hits.tsv",
            "--threads",
            _threads(ctx),
            "--outfmt",
            *_DIAMOND_OUTFMT,
        ]

    return ShellCommand(build)


@dataclass(frozen=True)
class Toolbox:
    """One command per pipeline step; `makedb`/`search` are keyed by database."""

    interproscan: Command
    makedb: dict[str, Command]
    search: dict[str, Command]
    orthodb_members: Command
    orthodb_index: Command
    orthodb_search: Command
    report: Command

    @classmethod
    def default(cls, cfg: PipelineConfig) -> Toolbox:
        return cls(
            interproscan=interproscan_command(cfg.data.interproscan),
            makedb={db: makedb_command(cfg.data_path(db)) for db in INDEXED_DBS},
            search={db: search_command(db) for db in INDEXED_DBS},
            orthodb_members=orthodb_members_command(cfg.data.orthodb),
            orthodb_index=orthodb_index_command(cfg.data.orthodb),
            orthodb_search=orthodb_search_command(),
            report=CallableCommand(write_report),
        )

    def replace(self, **changes: object) -> Toolbox:
        """Copy with some commands swapped; dict entries are merged per database."""
        merged: dict[str, object] = {}
        for name, value in changes.items():
            current = getattr(self, name)
            if isinstance(current, dict) and isinstance(value, dict):
                merged[name] = {**current, **value}
            else:
                merged[name] = value
        return dataclasses.replace(self, **merged)


__all__ = [
    "Toolbox",
    "interproscan_command",
    "makedb_command",
    "orthodb_index_command",
    "orthodb_members_command",
    "orthodb_search_command",
    "search_command",
]
