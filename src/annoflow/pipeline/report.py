from __future__ import annotations

"""
Terminal report writer.

Consumes the collected set of per-chunk result files (InterProScan TSV and
DIAMOND tabular output) and writes three files named after the input:

  {basename}.annotation.tsv   one row per hit: query, source, subject, evalue, description
  {basename}.go_terms.tsv     unique (query, GO term, source) triples from InterProScan
  {basename}.summary.json     counts per source

Rows are sorted so identical inputs give byte-identical reports.
"""

import csv
import json
import re
from collections import Counter
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

from ..api.streams import Token
from ..core.logging import get_logger, warn_once
from ..runtime.task import TaskContext

_log = get_logger("pipeline.report")

_GO_RE = re.compile(r"(GO:\d{7})")

ANNOTATION_HEADER = ("query", "source", "subject", "evalue", "description")
GO_HEADER = ("query", "go_term", "source")


def source_label(origin: str | None) -> str:
    """`blast_nr` -> `nr`; InterProScan and unknown origins keep their name."""
    if not origin:
        return "unknown"
    return origin[len("blast_") :] if origin.startswith("blast_") else origin


def _files(payload: Any) -> list[Path]:
    if isinstance(payload, Path):
        return [payload]
    if isinstance(payload, (tuple, list)):
        return [p for p in payload if isinstance(p, Path)]
    return []


def _rows(path: Path) -> Iterator[list[str]]:
    with path.open("r", encoding="utf-8", newline="") as fh:
        for row in csv.reader(fh, delimiter="\t"):
            if row and not row[0].startswith("#"):
                yield row


def _interproscan_rows(path: Path, source: str) -> Iterator[tuple[tuple[str, ...], list[tuple[str, str, str]]]]:
    # protein, md5, length, analysis, signature, description, start, stop, evalue, status,
    # date, interpro accession, interpro description, GO terms, pathways
    for row in _rows(path):
        if len(row) < 9:
            warn_once(_log, f"report.short_row.{source}", "skipping short result row", path=str(path), columns=len(row))
            continue
        hit = (row[0], f"{source}:{row[3]}", row[4], row[8], row[5])
        terms = sorted(set(_GO_RE.findall(row[13]))) if len(row) > 13 else []
        yield hit, [(row[0], t, source) for t in terms]


def _diamond_rows(path: Path, source: str) -> Iterator[tuple[str, ...]]:
    # qseqid sseqid pident length evalue bitscore stitle
    for row in _rows(path):
        if len(row) < 5:
            warn_once(_log, f"report.short_row.{source}", "skipping short result row", path=str(path), columns=len(row))
            continue
        yield (row[0], source, row[1], row[4], row[6] if len(row) > 6 else "")


def summarize(tokens: Iterable[Token]) -> tuple[list[tuple[str, ...]], list[tuple[str, ...]], dict[str, Any]]:
    """Build (annotation rows, GO rows, summary) from collected result tokens."""
    hits: set[tuple[str, ...]] = set()
    go: set[tuple[str, ...]] = set()
    files_by_source: Counter[str] = Counter()

    for token in sorted(tokens, key=lambda t: (t.origin or "", t.key)):
        source = source_label(token.origin)
        for path in _files(token.payload):
            files_by_source[source] += 1
            if source == "interproscan":
                for hit, terms in _interproscan_rows(path, source):
                    hits.add(hit)
                    go.update(terms)
            else:
                hits.update(_diamond_rows(path, source))

    annotation = sorted(hits)
    go_terms = sorted(go)
    hits_by_source = Counter(h[1].split(":", 1)[0] for h in annotation)
    summary = {
        "results": sum(files_by_source.values()),
        "results_by_source": dict(sorted(files_by_source.items())),
        "hits": len(annotation),
        "hits_by_source": dict(sorted(hits_by_source.items())),
        "annotated_queries": len({h[0] for h in annotation}),
        "go_terms": len({g[1] for g in go_terms}),
    }
    return annotation, go_terms, summary


def _write_tsv(path: Path, header: tuple[str, ...], rows: Iterable[tuple[str, ...]]) -> None:
    with path.open("w", encoding="utf-8", newline="") as fh:
        writer = csv.writer(fh, delimiter="\t", lineterminator="\n")
        writer.writerow(header)
        writer.writerows(rows)


def write_report(ctx: TaskContext) -> None:
    basename = str(ctx.values["basename"])
    tokens = ctx.payload if isinstance(ctx.payload, tuple) else ()
    annotation, go_terms, summary = summarize(tokens)
    summary = {"basename": basename, **summary}

    _write_tsv(ctx.work_dir / f"{basename}.annotation.tsv", ANNOTATION_HEADER, annotation)
    _write_tsv(ctx.work_dir / f"{basename}.go_terms.tsv", GO_HEADER, go_terms)
    (ctx.work_dir / f"{basename}.summary.json").write_text(
        json.dumps(summary, indent=2, sort_keys=True) + "\n", encoding="utf-8"
    )
    _log.info("report written", event="report.written", basename=basename, hits=summary["hits"])


REPORT_SUFFIXES = (".annotation.tsv", ".go_terms.tsv", ".summary.json")

__all__ = ["REPORT_SUFFIXES", "source_label", "summarize", "write_report"]
