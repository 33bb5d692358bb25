from __future__ import annotations

import gzip
from pathlib import Path


def fasta_text(n: int, *, prefix: str = "seq", residues: str = "MKTAYIAKQR") -> str:
    lines = []
    for i in range(1, n + 1):
        lines.append(f">{prefix}{i} synthetic record {i}")
        # two sequence lines per record to exercise multi-line records
        lines.append(residues)
        lines.append(residues[::-1])
    return "\n".join(lines) + ("\n" if lines else "")


def write_fasta(path: Path, n: int, *, prefix: str = "seq", gz: bool = False) -> Path:
    """Write `n` records to `path` (gzip when `gz`), creating parent dirs."""
    path.parent.mkdir(parents=True, exist_ok=True)
    text = fasta_text(n, prefix=prefix)
    if gz:
        with gzip.open(path, "wt", encoding="utf-8") as fh:
            fh.write(text)
    else:
        path.write_text(text, encoding="utf-8")
    return path


def headers(path: Path) -> list[str]:
    return [ln[1:].split()[0] for ln in path.read_text(encoding="utf-8").splitlines() if ln.startswith(">")]
