# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
FASTA splitter: one input file -> ordered, bounded-size chunk files.

Records are streamed from the input (plain or gzip) and written straight into
the current chunk, so memory holds one record at a time. A chunk's token is
emitted only once its file is complete. Keys are the chunk file stems, which
makes them identical across re-runs with the same input and chunk size.

The whole input is checked in one streaming pass before the first chunk is
written, so a malformed file never yields a token.
"""

import asyncio
import gzip
from collections.abc import AsyncIterator, Iterator
from pathlib import Path
from typing import IO

from ..api.errors import ConfigurationError, InputFormatError, InputNotFoundError
from ..api.streams import Token
from ..core.logging import get_logger
from ..core.types import StrPath

_GZ_SUFFIXES = {".gz", ".gzip"}

_log = get_logger("runtime.splitter")


def _open_text(path: Path) -> IO[str]:
    if path.suffix in _GZ_SUFFIXES:
        return gzip.open(path, "rt", encoding="utf-8")
    return path.open("r", encoding="utf-8")


def input_stem(path: StrPath) -> str:
    """`reads.fa.gz` -> `reads`; used for chunk names and report basenames."""
    p = Path(path)
    name = p.name
    for suffix in _GZ_SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    return Path(name).stem


def _fasta_lines(handle: IO[str], path: Path) -> Iterator[tuple[bool, str]]:
    """(is_header, line) for every non-blank line; raises InputFormatError on the first bad line."""
    in_record = False
    for lineno, raw in enumerate(handle, start=1):
        line = raw.rstrip("\r\n")
        if not line.strip():
            continue
        if line.startswith(">"):
            if len(line.strip()) == 1:
                raise InputFormatError(path, f"empty FASTA header at line {lineno}")
            in_record = True
            yield True, line
        elif not in_record:
            raise InputFormatError(path, f"expected a FASTA header ('>') at line {lineno}")
        else:
            yield False, line


def iter_fasta_records(path: Path) -> Iterator[list[str]]:
    """Yield each record as its raw lines (header first), in file order."""
    with _open_text(path) as handle:
        record: list[str] = []
        for is_header, line in _fasta_lines(handle, path):
            if is_header and record:
                yield record
                record = []
            record.append(line)
        if record:
            yield record


def count_records(path: StrPath) -> int:
    p = Path(path)
    if not p.is_file():
        raise InputNotFoundError(p)
    return sum(1 for _ in iter_fasta_records(p))


class FastaSplitter:
    """
    Lazy, order-preserving FASTA chunker.

    Usage:
        splitter = FastaSplitter("proteins.fa", size=10, out_dir=work / "chunks")
        splitter.validate()                 # optional, raises before any token
        async for token in splitter:        # Token(key="proteins.1", payload=Path(...))
            ...
    """

    def __init__(self, path: StrPath, *, size: int, out_dir: StrPath, origin: str | None = None) -> None:
        if size < 1:
            raise ConfigurationError(f"chunk size must be >= 1, got {size}", key="chunk_size")
        self.path = Path(path)
        self.size = int(size)
        self.out_dir = Path(out_dir)
        self.origin = origin
        self.stem = input_stem(self.path)

    def validate(self) -> None:
        """
        Fail with InputNotFoundError / InputFormatError before anything is emitted.

        Reads the whole input once, one line at a time, with the same rules the
        split itself applies, so a bad header deep in the file is caught before
        the first chunk exists.
        """
        if not self.path.is_file():
            raise InputNotFoundError(self.path)
        try:
            with _open_text(self.path) as handle:
                for _ in _fasta_lines(handle, self.path):
                    pass
        except (OSError, EOFError, UnicodeDecodeError) as e:
            raise InputFormatError(self.path, str(e)) from e

    def chunk_path(self, index: int) -> Path:
        return self.out_dir / f"{self.stem}.{index}.fa"

    def iter_chunks(self) -> Iterator[tuple[Path, int]]:
        """Write chunk files one by one; yields (path, record_count) after each is closed."""
        self.validate()
        self.out_dir.mkdir(parents=True, exist_ok=True)

        index = 0
        count = 0
        current: tuple[Path, IO[str]] | None = None  # chunk being written
        try:
            for record in iter_fasta_records(self.path):
                if current is None:
                    index += 1
                    chunk = self.chunk_path(index)
                    current = (chunk, chunk.open("w", encoding="utf-8"))
                current[1].write("\n".join(record))
                current[1].write("\n")
                count += 1
                if count == self.size:
                    chunk, handle = current
                    handle.close()
                    current = None
                    yield chunk, count
                    count = 0
            if current is not None:
                chunk, handle = current
                handle.close()
                current = None
                yield chunk, count
        except UnicodeDecodeError as e:
            raise InputFormatError(self.path, str(e)) from e
        finally:
            if current is not None:
                current[1].close()

    def __aiter__(self) -> AsyncIterator[Token]:
        return self._stream()

    async def _stream(self) -> AsyncIterator[Token]:
        chunks = self.iter_chunks()
        emitted = 0
        while True:
            # file IO runs off the event loop; one chunk per hop
            step = await asyncio.to_thread(next, chunks, None)
            if step is None:
                break
            path, n = step
            emitted += 1
            _log.debug("chunk written", event="splitter.chunk", chunk=path.name, records=n)
            yield Token(key=path.stem, payload=path, origin=self.origin)
        _log.info("input split", event="splitter.done", input=str(self.path), chunks=emitted, size=self.size)


__all__ = ["FastaSplitter", "count_records", "input_stem", "iter_fasta_records"]
