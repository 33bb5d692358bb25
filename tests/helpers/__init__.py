from .commands import Recorder, chunk_echo, fails, noop, writes
from .fasta import fasta_text, headers, write_fasta

__all__ = [
    "Recorder",
    "chunk_echo",
    "fails",
    "fasta_text",
    "headers",
    "noop",
    "write_fasta",
    "writes",
]
