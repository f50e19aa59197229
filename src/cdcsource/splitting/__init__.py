"""Key-range splitting of captured tables into snapshot chunks."""

from cdcsource.splitting.splitter import ChunkSplitter, chunks_from_boundaries, iter_boundaries

__all__ = [
    "ChunkSplitter",
    "chunks_from_boundaries",
    "iter_boundaries",
]
