"""Chunk splitting for the snapshot phase.

A table is cut into contiguous half-open key ranges
`(None, b1), [b1, b2), ..., [bn, None)`. Two strategies compute the
boundaries:

- uniform: for integer keys whose density `(max - min + 1) / count` lies
  within the configured factor bounds, equal-width buckets of
  `ceil(chunk_size * factor)` keys starting at `min`. One grouped count
  verifies the estimate; a bucket holding more than
  `chunk_size * skew_tolerance` rows rejects it.
- sampled: every `chunk_size`-th distinct key in key order. Chunks then hold
  at most `chunk_size` distinct keys whatever the distribution, at the cost
  of one ordered pass over the key column.

Both are deterministic: the same table contents give the same boundaries.
Boundaries are persisted with the coordinator state and never recomputed on
restore.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Generator, Sequence
from typing import Any

from cdcsource.core.config import SourceConfig
from cdcsource.core.interfaces import ITableScanner
from cdcsource.core.models import ChunkSplit, KeyStats, TableId, TableSchema

logger = logging.getLogger(__name__)


def iter_boundaries(origin: int, stop: int, width: int) -> Generator[int, None, None]:
    """Yield `origin + width, origin + 2 * width, ...` up to and including `stop`."""
    b = origin + width
    while b <= stop:
        yield b
        b += width


def chunks_from_boundaries(
    table_id: TableId,
    key_column: str,
    boundaries: Sequence[Any],
) -> list[ChunkSplit]:
    """Turn sorted boundaries into contiguous chunks covering the whole key domain."""
    edges: list[Any] = [None, *boundaries, None]
    return [
        ChunkSplit(
            split_id=f"{table_id}:{i}",
            table_id=table_id,
            key_column=key_column,
            lower_bound=edges[i],
            upper_bound=edges[i + 1],
        )
        for i in range(len(edges) - 1)
    ]


class ChunkSplitter:
    """Compute the ordered chunk list of a table."""

    def __init__(
        self,
        scanner: ITableScanner,
        *,
        chunk_size: int,
        factor_lower: float = 0.05,
        factor_upper: float = 1_000.0,
        skew_tolerance: float = 2.0,
        incremental: bool = True,
    ) -> None:
        self._scanner = scanner
        self.chunk_size = chunk_size
        self.factor_lower = factor_lower
        self.factor_upper = factor_upper
        self.skew_tolerance = skew_tolerance
        self.incremental = incremental

    @classmethod
    def from_config(cls, scanner: ITableScanner, config: SourceConfig) -> ChunkSplitter:
        return cls(
            scanner,
            chunk_size=config.chunk_size,
            factor_lower=config.distribution_factor_lower,
            factor_upper=config.distribution_factor_upper,
            skew_tolerance=config.skew_tolerance,
            incremental=config.incremental_snapshot,
        )

    def split(self, schema: TableSchema, key_column: str) -> list[ChunkSplit]:
        table_id = schema.table_id
        stats = self._scanner.key_stats(table_id, key_column)

        if stats.count == 0:
            logger.info("%s is empty: no chunks", table_id)
            return []

        if not self.incremental or stats.count <= self.chunk_size:
            return chunks_from_boundaries(table_id, key_column, [])

        boundaries: list[Any] | None = None
        strategy = "uniform"
        if schema.is_numeric(key_column):
            boundaries = self._uniform_boundaries(table_id, key_column, stats)
        if boundaries is None:
            strategy = "sampled"
            boundaries = self._scanner.sample_boundaries(table_id, key_column, every=self.chunk_size)

        chunks = chunks_from_boundaries(table_id, key_column, boundaries)
        logger.info(
            "%s: %d rows -> %d chunks (%s, chunk_size=%d)",
            table_id, stats.count, len(chunks), strategy, self.chunk_size,
        )
        return chunks

    def _uniform_boundaries(
        self,
        table_id: TableId,
        key_column: str,
        stats: KeyStats,
    ) -> list[int] | None:
        lo, hi = int(stats.min), int(stats.max)
        factor = (hi - lo + 1) / stats.count
        if not self.factor_lower <= factor <= self.factor_upper:
            logger.debug("%s: distribution factor %.2f out of bounds", table_id, factor)
            return None

        width = max(1, math.ceil(self.chunk_size * factor))
        counts = self._scanner.bucket_counts(table_id, key_column, origin=lo, width=width)
        worst = max(counts.values(), default=0)
        if worst > self.chunk_size * self.skew_tolerance:
            logger.info(
                "%s: uniform bucket of %d rows exceeds budget %d, sampling instead",
                table_id, worst, self.chunk_size,
            )
            return None

        return list(iter_boundaries(lo, hi, width))
