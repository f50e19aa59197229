from __future__ import annotations

import asyncio
import glob
import logging
import os
import threading
from collections import defaultdict
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pyarrow as pa
import pyarrow.parquet as pq

from cdcsource.core.models import ChangeEvent, EventColumns, Operation, Row, TableId

logger = logging.getLogger(__name__)


class CollectingSink:
    """In-memory sink; keeps every emitted event in emission order."""

    def __init__(self) -> None:
        self.events: list[ChangeEvent] = []
        self.flushes = 0

    def emit(self, events: Sequence[ChangeEvent]) -> None:
        self.events.extend(events)

    def flush(self) -> None:
        self.flushes += 1

    def rows(self) -> list[str]:
        """Changelog rows rendered like `+I[101, user_1, Shanghai]`."""
        out: list[str] = []
        for ev in self.events:
            for kind, row in ev.changelog_rows():
                out.append(kind.render(row, list(row)))
        return out

    def materialize(self, key_columns: Sequence[str]) -> dict[tuple[TableId, tuple[Any, ...]], Row]:
        """Replay the events into the row set they describe."""
        state: dict[tuple[TableId, tuple[Any, ...]], Row] = {}
        for ev in self.events:
            if ev.before is not None:
                state.pop((ev.table_id, ev.key(key_columns, image="before")), None)
            if ev.operation is not Operation.DELETE:
                state[(ev.table_id, ev.key(key_columns))] = dict(ev.after)
        return state

    async def wait_for_rows(self, n: int, timeout: float = 10.0) -> list[str]:
        """Wait until at least `n` changelog rows arrived; return them."""

        async def _poll() -> list[str]:
            while True:
                rows = self.rows()
                if len(rows) >= n:
                    return rows
                await asyncio.sleep(0.01)

        return await asyncio.wait_for(_poll(), timeout)


class ParquetEventSink:
    """
    Writes changelog rows as Parquet shards, one directory per table:

        <root>/
          main.customers/shard_00000.parquet
          main.customers/shard_00001.parquet

    Rows are buffered per table; full shards are written as they fill up and
    the remainder on `flush()`. Shard numbering continues after existing files.
    """

    def __init__(
        self,
        root: str | Path,
        *,
        rows_per_shard: int = 250_000,
        codec: str = "zstd",
    ) -> None:
        if rows_per_shard < 1:
            raise ValueError("rows_per_shard must be >= 1")
        self.root = Path(root)
        self.rows_per_shard = rows_per_shard
        self.codec = codec
        self._bufs: dict[str, EventColumns] = {}
        self._next_idx: dict[str, int] = {}
        self.written: list[Path] = []
        # emit runs on the event loop, flush may run in a worker thread
        self._lock = threading.Lock()

    # ---------- helpers ----------

    def _table_dir(self, table: str) -> Path:
        return self.root / table

    def list_shards(self, table: str) -> list[str]:
        return sorted(glob.glob((self._table_dir(table) / "shard_*.parquet").as_posix()))

    def _shard_idx(self, table: str) -> int:
        if table not in self._next_idx:
            self._table_dir(table).mkdir(parents=True, exist_ok=True)
            existing = self.list_shards(table)
            last = int(os.path.basename(existing[-1]).split("_")[1].split(".")[0]) if existing else -1
            self._next_idx[table] = last + 1
        return self._next_idx[table]

    def _atomic_write(self, out_path: Path, table: pa.Table) -> Path | None:
        """Write Parquet atomically (tmp + replace)."""
        if len(table) == 0:
            return None
        tmp = out_path.with_suffix(".tmp")
        pq.write_table(table, tmp, compression=self.codec)
        os.replace(tmp, out_path)
        logger.info("wrote %s (rows=%d, cols=%d)", out_path, len(table), len(table.schema))
        self.written.append(out_path)
        return out_path

    def _write_shard(self, table: str, cols: EventColumns) -> None:
        idx = self._shard_idx(table)
        out = self._table_dir(table) / f"shard_{idx:05d}.parquet"
        if self._atomic_write(out, cols.to_arrow_table()) is not None:
            self._next_idx[table] = idx + 1

    # ---------- IEventSink ----------

    def emit(self, events: Sequence[ChangeEvent]) -> None:
        grouped: dict[str, list[ChangeEvent]] = defaultdict(list)
        for ev in events:
            grouped[str(ev.table_id)].append(ev)

        with self._lock:
            for table, evs in grouped.items():
                buf = self._bufs.setdefault(table, EventColumns())
                buf.extend(EventColumns.from_events(evs))
                while buf.size() >= self.rows_per_shard:
                    self._write_shard(table, buf.take_first(self.rows_per_shard))

    def flush(self) -> None:
        with self._lock:
            for table, buf in self._bufs.items():
                if buf.size() > 0:
                    self._write_shard(table, buf.take_first(buf.size()))
