"""Incremental snapshot + streaming source runtime.

This module wires the pieces together:

1) `build_plan(...)`:
   - Discovers captured tables, validates their metadata against the
     configuration and computes the chunk list of every table.
   - Pure function of the collaborators; used by `IncrementalSource` and by
     the `plan` CLI command.

2) `IncrementalSource`:
   - Restores the coordinator from the latest checkpoint, or builds a fresh
     one from the startup mode.
   - Runs `parallelism` reader workers under a restart supervisor plus a
     periodic checkpoint task.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass

from cdcsource.core.config import SourceConfig, StartupMode
from cdcsource.core.errors import (
    FatalSourceError,
    PositionUnavailableError,
    ReaderFailureError,
    SchemaMismatchError,
)
from cdcsource.core.interfaces import IChangeLog, ICheckpointStore, IEventSink, ITableScanner
from cdcsource.core.models import (
    STREAM_SPLIT_ID,
    Checkpoint,
    ChunkSplit,
    Position,
    TableId,
    TableSchema,
)
from cdcsource.enumeration.enumerator import SplitEnumerator
from cdcsource.reading.snapshot import SnapshotSplitReader
from cdcsource.reading.worker import DeliveryGuard, SourceStats, SplitReaderWorker
from cdcsource.splitting.splitter import ChunkSplitter

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


@dataclass(kw_only=True)
class CapturePlan:
    """Captured tables with their metadata and initial chunk list."""

    schemas: dict[TableId, TableSchema]
    key_columns: dict[TableId, str]
    chunks: dict[TableId, list[ChunkSplit]]
    table_positions: dict[TableId, Position]

    @property
    def chunk_count(self) -> int:
        return sum(len(cs) for cs in self.chunks.values())


def discover_tables(config: SourceConfig, scanner: ITableScanner) -> list[TableId]:
    tables = [t for t in scanner.list_tables() if config.captures(t)]
    if not tables:
        raise SchemaMismatchError(f"no table matches {config.table_pattern!r}")
    return tables


def resolve_key_column(config: SourceConfig, schema: TableSchema) -> str:
    """Check `schema` against the configuration and return its chunk key column."""
    if not schema.primary_key:
        raise SchemaMismatchError(f"{schema.table_id} has no primary key")

    if config.key_column is not None:
        key = config.key_column
        if key not in schema.columns:
            raise SchemaMismatchError(f"{schema.table_id} has no column {key!r} to chunk on")
        # Chunk ranges never match NULL; primary key columns are NOT NULL.
        if key not in schema.primary_key:
            raise SchemaMismatchError(
                f"{schema.table_id}: chunk key {key!r} is not part of the primary key {schema.primary_key}"
            )
    elif len(schema.primary_key) == 1:
        key = schema.primary_key[0]
    else:
        raise SchemaMismatchError(
            f"{schema.table_id} has a composite primary key {schema.primary_key}; set key_column"
        )

    if config.columns is not None:
        missing = [c for c in config.columns if c not in schema.columns]
        if missing:
            raise SchemaMismatchError(f"{schema.table_id} has no columns {missing}")
    return key


def describe_tables(
    config: SourceConfig,
    scanner: ITableScanner,
    table_ids: Iterable[TableId],
) -> tuple[dict[TableId, TableSchema], dict[TableId, str]]:
    schemas: dict[TableId, TableSchema] = {}
    keys: dict[TableId, str] = {}
    for table_id in table_ids:
        schema = scanner.describe(table_id)
        keys[table_id] = resolve_key_column(config, schema)
        schemas[table_id] = schema
    return schemas, keys


def build_plan(config: SourceConfig, scanner: ITableScanner, change_log: IChangeLog) -> CapturePlan:
    tables = discover_tables(config, scanner)
    schemas, keys = describe_tables(config, scanner, tables)

    splitter = ChunkSplitter.from_config(scanner, config)
    chunks: dict[TableId, list[ChunkSplit]] = {}
    table_positions: dict[TableId, Position] = {}
    for table_id in tables:
        # Taken before the emptiness check: a write after it is streamed.
        position = change_log.current_position()
        chunks[table_id] = splitter.split(schemas[table_id], keys[table_id])
        if not chunks[table_id]:
            table_positions[table_id] = position

    plan = CapturePlan(schemas=schemas, key_columns=keys, chunks=chunks, table_positions=table_positions)
    logger.info("plan computed: %d tables, %d chunks", len(tables), plan.chunk_count)
    return plan


def resolve_starting_position(config: SourceConfig, change_log: IChangeLog) -> Position:
    """Stream start for startup modes that skip the snapshot."""
    match config.startup_mode:
        case StartupMode.EARLIEST:
            return change_log.earliest_position()
        case StartupMode.LATEST:
            return change_log.current_position()
        case StartupMode.SPECIFIC:
            if config.startup_position is None:
                raise ValueError("startup_mode 'specific' requires startup_position")
            earliest = change_log.earliest_position()
            if config.startup_position < earliest:
                raise PositionUnavailableError(config.startup_position, earliest)
            return config.startup_position
    raise ValueError(f"startup mode {config.startup_mode.value} takes a snapshot")


# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------


class IncrementalSource:
    """Runs the snapshot phase, then streams the change log, with checkpoints."""

    def __init__(
        self,
        config: SourceConfig,
        *,
        scanner: ITableScanner,
        change_log: IChangeLog,
        sink: IEventSink,
        checkpoint_store: ICheckpointStore | None = None,
    ) -> None:
        self._config = config
        self._scanner = scanner
        self._log = change_log
        self._sink = sink
        self._store = checkpoint_store

        self._stats = SourceStats()
        self._delivery = DeliveryGuard()
        self._coordinator: SplitEnumerator | None = None
        self._schemas: dict[TableId, TableSchema] = {}
        self._workers: dict[str, SplitReaderWorker] = {}
        self._worker_tasks: list[asyncio.Task[None]] = []
        self._checkpoint_task: asyncio.Task[None] | None = None
        self._checkpoint_lock = asyncio.Lock()
        self._checkpoint_id = 0
        self._error: BaseException | None = None
        self._started = False
        self._stopped = False

    @property
    def stats(self) -> SourceStats:
        return self._stats

    @property
    def coordinator(self) -> SplitEnumerator:
        if self._coordinator is None:
            raise RuntimeError("source not started")
        return self._coordinator

    # ---------- lifecycle ----------

    async def start(self) -> None:
        if self._started:
            raise RuntimeError("source already started")
        self._started = True

        restored = await asyncio.to_thread(self._store.load_latest) if self._store else None
        if restored is not None:
            self._coordinator = await self._restore(restored)
        else:
            self._coordinator = await self._fresh()

        snapshot_reader = SnapshotSplitReader(
            self._scanner,
            self._log,
            schemas=self._schemas,
            columns=self._config.columns,
        )
        for i in range(self._config.parallelism):
            reader_id = f"reader-{i}"
            self._worker_tasks.append(asyncio.create_task(self._supervise(reader_id, snapshot_reader)))
        if self._store is not None and self._config.checkpoint_interval_s is not None:
            self._checkpoint_task = asyncio.create_task(self._checkpoint_loop(self._config.checkpoint_interval_s))

        logger.info(
            "source started: %d tables, %d readers, %d chunks pending",
            len(self._schemas), self._config.parallelism, self._coordinator.pending_count,
        )

    async def _fresh(self) -> SplitEnumerator:
        if self._config.snapshot_enabled:
            plan = await asyncio.to_thread(build_plan, self._config, self._scanner, self._log)
            self._schemas = plan.schemas
            return SplitEnumerator.for_snapshot(plan.chunks, table_positions=plan.table_positions)

        tables = await asyncio.to_thread(discover_tables, self._config, self._scanner)
        self._schemas, _ = await asyncio.to_thread(describe_tables, self._config, self._scanner, tables)
        position = await asyncio.to_thread(resolve_starting_position, self._config, self._log)
        logger.info("snapshot skipped (%s), streaming after position %s", self._config.startup_mode.value, position)
        return SplitEnumerator.for_streaming(tables, position)

    async def _restore(self, checkpoint: Checkpoint) -> SplitEnumerator:
        state = checkpoint.global_state
        self._checkpoint_id = checkpoint.checkpoint_id
        self._schemas, keys = await asyncio.to_thread(
            describe_tables, self._config, self._scanner, state.table_ids
        )
        for table_id, chunks in state.chunks.items():
            for chunk in chunks:
                if chunk.key_column != keys[table_id]:
                    raise SchemaMismatchError(
                        f"{chunk.split_id} was split on {chunk.key_column!r}, configured key is {keys[table_id]!r}"
                    )
        logger.info("restoring from checkpoint %d", checkpoint.checkpoint_id)
        return SplitEnumerator.restored(state)

    async def join(self, timeout: float | None = None) -> bool:
        """Wait for the readers to exit; re-raise what stopped the source.

        Returns False if `timeout` elapsed first.
        """
        pending: set[asyncio.Task[None]] = set()
        if self._worker_tasks:
            _, pending = await asyncio.wait(self._worker_tasks, timeout=timeout)
        if self._error is not None:
            raise self._error
        return not pending

    async def stop(self, *, checkpoint: bool = True) -> None:
        """Cancel readers and checkpointing, then optionally take a final checkpoint."""
        if self._stopped:
            return
        self._stopped = True

        tasks = [*self._worker_tasks]
        if self._checkpoint_task is not None:
            tasks.append(self._checkpoint_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if checkpoint and self._error is None and self._coordinator is not None:
            await self.checkpoint()
        logger.info(
            "source stopped: %d chunks, %d snapshot rows, %d stream events, %d checkpoints",
            self._stats.chunks_finished, self._stats.snapshot_rows,
            self._stats.stream_events, self._stats.checkpoints,
        )

    # ---------- checkpoints ----------

    async def checkpoint(self) -> Checkpoint:
        """Acknowledge stream progress, flush the sink and persist the state."""
        coordinator = self.coordinator
        async with self._checkpoint_lock:
            reader_states = []
            for reader_id, worker in self._workers.items():
                state = worker.snapshot_state()
                if state is None:
                    continue
                reader_states.append(state)
                if (
                    state.split_id == STREAM_SPLIT_ID
                    and state.last_emitted_position is not None
                    and coordinator.assignment_of(reader_id) == STREAM_SPLIT_ID
                ):
                    coordinator.report_stream_progress(state.split_id, state.last_emitted_position)

            # Snapshot before flushing: every row the state counts as read is already in the sink.
            self._checkpoint_id += 1
            cp = Checkpoint(
                checkpoint_id=self._checkpoint_id,
                created_at=time.time(),
                global_state=coordinator.snapshot_state(),
                reader_states=reader_states,
            )
            await asyncio.to_thread(self._sink.flush)
            if self._store is not None:
                await asyncio.to_thread(self._store.save, cp)
            self._stats.checkpoints += 1
            return cp

    async def _checkpoint_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.checkpoint()
            except Exception as e:
                self._fail(e)
                return

    # ---------- workers ----------

    async def _supervise(self, reader_id: str, snapshot_reader: SnapshotSplitReader) -> None:
        restarts = 0
        while True:
            worker = SplitReaderWorker(
                reader_id,
                coordinator=self.coordinator,
                snapshot_reader=snapshot_reader,
                change_log=self._log,
                schemas=self._schemas,
                config=self._config,
                sink=self._sink,
                delivery=self._delivery,
                stats=self._stats,
            )
            self._workers[reader_id] = worker
            try:
                await worker.run()
                return
            except FatalSourceError as e:
                self._fail(e)
                return
            except Exception as e:
                self.coordinator.on_reader_failure(reader_id)
                restarts += 1
                self._stats.restarts += 1
                if restarts > self._config.max_worker_restarts:
                    err = ReaderFailureError(f"{reader_id} failed {restarts} times, last error: {e!r}")
                    err.__cause__ = e
                    self._fail(err)
                    return
                logger.warning("%s failed (%s: %s), restarting", reader_id, type(e).__name__, e)

    def _fail(self, exc: BaseException) -> None:
        if self._error is not None:
            return
        self._error = exc
        logger.error("source stopped on fatal error: %s: %s", type(exc).__name__, exc)
        current = asyncio.current_task()
        for task in [*self._worker_tasks, self._checkpoint_task]:
            if task is not None and task is not current:
                task.cancel()
