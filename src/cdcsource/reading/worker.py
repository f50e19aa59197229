"""Reader workers: pull splits from the coordinator and run them.

One worker holds at most one split. Blocking database work runs through
`asyncio.to_thread`; emission and the coordinator report happen on the event
loop without an `await` in between, so a cancelled or failed chunk read never
leaves a partially emitted chunk behind.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import TypeVar

from cdcsource.core.config import SourceConfig
from cdcsource.core.errors import TransientReadError
from cdcsource.core.interfaces import IChangeLog, IEventSink
from cdcsource.core.models import (
    ChangeEvent,
    ChunkSplit,
    NoSplit,
    Position,
    SplitPhase,
    SplitState,
    StreamSplit,
    TableId,
    TableSchema,
)
from cdcsource.enumeration.enumerator import SplitEnumerator
from cdcsource.reading.snapshot import SnapshotSplitReader
from cdcsource.reading.stream import StreamSplitReader

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(kw_only=True)
class SourceStats:
    """Mutable counters shared by all workers of a source."""

    chunks_finished: int = 0
    snapshot_rows: int = 0
    stream_events: int = 0
    retries: int = 0
    restarts: int = 0
    checkpoints: int = 0


class DeliveryGuard:
    """Drops stream events at or before the highest position already delivered.

    A reissued stream split restarts from the last acknowledged position, which
    may be behind what this process already handed to the sink.
    """

    def __init__(self, delivered_through: Position | None = None) -> None:
        self.delivered_through = delivered_through

    def admit(self, events: Sequence[ChangeEvent]) -> list[ChangeEvent]:
        mark = self.delivered_through
        out = [ev for ev in events if mark is None or ev.position > mark]
        if out:
            self.delivered_through = out[-1].position
        return out


class SplitReaderWorker:
    """Runs chunk splits until none are left, then the stream split if it gets it."""

    def __init__(
        self,
        reader_id: str,
        *,
        coordinator: SplitEnumerator,
        snapshot_reader: SnapshotSplitReader,
        change_log: IChangeLog,
        schemas: Mapping[TableId, TableSchema],
        config: SourceConfig,
        sink: IEventSink,
        delivery: DeliveryGuard,
        stats: SourceStats,
    ) -> None:
        self.reader_id = reader_id
        self._coordinator = coordinator
        self._snapshot = snapshot_reader
        self._log = change_log
        self._schemas = schemas
        self._config = config
        self._sink = sink
        self._delivery = delivery
        self._stats = stats
        self._state: SplitState | None = None

    def snapshot_state(self) -> SplitState | None:
        """State of the split held right now, if any."""
        if self._state is None:
            return None
        return SplitState(self._state.split_id, self._state.phase, self._state.last_emitted_position)

    async def run(self) -> None:
        waits = 0
        while True:
            split = self._coordinator.request_split(self.reader_id)
            match split:
                case ChunkSplit():
                    waits = 0
                    await self._run_chunk(split)
                case StreamSplit():
                    await self._run_stream(split)
                case NoSplit.WAIT:
                    waits += 1
                    await asyncio.sleep(self._idle_delay(waits))
                case NoSplit.EXHAUSTED:
                    logger.debug("%s: nothing left to read", self.reader_id)
                    return

    # ---------- chunk ----------

    async def _run_chunk(self, split: ChunkSplit) -> None:
        self._state = SplitState(split.split_id, SplitPhase.ASSIGNED)
        result = await self._with_retries(lambda: self._snapshot.read(split), split.split_id)

        # No await from here on: the chunk is emitted and finished as one step.
        self._sink.emit(result.events)
        self._coordinator.report_split_finished(split.split_id, result.watermark)
        self._state = None
        self._stats.chunks_finished += 1
        self._stats.snapshot_rows += len(result.events)
        logger.debug("%s: emitted %d rows of %s", self.reader_id, len(result.events), split.split_id)

    # ---------- stream ----------

    async def _run_stream(self, split: StreamSplit) -> None:
        reader = StreamSplitReader(
            self._log,
            split,
            schemas=self._schemas,
            columns=self._config.columns,
            fetch_size=self._config.fetch_size,
        )
        self._state = SplitState(split.split_id, SplitPhase.ASSIGNED, split.starting_position)
        idle = 0
        while True:
            before = reader.position
            events = await self._with_retries(reader.poll, split.split_id)

            admitted = self._delivery.admit(events)
            if admitted:
                self._sink.emit(admitted)
                self._stats.stream_events += len(admitted)
            self._state.last_emitted_position = reader.position

            if reader.position > before:
                idle = 0
                continue
            idle += 1
            await asyncio.sleep(self._idle_delay(idle))

    # ---------- helpers ----------

    def _idle_delay(self, attempt: int) -> float:
        delay = self._config.poll_interval_s * (2 ** min(attempt - 1, 16))
        return min(delay, self._config.max_poll_interval_s)

    async def _with_retries(self, fn: Callable[[], T], what: str) -> T:
        """Run blocking `fn` in a thread, retrying transient failures with linear backoff."""
        tries = 0
        while True:
            tries += 1
            try:
                return await asyncio.to_thread(fn)
            except TransientReadError as e:
                if tries > self._config.max_retries:
                    raise
                self._stats.retries += 1
                logger.warning("%s: %s failed (attempt %d): %s", self.reader_id, what, tries, e)
                await asyncio.sleep(self._config.retry_backoff_s * tries)
