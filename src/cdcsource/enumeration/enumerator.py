"""Split coordinator: owns the global split lifecycle.

Per table: chunks pending -> all chunks finished -> streaming. The stream
split covers the whole captured table set and is built once, when the last
chunk finishes, starting at the smallest low watermark.

Every public method is synchronous and is called from the event loop only,
so the coordinator behaves as a single-writer actor without locks. Nothing
here performs I/O.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from cdcsource.core.errors import InvariantViolationError
from cdcsource.core.models import (
    ChunkSplit,
    FinishedChunk,
    GlobalState,
    NoSplit,
    Position,
    Split,
    StreamSplit,
    TableId,
    TablePhase,
    Watermark,
)

logger = logging.getLogger(__name__)


class SplitEnumerator:
    """Assigns chunk and stream splits to readers and tracks their progress."""

    def __init__(self, state: GlobalState) -> None:
        self._state = state.copy()
        self._order: dict[str, int] = {}
        self._chunks_by_id: dict[str, ChunkSplit] = {}
        self._pending: list[str] = []
        self._index_chunks()
        self._rebuild_pending()

    # ---------- construction ----------

    @classmethod
    def for_snapshot(
        cls,
        chunks: dict[TableId, list[ChunkSplit]],
        *,
        table_positions: dict[TableId, Position] | None = None,
    ) -> SplitEnumerator:
        """Fresh coordinator for a run that starts with the snapshot phase.

        `table_positions` records, for tables with zero chunks, the log
        position at which they were found empty.
        """
        return cls(
            GlobalState(
                table_ids=list(chunks),
                chunks={t: list(cs) for t, cs in chunks.items()},
                table_positions=dict(table_positions or {}),
            )
        )

    @classmethod
    def for_streaming(cls, table_ids: Iterable[TableId], starting_position: Position) -> SplitEnumerator:
        """Fresh coordinator for a run that skips the snapshot phase."""
        table_ids = list(table_ids)
        state = GlobalState(
            table_ids=table_ids,
            chunks={t: [] for t in table_ids},
            stream_split=StreamSplit(table_ids=tuple(table_ids), starting_position=starting_position),
        )
        return cls(state)

    def _index_chunks(self) -> None:
        i = 0
        for table_id in self._state.table_ids:
            for chunk in self._state.chunks.get(table_id, []):
                if chunk.split_id in self._chunks_by_id:
                    raise InvariantViolationError(f"duplicate chunk id {chunk.split_id}")
                self._chunks_by_id[chunk.split_id] = chunk
                self._order[chunk.split_id] = i
                i += 1

    def _rebuild_pending(self) -> None:
        self._pending = [
            sid
            for sid in sorted(self._chunks_by_id, key=self._order.__getitem__)
            if sid not in self._state.finished and sid not in self._state.assigned
        ]

    # ---------- queries ----------

    @property
    def all_chunks_finished(self) -> bool:
        return len(self._state.finished) == len(self._chunks_by_id)

    @property
    def stream_split(self) -> StreamSplit | None:
        return self._state.stream_split

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def table_phase(self, table_id: TableId) -> TablePhase:
        if table_id not in self._state.chunks:
            raise KeyError(f"table {table_id} is not captured")
        if self._state.stream_assigned_to is not None:
            return TablePhase.STREAMING
        chunks = self._state.chunks[table_id]
        if all(c.split_id in self._state.finished for c in chunks):
            return TablePhase.ALL_CHUNKS_FINISHED
        return TablePhase.CHUNKS_PENDING

    def assignment_of(self, reader_id: str) -> str | None:
        if self._state.stream_assigned_to == reader_id and self._state.stream_split is not None:
            return self._state.stream_split.split_id
        for sid, holder in self._state.assigned.items():
            if holder == reader_id:
                return sid
        return None

    # ---------- operations ----------

    def request_split(self, reader_id: str) -> Split | NoSplit:
        """Hand the next split to an idle reader.

        Chunks go out in splitter order. With no pending chunk left, the
        answer is WAIT while chunks are in flight, the stream split once all
        chunks finished, and EXHAUSTED while the stream split is held.
        """
        held = self.assignment_of(reader_id)
        if held is not None:
            raise InvariantViolationError(f"reader {reader_id} requested a split while holding {held}")

        if self._pending:
            sid = self._pending.pop(0)
            self._state.assigned[sid] = reader_id
            logger.debug("assigned %s to %s", sid, reader_id)
            return self._chunks_by_id[sid]

        if not self.all_chunks_finished:
            return NoSplit.WAIT

        if self._state.stream_split is None:
            self._state.stream_split = self._build_stream_split()

        if self._state.stream_assigned_to is not None:
            return NoSplit.EXHAUSTED

        self._state.stream_assigned_to = reader_id
        split = self._state.stream_split
        logger.info("stream split assigned to %s, reading after position %s", reader_id, split.starting_position)
        return split

    def report_split_finished(self, split_id: str, watermark: Watermark) -> None:
        """Mark a chunk finished with its watermark.

        A repeated report with the same watermark is a no-op; a different
        watermark for a finished chunk is a coordination bug.
        """
        if split_id not in self._chunks_by_id:
            raise InvariantViolationError(f"unknown chunk {split_id}")
        if watermark.high < watermark.low:
            raise InvariantViolationError(f"{split_id}: watermark high before low")

        previous = self._state.finished.get(split_id)
        if previous is not None:
            if previous != watermark:
                raise InvariantViolationError(
                    f"{split_id} already finished with {previous}, reported again with {watermark}"
                )
            return

        self._state.finished[split_id] = watermark
        self._state.assigned.pop(split_id, None)
        if split_id in self._pending:
            self._pending.remove(split_id)
        logger.info(
            "chunk %s finished [%s, %s] (%d/%d)",
            split_id, watermark.low, watermark.high, len(self._state.finished), len(self._chunks_by_id),
        )

    def report_stream_progress(self, split_id: str, position: Position) -> None:
        """Acknowledge that the stream split was consumed through `position`."""
        split = self._state.stream_split
        if split is None or split.split_id != split_id:
            raise InvariantViolationError(f"progress reported for unknown stream split {split_id}")
        if position < split.starting_position:
            raise InvariantViolationError(
                f"stream progress moved backwards: {position} < {split.starting_position}"
            )
        self._state.stream_split = split.resume_from(position)

    def on_reader_failure(self, reader_id: str) -> None:
        """Return whatever `reader_id` held to the pool."""
        for sid in [s for s, holder in self._state.assigned.items() if holder == reader_id]:
            del self._state.assigned[sid]
            self._pending.append(sid)
            logger.warning("reader %s failed: chunk %s back to pending", reader_id, sid)
        self._pending.sort(key=self._order.__getitem__)

        if self._state.stream_assigned_to == reader_id:
            self._state.stream_assigned_to = None
            if self._state.stream_split is None:
                raise InvariantViolationError(f"reader {reader_id} held a stream split that was never built")
            logger.warning(
                "reader %s failed: stream split reissued after position %s",
                reader_id, self._state.stream_split.starting_position,
            )

    def snapshot_state(self) -> GlobalState:
        return self._state.copy()

    def restore_state(self, state: GlobalState) -> None:
        """Replace the coordinator state; assignments were not durable and reset to pending."""
        restored = state.copy()
        restored.assigned.clear()
        restored.stream_assigned_to = None
        self._state = restored
        self._order.clear()
        self._chunks_by_id.clear()
        self._index_chunks()
        self._rebuild_pending()
        logger.info(
            "restored coordinator: %d/%d chunks finished, %d pending, stream split %s",
            len(self._state.finished), len(self._chunks_by_id), len(self._pending),
            "built" if self._state.stream_split else "not built",
        )

    @classmethod
    def restored(cls, state: GlobalState) -> SplitEnumerator:
        enumerator = cls(GlobalState(table_ids=[], chunks={}))
        enumerator.restore_state(state)
        return enumerator

    # ---------- helpers ----------

    def _build_stream_split(self) -> StreamSplit:
        if self._state.stream_split is not None:
            raise InvariantViolationError("stream split already built")

        finished: list[FinishedChunk] = []
        for table_id in self._state.table_ids:
            for chunk in self._state.chunks[table_id]:
                wm = self._state.finished[chunk.split_id]
                finished.append(
                    FinishedChunk(
                        split_id=chunk.split_id,
                        table_id=table_id,
                        key_column=chunk.key_column,
                        lower_bound=chunk.lower_bound,
                        upper_bound=chunk.upper_bound,
                        high=wm.high,
                    )
                )

        candidates = [self._state.finished[fc.split_id].low for fc in finished]
        candidates += list(self._state.table_positions.values())
        if not candidates:
            raise InvariantViolationError("no chunk or table position to start streaming from")

        split = StreamSplit(
            table_ids=tuple(self._state.table_ids),
            starting_position=min(candidates),
            finished_chunks=tuple(finished),
            table_positions=dict(self._state.table_positions),
        )
        logger.info(
            "all %d chunks finished, stream split starts after position %s",
            len(finished), split.starting_position,
        )
        return split
