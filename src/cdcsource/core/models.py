"""Core data models and the changelog column buffer.

This module defines:
- `TableId`, `Position`, `Watermark`: identity and log-offset value types.
- `ChunkSplit` / `StreamSplit`: the two split kinds, used as a tagged union
  (`Split`) and dispatched with `match`.
- `ChangeEvent`: one captured INSERT/UPDATE/DELETE with row images.
- `GlobalState` / `SplitState` / `Checkpoint`: the checkpointable state.
- `EventColumns`: append-only columnar buffer of changelog rows, where every
  row field becomes its own Arrow column.

Design notes
------------
- Chunk ranges are half-open `[lower_bound, upper_bound)`; `None` means
  unbounded on that side.
- Positions compare by SCN only; tokens are `"scn:<n>"`.
- Dynamic columns are stored as strings for Arrow safety, like any payload
  whose type is only known at runtime.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

import pyarrow as pa

from cdcsource.core.errors import InvariantViolationError

Row = dict[str, Any]

STREAM_SPLIT_ID = "stream-split"


# === Identity & positions ===


@dataclass(frozen=True, slots=True, order=True)
class TableId:
    """Qualified table name."""

    schema: str
    table: str

    def __str__(self) -> str:
        return f"{self.schema}.{self.table}"

    @classmethod
    def parse(cls, text: str, default_schema: str = "main") -> TableId:
        """Parse `schema.table` (or a bare `table` in `default_schema`)."""
        schema, sep, table = text.partition(".")
        if not sep:
            return cls(default_schema, schema)
        if not schema or not table:
            raise ValueError(f"invalid table id: {text!r}")
        return cls(schema, table)


@dataclass(frozen=True, slots=True, order=True)
class Position:
    """Point in the change log (system change number)."""

    scn: int

    def __str__(self) -> str:
        return str(self.scn)

    def to_token(self) -> str:
        return f"scn:{self.scn}"

    @classmethod
    def from_token(cls, token: str) -> Position:
        prefix, _, value = token.partition(":")
        if prefix != "scn" or not value.lstrip("-").isdigit():
            raise ValueError(f"not a position token: {token!r}")
        return cls(int(value))


@dataclass(frozen=True, slots=True)
class Watermark:
    """Positions recorded right before and right after a chunk scan."""

    low: Position
    high: Position

    def __post_init__(self) -> None:
        if self.high < self.low:
            raise InvariantViolationError(f"watermark high {self.high} is before low {self.low}")


# === Splits ===


def key_in_range(key: Any, lower: Any, upper: Any) -> bool:
    """True if `key` falls in the half-open range `[lower, upper)`."""
    if lower is not None and key < lower:
        return False
    if upper is not None and key >= upper:
        return False
    return True


@dataclass(frozen=True, slots=True)
class ChunkSplit:
    """One key range of one table, read as a unit during the snapshot phase."""

    split_id: str
    table_id: TableId
    key_column: str
    lower_bound: Any = None
    upper_bound: Any = None

    def contains(self, key: Any) -> bool:
        return key_in_range(key, self.lower_bound, self.upper_bound)


@dataclass(frozen=True, slots=True)
class FinishedChunk:
    """What the stream reader needs to know about a reconciled chunk."""

    split_id: str
    table_id: TableId
    key_column: str
    lower_bound: Any
    upper_bound: Any
    high: Position

    def contains(self, key: Any) -> bool:
        return key_in_range(key, self.lower_bound, self.upper_bound)


@dataclass(frozen=True, slots=True)
class StreamSplit:
    """The single split driving continuous log consumption.

    Entries are read strictly after `starting_position`. Entries already
    reflected in a chunk snapshot (position <= that chunk's high watermark)
    or in an empty table's capture position are skipped by the reader.
    """

    table_ids: tuple[TableId, ...]
    starting_position: Position
    finished_chunks: tuple[FinishedChunk, ...] = ()
    table_positions: dict[TableId, Position] = field(default_factory=dict)
    split_id: str = STREAM_SPLIT_ID

    def resume_from(self, position: Position) -> StreamSplit:
        """Copy of this split that continues after `position`."""
        return replace(self, starting_position=position)

    def snapshot_horizon(self) -> Position:
        """Highest position any chunk or empty table was captured at."""
        positions = [c.high for c in self.finished_chunks] + list(self.table_positions.values())
        return max(positions, default=self.starting_position)


Split = ChunkSplit | StreamSplit


class NoSplit(enum.Enum):
    """Answers to a split request that carry no split."""

    WAIT = "wait"  # chunks are still in flight elsewhere
    EXHAUSTED = "exhausted"  # the stream split is already held


class SplitPhase(str, enum.Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    FINISHED = "FINISHED"


@dataclass(slots=True)
class SplitState:
    """Progress of the split a reader currently holds."""

    split_id: str
    phase: SplitPhase
    last_emitted_position: Position | None = None


class TablePhase(str, enum.Enum):
    CHUNKS_PENDING = "CHUNKS_PENDING"
    ALL_CHUNKS_FINISHED = "ALL_CHUNKS_FINISHED"
    STREAMING = "STREAMING"


# === Change events ===


class Operation(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class RowKind(str, enum.Enum):
    """Changelog row tags."""

    INSERT = "+I"
    UPDATE_BEFORE = "-U"
    UPDATE_AFTER = "+U"
    DELETE = "-D"

    def render(self, row: Row, columns: Sequence[str]) -> str:
        """Render like `+I[101, user_1, Shanghai]`."""
        return f"{self.value}[{', '.join(str(row.get(c)) for c in columns)}]"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """One row-level change, carrying its log position."""

    table_id: TableId
    operation: Operation
    position: Position
    before: Row | None = None
    after: Row | None = None

    def __post_init__(self) -> None:
        needs_before = self.operation in (Operation.UPDATE, Operation.DELETE)
        needs_after = self.operation in (Operation.INSERT, Operation.UPDATE)
        if needs_before != (self.before is not None) or needs_after != (self.after is not None):
            raise ValueError(f"{self.operation.value} event has wrong row images")

    def key(self, key_columns: Sequence[str], *, image: str = "after") -> tuple[Any, ...]:
        """Row identity taken from the requested image."""
        row = self.after if image == "after" else self.before
        if row is None:
            raise ValueError(f"{self.operation.value} event has no {image} image")
        return tuple(row[c] for c in key_columns)

    def project(self, columns: Sequence[str] | None) -> ChangeEvent:
        """Restrict both row images to `columns` (None keeps everything)."""
        if columns is None:
            return self

        def _cut(row: Row | None) -> Row | None:
            return None if row is None else {c: row.get(c) for c in columns}

        return replace(self, before=_cut(self.before), after=_cut(self.after))

    def changelog_rows(self) -> list[tuple[RowKind, Row]]:
        match self.operation:
            case Operation.INSERT:
                return [(RowKind.INSERT, self.after)]
            case Operation.UPDATE:
                return [(RowKind.UPDATE_BEFORE, self.before), (RowKind.UPDATE_AFTER, self.after)]
            case Operation.DELETE:
                return [(RowKind.DELETE, self.before)]
        raise RuntimeError(f"unsupported operation {self.operation}")


# === Table metadata ===


@dataclass(frozen=True, slots=True)
class TableSchema:
    """Columns and primary key of a source table."""

    table_id: TableId
    columns: tuple[str, ...]
    primary_key: tuple[str, ...]
    numeric_columns: frozenset[str] = frozenset()

    def is_numeric(self, column: str) -> bool:
        return column in self.numeric_columns

    def projection(self, columns: Sequence[str] | None) -> tuple[str, ...]:
        """Emitted columns: primary key first, then the selected columns."""
        if columns is None:
            return self.columns
        return (*self.primary_key, *(c for c in columns if c not in self.primary_key))


@dataclass(frozen=True, slots=True)
class KeyStats:
    min: Any
    max: Any
    count: int


# === Checkpointable state ===


@dataclass(slots=True)
class GlobalState:
    """Everything the coordinator owns; round-trips through checkpoints."""

    table_ids: list[TableId]
    chunks: dict[TableId, list[ChunkSplit]]
    finished: dict[str, Watermark] = field(default_factory=dict)
    assigned: dict[str, str] = field(default_factory=dict)  # split_id -> reader_id
    table_positions: dict[TableId, Position] = field(default_factory=dict)
    stream_split: StreamSplit | None = None
    stream_assigned_to: str | None = None

    def copy(self) -> GlobalState:
        return GlobalState(
            table_ids=list(self.table_ids),
            chunks={t: list(cs) for t, cs in self.chunks.items()},
            finished=dict(self.finished),
            assigned=dict(self.assigned),
            table_positions=dict(self.table_positions),
            stream_split=self.stream_split,
            stream_assigned_to=self.stream_assigned_to,
        )


@dataclass(slots=True)
class Checkpoint:
    checkpoint_id: int
    created_at: float
    global_state: GlobalState
    reader_states: list[SplitState] = field(default_factory=list)


# === Changelog column buffer ===


@dataclass(slots=True)
class EventColumns:
    """Dynamic columnar buffer of changelog rows.

    - Base columns (`cdc_table`, `cdc_kind`, `cdc_position` in Arrow) are always
      present and typed.
    - Row fields become dynamic string columns on first appearance.
    """

    table: list[str] = field(default_factory=list)
    kind: list[str] = field(default_factory=list)
    position: list[int] = field(default_factory=list)

    dyn: dict[str, list[str | None]] = field(default_factory=dict)
    _rows: int = 0

    @staticmethod
    def from_events(events: Iterable[ChangeEvent]) -> EventColumns:
        buf = EventColumns()
        for ev in events:
            for kind, row in ev.changelog_rows():
                buf.append(str(ev.table_id), kind, ev.position, row)
        return buf

    def size(self) -> int:
        return self._rows

    def _ensure_dyn_col(self, name: str) -> list[str | None]:
        col = self.dyn.get(name)
        if col is None:
            col = [None] * self._rows
            self.dyn[name] = col
        return col

    def append(self, table: str, kind: RowKind, position: Position, row: Row) -> None:
        self.table.append(table)
        self.kind.append(kind.value)
        self.position.append(position.scn)
        self._rows += 1
        # Pad existing dynamic columns with None for the new row
        for col in self.dyn.values():
            col.append(None)
        for k, v in row.items():
            self._ensure_dyn_col(k)[-1] = None if v is None else str(v)

    def extend(self, other: EventColumns) -> int:
        """Merge `other` into self; align dynamic columns by name."""
        n = other.size()
        if n == 0:
            return 0

        old_rows = self._rows
        self.table.extend(other.table)
        self.kind.extend(other.kind)
        self.position.extend(other.position)
        self._rows += n

        for k in set(self.dyn) | set(other.dyn):
            if k not in self.dyn:
                self.dyn[k] = [None] * old_rows
            ocol = other.dyn.get(k)
            self.dyn[k].extend(ocol if ocol is not None else [None] * n)
        return n

    def take_first(self, n: int) -> EventColumns:
        """Detach and return the first `n` rows as a new buffer."""
        out = EventColumns()
        out.table, self.table = self.table[:n], self.table[n:]
        out.kind, self.kind = self.kind[:n], self.kind[n:]
        out.position, self.position = self.position[:n], self.position[n:]
        for k, col in self.dyn.items():
            out.dyn[k] = col[:n]
            self.dyn[k] = col[n:]
        out._rows = min(n, self._rows)
        self._rows -= out._rows
        return out

    def to_arrow_table(self) -> pa.Table:
        """Arrow table in append order with a deterministic schema."""
        fields = [
            pa.field("cdc_table", pa.string()),
            pa.field("cdc_kind", pa.string()),
            pa.field("cdc_position", pa.int64()),
        ]
        arrays: dict[str, pa.Array] = {
            "cdc_table": pa.array(self.table, type=pa.string()),
            "cdc_kind": pa.array(self.kind, type=pa.string()),
            "cdc_position": pa.array(self.position, type=pa.int64()),
        }
        for name in sorted(self.dyn):
            fields.append(pa.field(name, pa.string()))
            arrays[name] = pa.array(self.dyn[name], type=pa.string())
        return pa.Table.from_pydict(arrays, schema=pa.schema(fields))
