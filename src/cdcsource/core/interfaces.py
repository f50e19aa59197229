from __future__ import annotations

from collections.abc import Collection, Sequence
from typing import Any, Protocol, runtime_checkable

from cdcsource.core.models import ChangeEvent, Checkpoint, KeyStats, Position, Row, TableId, TableSchema


# ---------------------------------------------------------------------------
# ITableScanner
# ---------------------------------------------------------------------------

@runtime_checkable
class ITableScanner(Protocol):
    """
    Read access to the source tables.

    Domain expectations:
    - Every call is a bounded operation: implementations acquire a connection
      for the call and release it before returning, on every exit path.
    - Retryable failures surface as `TransientReadError`.
    """

    def list_tables(self) -> list[TableId]:
        """Return all user tables visible to the source."""
        ...

    def describe(self, table_id: TableId) -> TableSchema:
        """Return columns, primary key and numeric column set of a table."""
        ...

    def key_stats(self, table_id: TableId, key_column: str) -> KeyStats:
        """Return (min, max, count) of the key column."""
        ...

    def bucket_counts(
        self,
        table_id: TableId,
        key_column: str,
        *,
        origin: int,
        width: int,
    ) -> dict[int, int]:
        """
        Count rows per equal-width bucket.

        Bucket `b` holds keys in `[origin + b * width, origin + (b + 1) * width)`.
        Only numeric keys are bucketed.
        """
        ...

    def sample_boundaries(self, table_id: TableId, key_column: str, *, every: int) -> list[Any]:
        """
        Return every `every`-th distinct key in ascending key order, skipping
        the smallest key. Used as chunk boundaries for skewed or non-numeric keys.
        """
        ...

    def scan(
        self,
        table_id: TableId,
        key_column: str,
        *,
        lower: Any,
        upper: Any,
        columns: Sequence[str] | None = None,
    ) -> list[Row]:
        """Return rows with `lower <= key < upper` (None = unbounded), ordered by key."""
        ...


# ---------------------------------------------------------------------------
# IChangeLog
# ---------------------------------------------------------------------------

@runtime_checkable
class IChangeLog(Protocol):
    """
    Position-addressable change log (the log-mining collaborator).

    Domain expectations:
    - Entries come back in strictly increasing position order.
    - Reading from a position the log no longer retains raises
      `PositionUnavailableError`, never silently skips.
    """

    def current_position(self) -> Position:
        """Position of the newest committed entry."""
        ...

    def earliest_position(self) -> Position:
        """Entries strictly after this position are still retained."""
        ...

    def read(
        self,
        table_ids: Collection[TableId],
        *,
        after: Position,
        up_to: Position | None = None,
        limit: int | None = None,
    ) -> list[ChangeEvent]:
        """Return entries of `table_ids` with `after < position <= up_to`."""
        ...


# ---------------------------------------------------------------------------
# IEventSink
# ---------------------------------------------------------------------------

@runtime_checkable
class IEventSink(Protocol):
    """
    Ordered sink for emitted change events.

    Domain expectations:
    - `emit` receives either one whole chunk result or one stream batch;
      within a call, events are in emission order.
    """

    def emit(self, events: Sequence[ChangeEvent]) -> None:
        ...

    def flush(self) -> None:
        """Persist anything buffered; called on every checkpoint."""
        ...


# ---------------------------------------------------------------------------
# ICheckpointStore
# ---------------------------------------------------------------------------

@runtime_checkable
class ICheckpointStore(Protocol):
    """Durable storage for coordinator + reader state."""

    def save(self, checkpoint: Checkpoint) -> None:
        ...

    def load_latest(self) -> Checkpoint | None:
        ...
