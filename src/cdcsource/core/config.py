from __future__ import annotations

import enum
import re
from dataclasses import dataclass

from cdcsource.core.models import Position, TableId


class StartupMode(str, enum.Enum):
    """Where capture begins."""

    INITIAL = "initial"  # snapshot the tables, then stream
    EARLIEST = "earliest"  # skip the snapshot, stream from the oldest retained entry
    LATEST = "latest"  # skip the snapshot, stream from the current log end
    SPECIFIC = "specific"  # skip the snapshot, stream after `startup_position`


@dataclass(frozen=True)
class SourceConfig:
    """Configuration for an incremental snapshot + streaming source."""

    table_pattern: str  # regex matched against "schema.table"
    key_column: str | None = None  # defaults to the table's single-column primary key
    columns: tuple[str, ...] | None = None  # projected columns; None keeps all
    chunk_size: int = 8_096
    incremental_snapshot: bool = True  # False: one whole-table chunk per table
    startup_mode: StartupMode = StartupMode.INITIAL
    startup_position: Position | None = None
    parallelism: int = 4
    # Splitting
    distribution_factor_lower: float = 0.05
    distribution_factor_upper: float = 1_000.0
    skew_tolerance: float = 2.0  # max bucket rows / chunk_size before falling back to sampling
    # Reading
    fetch_size: int = 1_024  # log entries per stream poll
    poll_interval_s: float = 0.05
    max_poll_interval_s: float = 1.0
    max_retries: int = 3
    retry_backoff_s: float = 0.1
    # Runtime
    checkpoint_interval_s: float | None = 1.0  # None disables periodic checkpoints
    max_worker_restarts: int = 3

    def __post_init__(self) -> None:
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if self.parallelism < 1:
            raise ValueError("parallelism must be >= 1")
        if self.fetch_size < 1:
            raise ValueError("fetch_size must be >= 1")
        if not 0 < self.distribution_factor_lower <= self.distribution_factor_upper:
            raise ValueError("distribution factor bounds must satisfy 0 < lower <= upper")
        if self.skew_tolerance < 1.0:
            raise ValueError("skew_tolerance must be >= 1.0")
        if self.poll_interval_s <= 0 or self.max_poll_interval_s < self.poll_interval_s:
            raise ValueError("poll intervals must satisfy 0 < poll_interval_s <= max_poll_interval_s")
        if self.startup_mode is StartupMode.SPECIFIC and self.startup_position is None:
            raise ValueError("startup_mode 'specific' requires startup_position")
        try:
            re.compile(self.table_pattern)
        except re.error as e:
            raise ValueError(f"invalid table_pattern: {e}") from e

    @property
    def snapshot_enabled(self) -> bool:
        return self.startup_mode is StartupMode.INITIAL

    def captures(self, table_id: TableId) -> bool:
        """Whether `table_id` matches the captured table pattern."""
        return re.fullmatch(self.table_pattern, str(table_id)) is not None
