"""Core data models, configuration, collaborator protocols and errors.

This package provides:
- Data models (TableId, Position, ChunkSplit, StreamSplit, ChangeEvent, GlobalState)
- Configuration (SourceConfig, StartupMode)
- Exception hierarchy (transient vs. fatal errors)
"""

from cdcsource.core.config import SourceConfig, StartupMode
from cdcsource.core.errors import (
    CdcSourceError,
    FatalSourceError,
    InvariantViolationError,
    PositionUnavailableError,
    SchemaMismatchError,
    TransientReadError,
)
from cdcsource.core.models import (
    ChangeEvent,
    Checkpoint,
    ChunkSplit,
    GlobalState,
    NoSplit,
    Operation,
    Position,
    RowKind,
    SplitState,
    StreamSplit,
    TableId,
    Watermark,
)

__all__ = [
    "SourceConfig",
    "StartupMode",
    "CdcSourceError",
    "FatalSourceError",
    "InvariantViolationError",
    "PositionUnavailableError",
    "SchemaMismatchError",
    "TransientReadError",
    "ChangeEvent",
    "Checkpoint",
    "ChunkSplit",
    "GlobalState",
    "NoSplit",
    "Operation",
    "Position",
    "RowKind",
    "SplitState",
    "StreamSplit",
    "TableId",
    "Watermark",
]
