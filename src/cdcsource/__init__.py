from __future__ import annotations

from .core.config import SourceConfig, StartupMode
from .core.models import ChangeEvent, ChunkSplit, Position, StreamSplit, TableId, Watermark
from .orchestration.source import IncrementalSource, build_plan
from .storage.checkpoint import FileCheckpointStore
from .storage.sinks import CollectingSink, ParquetEventSink

__all__ = [
    "SourceConfig",
    "StartupMode",
    "ChangeEvent",
    "ChunkSplit",
    "Position",
    "StreamSplit",
    "TableId",
    "Watermark",
    "IncrementalSource",
    "build_plan",
    "FileCheckpointStore",
    "CollectingSink",
    "ParquetEventSink",
]
