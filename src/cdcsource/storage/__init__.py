"""Durable outputs: checkpoint files and event sinks."""

from cdcsource.storage.checkpoint import FileCheckpointStore
from cdcsource.storage.sinks import CollectingSink, ParquetEventSink

__all__ = [
    "CollectingSink",
    "FileCheckpointStore",
    "ParquetEventSink",
]
