"""Split readers: watermark-bracketed chunk reads, log streaming and the workers driving them."""

from cdcsource.reading.snapshot import SnapshotResult, SnapshotSplitReader
from cdcsource.reading.stream import StreamSplitReader
from cdcsource.reading.worker import DeliveryGuard, SourceStats, SplitReaderWorker

__all__ = [
    "DeliveryGuard",
    "SnapshotResult",
    "SnapshotSplitReader",
    "SourceStats",
    "SplitReaderWorker",
    "StreamSplitReader",
]
