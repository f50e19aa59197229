"""Exception hierarchy for the capture engine.

Two families matter to the runtime:

- `TransientReadError`: a scan or log poll failed for a reason worth retrying
  (dropped connection, lock timeout). Readers retry these with backoff.
- `FatalSourceError`: the job cannot continue without risking lost or
  duplicated history. Never retried; the source stops and re-raises.

Anything else raised inside a reader is treated as a reader failure: its split
goes back to the coordinator for reassignment.
"""

from __future__ import annotations


class CdcSourceError(Exception):
    """Base class for engine errors."""


class TransientReadError(CdcSourceError):
    """Retryable failure while scanning a chunk or polling the change log."""


class FatalSourceError(CdcSourceError):
    """Unrecoverable failure; the source must stop."""


class PositionUnavailableError(FatalSourceError):
    """The requested log position is older than what the log still retains."""

    def __init__(self, requested: object, earliest: object) -> None:
        super().__init__(
            f"log position {requested} is no longer available (earliest retained: {earliest})"
        )
        self.requested = requested
        self.earliest = earliest


class InvariantViolationError(FatalSourceError):
    """Coordination bug: conflicting reports, duplicate stream split, etc."""


class SchemaMismatchError(FatalSourceError):
    """Configured key or projected columns do not match table metadata."""


class ReaderFailureError(CdcSourceError):
    """A reader kept failing past its restart budget."""
