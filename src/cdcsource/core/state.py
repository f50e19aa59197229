"""Checkpoint document schema.

pydantic models describing the JSON written to checkpoint files, with
conversions to and from the domain dataclasses in `cdcsource.core.models`.
Positions travel as opaque tokens; key bounds go through the tagged codec.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from cdcsource.core.codec import decode_value, encode_value
from cdcsource.core.models import (
    Checkpoint,
    ChunkSplit,
    FinishedChunk,
    GlobalState,
    Position,
    SplitPhase,
    SplitState,
    StreamSplit,
    TableId,
    Watermark,
)

CHECKPOINT_VERSION = 1

EncodedBound = dict[str, Any] | None


class WatermarkDoc(BaseModel):
    low: str
    high: str


class ChunkSplitDoc(BaseModel):
    split_id: str
    table_id: str
    key_column: str
    lower_bound: EncodedBound = None
    upper_bound: EncodedBound = None


class FinishedChunkDoc(BaseModel):
    split_id: str
    table_id: str
    key_column: str
    lower_bound: EncodedBound = None
    upper_bound: EncodedBound = None
    high: str


class StreamSplitDoc(BaseModel):
    split_id: str
    table_ids: list[str]
    starting_position: str
    finished_chunks: list[FinishedChunkDoc] = Field(default_factory=list)
    table_positions: dict[str, str] = Field(default_factory=dict)


class GlobalStateDoc(BaseModel):
    table_ids: list[str]
    chunks: dict[str, list[ChunkSplitDoc]]
    finished: dict[str, WatermarkDoc] = Field(default_factory=dict)
    assigned: dict[str, str] = Field(default_factory=dict)
    table_positions: dict[str, str] = Field(default_factory=dict)
    stream_split: StreamSplitDoc | None = None
    stream_assigned_to: str | None = None


class SplitStateDoc(BaseModel):
    split_id: str
    phase: SplitPhase
    last_emitted_position: str | None = None


class CheckpointDoc(BaseModel):
    version: int = CHECKPOINT_VERSION
    checkpoint_id: int
    created_at: float
    global_state: GlobalStateDoc
    reader_states: list[SplitStateDoc] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Domain -> document
# ---------------------------------------------------------------------------


def _watermark_doc(wm: Watermark) -> WatermarkDoc:
    return WatermarkDoc(low=wm.low.to_token(), high=wm.high.to_token())


def _chunk_doc(c: ChunkSplit) -> ChunkSplitDoc:
    return ChunkSplitDoc(
        split_id=c.split_id,
        table_id=str(c.table_id),
        key_column=c.key_column,
        lower_bound=encode_value(c.lower_bound),
        upper_bound=encode_value(c.upper_bound),
    )


def _stream_doc(s: StreamSplit) -> StreamSplitDoc:
    return StreamSplitDoc(
        split_id=s.split_id,
        table_ids=[str(t) for t in s.table_ids],
        starting_position=s.starting_position.to_token(),
        finished_chunks=[
            FinishedChunkDoc(
                split_id=fc.split_id,
                table_id=str(fc.table_id),
                key_column=fc.key_column,
                lower_bound=encode_value(fc.lower_bound),
                upper_bound=encode_value(fc.upper_bound),
                high=fc.high.to_token(),
            )
            for fc in s.finished_chunks
        ],
        table_positions={str(t): p.to_token() for t, p in s.table_positions.items()},
    )


def global_state_to_doc(state: GlobalState) -> GlobalStateDoc:
    return GlobalStateDoc(
        table_ids=[str(t) for t in state.table_ids],
        chunks={str(t): [_chunk_doc(c) for c in cs] for t, cs in state.chunks.items()},
        finished={sid: _watermark_doc(wm) for sid, wm in state.finished.items()},
        assigned=dict(state.assigned),
        table_positions={str(t): p.to_token() for t, p in state.table_positions.items()},
        stream_split=_stream_doc(state.stream_split) if state.stream_split else None,
        stream_assigned_to=state.stream_assigned_to,
    )


def split_state_to_doc(state: SplitState) -> SplitStateDoc:
    pos = state.last_emitted_position
    return SplitStateDoc(
        split_id=state.split_id,
        phase=state.phase,
        last_emitted_position=pos.to_token() if pos else None,
    )


def checkpoint_to_doc(cp: Checkpoint) -> CheckpointDoc:
    return CheckpointDoc(
        checkpoint_id=cp.checkpoint_id,
        created_at=cp.created_at,
        global_state=global_state_to_doc(cp.global_state),
        reader_states=[split_state_to_doc(s) for s in cp.reader_states],
    )


# ---------------------------------------------------------------------------
# Document -> domain
# ---------------------------------------------------------------------------


def _pos(token: str) -> Position:
    return Position.from_token(token)


def _chunk(doc: ChunkSplitDoc) -> ChunkSplit:
    return ChunkSplit(
        split_id=doc.split_id,
        table_id=TableId.parse(doc.table_id),
        key_column=doc.key_column,
        lower_bound=decode_value(doc.lower_bound),
        upper_bound=decode_value(doc.upper_bound),
    )


def _stream(doc: StreamSplitDoc) -> StreamSplit:
    return StreamSplit(
        split_id=doc.split_id,
        table_ids=tuple(TableId.parse(t) for t in doc.table_ids),
        starting_position=_pos(doc.starting_position),
        finished_chunks=tuple(
            FinishedChunk(
                split_id=fc.split_id,
                table_id=TableId.parse(fc.table_id),
                key_column=fc.key_column,
                lower_bound=decode_value(fc.lower_bound),
                upper_bound=decode_value(fc.upper_bound),
                high=_pos(fc.high),
            )
            for fc in doc.finished_chunks
        ),
        table_positions={TableId.parse(t): _pos(p) for t, p in doc.table_positions.items()},
    )


def global_state_from_doc(doc: GlobalStateDoc) -> GlobalState:
    return GlobalState(
        table_ids=[TableId.parse(t) for t in doc.table_ids],
        chunks={TableId.parse(t): [_chunk(c) for c in cs] for t, cs in doc.chunks.items()},
        finished={sid: Watermark(_pos(wm.low), _pos(wm.high)) for sid, wm in doc.finished.items()},
        assigned=dict(doc.assigned),
        table_positions={TableId.parse(t): _pos(p) for t, p in doc.table_positions.items()},
        stream_split=_stream(doc.stream_split) if doc.stream_split else None,
        stream_assigned_to=doc.stream_assigned_to,
    )


def split_state_from_doc(doc: SplitStateDoc) -> SplitState:
    pos = doc.last_emitted_position
    return SplitState(
        split_id=doc.split_id,
        phase=doc.phase,
        last_emitted_position=_pos(pos) if pos else None,
    )


def checkpoint_from_doc(doc: CheckpointDoc) -> Checkpoint:
    if doc.version != CHECKPOINT_VERSION:
        raise ValueError(f"unsupported checkpoint version {doc.version}")
    return Checkpoint(
        checkpoint_id=doc.checkpoint_id,
        created_at=doc.created_at,
        global_state=global_state_from_doc(doc.global_state),
        reader_states=[split_state_from_doc(s) for s in doc.reader_states],
    )


def dump_checkpoint(cp: Checkpoint) -> str:
    return checkpoint_to_doc(cp).model_dump_json(indent=2)


def load_checkpoint(text: str) -> Checkpoint:
    return checkpoint_from_doc(CheckpointDoc.model_validate_json(text))
