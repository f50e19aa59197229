import json
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import pytest

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
from cdcsource.core.state import dump_checkpoint, load_checkpoint
from cdcsource.storage.checkpoint import FileCheckpointStore

T = TableId("inventory", "products")


def _state() -> GlobalState:
    chunks = [
        ChunkSplit("inventory.products:0", T, "sku", None, "k"),
        ChunkSplit("inventory.products:1", T, "sku", "k", None),
    ]
    return GlobalState(
        table_ids=[T],
        chunks={T: chunks},
        finished={"inventory.products:0": Watermark(Position(3), Position(5))},
        assigned={"inventory.products:1": "reader-1"},
        table_positions={TableId("main", "empty"): Position(2)},
        stream_split=StreamSplit(
            table_ids=(T,),
            starting_position=Position(3),
            finished_chunks=(FinishedChunk("inventory.products:0", T, "sku", None, "k", Position(5)),),
        ),
        stream_assigned_to="reader-0",
    )


def test_codec_keeps_key_types():
    values = [7, "abc", 1.5, True, Decimal("10.25"), date(2024, 1, 2), datetime(2024, 1, 2, 3, 4, 5), b"\x00\xff"]
    for v in values:
        back = decode_value(json.loads(json.dumps(encode_value(v))))
        assert back == v and type(back) is type(v)
    assert encode_value(None) is None
    with pytest.raises(TypeError):
        encode_value(object())


def test_checkpoint_document_round_trip():
    cp = Checkpoint(
        checkpoint_id=4,
        created_at=1_700_000_000.0,
        global_state=_state(),
        reader_states=[SplitState("stream-split", SplitPhase.ASSIGNED, Position(9))],
    )
    text = dump_checkpoint(cp)
    assert '"scn:9"' in text

    back = load_checkpoint(text)
    assert back.checkpoint_id == 4
    assert back.global_state == cp.global_state
    assert back.reader_states == cp.reader_states


def test_checkpoint_version_is_checked():
    doc = json.loads(dump_checkpoint(Checkpoint(1, 0.0, _state())))
    doc["version"] = 99
    with pytest.raises(ValueError):
        load_checkpoint(json.dumps(doc))


def test_file_store_keeps_newest(tmp_path: Path):
    store = FileCheckpointStore(tmp_path / "cp", retain=2)
    assert store.load_latest() is None

    for i in range(1, 5):
        store.save(Checkpoint(i, float(i), _state()))

    names = [Path(p).name for p in store.list_checkpoints()]
    assert names == ["checkpoint_00003.json", "checkpoint_00004.json"]
    assert not list((tmp_path / "cp").glob("*.tmp"))

    latest = store.load_latest()
    assert latest is not None
    assert latest.checkpoint_id == 4
    assert latest.global_state.finished == _state().finished
