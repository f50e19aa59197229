import asyncio
import threading
from pathlib import Path

import pytest

from cdcsource.clients.duckdb_source import DuckDBSource
from cdcsource.core.config import SourceConfig, StartupMode
from cdcsource.core.errors import PositionUnavailableError, ReaderFailureError, SchemaMismatchError
from cdcsource.core.models import Position, TableId
from cdcsource.orchestration.source import IncrementalSource, build_plan
from cdcsource.storage.checkpoint import FileCheckpointStore
from cdcsource.storage.sinks import CollectingSink

from conftest import CUSTOMER_IDS, CUSTOMERS

SNAPSHOT = [f"+I[{cid}, user_{i}, Shanghai, 123567891234]" for i, cid in enumerate(CUSTOMER_IDS, start=1)]

REDO = [
    "-U[103, user_3, Shanghai, 123567891234]",
    "+U[103, user_3, Hangzhou, 123567891234]",
    "-D[102, user_2, Shanghai, 123567891234]",
    "+I[102, user_2, Shanghai, 123567891234]",
    "-U[103, user_3, Hangzhou, 123567891234]",
    "+U[103, user_3, Shanghai, 123567891234]",
    "-U[1010, user_11, Shanghai, 123567891234]",
    "+U[1010, user_11, Hangzhou, 123567891234]",
    "+I[2001, user_22, Shanghai, 123567891234]",
    "+I[2002, user_23, Shanghai, 123567891234]",
    "+I[2003, user_24, Shanghai, 123567891234]",
]


def _config(**overrides) -> SourceConfig:
    base = dict(
        table_pattern=r"main\.customers",
        chunk_size=4,
        parallelism=2,
        poll_interval_s=0.01,
        max_poll_interval_s=0.05,
        retry_backoff_s=0.01,
        checkpoint_interval_s=None,
    )
    return SourceConfig(**{**base, **overrides})


def _source(db, sink, config, *, scanner=None, change_log=None, store=None) -> IncrementalSource:
    return IncrementalSource(
        config,
        scanner=scanner or db,
        change_log=change_log or db,
        sink=sink,
        checkpoint_store=store,
    )


def first_batch(db: DuckDBSource, column: str = "address", values=("Hangzhou", "Shanghai")) -> None:
    db.update(CUSTOMERS, {"id": 103}, {column: values[0]})
    db.delete(CUSTOMERS, {"id": 102})
    db.insert(CUSTOMERS, {"id": 102, "name": "user_2", "address": "Shanghai", "phone_number": "123567891234"})
    db.update(CUSTOMERS, {"id": 103}, {column: values[1]})


def second_batch(db: DuckDBSource, column: str = "address", value: str = "Hangzhou") -> None:
    db.update(CUSTOMERS, {"id": 1010}, {column: value})
    for i, cid in enumerate((2001, 2002, 2003), start=22):
        db.insert(CUSTOMERS, {"id": cid, "name": f"user_{i}", "address": "Shanghai", "phone_number": "123567891234"})


def _assert_snapshot_then_redo(rows: list[str]) -> None:
    assert sorted(rows[:21]) == sorted(SNAPSHOT)
    assert rows[21:] == REDO


def _table_state(db: DuckDBSource) -> dict:
    return {(CUSTOMERS, (r["id"],)): r for r in db.scan(CUSTOMERS, "id", lower=None, upper=None)}


class FailingScanner:
    """Scanner whose `fail_on`-th scan raises a non-retryable error."""

    def __init__(self, db: DuckDBSource, fail_on: int | None = None, always: bool = False) -> None:
        self._db = db
        self._lock = threading.Lock()
        self.fail_on = fail_on
        self.always = always
        self.calls = 0

    def __getattr__(self, name):
        return getattr(self._db, name)

    def scan(self, *args, **kwargs):
        with self._lock:
            self.calls += 1
            fail = self.always or self.calls == self.fail_on
        if fail:
            raise RuntimeError("reader crashed")
        return self._db.scan(*args, **kwargs)


class GatedScanner:
    """Scanner that blocks every scan after the first `open_scans` until `gate` is set."""

    def __init__(self, db: DuckDBSource, open_scans: int) -> None:
        self._db = db
        self.gate = threading.Event()
        self.open_scans = open_scans
        self.calls = 0

    def __getattr__(self, name):
        return getattr(self._db, name)

    def scan(self, *args, **kwargs):
        self.calls += 1
        if self.calls > self.open_scans:
            self.gate.wait(timeout=10)
        return self._db.scan(*args, **kwargs)


class FailingLog:
    """Change log whose next stream poll raises once `armed` is set."""

    def __init__(self, db: DuckDBSource) -> None:
        self._db = db
        self.armed = False

    def __getattr__(self, name):
        return getattr(self._db, name)

    def read(self, table_ids, *, after, up_to=None, limit=None):
        if limit is not None and self.armed:
            self.armed = False
            raise RuntimeError("log reader crashed")
        return self._db.read(table_ids, after=after, up_to=up_to, limit=limit)


# ---------------------------------------------------------------------------
# Plain runs
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize("parallelism", [1, 4])
async def test_snapshot_then_stream(db: DuckDBSource, parallelism: int):
    sink = CollectingSink()
    source = _source(db, sink, _config(parallelism=parallelism))
    await source.start()
    try:
        await sink.wait_for_rows(21)
        first_batch(db)
        second_batch(db)
        rows = await sink.wait_for_rows(32)
    finally:
        await source.stop(checkpoint=False)

    _assert_snapshot_then_redo(rows)
    assert sink.materialize(["id"]) == _table_state(db)
    assert source.stats.chunks_finished == 6
    assert source.stats.snapshot_rows == 21


@pytest.mark.asyncio
async def test_projected_columns(db: DuckDBSource):
    sink = CollectingSink()
    source = _source(db, sink, _config(columns=("name",)))
    await source.start()
    try:
        await sink.wait_for_rows(21)
        first_batch(db, column="name", values=("user_233", "user_3"))
        second_batch(db, column="name", value="user_1111")
        rows = await sink.wait_for_rows(32)
    finally:
        await source.stop(checkpoint=False)

    assert sorted(rows[:21]) == sorted(f"+I[{cid}, user_{i}]" for i, cid in enumerate(CUSTOMER_IDS, start=1))
    assert rows[21:] == [
        "-U[103, user_3]",
        "+U[103, user_233]",
        "-D[102, user_2]",
        "+I[102, user_2]",
        "-U[103, user_233]",
        "+U[103, user_3]",
        "-U[1010, user_11]",
        "+U[1010, user_1111]",
        "+I[2001, user_22]",
        "+I[2002, user_23]",
        "+I[2003, user_24]",
    ]


@pytest.mark.asyncio
async def test_empty_table_is_streamed(db: DuckDBSource):
    db.execute("CREATE TABLE audit (id INTEGER PRIMARY KEY, note VARCHAR)")
    audit = TableId("main", "audit")
    sink = CollectingSink()
    source = _source(db, sink, _config(table_pattern=r"main\.(customers|audit)"))
    await source.start()
    try:
        await sink.wait_for_rows(21)
        db.insert(audit, {"id": 1, "note": "hello"})
        rows = await sink.wait_for_rows(22)
    finally:
        await source.stop(checkpoint=False)

    assert rows[21:] == ["+I[1, hello]"]
    assert source.coordinator.stream_split.table_positions == {audit: Position(0)}


def _assert_replayable(sink: CollectingSink) -> None:
    """Every INSERT targets an absent key, every UPDATE/DELETE a present one."""
    live: set[tuple] = set()
    for ev in sink.events:
        if ev.before is not None:
            key = ev.key(["id"], image="before")
            assert key in live, f"{ev.operation.value} of absent key {key} at {ev.position}"
            live.remove(key)
        if ev.after is not None:
            key = ev.key(["id"])
            assert key not in live, f"{ev.operation.value} of present key {key} at {ev.position}"
            live.add(key)


@pytest.mark.asyncio
async def test_writes_during_snapshot_phase(db: DuckDBSource):
    sink = CollectingSink()
    gated = GatedScanner(db, open_scans=2)
    source = _source(db, sink, _config(parallelism=2), scanner=gated)
    await source.start()
    try:
        # two chunks finished, both readers parked inside their next chunk read
        await sink.wait_for_rows(8)
        for _ in range(500):
            if gated.calls == 4:
                break
            await asyncio.sleep(0.01)
        assert gated.calls == 4

        first_batch(db)
        gated.gate.set()
        second_batch(db)

        for _ in range(500):
            if source.stats.chunks_finished == 6 and sink.materialize(["id"]) == _table_state(db):
                break
            await asyncio.sleep(0.01)
    finally:
        await source.stop(checkpoint=False)

    assert source.stats.chunks_finished == 6
    assert sink.materialize(["id"]) == _table_state(db)
    _assert_replayable(sink)


# ---------------------------------------------------------------------------
# Reader failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize("parallelism", [1, 4])
async def test_reader_failure_in_snapshot_phase(db: DuckDBSource, parallelism: int):
    sink = CollectingSink()
    source = _source(db, sink, _config(parallelism=parallelism), scanner=FailingScanner(db, fail_on=2))
    await source.start()
    try:
        await sink.wait_for_rows(21)
        first_batch(db)
        second_batch(db)
        rows = await sink.wait_for_rows(32)
    finally:
        await source.stop(checkpoint=False)

    _assert_snapshot_then_redo(rows)
    assert source.stats.restarts == 1


@pytest.mark.asyncio
async def test_reader_failure_in_log_phase(db: DuckDBSource):
    sink = CollectingSink()
    log = FailingLog(db)
    source = _source(db, sink, _config(), change_log=log)
    await source.start()
    try:
        await sink.wait_for_rows(21)
        first_batch(db)
        await sink.wait_for_rows(27)
        log.armed = True
        second_batch(db)
        rows = await sink.wait_for_rows(32)
    finally:
        await source.stop(checkpoint=False)

    # the reissued stream split re-reads the first batch; none of it is emitted twice
    _assert_snapshot_then_redo(rows)
    assert source.stats.restarts == 1


@pytest.mark.asyncio
async def test_reader_restart_budget(db: DuckDBSource):
    sink = CollectingSink()
    config = _config(parallelism=1, max_worker_restarts=2)
    source = _source(db, sink, config, scanner=FailingScanner(db, always=True))
    await source.start()
    try:
        with pytest.raises(ReaderFailureError):
            await source.join(timeout=5)
    finally:
        await source.stop()
    assert source.stats.restarts == 3
    assert sink.events == []


# ---------------------------------------------------------------------------
# Coordinator failover and restarts
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_coordinator_failover_in_snapshot_phase(db: DuckDBSource, tmp_path: Path):
    store = FileCheckpointStore(tmp_path / "checkpoints")
    sink = CollectingSink()
    gated = GatedScanner(db, open_scans=2)

    first = _source(db, sink, _config(parallelism=1), scanner=gated, store=store)
    await first.start()
    try:
        await sink.wait_for_rows(8)
        cp = await first.checkpoint()
    finally:
        await first.stop(checkpoint=False)
        gated.gate.set()
    assert len(cp.global_state.finished) == 2
    assert len(cp.global_state.assigned) == 1

    second = _source(db, sink, _config(parallelism=2), store=store)
    await second.start()
    try:
        await sink.wait_for_rows(21)
        first_batch(db)
        second_batch(db)
        rows = await sink.wait_for_rows(32)
    finally:
        await second.stop(checkpoint=False)

    _assert_snapshot_then_redo(rows)
    assert second.stats.chunks_finished == 4


@pytest.mark.asyncio
async def test_coordinator_failover_in_log_phase(db: DuckDBSource, tmp_path: Path):
    store = FileCheckpointStore(tmp_path / "checkpoints")
    sink = CollectingSink()

    first = _source(db, sink, _config(), store=store)
    await first.start()
    try:
        await sink.wait_for_rows(21)
        first_batch(db)
        await sink.wait_for_rows(27)
        cp = await first.checkpoint()
    finally:
        await first.stop(checkpoint=False)
    assert cp.global_state.stream_split.starting_position == Position(4)

    second_batch(db)  # while nothing is running

    second = _source(db, sink, _config(), store=store)
    await second.start()
    try:
        rows = await sink.wait_for_rows(32)
    finally:
        await second.stop(checkpoint=False)

    _assert_snapshot_then_redo(rows)
    assert second.stats.snapshot_rows == 0


@pytest.mark.asyncio
async def test_failover_after_stale_checkpoint_replays(db: DuckDBSource, tmp_path: Path):
    store = FileCheckpointStore(tmp_path / "checkpoints")
    sink = CollectingSink()

    first = _source(db, sink, _config(), store=store)
    await first.start()
    try:
        await sink.wait_for_rows(21)
        await first.checkpoint()
        first_batch(db)
        await sink.wait_for_rows(27)
    finally:
        await first.stop(checkpoint=False)

    second = _source(db, sink, _config(), store=store)
    await second.start()
    try:
        await sink.wait_for_rows(33)
        second_batch(db)
        rows = await sink.wait_for_rows(38)
    finally:
        await second.stop(checkpoint=False)

    # at-least-once: the unacknowledged first batch is delivered again
    assert rows[27:33] == rows[21:27] == REDO[:6]
    assert rows[33:] == REDO[6:]
    assert sink.materialize(["id"]) == _table_state(db)


@pytest.mark.asyncio
async def test_clean_restart_resumes_without_snapshot(db: DuckDBSource, tmp_path: Path):
    store = FileCheckpointStore(tmp_path / "checkpoints")
    first_sink = CollectingSink()
    first = _source(db, first_sink, _config(), store=store)
    await first.start()
    try:
        await first_sink.wait_for_rows(21)
        first_batch(db)
        await first_sink.wait_for_rows(27)
    finally:
        await first.stop()
    assert first_sink.flushes == 1

    second_sink = CollectingSink()
    second = _source(db, second_sink, _config(), store=store)
    await second.start()
    try:
        second_batch(db)
        rows = await second_sink.wait_for_rows(5)
    finally:
        await second.stop()

    assert rows == REDO[6:]


@pytest.mark.asyncio
async def test_periodic_checkpoints(db: DuckDBSource, tmp_path: Path):
    store = FileCheckpointStore(tmp_path / "checkpoints")
    sink = CollectingSink()
    source = _source(db, sink, _config(checkpoint_interval_s=0.02), store=store)
    await source.start()
    try:
        await sink.wait_for_rows(21)
        for _ in range(200):
            if source.stats.checkpoints >= 2:
                break
            await asyncio.sleep(0.01)
    finally:
        await source.stop(checkpoint=False)

    assert source.stats.checkpoints >= 2
    assert store.load_latest() is not None


class ThreadRecordingSink(CollectingSink):
    def __init__(self) -> None:
        super().__init__()
        self.flush_threads: list[threading.Thread] = []

    def flush(self) -> None:
        self.flush_threads.append(threading.current_thread())
        super().flush()


@pytest.mark.asyncio
async def test_checkpoint_flushes_off_the_event_loop(db: DuckDBSource, tmp_path: Path):
    sink = ThreadRecordingSink()
    source = _source(db, sink, _config(), store=FileCheckpointStore(tmp_path / "checkpoints"))
    await source.start()
    try:
        await sink.wait_for_rows(21)
        cp = await source.checkpoint()
    finally:
        await source.stop(checkpoint=False)

    assert len(cp.global_state.finished) == 6
    assert sink.flushes == 1
    assert sink.flush_threads[0] is not threading.main_thread()


# ---------------------------------------------------------------------------
# Startup modes and fatal errors
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_latest_startup_skips_snapshot(db: DuckDBSource):
    db.insert(CUSTOMERS, {"id": 3000, "name": "before", "address": "x", "phone_number": "y"})
    sink = CollectingSink()
    source = _source(db, sink, _config(startup_mode=StartupMode.LATEST))
    await source.start()
    try:
        db.delete(CUSTOMERS, {"id": 3000})
        rows = await sink.wait_for_rows(1)
    finally:
        await source.stop(checkpoint=False)
    assert rows == ["-D[3000, before, x, y]"]


@pytest.mark.asyncio
async def test_earliest_startup_replays_retained_log(db: DuckDBSource):
    first_batch(db)
    sink = CollectingSink()
    source = _source(db, sink, _config(startup_mode=StartupMode.EARLIEST))
    await source.start()
    try:
        rows = await sink.wait_for_rows(6)
    finally:
        await source.stop(checkpoint=False)
    assert rows == REDO[:6]


@pytest.mark.asyncio
async def test_specific_startup_position_must_be_retained(db: DuckDBSource):
    first_batch(db)
    db.purge_log(Position(2))
    sink = CollectingSink()
    source = _source(db, sink, _config(startup_mode=StartupMode.SPECIFIC, startup_position=Position(1)))
    with pytest.raises(PositionUnavailableError):
        await source.start()


@pytest.mark.asyncio
async def test_purged_log_stops_restored_source(db: DuckDBSource, tmp_path: Path):
    store = FileCheckpointStore(tmp_path / "checkpoints")
    first_sink = CollectingSink()
    first = _source(db, first_sink, _config(), store=store)
    await first.start()
    try:
        await first_sink.wait_for_rows(21)
    finally:
        await first.stop()

    db.insert(CUSTOMERS, {"id": 3000, "name": "a", "address": "b", "phone_number": "c"})
    db.insert(CUSTOMERS, {"id": 3001, "name": "a", "address": "b", "phone_number": "c"})
    db.purge_log(Position(1))

    second = _source(db, CollectingSink(), _config(), store=store)
    await second.start()
    try:
        with pytest.raises(PositionUnavailableError):
            await second.join(timeout=5)
    finally:
        await second.stop()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"columns": ("no_such_column",)},
        {"key_column": "no_such_column"},
        {"key_column": "address"},
        {"table_pattern": r"main\.nothing_here"},
    ],
)
async def test_schema_mismatch_is_fatal_at_start(db: DuckDBSource, overrides: dict):
    source = _source(db, CollectingSink(), _config(**overrides))
    with pytest.raises(SchemaMismatchError):
        await source.start()


def test_composite_key_needs_key_column(db: DuckDBSource):
    db.execute("CREATE TABLE pairs (a INTEGER, b INTEGER, PRIMARY KEY (a, b))")
    db.execute("INSERT INTO pairs VALUES (1, 1), (1, 2), (2, 1)")
    with pytest.raises(SchemaMismatchError):
        build_plan(_config(table_pattern=r"main\.pairs"), db, db)

    plan = build_plan(_config(table_pattern=r"main\.pairs", key_column="a", chunk_size=1), db, db)
    assert plan.key_columns == {TableId("main", "pairs"): "a"}
    assert plan.chunk_count == 2


@pytest.mark.asyncio
async def test_nullable_chunk_key_is_rejected_before_any_scan(db: DuckDBSource):
    db.execute("CREATE TABLE grouped (id INTEGER PRIMARY KEY, grp VARCHAR)")
    for i in range(10):
        db.execute("INSERT INTO grouped VALUES (?, ?)", [i, None if i % 3 == 0 else f"g{i}"])
    scanner = GatedScanner(db, open_scans=0)
    scanner.gate.set()

    config = _config(table_pattern=r"main\.grouped", key_column="grp", chunk_size=2)
    source = _source(db, CollectingSink(), config, scanner=scanner)
    with pytest.raises(SchemaMismatchError, match="primary key"):
        await source.start()
    assert scanner.calls == 0
