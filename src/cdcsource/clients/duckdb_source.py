"""
DuckDB-backed source database with a built-in change log.

DuckDB has no redo log to mine, so this adapter keeps its own: every write
made through `insert` / `update` / `delete` runs in one transaction together
with an append to `cdc.log`, whose `scn` comes from the `cdc.scn` sequence.
Writes are serialized by a lock, so log order equals commit order.

Each read opens its own cursor for the duration of the call and closes it on
every exit path; cursors are safe to use from worker threads.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Collection, Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any

import duckdb

from cdcsource.core.codec import decode_value, encode_value
from cdcsource.core.errors import PositionUnavailableError, SchemaMismatchError, TransientReadError
from cdcsource.core.models import ChangeEvent, KeyStats, Operation, Position, Row, TableId, TableSchema

logger = logging.getLogger(__name__)

LOG_SCHEMA = "cdc"

INTEGER_TYPES = frozenset(
    {
        "TINYINT", "SMALLINT", "INTEGER", "BIGINT", "HUGEINT",
        "UTINYINT", "USMALLINT", "UINTEGER", "UBIGINT",
    }
)

_BOOTSTRAP = (
    f"CREATE SCHEMA IF NOT EXISTS {LOG_SCHEMA}",
    f"CREATE SEQUENCE IF NOT EXISTS {LOG_SCHEMA}.scn START 1",
    f"""
    CREATE TABLE IF NOT EXISTS {LOG_SCHEMA}.log (
        scn          BIGINT PRIMARY KEY,
        table_name   VARCHAR NOT NULL,
        op           VARCHAR NOT NULL,
        before_image VARCHAR,
        after_image  VARCHAR
    )
    """,
    f"CREATE TABLE IF NOT EXISTS {LOG_SCHEMA}.retention (purged_up_to BIGINT NOT NULL)",
    f"""
    INSERT INTO {LOG_SCHEMA}.retention
    SELECT 0 WHERE NOT EXISTS (SELECT 1 FROM {LOG_SCHEMA}.retention)
    """,
)


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def qualified(table_id: TableId) -> str:
    return f"{quote_ident(table_id.schema)}.{quote_ident(table_id.table)}"


def _encode_image(row: Row | None) -> str | None:
    if row is None:
        return None
    return json.dumps({k: encode_value(v) for k, v in row.items()})


def _decode_image(text: str | None) -> Row | None:
    if text is None:
        return None
    return {k: decode_value(v) for k, v in json.loads(text).items()}


def _fetch_rows(cur: duckdb.DuckDBPyConnection) -> list[Row]:
    names = [d[0] for d in cur.description]
    return [dict(zip(names, values)) for values in cur.fetchall()]


class DuckDBSource:
    """Implements `ITableScanner` and `IChangeLog` over one DuckDB database."""

    def __init__(self, database: str = ":memory:") -> None:
        self.database = database
        self._con = duckdb.connect(database)
        self._write_lock = threading.Lock()
        for stmt in _BOOTSTRAP:
            self._con.execute(stmt)

    def close(self) -> None:
        self._con.close()

    # ---------- connections ----------

    @contextmanager
    def _cursor(self) -> Iterator[duckdb.DuckDBPyConnection]:
        cur = self._con.cursor()
        try:
            yield cur
        finally:
            cur.close()

    @contextmanager
    def _read_cursor(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Cursor for reads; lock and I/O errors surface as retryable."""
        with self._cursor() as cur:
            try:
                yield cur
            except (duckdb.TransactionException, duckdb.IOException) as e:
                raise TransientReadError(str(e)) from e

    @contextmanager
    def _transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._write_lock, self._cursor() as cur:
            cur.execute("BEGIN TRANSACTION")
            try:
                yield cur
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> None:
        """Run a statement that bypasses the change log (DDL, bulk fixtures)."""
        with self._write_lock, self._cursor() as cur:
            cur.execute(sql, params)

    # ---------- writes ----------

    def _append_log(
        self,
        cur: duckdb.DuckDBPyConnection,
        table_id: TableId,
        op: Operation,
        before: Row | None,
        after: Row | None,
    ) -> Position:
        cur.execute(
            f"INSERT INTO {LOG_SCHEMA}.log VALUES (nextval('{LOG_SCHEMA}.scn'), ?, ?, ?, ?) RETURNING scn",
            [str(table_id), op.value, _encode_image(before), _encode_image(after)],
        )
        return Position(cur.fetchone()[0])

    def _select_by_key(
        self,
        cur: duckdb.DuckDBPyConnection,
        table_id: TableId,
        key: Mapping[str, Any],
    ) -> Row | None:
        where = " AND ".join(f"{quote_ident(c)} = ?" for c in key)
        cur.execute(f"SELECT * FROM {qualified(table_id)} WHERE {where}", list(key.values()))
        rows = _fetch_rows(cur)
        return rows[0] if rows else None

    def insert(self, table_id: TableId, row: Row) -> Position:
        cols = ", ".join(quote_ident(c) for c in row)
        marks = ", ".join("?" for _ in row)
        key = self._key_of(table_id, row)
        with self._transaction() as cur:
            cur.execute(f"INSERT INTO {qualified(table_id)} ({cols}) VALUES ({marks})", list(row.values()))
            after = self._select_by_key(cur, table_id, key)
            return self._append_log(cur, table_id, Operation.INSERT, None, after)

    def update(self, table_id: TableId, key: Mapping[str, Any], changes: Mapping[str, Any]) -> Position | None:
        """Update the row identified by `key`; returns None if it does not exist."""
        sets = ", ".join(f"{quote_ident(c)} = ?" for c in changes)
        where = " AND ".join(f"{quote_ident(c)} = ?" for c in key)
        with self._transaction() as cur:
            before = self._select_by_key(cur, table_id, key)
            if before is None:
                return None
            cur.execute(
                f"UPDATE {qualified(table_id)} SET {sets} WHERE {where}",
                [*changes.values(), *key.values()],
            )
            new_key = {c: changes.get(c, v) for c, v in key.items()}
            after = self._select_by_key(cur, table_id, new_key)
            return self._append_log(cur, table_id, Operation.UPDATE, before, after)

    def delete(self, table_id: TableId, key: Mapping[str, Any]) -> Position | None:
        """Delete the row identified by `key`; returns None if it does not exist."""
        where = " AND ".join(f"{quote_ident(c)} = ?" for c in key)
        with self._transaction() as cur:
            before = self._select_by_key(cur, table_id, key)
            if before is None:
                return None
            cur.execute(f"DELETE FROM {qualified(table_id)} WHERE {where}", list(key.values()))
            return self._append_log(cur, table_id, Operation.DELETE, before, None)

    def purge_log(self, through: Position) -> int:
        """Drop log entries up to and including `through`; returns how many."""
        with self._transaction() as cur:
            cur.execute(f"DELETE FROM {LOG_SCHEMA}.log WHERE scn <= ? RETURNING scn", [through.scn])
            purged = len(cur.fetchall())
            cur.execute(
                f"UPDATE {LOG_SCHEMA}.retention SET purged_up_to = greatest(purged_up_to, ?)",
                [through.scn],
            )
        logger.info("purged %d log entries through position %s", purged, through)
        return purged

    def _key_of(self, table_id: TableId, row: Row) -> dict[str, Any]:
        pk = self.describe(table_id).primary_key
        return {c: row[c] for c in pk}

    # ---------- ITableScanner ----------

    def list_tables(self) -> list[TableId]:
        with self._read_cursor() as cur:
            cur.execute(
                """
                SELECT table_schema, table_name
                FROM information_schema.tables
                WHERE table_type = 'BASE TABLE'
                  AND table_catalog = current_database()
                  AND table_schema <> ?
                ORDER BY table_schema, table_name
                """,
                [LOG_SCHEMA],
            )
            return [TableId(s, t) for s, t in cur.fetchall()]

    def describe(self, table_id: TableId) -> TableSchema:
        with self._read_cursor() as cur:
            cur.execute(
                """
                SELECT column_name, data_type
                FROM information_schema.columns
                WHERE table_catalog = current_database() AND table_schema = ? AND table_name = ?
                ORDER BY ordinal_position
                """,
                [table_id.schema, table_id.table],
            )
            cols = cur.fetchall()
            if not cols:
                raise SchemaMismatchError(f"table {table_id} does not exist")
            cur.execute(
                """
                SELECT constraint_column_names
                FROM duckdb_constraints()
                WHERE database_name = current_database()
                  AND schema_name = ? AND table_name = ? AND constraint_type = 'PRIMARY KEY'
                """,
                [table_id.schema, table_id.table],
            )
            pk_row = cur.fetchone()

        return TableSchema(
            table_id=table_id,
            columns=tuple(name for name, _ in cols),
            primary_key=tuple(pk_row[0]) if pk_row else (),
            numeric_columns=frozenset(name for name, dtype in cols if dtype.upper() in INTEGER_TYPES),
        )

    def key_stats(self, table_id: TableId, key_column: str) -> KeyStats:
        k = quote_ident(key_column)
        with self._read_cursor() as cur:
            cur.execute(f"SELECT min({k}), max({k}), count(*) FROM {qualified(table_id)}")
            lo, hi, count = cur.fetchone()
        return KeyStats(min=lo, max=hi, count=count)

    def bucket_counts(self, table_id: TableId, key_column: str, *, origin: int, width: int) -> dict[int, int]:
        k = quote_ident(key_column)
        with self._read_cursor() as cur:
            cur.execute(
                f"""
                SELECT ({k} - ?) // ? AS bucket, count(*)
                FROM {qualified(table_id)}
                GROUP BY bucket
                """,
                [origin, width],
            )
            return {int(b): int(n) for b, n in cur.fetchall()}

    def sample_boundaries(self, table_id: TableId, key_column: str, *, every: int) -> list[Any]:
        k = quote_ident(key_column)
        with self._read_cursor() as cur:
            cur.execute(
                f"""
                SELECT k FROM (
                    SELECT k, row_number() OVER (ORDER BY k) AS rn
                    FROM (SELECT DISTINCT {k} AS k FROM {qualified(table_id)} WHERE {k} IS NOT NULL)
                )
                WHERE rn > 1 AND (rn - 1) % ? = 0
                ORDER BY k
                """,
                [every],
            )
            return [r[0] for r in cur.fetchall()]

    def scan(
        self,
        table_id: TableId,
        key_column: str,
        *,
        lower: Any,
        upper: Any,
        columns: Sequence[str] | None = None,
    ) -> list[Row]:
        k = quote_ident(key_column)
        select = "*" if columns is None else ", ".join(quote_ident(c) for c in columns)
        conds: list[str] = []
        params: list[Any] = []
        if lower is not None:
            conds.append(f"{k} >= ?")
            params.append(lower)
        if upper is not None:
            conds.append(f"{k} < ?")
            params.append(upper)
        where = f"WHERE {' AND '.join(conds)}" if conds else ""
        with self._read_cursor() as cur:
            cur.execute(f"SELECT {select} FROM {qualified(table_id)} {where} ORDER BY {k}", params)
            return _fetch_rows(cur)

    # ---------- IChangeLog ----------

    def _purged_up_to(self, cur: duckdb.DuckDBPyConnection) -> int:
        cur.execute(f"SELECT purged_up_to FROM {LOG_SCHEMA}.retention")
        return int(cur.fetchone()[0])

    def current_position(self) -> Position:
        with self._read_cursor() as cur:
            purged = self._purged_up_to(cur)
            cur.execute(f"SELECT max(scn) FROM {LOG_SCHEMA}.log")
            newest = cur.fetchone()[0]
        return Position(max(newest or 0, purged))

    def earliest_position(self) -> Position:
        with self._read_cursor() as cur:
            return Position(self._purged_up_to(cur))

    def read(
        self,
        table_ids: Collection[TableId],
        *,
        after: Position,
        up_to: Position | None = None,
        limit: int | None = None,
    ) -> list[ChangeEvent]:
        names = [str(t) for t in table_ids]
        if not names:
            return []
        sql = (
            f"SELECT scn, table_name, op, before_image, after_image FROM {LOG_SCHEMA}.log "
            f"WHERE scn > ? AND table_name IN ({', '.join('?' for _ in names)})"
        )
        params: list[Any] = [after.scn, *names]
        if up_to is not None:
            sql += " AND scn <= ?"
            params.append(up_to.scn)
        sql += " ORDER BY scn"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"

        with self._read_cursor() as cur:
            purged = self._purged_up_to(cur)
            if after.scn < purged:
                raise PositionUnavailableError(after, Position(purged))
            cur.execute(sql, params)
            rows = cur.fetchall()

        return [
            ChangeEvent(
                table_id=TableId.parse(table_name),
                operation=Operation(op),
                position=Position(scn),
                before=_decode_image(before),
                after=_decode_image(after_image),
            )
            for scn, table_name, op, before, after_image in rows
        ]
