from collections.abc import Iterator

import pytest

from cdcsource.clients.duckdb_source import DuckDBSource
from cdcsource.core.models import ChangeEvent, Position, TableId

CUSTOMERS = TableId("main", "customers")

CUSTOMER_IDS = [101, 102, 103, 109, 110, 111, 118, 121, 123, *range(1009, 1020), 2000]


class ListLog:
    """Change log over a fixed list of entries."""

    def __init__(self, entries: list[ChangeEvent]) -> None:
        self.entries = entries

    def current_position(self) -> Position:
        return max((e.position for e in self.entries), default=Position(0))

    def earliest_position(self) -> Position:
        return Position(0)

    def read(self, table_ids, *, after, up_to=None, limit=None):
        out = [
            e
            for e in self.entries
            if e.table_id in table_ids and e.position > after and (up_to is None or e.position <= up_to)
        ]
        return out[:limit] if limit is not None else out


@pytest.fixture
def db() -> Iterator[DuckDBSource]:
    """In-memory database with the 21-row `customers` table (no log entries yet)."""
    source = DuckDBSource()
    source.execute(
        """
        CREATE TABLE customers (
            id           INTEGER PRIMARY KEY,
            name         VARCHAR NOT NULL,
            address      VARCHAR,
            phone_number VARCHAR
        )
        """
    )
    for i, cid in enumerate(CUSTOMER_IDS, start=1):
        source.execute(
            "INSERT INTO customers VALUES (?, ?, 'Shanghai', '123567891234')",
            [cid, f"user_{i}"],
        )
    yield source
    source.close()
