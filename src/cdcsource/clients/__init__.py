from cdcsource.clients.duckdb_source import DuckDBSource

__all__ = ["DuckDBSource"]
