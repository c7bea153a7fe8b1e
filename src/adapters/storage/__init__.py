"""Storage adapters for Family-Chart.

This module contains storage adapters that implement the entity storage,
audit storage and access-control ports for DuckDB and PostgreSQL.
"""

from src.adapters.storage.duckdb_adapter import DuckDBAdapter
from src.adapters.storage.postgresql_adapter import PostgreSQLAdapter

__all__ = ["DuckDBAdapter", "PostgreSQLAdapter"]
