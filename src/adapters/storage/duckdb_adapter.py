"""DuckDB Storage Adapter.

This adapter implements entity storage (with the conditional update used for
optimistic locking), the append-only audit event store and family-based
access control on top of DuckDB, an in-process database that is convenient
for local development, the CLI and tests.

Security Impact:
    - The conditional UPDATE is the authoritative compare-and-swap for
      concurrent editors
    - Audit events are append-only; no update or delete is exposed
    - Connection details are managed via configuration

Architecture:
    - Implements EntityStoragePort, AuditStoragePort and AccessControlPort
    - Each unit of work runs on its own cursor (a DuckDB connection to the
      same database) inside its own transaction; there are no in-process locks
    - A DuckDB write-write transaction conflict is reported as a lost write
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import duckdb

from src.adapters.storage.record_schema import (
    AUDIT_COLUMNS,
    WRITE_ROLES,
    check_columns,
    column_ddl,
    decode_row,
    encode_values,
)
from src.domain.entities import ENTITY_DEFINITIONS, EntityDefinition, get_definition
from src.domain.ports import (
    AccessControlPort,
    AuditStoragePort,
    EntityStoragePort,
    Result,
    StorageError,
)
from src.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)

DUCKDB_TYPES = {
    'int': 'INTEGER',
    'text': 'VARCHAR',
    'date': 'DATE',
    'double': 'DOUBLE',
    'decimal': 'DECIMAL(5, 2)',
    'bool': 'BOOLEAN',
    'json': 'JSON',
    'timestamp': 'TIMESTAMP',
}


class DuckDBAdapter(EntityStoragePort, AuditStoragePort, AccessControlPort):
    """DuckDB implementation of the record, audit and access-control ports.

    Parameters:
        db_config: DatabaseConfig from configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:' for in-memory)

    Example Usage:
        ```python
        adapter = DuckDBAdapter(db_path=":memory:")
        adapter.initialize_schema()
        family_id = adapter.create_family("Rivera")
        adapter.add_family_member(family_id, user_id=1, role="owner")
        child_id = adapter.create_child(family_id, "Sam")
        ```
    """

    db_type = "duckdb"

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        db_path: Optional[str] = None
    ):
        if db_config:
            if db_config.db_type != "duckdb":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match DuckDB adapter",
                    operation="__init__"
                )
            self.db_path = db_config.db_path or ":memory:"
        else:
            self.db_path = db_path or ":memory:"

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialized = False

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__"
                )

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the root DuckDB connection (created lazily)."""
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self.db_path)
                logger.info(f"Connected to DuckDB database: {self.db_path}")
            except Exception as e:
                raise StorageError(
                    f"Failed to connect to DuckDB: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path}
                )
        return self._connection

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        # Each cursor is an independent connection to the same database
        return self._get_connection().cursor()

    @contextmanager
    def _query_cursor(self, operation: str, **details: Any) -> Iterator[duckdb.DuckDBPyConnection]:
        """Yield a cursor for a single statement; closed afterwards, errors wrapped."""
        cursor = self._cursor()
        try:
            yield cursor
        except duckdb.Error as e:
            raise StorageError(
                f"DuckDB {operation} failed: {str(e)}",
                operation=operation,
                details=details or None
            )
        finally:
            cursor.close()

    @staticmethod
    def _rows(cursor: duckdb.DuckDBPyConnection) -> List[Dict[str, Any]]:
        columns = [d[0] for d in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    @staticmethod
    def _rollback(cursor: duckdb.DuckDBPyConnection) -> None:
        try:
            cursor.rollback()
        except duckdb.Error as e:
            # Transaction already aborted by DuckDB
            logger.debug(f"Rollback skipped: {str(e)}")

    def close(self) -> None:
        """Close storage connection and release resources."""
        if self._connection is not None:
            try:
                self._connection.close()
                self._connection = None
                logger.info("Closed DuckDB connection")
            except Exception as e:
                logger.warning(f"Error closing connection: {str(e)}")

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def initialize_schema(self) -> Result[None]:
        """Initialize database schema (tables, sequences, indexes).

        Creates tables for:
        - families, family_members, children: access-control data
        - visits, visit_illnesses: visit records and their illness types
        - illnesses, illness_illness_types: illness records and their types
        - audit_events: immutable, append-only audit trail

        Returns:
            Result[None]: Success or failure result
        """
        try:
            conn = self._get_connection()

            for sequence in ('families_id_seq', 'children_id_seq', 'visits_id_seq',
                             'illnesses_id_seq', 'audit_events_id_seq'):
                conn.execute(f"CREATE SEQUENCE IF NOT EXISTS {sequence}")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS families (
                    id INTEGER PRIMARY KEY DEFAULT nextval('families_id_seq'),
                    name VARCHAR NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS family_members (
                    family_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    role VARCHAR NOT NULL,
                    PRIMARY KEY (family_id, user_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS children (
                    id INTEGER PRIMARY KEY DEFAULT nextval('children_id_seq'),
                    family_id INTEGER NOT NULL,
                    name VARCHAR NOT NULL
                )
            """)

            for definition in ENTITY_DEFINITIONS.values():
                conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {definition.table} (
                        id INTEGER PRIMARY KEY DEFAULT nextval('{definition.table}_id_seq'),
                        {column_ddl(definition.table, DUCKDB_TYPES)}
                    )
                """)
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{definition.table}_child "
                    f"ON {definition.table}(child_id)"
                )
                for collection in definition.collections.values():
                    conn.execute(f"""
                        CREATE TABLE IF NOT EXISTS {collection.table} (
                            {collection.owner_column} INTEGER NOT NULL,
                            sort_order INTEGER NOT NULL,
                            {collection.value_column} VARCHAR NOT NULL
                        )
                    """)
                    conn.execute(
                        f"CREATE INDEX IF NOT EXISTS idx_{collection.table}_owner "
                        f"ON {collection.table}({collection.owner_column})"
                    )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_events (
                    id BIGINT PRIMARY KEY DEFAULT nextval('audit_events_id_seq'),
                    entity_type VARCHAR NOT NULL,
                    entity_id INTEGER NOT NULL,
                    user_id INTEGER,
                    action VARCHAR NOT NULL,
                    changes JSON NOT NULL,
                    summary VARCHAR,
                    request_id VARCHAR,
                    changed_at TIMESTAMP NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_events_entity "
                "ON audit_events(entity_type, entity_id, changed_at)"
            )

            self._initialized = True
            logger.info("Database schema initialized successfully")
            return Result.success_result(None)

        except Exception as e:
            error_msg = f"Failed to initialize schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError"
            )

    def _ensure_schema(self) -> None:
        if not self._initialized:
            result = self.initialize_schema()
            if not result.is_success():
                raise StorageError(result.error, operation="initialize_schema")

    def health_check(self) -> Result[None]:
        """Run a trivial query to confirm the database is reachable."""
        try:
            with self._query_cursor("health_check") as cursor:
                cursor.execute("SELECT 1").fetchone()
            return Result.success_result(None)
        except Exception as e:
            return Result.failure_result(e, error_type="StorageError")

    # ------------------------------------------------------------------
    # Family / child data (used by access control)
    # ------------------------------------------------------------------

    def create_family(self, name: str) -> int:
        self._ensure_schema()
        with self._query_cursor("create_family") as cursor:
            row = cursor.execute("INSERT INTO families (name) VALUES (?) RETURNING id", [name]).fetchone()
        return row[0]

    def add_family_member(self, family_id: int, user_id: int, role: str) -> None:
        self._ensure_schema()
        with self._query_cursor("add_family_member", family_id=family_id) as cursor:
            cursor.execute(
                "INSERT INTO family_members (family_id, user_id, role) VALUES (?, ?, ?)",
                [family_id, user_id, role]
            )

    def create_child(self, family_id: int, name: str) -> int:
        self._ensure_schema()
        with self._query_cursor("create_child", family_id=family_id) as cursor:
            row = cursor.execute(
                "INSERT INTO children (family_id, name) VALUES (?, ?) RETURNING id", [family_id, name]
            ).fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # AccessControlPort
    # ------------------------------------------------------------------

    def _child_role(self, user_id: Optional[int], child_id: Optional[int]) -> Optional[str]:
        if not user_id or child_id is None:
            return None
        self._ensure_schema()
        with self._query_cursor("access_check", child_id=child_id) as cursor:
            row = cursor.execute(
                """
                SELECT fm.role
                FROM children c
                JOIN family_members fm ON fm.family_id = c.family_id
                WHERE c.id = ? AND fm.user_id = ?
                """,
                [child_id, user_id]
            ).fetchone()
        return row[0] if row else None

    def _entity_child_id(self, entity_type: str, entity_id: int) -> Optional[int]:
        definition = get_definition(entity_type)
        self._ensure_schema()
        with self._query_cursor("access_check", entity_type=entity_type, entity_id=entity_id) as cursor:
            row = cursor.execute(
                f"SELECT child_id FROM {definition.table} WHERE id = ?", [entity_id]
            ).fetchone()
        return row[0] if row else None

    def can_read(self, user_id: Optional[int], entity_type: str, entity_id: int) -> bool:
        child_id = self._entity_child_id(entity_type, entity_id)
        return self._child_role(user_id, child_id) is not None

    def can_write(self, user_id: Optional[int], entity_type: str, entity_id: int) -> bool:
        child_id = self._entity_child_id(entity_type, entity_id)
        return self._child_role(user_id, child_id) in WRITE_ROLES

    def can_read_child(self, user_id: Optional[int], child_id: int) -> bool:
        return self._child_role(user_id, child_id) is not None

    def can_write_child(self, user_id: Optional[int], child_id: int) -> bool:
        return self._child_role(user_id, child_id) in WRITE_ROLES

    # ------------------------------------------------------------------
    # EntityStoragePort
    # ------------------------------------------------------------------

    def load(self, entity_type: str, entity_id: int) -> Optional[Dict[str, Any]]:
        definition = get_definition(entity_type)
        self._ensure_schema()
        with self._query_cursor("load", entity_type=entity_type, entity_id=entity_id) as cursor:
            cursor.execute(f"SELECT * FROM {definition.table} WHERE id = ?", [entity_id])
            rows = self._rows(cursor)
        return decode_row(definition, rows[0]) if rows else None

    def load_collection(self, entity_type: str, entity_id: int, field: str) -> List[str]:
        definition = get_definition(entity_type)
        collection = definition.collections[field]
        self._ensure_schema()
        with self._query_cursor("load_collection", entity_type=entity_type, entity_id=entity_id) as cursor:
            rows = cursor.execute(
                f"SELECT {collection.value_column} FROM {collection.table} "
                f"WHERE {collection.owner_column} = ? ORDER BY sort_order",
                [entity_id]
            ).fetchall()
        return [row[0] for row in rows]

    def _replace_collections(
        self,
        cursor: duckdb.DuckDBPyConnection,
        definition: EntityDefinition,
        entity_id: int,
        collections: Dict[str, List[str]]
    ) -> None:
        for field, values in collections.items():
            collection = definition.collections[field]
            cursor.execute(
                f"DELETE FROM {collection.table} WHERE {collection.owner_column} = ?", [entity_id]
            )
            for sort_order, value in enumerate(values):
                cursor.execute(
                    f"INSERT INTO {collection.table} "
                    f"({collection.owner_column}, sort_order, {collection.value_column}) VALUES (?, ?, ?)",
                    [entity_id, sort_order, value]
                )

    def insert(
        self,
        entity_type: str,
        values: Dict[str, Any],
        collections: Optional[Dict[str, List[str]]] = None
    ) -> Dict[str, Any]:
        definition = get_definition(entity_type)
        check_columns(definition, values)
        self._ensure_schema()

        encoded = encode_values(definition, values)
        columns = list(encoded)
        placeholders = ', '.join('?' for _ in columns)

        cursor = self._cursor()
        try:
            cursor.begin()
            cursor.execute(
                f"INSERT INTO {definition.table} ({', '.join(columns)}) "
                f"VALUES ({placeholders}) RETURNING *",
                [encoded[c] for c in columns]
            )
            row = self._rows(cursor)[0]
            self._replace_collections(cursor, definition, row['id'], collections or {})
            cursor.commit()
        except duckdb.Error as e:
            self._rollback(cursor)
            raise StorageError(
                f"Failed to insert {entity_type}: {str(e)}",
                operation="insert",
                details={"entity_type": entity_type}
            )
        finally:
            cursor.close()

        logger.debug(f"Inserted {entity_type} {row['id']}")
        return decode_row(definition, row)

    def update_where(
        self,
        entity_type: str,
        entity_id: int,
        values: Dict[str, Any],
        expected_version: Optional[datetime],
        collections: Optional[Dict[str, List[str]]] = None
    ) -> Tuple[int, Optional[Dict[str, Any]]]:
        definition = get_definition(entity_type)
        check_columns(definition, values)
        self._ensure_schema()

        encoded = encode_values(definition, values)
        assignments = ', '.join(f"{column} = ?" for column in encoded)
        params: List[Any] = list(encoded.values()) + [entity_id]
        where = "WHERE id = ?"
        if expected_version is not None:
            where += " AND updated_at = ?"
            params.append(expected_version)

        cursor = self._cursor()
        try:
            cursor.begin()
            cursor.execute(
                f"UPDATE {definition.table} SET {assignments} {where} RETURNING *", params
            )
            rows = self._rows(cursor)
            if not rows:
                self._rollback(cursor)
                return 0, None
            self._replace_collections(cursor, definition, entity_id, collections or {})
            cursor.commit()
        except duckdb.TransactionException as e:
            # Another transaction updated the row first
            self._rollback(cursor)
            logger.info(f"Write conflict on {entity_type} {entity_id}: {str(e)}")
            return 0, None
        except duckdb.Error as e:
            self._rollback(cursor)
            raise StorageError(
                f"Failed to update {entity_type}: {str(e)}",
                operation="update_where",
                details={"entity_type": entity_type, "entity_id": entity_id}
            )
        finally:
            cursor.close()

        return len(rows), decode_row(definition, rows[0])

    def delete(self, entity_type: str, entity_id: int) -> int:
        definition = get_definition(entity_type)
        self._ensure_schema()

        cursor = self._cursor()
        try:
            cursor.begin()
            for collection in definition.collections.values():
                cursor.execute(
                    f"DELETE FROM {collection.table} WHERE {collection.owner_column} = ?", [entity_id]
                )
            cursor.execute(f"DELETE FROM {definition.table} WHERE id = ? RETURNING id", [entity_id])
            deleted = len(cursor.fetchall())
            cursor.commit()
        except duckdb.Error as e:
            self._rollback(cursor)
            raise StorageError(
                f"Failed to delete {entity_type}: {str(e)}",
                operation="delete",
                details={"entity_type": entity_type, "entity_id": entity_id}
            )
        finally:
            cursor.close()
        return deleted

    # ------------------------------------------------------------------
    # AuditStoragePort
    # ------------------------------------------------------------------

    def append_audit_event(self, row: Dict[str, Any]) -> int:
        self._ensure_schema()
        details = {"entity_type": row.get('entity_type'), "entity_id": row.get('entity_id')}
        with self._query_cursor("append_audit_event", **details) as cursor:
            result = cursor.execute(
                """
                INSERT INTO audit_events
                    (entity_type, entity_id, user_id, action, changes, summary, request_id, changed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                [
                    row['entity_type'],
                    row['entity_id'],
                    row.get('user_id'),
                    row['action'],
                    json.dumps(row.get('changes') or {}),
                    row.get('summary'),
                    row.get('request_id'),
                    row['changed_at'],
                ]
            ).fetchone()
        return int(result[0])

    def list_audit_events(
        self,
        entity_type: str,
        entity_id: int,
        limit: int,
        offset: int
    ) -> Tuple[List[Dict[str, Any]], int]:
        self._ensure_schema()
        with self._query_cursor("list_audit_events", entity_type=entity_type, entity_id=entity_id) as cursor:
            total = cursor.execute(
                "SELECT COUNT(*) FROM audit_events WHERE entity_type = ? AND entity_id = ?",
                [entity_type, entity_id]
            ).fetchone()[0]
            cursor.execute(
                f"""
                SELECT {', '.join(AUDIT_COLUMNS)}
                FROM audit_events
                WHERE entity_type = ? AND entity_id = ?
                ORDER BY changed_at DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                [entity_type, entity_id, limit, offset]
            )
            rows = self._rows(cursor)
        return rows, int(total)
