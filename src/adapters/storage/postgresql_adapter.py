"""PostgreSQL Storage Adapter.

This adapter implements entity storage, the append-only audit event store
and family-based access control on PostgreSQL for production deployments.

Security Impact:
    - The conditional UPDATE is the authoritative compare-and-swap: under
      READ COMMITTED a second writer blocks on the row lock, re-evaluates
      the updated_at condition and affects zero rows
    - Audit events are append-only; no update or delete is exposed
    - Connection credentials are never logged
    - SSL connections supported for secure network communication

Architecture:
    - Implements EntityStoragePort, AuditStoragePort and AccessControlPort
    - Connection pooling (psycopg2 ThreadedConnectionPool), one connection
      and one transaction per unit of work
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import psycopg2
from psycopg2 import pool
from psycopg2.extras import Json, RealDictCursor

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

POSTGRES_TYPES = {
    'int': 'INTEGER',
    'text': 'TEXT',
    'date': 'DATE',
    'double': 'DOUBLE PRECISION',
    'decimal': 'NUMERIC(5, 2)',
    'bool': 'BOOLEAN',
    'json': 'JSONB',
    'timestamp': 'TIMESTAMP',
}


class PostgreSQLAdapter(EntityStoragePort, AuditStoragePort, AccessControlPort):
    """PostgreSQL implementation of the record, audit and access-control ports.

    Parameters:
        db_config: DatabaseConfig from configuration manager (preferred)
        connection_string: Full PostgreSQL connection string
        pool_size: Maximum pooled connections

    Example Usage:
        ```python
        from src.infrastructure.settings import settings

        adapter = PostgreSQLAdapter(db_config=settings.db_config)
        result = adapter.initialize_schema()
        ```
    """

    db_type = "postgresql"

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        connection_string: Optional[str] = None,
        pool_size: int = 5
    ):
        self._connection_pool: Optional[pool.ThreadedConnectionPool] = None
        self._initialized = False

        if db_config:
            if db_config.db_type != "postgresql":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match PostgreSQL adapter",
                    operation="__init__"
                )
            if db_config.connection_string:
                self.connection_params = {"dsn": db_config.connection_string.get_secret_value()}
            else:
                if not all([db_config.host, db_config.database]):
                    raise StorageError(
                        "PostgreSQL DatabaseConfig requires host and database",
                        operation="__init__"
                    )
                self.connection_params = {
                    "host": db_config.host,
                    "port": db_config.port or 5432,
                    "database": db_config.database,
                    "user": db_config.username,
                    "sslmode": db_config.ssl_mode or "prefer",
                }
                if db_config.password:
                    self.connection_params["password"] = db_config.password.get_secret_value()
            self.pool_size = db_config.pool_size
        elif connection_string:
            self.connection_params = {"dsn": connection_string}
            self.pool_size = pool_size
        else:
            raise StorageError(
                "PostgreSQL adapter requires either db_config or connection_string",
                operation="__init__"
            )

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def _get_connection_pool(self) -> pool.ThreadedConnectionPool:
        """Get or create the connection pool (created lazily)."""
        if self._connection_pool is None:
            try:
                self._connection_pool = pool.ThreadedConnectionPool(
                    minconn=1,
                    maxconn=self.pool_size,
                    **self.connection_params
                )
                logger.info("Created PostgreSQL connection pool")
            except Exception as e:
                raise StorageError(
                    f"Failed to create PostgreSQL connection pool: {str(e)}",
                    operation="connect",
                    details={"host": self.connection_params.get("host", "N/A")}
                )
        return self._connection_pool

    def _get_connection(self):
        """Get a connection from the pool.

        Raises:
            StorageError: If connection cannot be obtained
        """
        try:
            return self._get_connection_pool().getconn()
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(
                f"Failed to get connection from pool: {str(e)}",
                operation="get_connection"
            )

    def _return_connection(self, conn) -> None:
        try:
            self._get_connection_pool().putconn(conn)
        except Exception as e:
            logger.warning(f"Error returning connection to pool: {str(e)}")

    def _fetch(self, query: str, params: Optional[list] = None, one: bool = False):
        conn = self._get_connection()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params or [])
                rows = cur.fetchall() if cur.description else []
            conn.commit()
            if one:
                return dict(rows[0]) if rows else None
            return [dict(row) for row in rows]
        except psycopg2.Error as e:
            conn.rollback()
            raise StorageError(f"Query failed: {str(e)}", operation="query")
        finally:
            self._return_connection(conn)

    def close(self) -> None:
        """Close storage connection pool and release resources."""
        if self._connection_pool is not None:
            try:
                self._connection_pool.closeall()
                self._connection_pool = None
                logger.info("Closed PostgreSQL connection pool")
            except Exception as e:
                logger.warning(f"Error closing connection pool: {str(e)}")

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def initialize_schema(self) -> Result[None]:
        """Initialize database schema (tables and indexes).

        Returns:
            Result[None]: Success or failure result
        """
        conn = None
        try:
            conn = self._get_connection()
            with conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS families (
                        id SERIAL PRIMARY KEY,
                        name TEXT NOT NULL
                    )
                """)
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS family_members (
                        family_id INTEGER NOT NULL REFERENCES families(id) ON DELETE CASCADE,
                        user_id INTEGER NOT NULL,
                        role TEXT NOT NULL CHECK (role IN ('owner', 'parent', 'read_only')),
                        PRIMARY KEY (family_id, user_id)
                    )
                """)
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS children (
                        id SERIAL PRIMARY KEY,
                        family_id INTEGER NOT NULL REFERENCES families(id) ON DELETE CASCADE,
                        name TEXT NOT NULL
                    )
                """)

                for definition in ENTITY_DEFINITIONS.values():
                    cur.execute(f"""
                        CREATE TABLE IF NOT EXISTS {definition.table} (
                            id SERIAL PRIMARY KEY,
                            {column_ddl(definition.table, POSTGRES_TYPES)}
                        )
                    """)
                    cur.execute(
                        f"CREATE INDEX IF NOT EXISTS idx_{definition.table}_child "
                        f"ON {definition.table}(child_id)"
                    )
                    for collection in definition.collections.values():
                        cur.execute(f"""
                            CREATE TABLE IF NOT EXISTS {collection.table} (
                                {collection.owner_column} INTEGER NOT NULL
                                    REFERENCES {definition.table}(id) ON DELETE CASCADE,
                                sort_order INTEGER NOT NULL,
                                {collection.value_column} TEXT NOT NULL
                            )
                        """)
                        cur.execute(
                            f"CREATE INDEX IF NOT EXISTS idx_{collection.table}_owner "
                            f"ON {collection.table}({collection.owner_column})"
                        )

                # No foreign key: events outlive the entity they describe
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS audit_events (
                        id BIGSERIAL PRIMARY KEY,
                        entity_type TEXT NOT NULL,
                        entity_id INTEGER NOT NULL,
                        user_id INTEGER,
                        action TEXT NOT NULL CHECK (action IN ('created', 'updated', 'deleted')),
                        changes JSONB NOT NULL DEFAULT '{}'::jsonb,
                        summary TEXT,
                        request_id TEXT,
                        changed_at TIMESTAMP NOT NULL
                    )
                """)
                cur.execute(
                    "CREATE INDEX IF NOT EXISTS idx_audit_events_entity "
                    "ON audit_events(entity_type, entity_id, changed_at DESC)"
                )
            conn.commit()

            self._initialized = True
            logger.info("Database schema initialized successfully")
            return Result.success_result(None)

        except Exception as e:
            if conn:
                conn.rollback()
            error_msg = f"Failed to initialize schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError"
            )
        finally:
            if conn:
                self._return_connection(conn)

    def health_check(self) -> Result[None]:
        """Run a trivial query to confirm the database is reachable."""
        try:
            self._fetch("SELECT 1 AS ok", one=True)
            return Result.success_result(None)
        except StorageError as e:
            return Result.failure_result(e, error_type="StorageError")

    # ------------------------------------------------------------------
    # AccessControlPort
    # ------------------------------------------------------------------

    def _child_role(self, user_id: Optional[int], child_id: Optional[int]) -> Optional[str]:
        if not user_id or child_id is None:
            return None
        row = self._fetch(
            """
            SELECT fm.role
            FROM children c
            JOIN family_members fm ON fm.family_id = c.family_id
            WHERE c.id = %s AND fm.user_id = %s
            """,
            [child_id, user_id],
            one=True
        )
        return row['role'] if row else None

    def _entity_child_id(self, entity_type: str, entity_id: int) -> Optional[int]:
        definition = get_definition(entity_type)
        row = self._fetch(f"SELECT child_id FROM {definition.table} WHERE id = %s", [entity_id], one=True)
        return row['child_id'] if row else None

    def can_read(self, user_id: Optional[int], entity_type: str, entity_id: int) -> bool:
        return self._child_role(user_id, self._entity_child_id(entity_type, entity_id)) is not None

    def can_write(self, user_id: Optional[int], entity_type: str, entity_id: int) -> bool:
        return self._child_role(user_id, self._entity_child_id(entity_type, entity_id)) in WRITE_ROLES

    def can_read_child(self, user_id: Optional[int], child_id: int) -> bool:
        return self._child_role(user_id, child_id) is not None

    def can_write_child(self, user_id: Optional[int], child_id: int) -> bool:
        return self._child_role(user_id, child_id) in WRITE_ROLES

    # ------------------------------------------------------------------
    # EntityStoragePort
    # ------------------------------------------------------------------

    def load(self, entity_type: str, entity_id: int) -> Optional[Dict[str, Any]]:
        definition = get_definition(entity_type)
        row = self._fetch(f"SELECT * FROM {definition.table} WHERE id = %s", [entity_id], one=True)
        return decode_row(definition, row) if row else None

    def load_collection(self, entity_type: str, entity_id: int, field: str) -> List[str]:
        collection = get_definition(entity_type).collections[field]
        rows = self._fetch(
            f"SELECT {collection.value_column} AS value FROM {collection.table} "
            f"WHERE {collection.owner_column} = %s ORDER BY sort_order",
            [entity_id]
        )
        return [row['value'] for row in rows]

    @staticmethod
    def _replace_collections(cur, definition: EntityDefinition, entity_id: int,
                             collections: Dict[str, List[str]]) -> None:
        for field, values in collections.items():
            collection = definition.collections[field]
            cur.execute(f"DELETE FROM {collection.table} WHERE {collection.owner_column} = %s", [entity_id])
            for sort_order, value in enumerate(values):
                cur.execute(
                    f"INSERT INTO {collection.table} "
                    f"({collection.owner_column}, sort_order, {collection.value_column}) VALUES (%s, %s, %s)",
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
        encoded = encode_values(definition, values)
        columns = list(encoded)

        conn = self._get_connection()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"INSERT INTO {definition.table} ({', '.join(columns)}) "
                    f"VALUES ({', '.join(['%s'] * len(columns))}) RETURNING *",
                    [encoded[c] for c in columns]
                )
                row = dict(cur.fetchone())
                self._replace_collections(cur, definition, row['id'], collections or {})
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            raise StorageError(
                f"Failed to insert {entity_type}: {str(e)}",
                operation="insert",
                details={"entity_type": entity_type}
            )
        finally:
            self._return_connection(conn)

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
        encoded = encode_values(definition, values)

        assignments = ', '.join(f"{column} = %s" for column in encoded)
        params: List[Any] = list(encoded.values()) + [entity_id]
        where = "WHERE id = %s"
        if expected_version is not None:
            where += " AND updated_at = %s"
            params.append(expected_version)

        conn = self._get_connection()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(f"UPDATE {definition.table} SET {assignments} {where} RETURNING *", params)
                rows = [dict(row) for row in cur.fetchall()]
                if not rows:
                    conn.rollback()
                    return 0, None
                self._replace_collections(cur, definition, entity_id, collections or {})
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            raise StorageError(
                f"Failed to update {entity_type}: {str(e)}",
                operation="update_where",
                details={"entity_type": entity_type, "entity_id": entity_id}
            )
        finally:
            self._return_connection(conn)

        return len(rows), decode_row(definition, rows[0])

    def delete(self, entity_type: str, entity_id: int) -> int:
        definition = get_definition(entity_type)
        conn = self._get_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {definition.table} WHERE id = %s", [entity_id])
                deleted = cur.rowcount
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            raise StorageError(
                f"Failed to delete {entity_type}: {str(e)}",
                operation="delete",
                details={"entity_type": entity_type, "entity_id": entity_id}
            )
        finally:
            self._return_connection(conn)
        return deleted

    # ------------------------------------------------------------------
    # AuditStoragePort
    # ------------------------------------------------------------------

    def append_audit_event(self, row: Dict[str, Any]) -> int:
        inserted = self._fetch(
            """
            INSERT INTO audit_events
                (entity_type, entity_id, user_id, action, changes, summary, request_id, changed_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            [
                row['entity_type'],
                row['entity_id'],
                row.get('user_id'),
                row['action'],
                Json(row.get('changes') or {}),
                row.get('summary'),
                row.get('request_id'),
                row['changed_at'],
            ],
            one=True
        )
        return int(inserted['id'])

    def list_audit_events(
        self,
        entity_type: str,
        entity_id: int,
        limit: int,
        offset: int
    ) -> Tuple[List[Dict[str, Any]], int]:
        total = self._fetch(
            "SELECT COUNT(*) AS total FROM audit_events WHERE entity_type = %s AND entity_id = %s",
            [entity_type, entity_id],
            one=True
        )['total']
        rows = self._fetch(
            f"""
            SELECT {', '.join(AUDIT_COLUMNS)}
            FROM audit_events
            WHERE entity_type = %s AND entity_id = %s
            ORDER BY changed_at DESC, id DESC
            LIMIT %s OFFSET %s
            """,
            [entity_type, entity_id, limit, offset]
        )
        return rows, int(total)
