"""Configuration Manager for Database Credentials and Audit Policy.

This module loads database connection settings and the audit/concurrency
policy of the record service from environment variables or a JSON file.

Security Impact:
    - Credentials are never logged or exposed in error messages
    - Passwords and connection strings are held as SecretStr
    - The audit failure policy is explicit configuration, not a hardcoded choice

Architecture:
    - Follows Hexagonal Architecture: Infrastructure layer isolated from domain
    - Type-safe configuration using Pydantic models
    - Fail-fast validation prevents runtime errors
"""

import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, quote_plus, unquote, urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "FC_"
SUPPORTED_DB_TYPES = ["duckdb", "postgresql"]


class AuditFailurePolicy(str, Enum):
    """What happens to a request whose entity write committed but whose audit write failed."""
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


class DatabaseConfig(BaseModel):
    """Database configuration model with secure credential handling.

    Security Impact:
        - Passwords are stored as SecretStr (never logged)
        - Connection strings are validated before use
        - Supports both file-based and in-memory DuckDB databases

    Parameters:
        db_type: Type of database ('duckdb' or 'postgresql')
        db_path: Path to database file (DuckDB only; ':memory:' allowed)
        host: Database host (PostgreSQL)
        port: Database port (PostgreSQL)
        database: Database name
        username: Database username
        password: Database password (SecretStr - never logged)
        connection_string: Full connection string (SecretStr - never logged)
        ssl_mode: SSL mode for secure connections
        pool_size: Connection pool size
    """

    db_type: str = Field(..., description="Database type (duckdb, postgresql)")
    db_path: Optional[str] = Field(None, description="Path to database file (for DuckDB)")
    host: Optional[str] = Field(None, description="Database host")
    port: Optional[int] = Field(None, description="Database port")
    database: Optional[str] = Field(None, description="Database name")
    username: Optional[str] = Field(None, description="Database username")
    password: Optional[SecretStr] = Field(None, description="Database password (secret)")
    connection_string: Optional[SecretStr] = Field(None, description="Full connection string (secret)")
    ssl_mode: Optional[str] = Field(None, description="SSL mode (require, prefer, disable)")
    pool_size: int = Field(default=5, ge=1, description="Connection pool size")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        """Validate database type."""
        if v.lower() not in SUPPORTED_DB_TYPES:
            raise ValueError(f"Unsupported database type: {v}. Supported: {SUPPORTED_DB_TYPES}")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        """Validate that the database directory exists (the file may not yet)."""
        if v is None or v == ":memory:":
            return v

        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")
        return str(db_path_obj)

    @staticmethod
    def _parse_postgresql_connection_string(conn_str: str) -> Dict[str, Any]:
        """Parse a postgresql:// (or postgres://) URL into its components.

        Parameters:
            conn_str: PostgreSQL connection string

        Returns:
            Dictionary with host, port, database, username, password, ssl_mode
        """
        parsed = urlparse(conn_str)
        if parsed.scheme not in ['postgresql', 'postgres']:
            raise ValueError(f"Unsupported connection string scheme: {parsed.scheme}")

        result = {
            'host': parsed.hostname,
            'port': parsed.port,
            'database': parsed.path.lstrip('/') if parsed.path else None,
            'username': unquote(parsed.username) if parsed.username else None,
            'password': unquote(parsed.password) if parsed.password else None,
        }
        query_params = parse_qs(parsed.query)
        if 'sslmode' in query_params:
            result['ssl_mode'] = query_params['sslmode'][0]
        return result

    @model_validator(mode='after')
    def sync_connection_string_and_fields(self) -> 'DatabaseConfig':
        """Keep the PostgreSQL connection string and individual fields in sync.

        A connection string always takes precedence over individual fields.
        """
        if self.db_type != 'postgresql':
            return self

        if self.connection_string:
            try:
                parsed = self._parse_postgresql_connection_string(self.connection_string.get_secret_value())
            except ValueError as e:
                logger.warning(f"Failed to parse connection string, using as-is: {str(e)}")
                return self

            for key in ('host', 'port', 'database', 'username', 'ssl_mode'):
                if parsed.get(key):
                    setattr(self, key, parsed[key])
            if parsed.get('password'):
                self.password = SecretStr(parsed['password'])

        elif self.host and self.database:
            self.connection_string = SecretStr(self._build_postgresql_url())

        return self

    def _build_postgresql_url(self) -> str:
        password_part = ""
        if self.password:
            password_part = f":{quote_plus(self.password.get_secret_value())}"
        username_part = quote_plus(self.username) if self.username else ""
        ssl_part = f"?sslmode={self.ssl_mode}" if self.ssl_mode else ""
        return (
            f"postgresql://{username_part}{password_part}@"
            f"{self.host}:{self.port or 5432}/{self.database}{ssl_part}"
        )

    def get_connection_string(self) -> str:
        """Get connection string for database.

        Returns:
            DuckDB path (or ':memory:') or PostgreSQL URL

        Security Impact:
            - Password is retrieved from SecretStr but not logged
        """
        if self.db_type == "duckdb":
            return self.db_path or ":memory:"

        if self.connection_string:
            return self.connection_string.get_secret_value()
        if not all([self.host, self.database]):
            raise ValueError("postgresql requires host and database")
        return self._build_postgresql_url()


class AuditConfig(BaseModel):
    """Audit trail and optimistic-concurrency policy.

    Parameters:
        failure_policy: fail_open logs audit write failures and lets the request
                        succeed; fail_closed turns them into a 500 after the
                        entity write has committed
        version_tolerance_ms: Client and server version stamps this close
                              together are treated as equal
        history_max_page_size: Upper bound for history page sizes
        history_default_page_size: Page size when the client sends none
        max_change_value_length: Longer string values are truncated in stored change sets
    """

    failure_policy: AuditFailurePolicy = Field(
        default=AuditFailurePolicy.FAIL_OPEN,
        description="Audit write failure handling (fail_open, fail_closed)"
    )
    version_tolerance_ms: int = Field(default=1000, ge=0, description="Version stamp tolerance in ms")
    history_max_page_size: int = Field(default=200, ge=1, description="Maximum history page size")
    history_default_page_size: int = Field(default=50, ge=1, description="Default history page size")
    max_change_value_length: int = Field(default=1000, ge=1, description="Maximum stored string length")

    @model_validator(mode='after')
    def default_page_within_max(self) -> 'AuditConfig':
        if self.history_default_page_size > self.history_max_page_size:
            self.history_default_page_size = self.history_max_page_size
        return self


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _env_int(name: str) -> Optional[int]:
    value = _env(name)
    return int(value) if value else None


class ConfigManager:
    """Configuration manager for database credentials and audit policy.

    Security Impact:
        - Credentials are loaded from trusted sources and never logged
        - Configuration is validated before use

    Example Usage:
        ```python
        config = ConfigManager.from_environment()
        db_config = config.get_database_config()
        audit_config = config.get_audit_config()

        config = ConfigManager.from_file("config.json")
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        """Initialize configuration manager.

        Parameters:
            config_data: Configuration dictionary with optional "database" and "audit" sections
        """
        self._config_data = config_data
        self._database_config: Optional[DatabaseConfig] = None
        self._audit_config: Optional[AuditConfig] = None

    @classmethod
    def from_environment(cls) -> 'ConfigManager':
        """Load configuration from environment variables.

        Environment Variables:
            - FC_DB_TYPE: Database type (duckdb, postgresql)
            - FC_DB_PATH: Path to database file (for DuckDB)
            - FC_DB_HOST, FC_DB_PORT, FC_DB_NAME, FC_DB_USER: PostgreSQL settings
            - FC_DB_PASSWORD: Database password (secret)
            - FC_DB_CONNECTION_STRING: Full connection string (secret)
            - FC_DB_SSL_MODE: SSL mode
            - FC_DB_POOL_SIZE: Connection pool size
            - FC_AUDIT_FAILURE_POLICY: fail_open or fail_closed
            - FC_VERSION_TOLERANCE_MS: Version stamp tolerance
            - FC_HISTORY_MAX_PAGE_SIZE, FC_HISTORY_DEFAULT_PAGE_SIZE: History paging
            - FC_MAX_CHANGE_VALUE_LENGTH: Stored change value truncation length

        A .env file in the project root is loaded first when present.

        Returns:
            ConfigManager instance
        """
        env_path = Path(__file__).parent.parent.parent / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug(f"Loaded environment variables from {env_path}")

        database = {
            "db_type": _env("DB_TYPE", "duckdb"),
            "db_path": _env("DB_PATH"),
            "host": _env("DB_HOST"),
            "port": _env_int("DB_PORT"),
            "database": _env("DB_NAME"),
            "username": _env("DB_USER"),
            "password": _env("DB_PASSWORD"),
            "connection_string": _env("DB_CONNECTION_STRING"),
            "ssl_mode": _env("DB_SSL_MODE"),
            "pool_size": _env_int("DB_POOL_SIZE"),
        }
        audit = {
            "failure_policy": _env("AUDIT_FAILURE_POLICY"),
            "version_tolerance_ms": _env_int("VERSION_TOLERANCE_MS"),
            "history_max_page_size": _env_int("HISTORY_MAX_PAGE_SIZE"),
            "history_default_page_size": _env_int("HISTORY_DEFAULT_PAGE_SIZE"),
            "max_change_value_length": _env_int("MAX_CHANGE_VALUE_LENGTH"),
        }

        # Unset variables fall back to model defaults
        config_data = {
            "database": {k: v for k, v in database.items() if v is not None},
            "audit": {k: v for k, v in audit.items() if v is not None},
        }
        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

        Parameters:
            config_path: Path to configuration file

        Returns:
            ConfigManager instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        stat_info = config_file.stat()
        if stat_info.st_mode & 0o077 != 0:
            logger.warning(
                f"Configuration file has overly permissive permissions: {config_path}. "
                "Consider setting to 600 for credential files."
            )

        try:
            with open(config_file, 'r') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")

        return cls(config_data)

    def get_database_config(self) -> DatabaseConfig:
        """Get database configuration (validated, credentials as SecretStr)."""
        if self._database_config is None:
            db_config_data = dict(self._config_data.get("database", {}))
            db_config_data.setdefault("db_type", "duckdb")

            if db_config_data.get("password"):
                db_config_data["password"] = SecretStr(db_config_data["password"])
            if db_config_data.get("connection_string"):
                db_config_data["connection_string"] = SecretStr(db_config_data["connection_string"])

            self._database_config = DatabaseConfig(**db_config_data)

        return self._database_config

    def get_audit_config(self) -> AuditConfig:
        """Get audit and concurrency policy."""
        if self._audit_config is None:
            self._audit_config = AuditConfig(**self._config_data.get("audit", {}))
        return self._audit_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dot-notation key (e.g. "audit.failure_policy")."""
        value = self._config_data
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default
