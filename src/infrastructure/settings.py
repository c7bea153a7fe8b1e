"""Application settings.

``settings`` is the process-wide view of configuration used by the API and
the CLI: app metadata and logging options come straight from the
environment, while database and audit policy are resolved lazily through
ConfigManager so tests can patch the environment before first use.
"""

import os
from typing import List, Optional

from src.infrastructure.config_manager import AuditConfig, ConfigManager, DatabaseConfig

APP_NAME = "Family-Chart"
APP_VERSION = "1.0.0"

DEFAULT_CORS_ORIGINS = "http://localhost:3000"


def _split_origins(raw: str) -> List[str]:
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


class Settings:
    """Resolved application settings.

    Environment Variables:
        - FC_APP_NAME: Display name (default Family-Chart)
        - FC_LOG_LEVEL (or LOG_LEVEL): Root log level
        - JSON_LOGS: "true" for JSON log lines
        - FC_CORS_ORIGINS: Comma separated allowed origins
        - FC_DB_* / FC_AUDIT_* etc.: see ConfigManager.from_environment
    """

    def __init__(self):
        self.app_name = os.getenv("FC_APP_NAME", APP_NAME)
        self.app_version = APP_VERSION
        self.log_level = os.getenv("FC_LOG_LEVEL") or os.getenv("LOG_LEVEL", "INFO")
        self.json_logs = os.getenv("JSON_LOGS", "false").lower() == "true"
        self.cors_origins = _split_origins(os.getenv("FC_CORS_ORIGINS", DEFAULT_CORS_ORIGINS))
        self._config_manager: Optional[ConfigManager] = None

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def db_config(self) -> DatabaseConfig:
        return self.config_manager.get_database_config()

    @property
    def audit_config(self) -> AuditConfig:
        return self.config_manager.get_audit_config()

    def describe_database(self) -> str:
        """Human readable location of the configured database (no credentials)."""
        db_config = self.db_config
        if db_config.db_type == "duckdb":
            return db_config.db_path or ":memory:"
        return f"{db_config.host}:{db_config.port or 5432}/{db_config.database}"


settings = Settings()
