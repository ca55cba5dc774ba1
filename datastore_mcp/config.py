"""Application configuration loaded from environment variables."""

from __future__ import annotations

import logging

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from datastore_mcp.backends.base import BackendKind
from datastore_mcp.backends.relational import connection_string_secrets

logger = logging.getLogger("config")


class Settings(BaseSettings):
    """Central settings pulled from .env / environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Relational backend (Azure SQL / MSSQL)
    mssql_connection_string: SecretStr | None = None
    """ADO.NET connection string or SQLAlchemy URL. Enables the relational tools."""

    mssql_odbc_driver: str = "ODBC Driver 18 for SQL Server"

    # Document backend (Cosmos DB)
    cosmos_endpoint: str | None = None
    cosmos_key: SecretStr | None = None
    cosmos_default_database: str | None = None
    """Database used when query_items is called without ``database``."""

    # Pool & limits
    pool_size: int = Field(5, ge=1)
    acquire_timeout_seconds: float = Field(5.0, gt=0)
    query_timeout_seconds: float = Field(30.0, gt=0)
    connect_attempts: int = Field(3, ge=1)
    connect_backoff_seconds: float = Field(0.2, ge=0)
    page_size: int = Field(500, ge=1)
    max_query_length: int = Field(100_000, ge=1)

    # App
    log_level: str = "INFO"

    # MCP
    mcp_server_name: str = "datastore-mcp"
    mcp_server_version: str = "0.1.0"

    # Debug HTTP server
    debug_host: str = "127.0.0.1"
    debug_port: int = 8000

    @property
    def relational_enabled(self) -> bool:
        conn_str = self.mssql_connection_string
        return bool(conn_str and conn_str.get_secret_value())

    @property
    def document_enabled(self) -> bool:
        return bool(self.cosmos_endpoint)

    @property
    def document_usable(self) -> bool:
        """Endpoint *and* key present; an endpoint alone only enables the backend."""
        return self.document_enabled and bool(
            self.cosmos_key and self.cosmos_key.get_secret_value()
        )

    def enabled_backends(self) -> list[BackendKind]:
        """Backend kinds with configuration present, in a stable order."""
        enabled: list[BackendKind] = []
        if self.relational_enabled:
            enabled.append(BackendKind.RELATIONAL)
        if self.document_enabled:
            enabled.append(BackendKind.DOCUMENT)
        return enabled

    def secret_values(self) -> list[str]:
        """Every configured credential string that must never leave the process."""
        secrets: list[str] = []
        if self.mssql_connection_string:
            secrets.extend(
                connection_string_secrets(self.mssql_connection_string.get_secret_value())
            )
        if self.cosmos_key:
            secrets.append(self.cosmos_key.get_secret_value())
        return [s for s in secrets if s]

    def log_summary(self) -> None:
        """Log which backends are available without revealing credentials."""
        if self.relational_enabled:
            logger.info("MSSQL connection string found – relational tools will be available")
        if self.document_usable:
            logger.info("Cosmos DB endpoint + account key found – document tools will be available")
        elif self.document_enabled:
            logger.warning(
                "COSMOS_ENDPOINT is set but COSMOS_KEY is missing – document tools will "
                "return BackendNotConfigured until COSMOS_KEY is configured"
            )


settings = Settings()
