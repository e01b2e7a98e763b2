"""
Configuration system for dbconverge using Pydantic.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]{0,62}$")


class DatabaseConnection(BaseModel):
    """Database connection configuration."""

    host: str = Field("localhost", description="Database host")
    port: int = Field(5432, description="Database port")
    database: str = Field(..., description="Database name")
    user: str = Field(..., description="Database user")
    password: str = Field("", description="Database password")
    ssl_mode: Optional[str] = Field(None, description="SSL mode")
    command_timeout: int = Field(60, description="Command timeout in seconds")
    min_pool_size: int = Field(1, description="Minimum connections in pool")
    max_pool_size: int = Field(5, description="Maximum connections in pool")

    def to_dsn(self) -> str:
        """Convert to PostgreSQL DSN string."""
        dsn = (
            f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/"
            f"{self.database}"
        )
        if self.ssl_mode:
            dsn += f"?sslmode={self.ssl_mode}"
        return dsn

    def pool_settings(self) -> Dict[str, Any]:
        """Keyword arguments for ``ConnectionConfig``."""
        return {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.user,
            "password": self.password,
            "ssl_mode": self.ssl_mode,
            "command_timeout": float(self.command_timeout),
            "min_size": self.min_pool_size,
            "max_size": self.max_pool_size,
        }


class DeclarationsConfig(BaseModel):
    """Where module declarations and whitelist files live."""

    path: str = Field("declarations", description="Directory of module declaration files")
    pattern: str = Field("*.yaml", description="Glob pattern for declaration files")
    whitelist_dir: str = Field("whitelist", description="Directory of whitelist files")


class ReconcileConfig(BaseModel):
    """Schema reconciliation configuration."""

    target_schema: str = Field("public", description="Schema to reconcile")
    metadata_schema: str = Field(
        "dbconverge_meta", description="Schema holding the applied-schema marker"
    )
    marker_table: str = Field("applied_schema", description="Marker table name")
    lock_key: Optional[int] = Field(
        None, description="Advisory lock key (derived from database and schema if unset)"
    )
    lock_timeout: float = Field(30.0, description="Seconds to wait for the catalog lock")
    statement_timeout: int = Field(300, description="Per-statement timeout in seconds")
    transactional_ddl: bool = Field(
        True, description="Apply each table's operations in one transaction"
    )
    short_circuit: bool = Field(
        True, description="Skip apply when the applied-schema marker matches"
    )

    @field_validator("target_schema", "metadata_schema", "marker_table")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        if not _IDENTIFIER_RE.match(v):
            raise ValueError(f"'{v}' is not a valid PostgreSQL identifier")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        "INFO", description="Log level"
    )
    format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format",
    )
    file: Optional[str] = Field(None, description="Log file path")
    max_size: int = Field(10485760, description="Max log file size in bytes")  # 10MB
    backup_count: int = Field(5, description="Number of backup log files")
    json_format: bool = Field(False, description="Emit JSON log lines")


class DbconvergeConfig(BaseSettings):
    """Main dbconverge configuration."""

    service_name: str = Field("dbconverge", description="Service name")
    debug: bool = Field(False, description="Enable debug mode")

    database: Optional[DatabaseConnection] = Field(
        None, description="Target database connection"
    )
    declarations: DeclarationsConfig = Field(
        default_factory=DeclarationsConfig, description="Declaration sources"
    )
    reconcile: ReconcileConfig = Field(
        default_factory=ReconcileConfig, description="Reconciliation settings"
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="DBCONVERGE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "DbconvergeConfig":
        """Load configuration from a YAML file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

            data = cls._expand_env_vars(data)

            return cls(**data)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in configuration file: {e}")
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    @classmethod
    def _expand_env_vars(cls, data: Any) -> Any:
        """Recursively expand environment variables in configuration data."""
        if isinstance(data, dict):
            return {k: cls._expand_env_vars(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [cls._expand_env_vars(item) for item in data]
        elif isinstance(data, str):
            return os.path.expandvars(data)
        else:
            return data

    def require_database(self) -> DatabaseConnection:
        """Get the database connection, which commands touching the store need."""
        if self.database is None:
            raise ConfigurationError("No database connection configured")
        return self.database

    def validate_config(self) -> None:
        """Validate the entire configuration for consistency."""
        if self.reconcile.target_schema == self.reconcile.metadata_schema:
            raise ConfigurationError(
                "reconcile.metadata_schema must differ from reconcile.target_schema",
                {"schema": self.reconcile.target_schema},
            )

        if self.database is not None:
            if self.database.min_pool_size > self.database.max_pool_size:
                raise ConfigurationError(
                    "database.min_pool_size cannot exceed database.max_pool_size"
                )
            # the catalog lock pins one connection while the executor uses another
            if self.database.max_pool_size < 2:
                raise ConfigurationError("database.max_pool_size must be at least 2")

        if self.declarations.path == self.declarations.whitelist_dir:
            raise ConfigurationError(
                "declarations.whitelist_dir must differ from declarations.path"
            )

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save configuration to a YAML file."""
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(
                self.model_dump(exclude_none=True, mode="json"),
                f,
                default_flow_style=False,
                indent=2,
                sort_keys=False,
            )
