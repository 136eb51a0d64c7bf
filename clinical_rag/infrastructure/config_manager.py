"""Configuration Manager for Secure Credential Handling.

This module provides a configuration manager for the database, the external AI
models and the retrieval pipeline. API keys are held as SecretStr so they are
never logged or exposed in error messages.

Security Impact:
    - Credentials are never logged or exposed in error messages
    - Supports environment variables (with optional .env file) and JSON files
    - Validates configuration before use

Architecture:
    - Follows Hexagonal Architecture: Infrastructure layer isolated from domain
    - Type-safe configuration using Pydantic models
    - Fail-fast validation prevents runtime errors
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "CR_"


class DatabaseConfig(BaseModel):
    """Database configuration.

    Parameters:
        db_type: Type of database (only 'duckdb' is supported)
        db_path: Path to the database file, or ':memory:'
    """

    db_type: str = Field("duckdb", description="Database type")
    db_path: Optional[str] = Field(None, description="Path to database file (for DuckDB)")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        supported_types = ["duckdb"]
        if v.lower() not in supported_types:
            raise ValueError(f"Unsupported database type: {v}. Supported: {supported_types}")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        """Validate database directory exists (if a path is provided)."""
        if v is None or v == ":memory:":
            return v

        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")
        return str(db_path_obj)

    def get_connection_string(self) -> str:
        return self.db_path or ":memory:"


class AIConfig(BaseModel):
    """External AI model configuration.

    Security Impact:
        - api_key is a SecretStr and never appears in repr or logs
    """

    api_key: Optional[SecretStr] = Field(None, description="API key for the model provider (secret)")
    base_url: Optional[str] = Field(None, description="Override for the provider's API base URL")
    embedding_model: str = Field("text-embedding-3-small")
    embedding_dimensions: int = Field(1536, gt=0)
    generation_model: str = Field("gpt-4o-mini")
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(1000, gt=0)
    request_timeout: float = Field(30.0, gt=0)


class RetrievalConfig(BaseModel):
    """Retrieval pipeline tuning.

    Parameters:
        top_k: Maximum context records per query
        min_threshold: Exclusive similarity threshold for context admission
        min_confidence: Confidence floor below which responses are flagged
        embedding_timeout: Seconds allowed for an embedding call
        generation_timeout: Seconds allowed for a generation call
        storage_timeout: Seconds allowed for a store call
        source_text_prefix: Characters of source text kept per embedding
    """

    top_k: int = Field(5, ge=1)
    min_threshold: float = Field(0.3, ge=-1.0, le=1.0)
    min_confidence: float = Field(0.3, ge=0.0, le=1.0)
    embedding_timeout: float = Field(30.0, gt=0)
    generation_timeout: float = Field(60.0, gt=0)
    storage_timeout: float = Field(10.0, gt=0)
    source_text_prefix: int = Field(500, ge=0, le=500)


def _env(name: str) -> Optional[str]:
    value = os.getenv(f"{ENV_PREFIX}{name}")
    return value if value not in (None, "") else None


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


class ConfigManager:
    """Configuration manager for database, AI and retrieval settings.

    Example Usage:
        ```python
        config = ConfigManager.from_environment()
        ai_config = config.get_ai_config()

        config = ConfigManager.from_file("config.json")
        retrieval = config.get_retrieval_config()
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        self._config_data = config_data
        self._database_config: Optional[DatabaseConfig] = None
        self._ai_config: Optional[AIConfig] = None
        self._retrieval_config: Optional[RetrievalConfig] = None

    @classmethod
    def from_environment(cls, env_file: Optional[str] = None) -> 'ConfigManager':
        """Load configuration from environment variables.

        Environment Variables:
            - CR_DB_PATH: DuckDB file path (default ':memory:')
            - CR_OPENAI_API_KEY (or OPENAI_API_KEY): Model provider API key (secret)
            - CR_OPENAI_BASE_URL: Provider base URL override
            - CR_EMBEDDING_MODEL, CR_EMBEDDING_DIMENSIONS
            - CR_GENERATION_MODEL, CR_TEMPERATURE, CR_MAX_TOKENS, CR_REQUEST_TIMEOUT
            - CR_TOP_K, CR_MIN_THRESHOLD, CR_MIN_CONFIDENCE
            - CR_EMBEDDING_TIMEOUT, CR_GENERATION_TIMEOUT, CR_STORAGE_TIMEOUT

        Parameters:
            env_file: .env file to load first (defaults to ./.env when present)

        Returns:
            ConfigManager instance
        """
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug(f"Loaded environment variables from {env_path}")

        config_data = {
            "database": _drop_none({
                "db_type": _env("DB_TYPE"),
                "db_path": _env("DB_PATH"),
            }),
            "ai": _drop_none({
                "api_key": _env("OPENAI_API_KEY") or os.getenv("OPENAI_API_KEY") or None,
                "base_url": _env("OPENAI_BASE_URL"),
                "embedding_model": _env("EMBEDDING_MODEL"),
                "embedding_dimensions": _env("EMBEDDING_DIMENSIONS"),
                "generation_model": _env("GENERATION_MODEL"),
                "temperature": _env("TEMPERATURE"),
                "max_tokens": _env("MAX_TOKENS"),
                "request_timeout": _env("REQUEST_TIMEOUT"),
            }),
            "retrieval": _drop_none({
                "top_k": _env("TOP_K"),
                "min_threshold": _env("MIN_THRESHOLD"),
                "min_confidence": _env("MIN_CONFIDENCE"),
                "embedding_timeout": _env("EMBEDDING_TIMEOUT"),
                "generation_timeout": _env("GENERATION_TIMEOUT"),
                "storage_timeout": _env("STORAGE_TIMEOUT"),
            }),
        }
        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

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

        if not isinstance(config_data, dict):
            raise ValueError("Configuration file must contain a JSON object")
        return cls(config_data)

    def get_database_config(self) -> DatabaseConfig:
        if self._database_config is None:
            self._database_config = DatabaseConfig(**self._config_data.get("database", {}))
        return self._database_config

    def get_ai_config(self) -> AIConfig:
        if self._ai_config is None:
            self._ai_config = AIConfig(**self._config_data.get("ai", {}))
        return self._ai_config

    def get_retrieval_config(self) -> RetrievalConfig:
        if self._retrieval_config is None:
            self._retrieval_config = RetrievalConfig(**self._config_data.get("retrieval", {}))
        return self._retrieval_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key.

        Parameters:
            key: Configuration key (supports dot notation, e.g., "retrieval.top_k")
            default: Default value if key not found
        """
        keys = key.split(".")
        value = self._config_data

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default
