"""Application Settings and Configuration.

This module provides application-wide settings that combine configuration
from the configuration manager with application-specific defaults.

Security Impact:
    - Settings are loaded from secure configuration sources
    - Sensitive values are never logged
"""

import os
from typing import Optional

from clinical_rag import __version__
from clinical_rag.infrastructure.config_manager import (
    AIConfig,
    ConfigManager,
    DatabaseConfig,
    RetrievalConfig,
)

APP_NAME = "Clinical-RAG"
APP_VERSION = __version__


class Settings:
    """Application settings loaded lazily from the configuration manager.

    Set CR_CONFIG_FILE to load a JSON configuration file instead of the
    environment.
    """

    def __init__(self):
        self._config_manager: Optional[ConfigManager] = None

        self.app_name = os.getenv("CR_APP_NAME", APP_NAME)
        self.log_level = os.getenv("CR_LOG_LEVEL", "INFO")
        self.log_json = os.getenv("CR_LOG_JSON", "false").lower() == "true"
        self.default_owner = os.getenv("CR_DEFAULT_OWNER", "local")

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            config_file = os.getenv("CR_CONFIG_FILE")
            if config_file:
                self._config_manager = ConfigManager.from_file(config_file)
            else:
                self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def db_config(self) -> DatabaseConfig:
        return self.config_manager.get_database_config()

    @property
    def ai_config(self) -> AIConfig:
        return self.config_manager.get_ai_config()

    @property
    def retrieval_config(self) -> RetrievalConfig:
        return self.config_manager.get_retrieval_config()

    def get_db_path(self) -> str:
        """Database path, or ':memory:' for an in-memory database."""
        return self.db_config.get_connection_string()


# Global settings instance
settings = Settings()
