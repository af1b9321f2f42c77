"""Pipeline configuration module.

Settings are loaded from:
1. .env file (if present)
2. Environment variables

Credentials for the discovery provider and the remote backup service should be
provided via environment variables, never hardcoded.

Usage:
    >>> from prospect_pipeline.config import config
    >>> config.FLUSH_INTERVAL_MS
    16
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class ConfigError(Exception):
    """Raised when configuration validation fails."""

    pass


class PipelineConfig:
    """Configuration for the lead-acquisition pipeline.

    Attributes:
        APP_ENV: Application environment (dev, prod).
        DISCOVERY_API_URL: Base URL of the streaming discovery provider.
        REMOTE_BACKUP_URL: Base URL of the remote backup service.
        AUTH_TOKEN: Bearer credential for the provider and backup service.
        DURABLE_STORE_URL: SQLAlchemy async URL for the durable local tier.
        FLUSH_INTERVAL_MS: Minimum interval between coalesced batch flushes.
        RECONNECT_MAX_ATTEMPTS: Reconnect attempts before a stream is failed.
        PARTIAL_RESULT_THRESHOLD: Fraction of the requested count below which
            an outcome is flagged partial.
        AUTOSAVE_INTERVAL_SECONDS: Interval of the periodic remote backup.
    """

    def __init__(self) -> None:
        """Initialize configuration by loading from environment variables."""
        self.logger = logging.getLogger(__name__)

        # Application environment
        self.APP_ENV = self._get_optional("APP_ENV", "dev")
        self.DEBUG = self._get_bool("DEBUG")
        self.LOG_LEVEL = self._get_optional("LOG_LEVEL", "INFO")

        # Discovery provider
        self.DISCOVERY_API_URL = self._get_optional("DISCOVERY_API_URL")
        self.DISCOVERY_TIMEOUT_SECONDS = float(
            self._get_optional("DISCOVERY_TIMEOUT_SECONDS", "120")
        )

        # Remote backup service
        self.REMOTE_BACKUP_URL = self._get_optional("REMOTE_BACKUP_URL")
        self.REMOTE_BACKUP_TIMEOUT_SECONDS = float(
            self._get_optional("REMOTE_BACKUP_TIMEOUT_SECONDS", "15")
        )
        self.REMOTE_FETCH_LIMIT = int(self._get_optional("REMOTE_FETCH_LIMIT", "1000"))

        # Session credential
        self.AUTH_TOKEN = self._get_optional("AUTH_TOKEN")

        # Durable local tier
        self.DURABLE_STORE_URL = self._get_optional(
            "DURABLE_STORE_URL", "sqlite+aiosqlite:///prospect_pipeline.db"
        )

        # Ingestion
        self.FLUSH_INTERVAL_MS = int(self._get_optional("FLUSH_INTERVAL_MS", "16"))
        self.RECONNECT_MAX_ATTEMPTS = int(
            self._get_optional("RECONNECT_MAX_ATTEMPTS", "3")
        )
        self.RECONNECT_DELAY_SECONDS = float(
            self._get_optional("RECONNECT_DELAY_SECONDS", "1.0")
        )
        self.PARTIAL_RESULT_THRESHOLD = float(
            self._get_optional("PARTIAL_RESULT_THRESHOLD", "0.95")
        )
        self.DEFAULT_RESULT_COUNT = int(
            self._get_optional("DEFAULT_RESULT_COUNT", "100")
        )

        # Persistence
        self.AUTOSAVE_INTERVAL_SECONDS = float(
            self._get_optional("AUTOSAVE_INTERVAL_SECONDS", "60")
        )

    def _get_required(self, name: str, default: Optional[str] = None) -> str:
        """Get a required configuration value from environment variables.

        Args:
            name: The name of the environment variable.
            default: Optional default value if not found.

        Returns:
            The value of the environment variable or default if provided.

        Raises:
            ConfigError: If the environment variable is not found and no default provided.
        """
        if name in os.environ:
            return os.environ[name]
        if default is not None:
            self.logger.warning(
                "Environment variable %s not found, using default value", name
            )
            return default
        raise ConfigError(
            f"Required environment variable {name} not found and no default provided"
        )

    def _get_optional(self, name: str, default: str = "") -> str:
        """Get an optional configuration value from environment variables.

        Args:
            name: The name of the environment variable.
            default: Default value if not found (default: "").

        Returns:
            The value of the environment variable or the default value.
        """
        if name in os.environ:
            return os.environ[name]
        return default

    def _get_bool(self, name: str) -> bool:
        """Get a boolean configuration value from environment variables.

        Returns:
            True if the environment variable exists and is set to 'true' or '1'.
        """
        return name in os.environ and os.environ[name].lower() in ["true", "1"]

    def validate_for_discovery(self) -> None:
        """Validate configuration required for streaming discovery.

        Raises:
            ConfigError: If the discovery provider URL is missing.
        """
        if not self.DISCOVERY_API_URL:
            raise ConfigError("DISCOVERY_API_URL is required for lead discovery")

    def validate_for_remote_backup(self) -> None:
        """Validate configuration required for the remote backup tier.

        Raises:
            ConfigError: If the remote backup URL or credential is missing.
        """
        if not self.REMOTE_BACKUP_URL:
            raise ConfigError("REMOTE_BACKUP_URL is required for remote backup")
        if not self.AUTH_TOKEN:
            raise ConfigError("AUTH_TOKEN is required for remote backup")

    @property
    def flush_interval_seconds(self) -> float:
        """Coalescing interval in seconds."""
        return self.FLUSH_INTERVAL_MS / 1000.0

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.APP_ENV.lower() in ["prod", "production"]

    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.APP_ENV.lower() in ["dev", "development"]

    def get_log_level(self) -> int:
        """Get logging level as integer.

        Returns:
            Logging level constant (e.g., logging.INFO).
        """
        level_map = {
            "DEBUG": logging.DEBUG,
            "INFO": logging.INFO,
            "WARNING": logging.WARNING,
            "ERROR": logging.ERROR,
            "CRITICAL": logging.CRITICAL,
        }
        return level_map.get(self.LOG_LEVEL.upper(), logging.INFO)


# Create global singleton instance
config = PipelineConfig()
