"""
Settings Configuration Service for HEMS

This module provides centralized configuration management using properties files.
It handles loading, parsing, and providing access to application settings.

Configuration files:
- env.properties: Production configuration (default)
- env-test.properties: Test configuration (used when HEMS_TEST_MODE=1)
"""

import os
import configparser
import logging
from pathlib import Path
from typing import Dict, Any, Optional, Union


DEFAULT_SETTINGS: Dict[str, Dict[str, str]] = {
    "security": {
        "max_login_attempts": "5",
        "account_lockout_duration_minutes": "30",
        "password_history_count": "5",
        "allow_legacy_plaintext_credentials": "false",
        "token_expiry_minutes": "480",
    },
    "exam": {
        "phase1_year_suffix": "18",
        "session_validity_hours": "24",
        "timer_grace_minutes": "5",
        "login_session_hours": "8",
    },
    "server": {
        "host": "127.0.0.1",
        "port": "0",
        "log_level": "info",
    },
    "database": {
        "url": "sqlite:///hems.db",
        "echo": "false",
    },
    "logging": {
        "default_level": "INFO",
        "log_dir": "logs",
    },
    "audit": {
        "archive_age_days": "180",
    },
}


def get_config_file_path() -> str:
    """
    Determine the appropriate configuration file based on environment.

    Priority:
    1. HEMS_CONFIG_FILE environment variable (explicit override)
    2. env-test.properties (when HEMS_TEST_MODE=1)
    3. env.properties (production default)
    """
    explicit_config = os.environ.get("HEMS_CONFIG_FILE")
    if explicit_config:
        return explicit_config

    search_paths = [
        Path.cwd(),
        Path(__file__).parent.parent.parent.parent,  # From hems/core/services/ to project root
    ]

    for base_path in search_paths:
        if os.environ.get("HEMS_TEST_MODE") == "1":
            test_config = base_path / "env-test.properties"
            if test_config.exists():
                return str(test_config)

        prod_config = base_path / "env.properties"
        if prod_config.exists():
            return str(prod_config)

    return "env.properties"


class SettingsConfigService:
    """Service for managing application settings from properties files."""

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize the settings configuration service.

        Args:
            config_file: Optional path to config file. If None, auto-detects based on environment.
        """
        self.config_file = config_file or get_config_file_path()
        self.config = configparser.ConfigParser()
        self.config.read_dict(DEFAULT_SETTINGS)
        self.logger = logging.getLogger(__name__)
        self._load_config()

    def _load_config(self):
        """Load configuration from properties file on top of the defaults."""
        if not os.path.exists(self.config_file):
            self.logger.warning(
                f"Config file {self.config_file} not found, using defaults"
            )
            self.save_config()
            return

        try:
            self.config.read(self.config_file, encoding="utf-8")
            self.logger.info(f"Configuration loaded from {self.config_file}")
        except configparser.Error as e:
            self.logger.error(f"Failed to parse configuration, using defaults: {e}")
            self.config = configparser.ConfigParser()
            self.config.read_dict(DEFAULT_SETTINGS)

    def save_config(self):
        """Save current configuration to file."""
        try:
            with open(self.config_file, "w", encoding="utf-8") as f:
                self.config.write(f)
            self.logger.info(f"Configuration saved to {self.config_file}")
        except OSError as e:
            self.logger.error(f"Failed to save configuration: {e}")

    def get(self, section: str, key: str, fallback: Optional[str] = None) -> str:
        """Get a configuration value."""
        try:
            return self.config.get(section, key)
        except (configparser.NoSectionError, configparser.NoOptionError):
            if fallback is not None:
                return fallback
            self.logger.warning(f"Configuration not found: {section}.{key}")
            return ""

    def getint(self, section: str, key: str, fallback: Optional[int] = None) -> int:
        """Get an integer configuration value."""
        try:
            return self.config.getint(section, key)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            if fallback is not None:
                return fallback
            self.logger.warning(f"Integer configuration not found: {section}.{key}")
            return 0

    def getfloat(
        self, section: str, key: str, fallback: Optional[float] = None
    ) -> float:
        """Get a float configuration value."""
        try:
            return self.config.getfloat(section, key)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            if fallback is not None:
                return fallback
            self.logger.warning(f"Float configuration not found: {section}.{key}")
            return 0.0

    def getboolean(
        self, section: str, key: str, fallback: Optional[bool] = None
    ) -> bool:
        """Get a boolean configuration value."""
        try:
            return self.config.getboolean(section, key)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            if fallback is not None:
                return fallback
            self.logger.warning(f"Boolean configuration not found: {section}.{key}")
            return False

    def get_list(self, section: str, key: str, fallback: Optional[list] = None) -> list:
        """Get a list configuration value (comma-separated)."""
        value = self.get(section, key, "")
        if value:
            return [item.strip() for item in value.split(",")]
        return fallback or []

    def set(self, section: str, key: str, value: Union[str, int, float, bool]):
        """Set a configuration value."""
        if not self.config.has_section(section):
            self.config.add_section(section)
        self.config.set(section, key, str(value).lower() if isinstance(value, bool) else str(value))

    def get_security_defaults(self) -> Dict[str, Any]:
        """Get lockout, password and token settings."""
        return {
            "max_login_attempts": self.getint("security", "max_login_attempts", 5),
            "account_lockout_duration_minutes": self.getint(
                "security", "account_lockout_duration_minutes", 30
            ),
            "password_history_count": self.getint(
                "security", "password_history_count", 5
            ),
            "allow_legacy_plaintext_credentials": self.getboolean(
                "security", "allow_legacy_plaintext_credentials", False
            ),
            "token_expiry_minutes": self.getint("security", "token_expiry_minutes", 480),
        }

    def get_exam_defaults(self) -> Dict[str, Any]:
        """Get exam-day settings."""
        return {
            # Kept as a string so a leading zero survives.
            "phase1_year_suffix": self.get("exam", "phase1_year_suffix", "18"),
            "session_validity_hours": self.getint("exam", "session_validity_hours", 24),
            "timer_grace_minutes": self.getint("exam", "timer_grace_minutes", 5),
            "login_session_hours": self.getint("exam", "login_session_hours", 8),
        }

    def get_logging_defaults(self) -> Dict[str, Any]:
        """Get logging configuration defaults."""
        return {
            "default_level": self.get("logging", "default_level", "INFO"),
            "log_dir": os.environ.get("HEMS_LOG_DIR")
            or self.get("logging", "log_dir", "logs"),
        }

    def get_server_defaults(self) -> Dict[str, Any]:
        """Bind address for the launcher; ``HEMS_PORT`` overrides the file."""
        env_port = os.environ.get("HEMS_PORT", "").strip()
        return {
            "host": self.get("server", "host", "127.0.0.1"),
            "port": int(env_port) if env_port else self.getint("server", "port", 0),
            "log_level": self.get("server", "log_level", "info"),
        }

    def get_database_url(self) -> str:
        """Database URL, with ``HEMS_DB_PATH`` taking precedence."""
        db_path = os.environ.get("HEMS_DB_PATH")
        if db_path:
            return f"sqlite:///{db_path}"
        return self.get("database", "url", "sqlite:///hems.db")


# Global instance
_settings_service = None


def get_settings_service(config_file: Optional[str] = None) -> SettingsConfigService:
    """
    Get the global settings service instance.

    Args:
        config_file: Optional path to config file. If None, auto-detects:
                    - env-test.properties when HEMS_TEST_MODE=1
                    - env.properties for production

    Returns:
        SettingsConfigService instance
    """
    global _settings_service
    if _settings_service is None:
        _settings_service = SettingsConfigService(config_file)
    return _settings_service


def reset_settings_service():
    """Reset the global settings service instance. Useful for testing."""
    global _settings_service
    _settings_service = None
