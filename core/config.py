"""
Configuration management for the marker editor.
Handles loading, validation, and management of application settings.
"""

import json
import os
import logging
from pathlib import Path
from typing import Dict, Any
from dataclasses import dataclass

# Get the directory where config.py is located
_SCRIPT_DIR = Path(os.path.dirname(os.path.abspath(__file__)))

# Project root detection: if we're in core/, go up one level
if _SCRIPT_DIR.name == 'core':
    _PROJECT_ROOT = _SCRIPT_DIR.parent
else:
    _PROJECT_ROOT = _SCRIPT_DIR

_VALID_LOG_LEVELS = ("debug", "info", "warning", "error", "critical")
_VALID_NOTIFICATION_LEVELS = _VALID_LOG_LEVELS + ("summary",)


@dataclass
class DatabaseConfig:
    """Configuration for the Plex database."""
    database_path: str = ""
    # When true, don't store modified dates/user-created flags in taggings.thumb_url
    pure_mode: bool = False


@dataclass
class FeaturesConfig:
    """Optional features."""
    backup_actions: bool = True
    # Hours between background purge scans, 0 = never
    purge_scan_interval_hours: float = 0


@dataclass
class BackupConfig:
    """Where the marker action log lives."""
    backup_folder: str = str(_PROJECT_ROOT / "data" / "Backup")


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 3232


@dataclass
class LoggingConfig:
    log_level: str = "info"
    logs_folder: str = str(_PROJECT_ROOT / "logs")
    max_log_files: int = 5


@dataclass
class NotificationConfig:
    """Configuration for notification settings."""
    webhook_url: str = ""
    webhook_level: str = "summary"


class ConfigManager:
    """Manages application configuration loading and validation."""

    def __init__(self, config_file: str):
        self.config_file = Path(config_file)
        self.settings_data: Dict[str, Any] = {}
        self.database = DatabaseConfig()
        self.features = FeaturesConfig()
        self.backup = BackupConfig()
        self.server = ServerConfig()
        self.logs = LoggingConfig()
        self.notification = NotificationConfig()

    def load_config(self) -> None:
        """Load configuration from file and validate."""
        logging.debug(f"Loading configuration from: {self.config_file}")

        if not self.config_file.exists():
            logging.error(f"Settings file not found: {self.config_file}")
            raise FileNotFoundError(f"Settings file not found: {self.config_file}")

        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                self.settings_data = json.load(f)
            logging.debug("Configuration file loaded successfully")
        except json.JSONDecodeError as e:
            logging.error(f"Invalid JSON in settings file: {type(e).__name__}: {e}")
            raise ValueError(f"Invalid JSON in settings file: {e}")

        if not isinstance(self.settings_data, dict):
            raise ValueError("Settings file must contain a JSON object")

        self._validate_required_fields()
        self._validate_types()
        self._load_all_configs()
        self._validate_values()

        logging.debug("Configuration loaded and validated successfully")

    def _validate_required_fields(self) -> None:
        """Validate that all required fields exist in the configuration."""
        required_fields = ['database_path']
        missing_fields = [field for field in required_fields if field not in self.settings_data]
        if missing_fields:
            logging.error(f"Missing required fields in settings: {missing_fields}")
            raise ValueError(f"Missing required fields in settings: {missing_fields}")

    def _validate_types(self) -> None:
        """Validate that configuration values have correct types."""
        type_checks = {
            'database_path': str,
            'pure_mode': bool,
            'backup_actions': bool,
            'backup_folder': str,
            'host': str,
            'logs_folder': str,
            'webhook_url': str,
        }

        type_errors = []
        for field, expected_type in type_checks.items():
            if field in self.settings_data:
                value = self.settings_data[field]
                if not isinstance(value, expected_type):
                    type_errors.append(
                        f"'{field}' expected {expected_type.__name__}, got {type(value).__name__}"
                    )

        if type_errors:
            error_msg = "Type validation errors: " + "; ".join(type_errors)
            logging.error(error_msg)
            raise ValueError(error_msg)

    def _load_all_configs(self) -> None:
        """Load all configuration sections."""
        data = self.settings_data

        self.database.database_path = data['database_path']
        self.database.pure_mode = data.get('pure_mode', False)

        self.features.backup_actions = data.get('backup_actions', True)
        self.features.purge_scan_interval_hours = self._number(
            'purge_scan_interval_hours', FeaturesConfig.purge_scan_interval_hours, minimum=0)

        self.backup.backup_folder = data.get('backup_folder') or BackupConfig.backup_folder

        self.server.host = data.get('host') or ServerConfig.host
        self.server.port = int(self._number('port', ServerConfig.port, minimum=1, maximum=65535, integer=True))

        self.logs.log_level = self._choice('log_level', LoggingConfig.log_level, _VALID_LOG_LEVELS)
        self.logs.logs_folder = data.get('logs_folder') or LoggingConfig.logs_folder
        self.logs.max_log_files = int(self._number(
            'max_log_files', LoggingConfig.max_log_files, minimum=1, integer=True))

        self.notification.webhook_url = data.get('webhook_url', '')
        self.notification.webhook_level = self._choice(
            'webhook_level', NotificationConfig.webhook_level, _VALID_NOTIFICATION_LEVELS)

    def _number(self, field: str, default, minimum=None, maximum=None, integer: bool = False):
        """Read an optional numeric setting, falling back to default with a warning when invalid."""
        if field not in self.settings_data:
            return default
        value = self.settings_data[field]
        valid_type = int if integer else (int, float)
        if isinstance(value, bool) or not isinstance(value, valid_type):
            logging.warning(f"Invalid {field}: {value!r}. Using default: {default}")
            return default
        if (minimum is not None and value < minimum) or (maximum is not None and value > maximum):
            logging.warning(f"{field} out of range: {value}. Using default: {default}")
            return default
        return value

    def _choice(self, field: str, default: str, choices) -> str:
        value = self.settings_data.get(field)
        if value is None or value == "":
            return default
        if not isinstance(value, str) or value.lower() not in choices:
            logging.warning(f"Invalid {field}: {value!r}. Using default: {default}")
            return default
        return value.lower()

    def _validate_values(self) -> None:
        """Validate configuration value ranges and constraints."""
        errors = []
        if not self.database.database_path.strip():
            errors.append("'database_path' cannot be empty")

        if errors:
            error_msg = "Configuration validation errors: " + "; ".join(errors)
            logging.error(error_msg)
            raise ValueError(error_msg)
