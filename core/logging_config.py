"""
Logging configuration for the marker editor.
Handles log setup, rotation, and webhook notifications.
"""

import json
import logging
import os
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

import requests

# Custom level for end-of-task summaries (purge scans), just above WARNING
SUMMARY = logging.WARNING + 1
logging.addLevelName(SUMMARY, 'SUMMARY')

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'

_LEVEL_MAPPING = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


class WebhookHandler(logging.Handler):
    """Custom logging handler for webhook notifications (Discord-style JSON payloads)."""

    SUMMARY = SUMMARY

    def __init__(self, webhook_url: str, timeout: float = 10):
        super().__init__()
        self.webhook_url = webhook_url
        self.timeout = timeout

    def emit(self, record):
        if record.levelno == SUMMARY:
            content = "Marker Editor Summary:\n" + record.getMessage()
        else:
            content = f"[{record.levelname}] {record.getMessage()}"
        try:
            self.send_webhook_message(content)
        except requests.RequestException:
            # Logging from here would recurse into this handler
            self.handleError(record)

    def send_webhook_message(self, content: str) -> None:
        payload = {
            "content": content
        }
        headers = {
            "Content-Type": "application/json"
        }
        response = requests.post(self.webhook_url, data=json.dumps(payload), headers=headers, timeout=self.timeout)
        response.raise_for_status()


class LoggingManager:
    """Manages logging configuration and setup."""

    def __init__(self, logs_folder: str, log_level: str = "", max_log_files: int = 5):
        self.logs_folder = Path(logs_folder)
        self.log_level = log_level
        self.max_log_files = max_log_files
        self.log_file_pattern = "marker_editor_log_*.log"
        self.logger = logging.getLogger()
        self._handlers = []

    def setup_logging(self) -> None:
        """Set up logging configuration."""
        self._ensure_logs_folder()
        self._setup_log_file()
        self._set_log_level()
        self._clean_old_log_files()
        # Suppress noisy HTTP request logs
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("requests").setLevel(logging.WARNING)
        logging.getLogger("multipart").setLevel(logging.WARNING)

    def _ensure_logs_folder(self) -> None:
        """Ensure the logs folder exists."""
        if not self.logs_folder.exists():
            try:
                self.logs_folder.mkdir(parents=True, exist_ok=True)
            except PermissionError:
                raise PermissionError(f"{self.logs_folder} not writable, please fix the logs_folder setting.")

    def _add_handler(self, handler: logging.Handler) -> None:
        self.logger.addHandler(handler)
        self._handlers.append(handler)

    def _setup_log_file(self) -> None:
        """Set up the log file with rotation, plus console output."""
        current_time = datetime.now().strftime("%Y%m%d_%H%M")
        log_file = self.logs_folder / f"marker_editor_log_{current_time}.log"
        latest_log_file = self.logs_folder / "marker_editor_log_latest.log"

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=20*1024*1024,
            backupCount=self.max_log_files
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        self._add_handler(file_handler)

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        self._add_handler(console_handler)

        # Point the "latest" symlink at this run's log file
        try:
            if latest_log_file.exists() or latest_log_file.is_symlink():
                latest_log_file.unlink()
            latest_log_file.symlink_to(log_file)
        except OSError as e:
            # Symlinks aren't always available (e.g. Windows without developer mode)
            logging.debug(f"Could not create latest log symlink: {e}")

    def _set_log_level(self) -> None:
        """Set the logging level."""
        if self.log_level:
            log_level = self.log_level.lower()
            if log_level in _LEVEL_MAPPING:
                self.logger.setLevel(_LEVEL_MAPPING[log_level])
            else:
                logging.warning(f"Invalid log_level: {log_level}. Using default level: INFO")
                self.logger.setLevel(logging.INFO)
        else:
            self.logger.setLevel(logging.INFO)

    def _clean_old_log_files(self) -> None:
        """Clean old log files to maintain the maximum count."""
        existing_log_files = [f for f in self.logs_folder.glob(self.log_file_pattern) if not f.is_symlink()]
        existing_log_files.sort(key=lambda x: x.stat().st_mtime)

        while len(existing_log_files) > self.max_log_files:
            os.remove(existing_log_files.pop(0))

    def setup_notification_handlers(self, notification_config) -> None:
        """Set up the webhook handler if a webhook URL is configured."""
        if not notification_config.webhook_url:
            return
        webhook_handler = WebhookHandler(notification_config.webhook_url)
        self._set_handler_level(webhook_handler, notification_config.webhook_level)
        self._add_handler(webhook_handler)

    def _set_handler_level(self, handler: logging.Handler, level_str: str) -> None:
        """Set the level for a logging handler."""
        if level_str:
            level_str = level_str.lower()
            level_mapping = dict(_LEVEL_MAPPING, summary=SUMMARY)
            if level_str in level_mapping:
                handler.setLevel(level_mapping[level_str])
            else:
                logging.warning(f"Invalid notification level: {level_str}. Using default level: ERROR")
                handler.setLevel(logging.ERROR)
        else:
            handler.setLevel(logging.ERROR)

    def shutdown(self) -> None:
        """Remove and close the handlers this manager added."""
        for handler in self._handlers:
            self.logger.removeHandler(handler)
            handler.close()
        self._handlers = []
