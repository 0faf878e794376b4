"""Web server configuration"""

import os
from pathlib import Path

WEB_DIR = Path(__file__).parent

# Project root (parent of web/)
PROJECT_ROOT = WEB_DIR.parent

# Config directory - /config in Docker, project root otherwise
# Docker containers have /.dockerenv or /run/.containerenv
IS_DOCKER = os.path.exists("/.dockerenv") or os.path.exists("/run/.containerenv")
CONFIG_DIR = Path("/config") if IS_DOCKER else PROJECT_ROOT

# MARKER_EDITOR_SETTINGS overrides the settings file location
SETTINGS_FILE = Path(os.environ.get("MARKER_EDITOR_SETTINGS", CONFIG_DIR / "marker_editor_settings.json"))
LOGS_DIR = CONFIG_DIR / "logs"
DATA_DIR = CONFIG_DIR / "data"

# Server defaults
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3232
