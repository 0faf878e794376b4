"""
Main marker editor application context.
Owns the database connections and caches for a single server process and
hands them to the command objects that use them.
"""

import logging
from typing import Any, Dict, List, Optional

from core import __version__
from core.commands import CoreCommands
from core.config import ConfigManager
from core.errors import ServerError
from core.logging_config import LoggingManager
from core.marker_backup import MarkerBackupManager
from core.marker_breakdown import LegacyMarkerBreakdown
from core.plex_queries import PlexQueryManager
from core.purge_cache import PurgeCache
from core.purge_commands import PurgeCommands


class MarkerEditorApp:
    """Application context shared by every request handler."""

    def __init__(self, config_manager: ConfigManager):
        self.config_manager = config_manager
        self.logging_manager: Optional[LoggingManager] = None

        self.plex_queries: Optional[PlexQueryManager] = None
        self.backup: Optional[MarkerBackupManager] = None
        self.purge_cache = PurgeCache()
        self.breakdown = LegacyMarkerBreakdown()

        # Created in start()
        self.commands: Optional[CoreCommands] = None
        self.purges: Optional[PurgeCommands] = None

    @property
    def backup_enabled(self) -> bool:
        return self.backup is not None

    @property
    def is_running(self) -> bool:
        return self.plex_queries is not None

    def setup_logging(self) -> None:
        """Set up file/console logging and the optional webhook handler."""
        logs = self.config_manager.logs
        self.logging_manager = LoggingManager(logs.logs_folder, logs.log_level, logs.max_log_files)
        self.logging_manager.setup_logging()
        self.logging_manager.setup_notification_handlers(self.config_manager.notification)
        logging.info(f"*** Marker Editor v{__version__} ***")

    async def start(self) -> None:
        """Open the Plex database and, if enabled, the marker action log.

        A failure to open the action log isn't fatal: backup and purge
        features are disabled for the rest of the session instead.

        Raises:
            ServerError: If the Plex database can't be used.
        """
        config = self.config_manager
        self.plex_queries = await PlexQueryManager.create(config.database.database_path, config.database.pure_mode)

        if config.features.backup_actions:
            try:
                self.backup = await MarkerBackupManager.create(self.plex_queries, config.backup.backup_folder)
            except (ServerError, OSError) as e:
                message = e.message if isinstance(e, ServerError) else str(e)
                logging.error(f"Unable to initialize marker backup, backup and purge actions are disabled: {message}")
                self.backup = None
        else:
            logging.info("Marker backup is disabled in settings")

        self.commands = CoreCommands(self.plex_queries, self.breakdown, self.backup)
        self.purges = PurgeCommands(self.plex_queries, self.backup, self.purge_cache, self.breakdown)

    async def shutdown(self) -> None:
        """Close database connections and drop cached state."""
        if self.backup is not None:
            await self.backup.close()
            self.backup = None
        if self.plex_queries is not None:
            await self.plex_queries.close()
            self.plex_queries = None
        self.purge_cache.clear()
        self.breakdown.clear()
        self.commands = None
        self.purges = None
        if self.logging_manager is not None:
            self.logging_manager.shutdown()
            self.logging_manager = None

    def _require_running(self) -> PlexQueryManager:
        if self.plex_queries is None:
            raise ServerError("Server is not running", 503)
        return self.plex_queries

    async def get_sections(self) -> List[Dict[str, Any]]:
        return await self._require_running().get_libraries()

    async def get_breakdown(self, section_id: int, rebuild: bool = False) -> Dict[str, Any]:
        """Marker breakdown for a section, built from the Plex database on first use."""
        plex_queries = self._require_running()
        breakdown = self.breakdown.get(section_id)
        if breakdown is None or rebuild:
            breakdown = await self.breakdown.rebuild(section_id, plex_queries)
        return breakdown.to_dict()
