"""
Purged marker commands: finding, restoring and ignoring markers Plex dropped.

All commands require a working action log. When backups are disabled or the
action log failed to open, they raise BackupDisabledError before touching
either database.
"""

import logging
from typing import Any, Dict, Iterable, List

from core.errors import BackupDisabledError, ServerError
from core.logging_config import SUMMARY
from core.plex_types import MarkerAction, MarkerConflictResolution
from core.purge_cache import PurgeCache, PurgeCacheStatus
from core.resolution import ResolutionEngine, RestoreResult

logger = logging.getLogger(__name__)


class PurgeCommands:
    def __init__(self, plex_queries, backup, purge_cache: PurgeCache, breakdown):
        self._plex = plex_queries
        self._backup = backup
        self._cache = purge_cache
        self._engine = ResolutionEngine(plex_queries, backup, purge_cache, breakdown) if backup else None

    @property
    def enabled(self) -> bool:
        return self._backup is not None

    def _check_enabled(self) -> None:
        if self._backup is None:
            raise BackupDisabledError()

    async def purge_check(self, metadata_id: int) -> List[MarkerAction]:
        """Purged markers under a show, season, episode or movie.

        Always reads fresh data, then replaces whatever the purge cache held
        for that item.
        """
        self._check_enabled()
        actions = await self._backup.check_for_purges(metadata_id)

        type_info = await self._plex.get_media_type(metadata_id)
        section_id = type_info["section_id"]
        section = self._cache.section(section_id)
        if section is None:
            section = self._cache.add_section(section_id, await self._plex.section_type(section_id))

        status = section.status
        self._cache.evict(section_id, metadata_id)
        for action in actions:
            self._cache.add(action)
        section.status = status

        logger.debug(f"Found {len(actions)} purged marker(s) for item {metadata_id}")
        return actions

    async def _build_section(self, section_id: int):
        section_type = await self._plex.section_type(section_id)
        actions = await self._backup.purges_for_section(section_id)
        section = self._cache.reset_section(section_id, section_type)
        for action in actions:
            self._cache.add(action)
        section.status = PurgeCacheStatus.COMPLETE
        return section

    async def all_purges(self, section_id: int) -> Dict[str, Any]:
        """The purge tree for a whole library section."""
        self._check_enabled()
        section = self._cache.section(section_id)
        if section is None or section.status != PurgeCacheStatus.COMPLETE:
            section = await self._build_section(section_id)
        return section.to_dict()

    async def scan_all(self) -> int:
        """Rebuild the purge cache for every library section. Returns the server-wide count."""
        self._check_enabled()
        sections = await self._plex.section_uuids()
        for section in sections:
            if self._backup.section_uuid(section["id"]) is None:
                continue
            try:
                await self._build_section(section["id"])
            except ServerError as e:
                logger.warning(f"Skipping section {section['id']} in purge scan: {e.message}")

        self._cache.server.status = PurgeCacheStatus.COMPLETE
        logger.log(SUMMARY, f"Purge scan complete: {self._cache.count} purged marker(s) "
                            f"across {len(sections)} section(s)")
        return self._cache.count

    async def purge_count(self) -> int:
        self._check_enabled()
        if self._cache.server.status != PurgeCacheStatus.COMPLETE:
            return await self.scan_all()
        return self._cache.count

    async def _purged_actions(self, marker_ids: Iterable[int], section_id: int) -> List[MarkerAction]:
        ids = list(dict.fromkeys(marker_ids))
        if not ids:
            raise ServerError("No marker ids provided", 400)

        actions = await self._backup.latest_actions_for_markers(ids, section_id)
        still_present = await self._plex.existing_marker_ids(actions.keys())
        purged = [actions[i] for i in ids if i in actions and i not in still_present]
        skipped = [i for i in ids if i not in actions or i in still_present]
        if skipped:
            logger.warning(f"Ignoring marker id(s) that aren't purged in section {section_id}: {skipped}")
        if not purged:
            raise ServerError(f"No purged markers found for ids {ids} in section {section_id}", 400)
        return purged

    async def restore_markers(self, marker_ids: Iterable[int], section_id: int,
                              resolution_type: int) -> RestoreResult:
        self._check_enabled()
        try:
            mode = MarkerConflictResolution(resolution_type)
        except ValueError:
            raise ServerError(f"Unexpected resolution type {resolution_type}", 400)

        actions = await self._purged_actions(marker_ids, section_id)
        return await self._engine.restore(actions, section_id, mode)

    async def ignore_purged_markers(self, marker_ids: Iterable[int], section_id: int) -> None:
        self._check_enabled()
        actions = await self._purged_actions(marker_ids, section_id)
        await self._backup.ignore_purged_markers([a.marker_id for a in actions], section_id)
        for action in actions:
            self._cache.remove(action)
