"""
Marker action log.

Every marker add/edit/delete/restore made through the editor is appended to a
separate SQLite database (markerActions.db). Plex can silently drop markers,
for example when it re-analyzes a season, so comparing the latest logged
action for each marker against the live Plex database tells us which markers
have been purged and can be restored.

Rows are never deleted. The only in-place updates are to restored_id, which
is set to the replacement marker's id after a restore, or to -1 once the user
chooses to ignore a purged marker.
"""

import logging
import sqlite3
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from core.database import DatabaseWrapper, TransactionBuilder
from core.errors import ServerError
from core.plex_types import (
    IGNORED_RESTORE_ID,
    ExtraData,
    MarkerAction,
    MarkerData,
    MarkerOp,
    MetadataType,
)

logger = logging.getLogger(__name__)

BACKUP_DATABASE_NAME = "markerActions.db"

_ACTIONS_TABLE_V1 = """
CREATE TABLE IF NOT EXISTS actions (
    id           INTEGER      PRIMARY KEY AUTOINCREMENT,
    op           INTEGER      NOT NULL,
    marker_id    INTEGER      NOT NULL,
    parent_id    INTEGER      NOT NULL,
    season_id    INTEGER      NOT NULL,
    show_id      INTEGER      NOT NULL,
    section_id   INTEGER      NOT NULL,
    start        INTEGER      NOT NULL,
    end          INTEGER      NOT NULL,
    old_start    INTEGER,
    old_end      INTEGER,
    modified_at  INTEGER      DEFAULT NULL,
    created_at   INTEGER      NOT NULL,
    recorded_at  DATETIME     DEFAULT CURRENT_TIMESTAMP,
    extra_data   VARCHAR(255) NOT NULL,
    section_uuid VARCHAR(255) NOT NULL,
    restores_id  INTEGER,
    restored_id  INTEGER
);
"""

_VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS schema_version (version INTEGER);
INSERT INTO schema_version (version) SELECT 0 WHERE NOT EXISTS (SELECT * FROM schema_version);
"""


def _index(name: str, column: str) -> str:
    return f"CREATE INDEX IF NOT EXISTS idx_actions_{name} ON actions({column});"


_INDEXES = "\n".join([
    _index("uuid", "section_uuid"),
    _index("pid", "parent_id"),
    _index("seasonid", "season_id"),
    _index("showid", "show_id"),
    _index("mid", "marker_id"),
    _index("resid", "restored_id"),
])

# SCHEMA_UPGRADES[n] takes the database from version n to n + 1
SCHEMA_UPGRADES = [
    f"""DROP TABLE IF EXISTS actions;
{_ACTIONS_TABLE_V1}
{_INDEXES}
UPDATE schema_version SET version=1;""",
    """ALTER TABLE actions ADD COLUMN marker_type VARCHAR(255) NOT NULL DEFAULT 'intro';
ALTER TABLE actions ADD COLUMN final INTEGER NOT NULL DEFAULT 0;
ALTER TABLE actions ADD COLUMN user_created INTEGER NOT NULL DEFAULT 0;
ALTER TABLE actions ADD COLUMN parent_guid VARCHAR(255) DEFAULT NULL;
UPDATE schema_version SET version=2;""",
]

CURRENT_SCHEMA_VERSION = len(SCHEMA_UPGRADES)

# Column of the actions table that matches each metadata type
_SCOPE_COLUMNS = {
    MetadataType.MOVIE: "parent_id",
    MetadataType.EPISODE: "parent_id",
    MetadataType.SEASON: "season_id",
    MetadataType.SHOW: "show_id",
}

_SCOPE_NAMES = {
    "movie": "parent_id",
    "episode": "parent_id",
    "season": "season_id",
    "show": "show_id",
}

_INSERT_ACTION = """
INSERT INTO actions
(op, marker_id, marker_type, final, parent_id, season_id, show_id, section_id, start, end, old_start, old_end,
 modified_at, created_at, extra_data, section_uuid, restores_id, user_created, parent_guid)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, COALESCE(?, strftime('%s','now')), ?, ?, ?, ?, ?);
"""


class ParentGuidReaddedStrategy:
    """Flags purged markers whose episode/movie was deleted and re-added by Plex.

    Plex gives a re-added item a new metadata id but (usually) the same guid,
    so an action whose parent_id no longer exists while another item carries
    its parent_guid is treated as re-added. This is a best-effort match.
    """

    async def apply(self, actions: Sequence[MarkerAction], plex_queries, base_type: MetadataType) -> None:
        if not actions:
            return
        existing = await plex_queries.existing_item_ids(a.parent_id for a in actions)
        orphaned = [a for a in actions if a.parent_id not in existing and a.parent_guid]
        if not orphaned:
            return

        matches = await plex_queries.items_for_guids((a.parent_guid for a in orphaned), base_type)
        for action in orphaned:
            match = matches.get(action.parent_guid)
            if match is not None:
                action.readded = True
                action.readded_id = match["id"]
                logger.debug(f"Purged marker {action.marker_id} belongs to re-added item {match['id']}")


class MarkerBackupManager:
    """Reads and writes the marker action log."""

    def __init__(self, actions: DatabaseWrapper, plex_queries, uuids: Dict[int, str], readded_strategy=None):
        self._actions = actions
        self._plex = plex_queries
        self._uuids = uuids
        self.readded_strategy = readded_strategy or ParentGuidReaddedStrategy()

    @classmethod
    async def create(cls, plex_queries, backup_folder: str, readded_strategy=None) -> "MarkerBackupManager":
        """Open (creating if needed) the action log and bring its schema up to date.

        Raises:
            ServerError: If the section list or the action log can't be read.
        """
        try:
            sections = await plex_queries.section_uuids()
        except sqlite3.Error as e:
            logger.error("Unable to get existing library sections, can't back up marker actions")
            raise ServerError.from_db_error(e)
        uuids = {section["id"]: section["uuid"] for section in sections}

        folder = Path(backup_folder)
        if not folder.exists():
            logger.debug(f"Backup folder {folder} does not exist, creating it")
            folder.mkdir(parents=True, exist_ok=True)

        full_path = folder / BACKUP_DATABASE_NAME
        if not full_path.exists():
            logger.info(f"No backup marker database found, creating it ({full_path})")

        actions = await DatabaseWrapper.create(str(full_path), allow_create=True)
        manager = cls(actions, plex_queries, uuids, readded_strategy)
        try:
            await manager._upgrade_schema()
        except (sqlite3.Error, ServerError) as e:
            await actions.close()
            raise ServerError.from_db_error(e)

        logger.info(f"Initialized backup database {full_path}")
        return manager

    async def _upgrade_schema(self) -> None:
        await self._actions.exec(_VERSION_TABLE)
        row = await self._actions.get("SELECT version FROM schema_version;")
        version = row["version"] if row else 0
        if version > CURRENT_SCHEMA_VERSION:
            raise ServerError(
                f"Backup database schema version {version} is newer than this version supports "
                f"({CURRENT_SCHEMA_VERSION})", 500)

        if version != 0 and version < CURRENT_SCHEMA_VERSION:
            logger.info(f"Old backup database schema detected ({version}), upgrading")

        while version < CURRENT_SCHEMA_VERSION:
            logger.debug(f"Upgrading backup schema from version {version} to {version + 1}")
            await self._actions.exec(SCHEMA_UPGRADES[version])
            version += 1

    async def close(self) -> None:
        await self._actions.close()

    @property
    def database(self) -> DatabaseWrapper:
        return self._actions

    def section_uuid(self, section_id: int) -> Optional[str]:
        return self._uuids.get(section_id)

    def _require_uuid(self, section_id: int) -> str:
        uuid = self._uuids.get(section_id)
        if uuid is None:
            raise ServerError(f"Unexpected section id: {section_id}", 400)
        return uuid

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def _action_parameters(self, op: MarkerOp, marker: MarkerData, uuid: str, old_start: Optional[int] = None,
                           old_end: Optional[int] = None, restores_id: Optional[int] = None) -> Tuple:
        return (
            int(op), marker.id, marker.marker_type, int(marker.is_final), marker.parent_id, marker.season_id,
            marker.show_id, marker.section_id, marker.start, marker.end, old_start, old_end,
            marker.modified_date, marker.create_date, ExtraData.get(marker.marker_type, marker.is_final), uuid,
            restores_id, int(marker.created_by_user), marker.parent_guid or None,
        )

    async def _record(self, description: str, statements: List[Tuple[str, Tuple]]) -> bool:
        if not statements:
            return True
        try:
            await self._actions.transaction(statements)
        except sqlite3.Error as e:
            logger.error(f"Unable to record {description}: {e}")
            return False
        logger.debug(f"Recorded {len(statements)} statement(s) for {description}")
        return True

    def _statements_for(self, op: MarkerOp, markers: Iterable[MarkerData],
                        old_values: Optional[Dict[int, Tuple[int, int]]] = None) -> List[Tuple[str, Tuple]]:
        statements = []
        for marker in markers:
            uuid = self._uuids.get(marker.section_id)
            if uuid is None:
                logger.error(f"Unable to record {op.name.lower()} of marker {marker.id}: "
                             f"unexpected section id {marker.section_id}")
                continue
            old_start, old_end = (old_values or {}).get(marker.id, (None, None))
            statements.append((_INSERT_ACTION, self._action_parameters(op, marker, uuid, old_start, old_end)))
        return statements

    async def record_adds(self, markers: Iterable[MarkerData]) -> bool:
        """Record added markers. Failures are logged, never raised."""
        return await self._record("added markers", self._statements_for(MarkerOp.ADD, markers))

    async def record_edits(self, markers: Iterable[MarkerData], old_values: Dict[int, Tuple[int, int]]) -> bool:
        """Record edited markers. old_values maps marker id to its (start, end) before the edit."""
        return await self._record("edited markers", self._statements_for(MarkerOp.EDIT, markers, old_values))

    async def record_deletes(self, markers: Iterable[MarkerData]) -> bool:
        return await self._record("deleted markers", self._statements_for(MarkerOp.DELETE, markers))

    async def record_restores(self, restores: Iterable[Tuple[MarkerAction, MarkerData]], section_id: int) -> bool:
        """Record restored markers.

        Each entry pairs the purged action with the marker that replaced it.
        A Restore row is added for the new marker and every earlier row for
        the purged marker id is pointed at the new marker via restored_id.
        """
        uuid = self._uuids.get(section_id)
        if uuid is None:
            logger.error(f"Unable to record restored markers: unexpected section id {section_id}")
            return False

        statements = []
        for old_action, new_marker in restores:
            statements.append((_INSERT_ACTION, self._action_parameters(
                MarkerOp.RESTORE, new_marker, uuid, restores_id=old_action.marker_id)))
            statements.append((
                "UPDATE actions SET restored_id=? WHERE marker_id=? AND section_uuid=?;",
                (new_marker.id, old_action.marker_id, uuid)))
        return await self._record("restored markers", statements)

    async def link_existing(self, links: Iterable[Tuple[MarkerAction, MarkerData]], section_id: int) -> bool:
        """Point purged actions at live markers that already match them exactly."""
        uuid = self._uuids.get(section_id)
        if uuid is None:
            logger.error(f"Unable to link existing markers: unexpected section id {section_id}")
            return False
        statements = [
            ("UPDATE actions SET restored_id=? WHERE marker_id=? AND section_uuid=?;",
             (marker.id, action.marker_id, uuid))
            for action, marker in links
        ]
        return await self._record("existing marker links", statements)

    async def ignore_purged_markers(self, marker_ids: Iterable[int], section_id: int) -> int:
        """Exclude purged markers from future purge checks.

        Raises:
            ServerError: For an unknown section or a database failure.
        """
        uuid = self._require_uuid(section_id)
        ids = list(set(marker_ids))
        if not ids:
            return 0
        transaction = TransactionBuilder(self._actions)
        for marker_id in ids:
            transaction.add_statement(
                "UPDATE actions SET restored_id=? WHERE marker_id=? AND section_uuid=?;",
                (IGNORED_RESTORE_ID, marker_id, uuid))
        try:
            await transaction.exec()
        except sqlite3.Error as e:
            raise ServerError.from_db_error(e)
        logger.info(f"Ignoring {len(ids)} purged marker(s) in section {section_id}")
        return len(ids)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def query_by_scope(self, metadata_id: int, scope: str, section_id: int) -> List[MarkerAction]:
        """Every logged action under an episode/movie/season/show/section, oldest first."""
        uuid = self._require_uuid(section_id)
        if scope == "section":
            rows = await self._actions.all(
                "SELECT * FROM actions WHERE section_uuid=? ORDER BY recorded_at ASC, id ASC;", (uuid,))
        else:
            column = _SCOPE_NAMES.get(scope)
            if column is None:
                raise ServerError(f"Unknown action scope '{scope}'", 400)
            rows = await self._actions.all(
                f"SELECT * FROM actions WHERE {column}=? AND section_uuid=? ORDER BY recorded_at ASC, id ASC;",
                (metadata_id, uuid))
        return [MarkerAction.from_row(row) for row in rows]

    async def _latest_live_actions(self, where: str, parameters: Sequence) -> List[MarkerAction]:
        # Most recent action for each marker that hasn't been restored or ignored
        rows = await self._actions.all(
            "SELECT * FROM actions WHERE id IN ("
            f"SELECT MAX(id) FROM actions WHERE {where} AND restored_id IS NULL GROUP BY marker_id, section_uuid"
            ") ORDER BY id ASC;",
            parameters)
        return [MarkerAction.from_row(row) for row in rows]

    async def latest_actions_for_markers(self, marker_ids: Iterable[int], section_id: int) -> Dict[int, MarkerAction]:
        """Latest live action for each of the given marker ids, skipping deletes."""
        uuid = self._require_uuid(section_id)
        ids = list(set(marker_ids))
        result = {}
        for i in range(0, len(ids), 500):
            chunk = ids[i:i + 500]
            where = f"section_uuid=? AND marker_id IN ({','.join('?' * len(chunk))})"
            for action in await self._latest_live_actions(where, (uuid, *chunk)):
                if action.op != MarkerOp.DELETE:
                    action.section_id = section_id
                    result[action.marker_id] = action
        return result

    async def check_for_purges(self, metadata_id: int) -> List[MarkerAction]:
        """Markers the action log expects under metadata_id that Plex no longer has."""
        type_info = await self._plex.get_media_type(metadata_id)
        column = _SCOPE_COLUMNS.get(type_info["metadata_type"])
        if column is None:
            raise ServerError(f"Can't check for purges on metadata type {type_info['metadata_type']}", 400)

        section_id = type_info["section_id"]
        uuid = self._require_uuid(section_id)
        _, existing = await self._plex.get_markers_auto(metadata_id)
        existing_ids = {marker.id for marker in existing}

        expected = await self._latest_live_actions(f"{column}=? AND section_uuid=?", (metadata_id, uuid))
        purged = []
        for action in expected:
            # Markers that still exist, or whose last action was a delete, aren't purged
            if action.op == MarkerOp.DELETE or action.marker_id in existing_ids:
                continue
            action.section_id = section_id
            purged.append(action)

        await self.readded_strategy.apply(purged, self._plex, await self._plex.base_type_for_section(section_id))
        return purged

    async def purges_for_section(self, section_id: int) -> List[MarkerAction]:
        """Every purged marker in a library section."""
        uuid = self._require_uuid(section_id)
        candidates = [
            action for action in await self._latest_live_actions("section_uuid=?", (uuid,))
            if action.op != MarkerOp.DELETE
        ]
        existing = await self._plex.existing_marker_ids(a.marker_id for a in candidates)
        purged = []
        for action in candidates:
            if action.marker_id not in existing:
                action.section_id = section_id
                purged.append(action)

        await self.readded_strategy.apply(purged, self._plex, await self._plex.base_type_for_section(section_id))
        if purged:
            logger.debug(f"Found {len(purged)} purged marker(s) in section {section_id}")
        return purged
