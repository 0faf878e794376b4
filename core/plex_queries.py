"""
Direct queries against the Plex Media Server database.

Handles library/section lookups, marker reads for any level of the
show/season/episode hierarchy, marker writes, and keeping marker indexes
contiguous after every change.
"""

import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from core.database import DatabaseWrapper, TransactionBuilder
from core.errors import ServerError
from core.plex_types import (
    BASE_METADATA_TYPES,
    ExtraData,
    MarkerData,
    MetadataType,
    SectionType,
)

logger = logging.getLogger(__name__)

# tag_type of the marker tag in Plex's tags table
MARKER_TAG_TYPE = 12

# Keep IN (...) lists well under SQLite's host parameter limit
_CHUNK_SIZE = 500

_EPISODE_MARKER_FIELDS = """
    taggings.id,
    taggings.`index`,
    taggings.text AS marker_type,
    taggings.time_offset AS start,
    taggings.end_time_offset AS end,
    taggings.thumb_url AS modified_date,
    taggings.created_at,
    taggings.extra_data,
    episodes.id AS parent_id,
    seasons.id AS season_id,
    seasons.parent_id AS show_id,
    seasons.library_section_id AS section_id,
    episodes.guid AS parent_guid
FROM taggings
    INNER JOIN metadata_items episodes ON taggings.metadata_item_id = episodes.id
    INNER JOIN metadata_items seasons ON episodes.parent_id = seasons.id
"""

_MOVIE_MARKER_FIELDS = """
    taggings.id,
    taggings.`index`,
    taggings.text AS marker_type,
    taggings.time_offset AS start,
    taggings.end_time_offset AS end,
    taggings.thumb_url AS modified_date,
    taggings.created_at,
    taggings.extra_data,
    movies.id AS parent_id,
    -1 AS season_id,
    -1 AS show_id,
    movies.library_section_id AS section_id,
    movies.guid AS parent_guid
FROM taggings
    INNER JOIN metadata_items movies ON taggings.metadata_item_id = movies.id
"""


def _chunks(values: Sequence[Any], size: int = _CHUNK_SIZE) -> Iterable[Sequence[Any]]:
    for i in range(0, len(values), size):
        yield values[i:i + size]


def _placeholders(count: int) -> str:
    return ",".join("?" * count)


def compute_new_indexes(markers: Iterable[MarkerData]) -> Dict[int, int]:
    """Work out contiguous indexes for a set of markers.

    Markers are grouped by parent item, then ordered by start time with ties
    broken by their current index. Returns {marker_id: new_index} for only the
    markers whose index needs to change. Updates each marker's index in place.
    """
    by_parent: Dict[int, List[MarkerData]] = {}
    for marker in markers:
        by_parent.setdefault(marker.parent_id, []).append(marker)

    changes = {}
    for group in by_parent.values():
        group.sort(key=lambda m: (m.start, m.index))
        for new_index, marker in enumerate(group):
            if marker.index != new_index:
                changes[marker.id] = new_index
                marker.index = new_index
    return changes


class PlexQueryManager:
    """Handles queries made to the Plex database."""

    def __init__(self, database: DatabaseWrapper, marker_tag_id: int, pure_mode: bool = False):
        self._database = database
        self.marker_tag_id = marker_tag_id
        self.pure_mode = pure_mode

    @classmethod
    async def create(cls, database_path: str, pure_mode: bool = False) -> "PlexQueryManager":
        """Open the Plex database and look up the marker tag id.

        Raises:
            ServerError: If the database can't be opened or has no marker tag.
        """
        database = await DatabaseWrapper.create(database_path)
        try:
            row = await database.get("SELECT id FROM tags WHERE tag_type=?;", (MARKER_TAG_TYPE,))
        except sqlite3.Error as e:
            await database.close()
            raise ServerError.from_db_error(e)

        if row is None:
            await database.close()
            raise ServerError(
                "Plex database does not contain a marker tag. Let Plex analyze at least one item for "
                "intros/credits before editing markers.", 500)

        logger.info(f"[PLEX DB] Opened {database_path} (marker tag id {row['id']}, pure mode: {pure_mode})")
        return cls(database, row["id"], pure_mode)

    @property
    def database(self) -> DatabaseWrapper:
        return self._database

    async def close(self) -> None:
        await self._database.close()

    # ------------------------------------------------------------------
    # Library/metadata lookups
    # ------------------------------------------------------------------

    async def get_libraries(self) -> List[Dict[str, Any]]:
        return await self._database.all(
            "SELECT id, uuid, section_type AS type, name FROM library_sections "
            "WHERE section_type=1 OR section_type=2 ORDER BY id;")

    async def section_uuids(self) -> List[Dict[str, Any]]:
        """Return id, uuid and section_type for every library section."""
        return await self._database.all("SELECT id, uuid, section_type FROM library_sections;")

    async def section_type(self, section_id: int) -> SectionType:
        row = await self._database.get("SELECT section_type FROM library_sections WHERE id=?;", (section_id,))
        if row is None:
            raise ServerError(f"Library section {section_id} does not exist", 400)
        try:
            return SectionType(row["section_type"])
        except ValueError:
            raise ServerError(f"Unexpected library type {row['section_type']} for section {section_id}", 400)

    async def base_type_for_section(self, section_id: int) -> MetadataType:
        """The metadata type that can hold markers in the given section."""
        section_type = await self.section_type(section_id)
        return MetadataType.MOVIE if section_type == SectionType.MOVIE else MetadataType.EPISODE

    async def get_media_type(self, metadata_id: int) -> Dict[str, int]:
        """Return {'metadata_type', 'section_id'} for a metadata item.

        Raises:
            ServerError: 400 if the item doesn't exist.
        """
        row = await self._database.get(
            "SELECT metadata_type, library_section_id AS section_id FROM metadata_items WHERE id=?;",
            (metadata_id,))
        if row is None:
            raise ServerError(f"Metadata item {metadata_id} not found", 400)
        return row

    async def existing_item_ids(self, metadata_ids: Iterable[int]) -> Set[int]:
        ids = list(set(metadata_ids))
        found = set()
        for chunk in _chunks(ids):
            rows = await self._database.all(
                f"SELECT id FROM metadata_items WHERE id IN ({_placeholders(len(chunk))});", chunk)
            found.update(row["id"] for row in rows)
        return found

    async def episode_ids_under(self, metadata_id: int, metadata_type: int) -> List[int]:
        """Ids of every episode under a show, season or episode, in id order."""
        if metadata_type == MetadataType.EPISODE:
            return [metadata_id]
        if metadata_type == MetadataType.SEASON:
            query = "SELECT id FROM metadata_items WHERE parent_id=? AND metadata_type=4 ORDER BY id;"
        elif metadata_type == MetadataType.SHOW:
            query = (
                "SELECT e.id AS id FROM metadata_items e INNER JOIN metadata_items p ON p.id=e.parent_id "
                "WHERE p.parent_id=? AND e.metadata_type=4 ORDER BY e.id;")
        else:
            raise ServerError(f"Can't find episodes for metadata type {metadata_type}", 400)
        return [row["id"] for row in await self._database.all(query, (metadata_id,))]

    async def items_for_guids(self, guids: Iterable[str], base_type: MetadataType) -> Dict[str, Dict[str, int]]:
        """Map guid to {'id', 'season_id', 'show_id'} for base items with the given guids."""
        guid_list = [g for g in set(guids) if g]
        result = {}
        for chunk in _chunks(guid_list):
            if base_type == MetadataType.MOVIE:
                query = (
                    "SELECT id, guid, -1 AS season_id, -1 AS show_id FROM metadata_items "
                    f"WHERE metadata_type=1 AND guid IN ({_placeholders(len(chunk))});")
            else:
                query = (
                    "SELECT e.id AS id, e.guid AS guid, p.id AS season_id, p.parent_id AS show_id "
                    "FROM metadata_items e INNER JOIN metadata_items p ON e.parent_id=p.id "
                    f"WHERE e.metadata_type=4 AND e.guid IN ({_placeholders(len(chunk))});")
            for row in await self._database.all(query, chunk):
                result[row.pop("guid")] = row
        return result

    # ------------------------------------------------------------------
    # Marker reads
    # ------------------------------------------------------------------

    @staticmethod
    def _fields_for_type(metadata_type: int) -> str:
        if metadata_type == MetadataType.MOVIE:
            return _MOVIE_MARKER_FIELDS
        if metadata_type in (MetadataType.SHOW, MetadataType.SEASON, MetadataType.EPISODE):
            return _EPISODE_MARKER_FIELDS
        raise ServerError(f"Unexpected media type {metadata_type}", 400)

    async def _markers_where(self, metadata_type: int, where: str, parameters: Sequence[Any]) -> List[MarkerData]:
        query = (
            f"SELECT {self._fields_for_type(metadata_type)} "
            f"WHERE taggings.tag_id=? AND {where} "
            "ORDER BY taggings.metadata_item_id ASC, taggings.`index` ASC;")
        rows = await self._database.all(query, (self.marker_tag_id, *parameters))
        return [MarkerData.from_row(row) for row in rows]

    async def get_base_markers(self, metadata_id: int, base_type: Optional[int] = None) -> List[MarkerData]:
        """Markers for a single episode or movie, ordered by index."""
        if base_type is None:
            base_type = (await self.get_media_type(metadata_id))["metadata_type"]
        if base_type not in BASE_METADATA_TYPES:
            raise ServerError(f"Metadata item {metadata_id} is not an episode or movie", 400)
        return await self._markers_where(base_type, "taggings.metadata_item_id=?", (metadata_id,))

    async def get_season_markers(self, season_id: int) -> List[MarkerData]:
        return await self._markers_where(MetadataType.SEASON, "seasons.id=?", (season_id,))

    async def get_show_markers(self, show_id: int) -> List[MarkerData]:
        return await self._markers_where(MetadataType.SHOW, "seasons.parent_id=?", (show_id,))

    async def get_markers_auto(self, metadata_id: int) -> Tuple[Dict[str, int], List[MarkerData]]:
        """Markers for any show, season, episode or movie id, plus the item's type info."""
        type_info = await self.get_media_type(metadata_id)
        metadata_type = type_info["metadata_type"]
        if metadata_type in BASE_METADATA_TYPES:
            markers = await self.get_base_markers(metadata_id, metadata_type)
        elif metadata_type == MetadataType.SEASON:
            markers = await self.get_season_markers(metadata_id)
        elif metadata_type == MetadataType.SHOW:
            markers = await self.get_show_markers(metadata_id)
        else:
            raise ServerError(f"Can't get markers for metadata type {metadata_type}", 400)
        return type_info, markers

    async def get_markers_for_items(self, metadata_ids: Iterable[int], base_type: int) -> List[MarkerData]:
        """Markers for a list of episodes or movies, fetched in as few queries as possible."""
        ids = sorted(set(metadata_ids))
        markers = []
        for chunk in _chunks(ids):
            markers.extend(await self._markers_where(
                base_type, f"taggings.metadata_item_id IN ({_placeholders(len(chunk))})", chunk))
        return markers

    async def get_single_marker(self, marker_id: int) -> Optional[MarkerData]:
        row = await self._database.get(
            "SELECT items.metadata_type AS metadata_type FROM taggings "
            "INNER JOIN metadata_items items ON taggings.metadata_item_id = items.id "
            "WHERE taggings.id=? AND taggings.tag_id=?;",
            (marker_id, self.marker_tag_id))
        if row is None:
            return None
        markers = await self._markers_where(row["metadata_type"], "taggings.id=?", (marker_id,))
        return markers[0] if markers else None

    async def existing_marker_ids(self, marker_ids: Iterable[int]) -> Set[int]:
        """Return the subset of marker_ids that are still present in the Plex database."""
        ids = list(set(marker_ids))
        found = set()
        for chunk in _chunks(ids):
            rows = await self._database.all(
                f"SELECT id FROM taggings WHERE tag_id=? AND id IN ({_placeholders(len(chunk))});",
                (self.marker_tag_id, *chunk))
            found.update(row["id"] for row in rows)
        return found

    async def marker_stats_for_section(self, section_id: int) -> List[Dict[str, Any]]:
        """Every base item in a section with the type of each of its markers.

        Items without markers are returned once with a NULL marker_type.
        """
        base_type = await self.base_type_for_section(section_id)
        return await self._database.all(
            "SELECT base.id AS parent_id, markers.text AS marker_type FROM metadata_items base "
            "LEFT JOIN taggings markers ON base.id = markers.metadata_item_id AND markers.tag_id=? "
            "WHERE base.library_section_id=? AND base.metadata_type=? "
            "ORDER BY base.id ASC;",
            (self.marker_tag_id, section_id, int(base_type)))

    # ------------------------------------------------------------------
    # Marker writes
    # ------------------------------------------------------------------

    def _thumb_url(self, user_created: bool) -> str:
        # thumb_url holds the modified epoch, negative when the user created the marker
        if self.pure_mode:
            return "''"
        return "(strftime('%s','now')) * -1" if user_created else "(strftime('%s','now'))"

    def add_marker_statement(self, transaction: TransactionBuilder, parent_id: int, index: int, start: int,
                             end: int, marker_type: str, final: bool, user_created: bool = True) -> None:
        transaction.add_statement(
            "INSERT INTO taggings "
            "(metadata_item_id, tag_id, `index`, text, time_offset, end_time_offset, thumb_url, created_at, extra_data) "
            f"VALUES (?, ?, ?, ?, ?, ?, {self._thumb_url(user_created)}, (strftime('%s','now')), ?);",
            (parent_id, self.marker_tag_id, index, marker_type, start, end, ExtraData.get(marker_type, final)))

    def edit_marker_statement(self, transaction: TransactionBuilder, marker_id: int, index: int, start: int,
                              end: int, marker_type: str, final: bool, user_created: bool) -> None:
        transaction.add_statement(
            "UPDATE taggings SET `index`=?, text=?, time_offset=?, end_time_offset=?, "
            f"thumb_url={self._thumb_url(user_created)}, extra_data=? WHERE id=?;",
            (index, marker_type, start, end, ExtraData.get(marker_type, final), marker_id))

    @staticmethod
    def delete_marker_statement(transaction: TransactionBuilder, marker_id: int) -> None:
        transaction.add_statement("DELETE FROM taggings WHERE id=?;", (marker_id,))

    @staticmethod
    def index_statement(transaction: TransactionBuilder, marker_id: int, index: int) -> None:
        transaction.add_statement("UPDATE taggings SET `index`=? WHERE id=?;", (index, marker_id))

    def new_transaction(self) -> TransactionBuilder:
        return TransactionBuilder(self._database)

    async def add_marker(self, metadata_id: int, start: int, end: int, marker_type: str,
                         final: bool) -> Tuple[List[MarkerData], MarkerData]:
        """Add a marker to an episode or movie.

        Returns:
            The item's markers before the add, and the new marker.

        Raises:
            ServerError: 400 if the item isn't an episode/movie, the new marker
                overlaps an existing one, or a final marker wouldn't be last.
        """
        type_info = await self.get_media_type(metadata_id)
        if type_info["metadata_type"] not in BASE_METADATA_TYPES:
            raise ServerError("Attempting to add marker to a media item that's not an episode or movie", 400)

        all_markers = await self.get_base_markers(metadata_id, type_info["metadata_type"])
        new_index = 0
        for marker in sorted(all_markers, key=lambda m: (m.start, m.index)):
            if marker.overlaps(start, end):
                raise ServerError(
                    f"Overlapping markers. The existing marker ({marker.start}-{marker.end}) "
                    "should be expanded to include this range instead.", 400)
            if marker.start < start:
                new_index += 1

        if final and new_index != len(all_markers):
            raise ServerError("Attempting to make a new marker final, but it won't be the last marker of the item.", 400)

        transaction = self.new_transaction()
        self.add_marker_statement(transaction, metadata_id, new_index, start, end, marker_type, final)
        for marker in all_markers:
            if marker.index >= new_index:
                self.index_statement(transaction, marker.id, marker.index + 1)
        await self._exec(transaction)

        # Indexes were shifted above, but run a full pass in case they were already out of order
        await self.reindex(metadata_id)
        new_marker = await self._find_marker(metadata_id, start, end, type_info["metadata_type"])
        if new_marker is None:
            raise ServerError("Unable to retrieve newly added marker", 500)
        return all_markers, new_marker

    async def _find_marker(self, metadata_id: int, start: int, end: int, base_type: int) -> Optional[MarkerData]:
        markers = await self._markers_where(
            base_type,
            "taggings.metadata_item_id=? AND taggings.time_offset=? AND taggings.end_time_offset=?",
            (metadata_id, start, end))
        return markers[0] if markers else None

    async def edit_marker(self, marker_id: int, index: int, start: int, end: int, user_created: bool,
                          marker_type: str, final: bool) -> None:
        transaction = self.new_transaction()
        self.edit_marker_statement(transaction, marker_id, index, start, end, marker_type, final, user_created)
        await self._exec(transaction)

    async def delete_marker(self, marker_id: int) -> None:
        try:
            await self._database.run("DELETE FROM taggings WHERE id=?;", (marker_id,))
        except sqlite3.Error as e:
            raise ServerError.from_db_error(e)

    async def bulk_delete(self, markers: Iterable[MarkerData]) -> int:
        transaction = self.new_transaction()
        for marker in markers:
            self.delete_marker_statement(transaction, marker.id)
        return await self._exec(transaction)

    async def _exec(self, transaction: TransactionBuilder) -> int:
        try:
            return await transaction.exec()
        except sqlite3.Error as e:
            raise ServerError.from_db_error(e)

    async def reindex(self, metadata_id: int) -> bool:
        """Make the marker indexes under a show/season/episode/movie contiguous again.

        All affected items are renumbered in a single transaction. A failure
        here is logged and reported through the return value; the marker
        change that triggered it has already been committed.
        """
        try:
            _, markers = await self.get_markers_auto(metadata_id)
            changes = compute_new_indexes(markers)
            if not changes:
                return True

            transaction = self.new_transaction()
            for marker_id, new_index in changes.items():
                self.index_statement(transaction, marker_id, new_index)
            logger.debug(f"Reindexing {transaction.statement_count()} markers under item {metadata_id}")
            await transaction.exec()
            return True
        except (sqlite3.Error, ServerError) as e:
            logger.error(f"Failed to reindex markers under item {metadata_id}: {e}")
            return False
