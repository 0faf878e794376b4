"""Tests for Plex database queries and marker index maintenance."""

import asyncio
import os

import pytest

from conftest import (
    EPISODE_1, EPISODE_2, MOVIE_1, SEASON, SHOW, TV_SECTION, MOVIE_SECTION,
)
from core.commands import CoreCommands
from core.errors import ServerError
from core.marker_breakdown import LegacyMarkerBreakdown
from core.plex_queries import PlexQueryManager, compute_new_indexes
from core.plex_types import MarkerData, MetadataType, SectionType


def _indexes_and_starts(plex_db, item_id):
    return [(index, start) for index, start, _, _ in plex_db.markers(item_id)]


class TestOpenDatabase:
    """Tests for PlexQueryManager.create()."""

    def test_missing_file_raises(self, temp_dir):
        with pytest.raises(ServerError):
            asyncio.run(PlexQueryManager.create(os.path.join(temp_dir, "nope.db")))

    def test_missing_marker_tag_raises(self, plex_db):
        plex_db.execute("DELETE FROM tags WHERE tag_type=12;")
        with pytest.raises(ServerError) as exc_info:
            asyncio.run(PlexQueryManager.create(plex_db.path))
        assert exc_info.value.status_code == 500

    def test_finds_marker_tag(self, plex_queries):
        assert plex_queries.marker_tag_id == 5


class TestLookups:

    def test_libraries(self, plex_queries):
        libraries = asyncio.run(plex_queries.get_libraries())
        assert [(lib["id"], lib["type"]) for lib in libraries] == [(TV_SECTION, 2), (MOVIE_SECTION, 1)]

    def test_section_type(self, plex_queries):
        assert asyncio.run(plex_queries.section_type(TV_SECTION)) == SectionType.TV
        assert asyncio.run(plex_queries.base_type_for_section(MOVIE_SECTION)) == MetadataType.MOVIE

    def test_unknown_section_is_client_error(self, plex_queries):
        with pytest.raises(ServerError) as exc_info:
            asyncio.run(plex_queries.section_type(42))
        assert exc_info.value.status_code == 400

    def test_unknown_metadata_id(self, plex_queries):
        with pytest.raises(ServerError) as exc_info:
            asyncio.run(plex_queries.get_media_type(9999))
        assert exc_info.value.status_code == 400

    def test_markers_for_show_include_hierarchy(self, plex_db, plex_queries):
        plex_db.add_marker(EPISODE_1, 1000, 2000, 0)
        plex_db.add_marker(EPISODE_2, 3000, 4000, 0, marker_type="credits", final=True)

        type_info, markers = asyncio.run(plex_queries.get_markers_auto(SHOW))
        assert type_info["metadata_type"] == MetadataType.SHOW
        assert [m.parent_id for m in markers] == [EPISODE_1, EPISODE_2]
        assert all(m.season_id == SEASON and m.show_id == SHOW for m in markers)
        assert all(m.section_id == TV_SECTION for m in markers)
        assert markers[1].marker_type == "credits"
        assert markers[1].is_final

    def test_movie_markers_have_no_season(self, plex_db, plex_queries):
        plex_db.add_marker(MOVIE_1, 0, 5000, 0)
        _, markers = asyncio.run(plex_queries.get_markers_auto(MOVIE_1))
        assert len(markers) == 1
        assert markers[0].season_id == -1
        assert markers[0].show_id == -1

    def test_existing_marker_ids(self, plex_db, plex_queries):
        kept = plex_db.add_marker(EPISODE_1, 1000, 2000, 0)
        assert asyncio.run(plex_queries.existing_marker_ids([kept, 12345])) == {kept}


class TestAddMarker:

    def test_add_between_existing_markers_shifts_indexes(self, plex_db, plex_queries):
        plex_db.add_marker(EPISODE_1, 1000, 2000, 0)
        plex_db.add_marker(EPISODE_1, 9000, 10000, 1)

        before, new_marker = asyncio.run(plex_queries.add_marker(EPISODE_1, 5000, 6000, "intro", False))

        assert len(before) == 2
        assert new_marker.index == 1
        assert _indexes_and_starts(plex_db, EPISODE_1) == [(0, 1000), (1, 5000), (2, 9000)]

    def test_add_overlapping_marker_rejected(self, plex_db, plex_queries):
        plex_db.add_marker(EPISODE_1, 1000, 5000, 0)
        with pytest.raises(ServerError) as exc_info:
            asyncio.run(plex_queries.add_marker(EPISODE_1, 4000, 8000, "intro", False))
        assert exc_info.value.status_code == 400

    def test_final_marker_must_be_last(self, plex_db, plex_queries):
        plex_db.add_marker(EPISODE_1, 1000, 2000, 0)
        with pytest.raises(ServerError):
            asyncio.run(plex_queries.add_marker(EPISODE_1, 100, 500, "credits", True))

    def test_add_to_season_rejected(self, plex_queries):
        with pytest.raises(ServerError):
            asyncio.run(plex_queries.add_marker(SEASON, 0, 1000, "intro", False))

    def test_user_created_flag_stored_in_thumb_url(self, plex_queries):
        _, marker = asyncio.run(plex_queries.add_marker(EPISODE_1, 0, 1000, "intro", False))
        assert marker.created_by_user
        assert marker.modified_date > 0

    def test_pure_mode_leaves_thumb_url_empty(self, plex_db):
        queries = asyncio.run(PlexQueryManager.create(plex_db.path, pure_mode=True))
        try:
            _, marker = asyncio.run(queries.add_marker(EPISODE_1, 0, 1000, "intro", False))
        finally:
            asyncio.run(queries.close())
        assert marker.modified_date is None
        assert not marker.created_by_user


class TestIndexContiguity:
    """Marker indexes stay 0..n-1 in start order after every change."""

    def test_delete_middle_marker(self, plex_db, plex_queries):
        plex_db.add_marker(EPISODE_1, 1000, 2000, 0)
        middle = plex_db.add_marker(EPISODE_1, 5000, 6000, 1)
        plex_db.add_marker(EPISODE_1, 9000, 10000, 2)
        commands = CoreCommands(plex_queries, LegacyMarkerBreakdown())

        asyncio.run(commands.delete_marker(middle))

        assert _indexes_and_starts(plex_db, EPISODE_1) == [(0, 1000), (1, 9000)]

    def test_sequence_of_changes(self, plex_db, plex_queries):
        commands = CoreCommands(plex_queries, LegacyMarkerBreakdown())

        async def run():
            first = await commands.add_marker("intro", EPISODE_1, 5000, 6000)
            await commands.add_marker("intro", EPISODE_1, 1000, 2000)
            await commands.add_marker("credits", EPISODE_1, 20000, 25000)
            # Move the first marker past the others
            await commands.edit_marker("intro", first.id, 12000, 13000, user_created=True)
            third = await commands.add_marker("intro", EPISODE_1, 3000, 4000)
            await commands.delete_marker(third.id)

        asyncio.run(run())

        rows = plex_db.markers(EPISODE_1)
        assert [index for index, _, _, _ in rows] == list(range(len(rows)))
        starts = [start for _, start, _, _ in rows]
        assert starts == sorted(starts) == [1000, 12000, 20000]

    def test_reindex_repairs_out_of_order_indexes(self, plex_db, plex_queries):
        plex_db.add_marker(EPISODE_1, 3000, 4000, 5)
        plex_db.add_marker(EPISODE_1, 1000, 2000, 2)
        plex_db.add_marker(EPISODE_2, 1000, 2000, 3)

        assert asyncio.run(plex_queries.reindex(SHOW))

        assert _indexes_and_starts(plex_db, EPISODE_1) == [(0, 1000), (1, 3000)]
        assert _indexes_and_starts(plex_db, EPISODE_2) == [(0, 1000)]

    def test_reindex_failure_is_reported_not_raised(self, plex_db, plex_queries):
        plex_db.add_marker(EPISODE_1, 1000, 2000, 0)
        asyncio.run(plex_queries.database.close())
        assert asyncio.run(plex_queries.reindex(EPISODE_1)) is False

    def test_compute_new_indexes_only_reports_changes(self):
        markers = [
            MarkerData(id=1, parent_id=10, start=0, end=10, index=0),
            MarkerData(id=2, parent_id=10, start=50, end=60, index=3),
            MarkerData(id=3, parent_id=11, start=20, end=30, index=1),
        ]
        assert compute_new_indexes(markers) == {2: 1, 3: 0}
        assert [m.index for m in markers] == [0, 1, 0]


def test_non_marker_taggings_are_ignored(plex_queries):
    # EPISODE_1 has a genre tagging but no markers
    assert asyncio.run(plex_queries.get_base_markers(EPISODE_1)) == []
