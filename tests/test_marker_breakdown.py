"""Tests for the per-section marker breakdown cache."""

import asyncio

from conftest import EPISODE_1, EPISODE_2, EPISODE_3, MOVIE_1, MOVIE_SECTION, TV_SECTION
from core.commands import CoreCommands
from core.marker_breakdown import (
    CREDITS_SHIFT, LegacyMarkerBreakdown, MarkerBreakdown, counts_from_key, delta_from_type, key_from_markers,
)
from core.plex_types import MarkerData


def _key(intros, credits):
    return intros | (credits << CREDITS_SHIFT)


class TestKeys:

    def test_credits_are_shifted(self):
        markers = [MarkerData(id=i, parent_id=1, start=0, end=1, marker_type=t)
                   for i, t in enumerate(["intro", "credits", "intro"])]
        assert key_from_markers(markers) == 2 + (1 << 16)
        assert counts_from_key(_key(3, 4)) == (3, 4)

    def test_delta_from_type(self):
        assert delta_from_type(1, "intro") == 1
        assert delta_from_type(-1, "credits") == -(1 << 16)


class TestMarkerBreakdown:

    def test_delta_moves_item_between_buckets(self):
        breakdown = MarkerBreakdown({0: 3})
        breakdown.delta(0, 1)
        breakdown.delta(1, 1 << 16)

        assert breakdown.buckets() == {0: 2, _key(1, 1): 1}
        assert breakdown.item_count() == 3
        assert breakdown.marker_count() == 2

    def test_empty_buckets_are_pruned(self):
        breakdown = MarkerBreakdown({0: 1})
        breakdown.delta(0, 1)
        assert breakdown.buckets() == {1: 1}

    def test_missing_bucket_changes_nothing(self):
        breakdown = MarkerBreakdown({0: 2})
        assert not breakdown.delta(2, -1)
        assert breakdown.buckets() == {0: 2}


class TestLegacyBreakdown:

    def test_rebuild_counts_every_item(self, plex_db, plex_queries):
        plex_db.add_marker(EPISODE_1, 0, 1000, 0)
        plex_db.add_marker(EPISODE_1, 5000, 6000, 1, marker_type="credits")
        plex_db.add_marker(EPISODE_2, 0, 1000, 0)

        cache = LegacyMarkerBreakdown()
        breakdown = asyncio.run(cache.rebuild(TV_SECTION, plex_queries))

        assert breakdown.buckets() == {_key(1, 1): 1, 1: 1, 0: 1}
        assert breakdown.item_count() == 3
        assert cache.get(TV_SECTION) is breakdown

    def test_movie_section(self, plex_db, plex_queries):
        plex_db.add_marker(MOVIE_1, 0, 1000, 0)
        breakdown = asyncio.run(LegacyMarkerBreakdown().rebuild(MOVIE_SECTION, plex_queries))
        assert breakdown.buckets() == {1: 1, 0: 1}

    def test_update_skips_unbuilt_sections(self):
        cache = LegacyMarkerBreakdown()
        cache.update(MarkerData(id=1, parent_id=EPISODE_1, start=0, end=1, section_id=TV_SECTION), 0, 1)
        assert cache.get(TV_SECTION) is None

    def test_drifted_section_is_discarded_and_rebuilt(self, plex_db, plex_queries):
        cache = LegacyMarkerBreakdown()
        asyncio.run(cache.rebuild(TV_SECTION, plex_queries))
        # Plex added a marker behind our back, so no episode has the key we claim
        plex_db.add_marker(EPISODE_1, 0, 1000, 0)
        marker = MarkerData(id=99, parent_id=EPISODE_1, start=0, end=1000, section_id=TV_SECTION)

        cache.update(marker, _key(2, 0), -1)

        assert cache.get(TV_SECTION) is None
        rebuilt = asyncio.run(cache.rebuild(TV_SECTION, plex_queries))
        assert rebuilt.buckets() == {1: 1, 0: 2}
        assert sum(rebuilt.buckets().values()) == rebuilt.item_count() == 3

    def test_stays_consistent_with_database(self, plex_db, plex_queries):
        """Incremental updates match a fresh rebuild after every change."""
        cache = LegacyMarkerBreakdown()
        commands = CoreCommands(plex_queries, cache)
        asyncio.run(cache.rebuild(TV_SECTION, plex_queries))

        def check():
            fresh = asyncio.run(LegacyMarkerBreakdown().rebuild(TV_SECTION, plex_queries))
            assert cache.get(TV_SECTION).buckets() == fresh.buckets()
            assert cache.get(TV_SECTION).item_count() == 3

        first = asyncio.run(commands.add_marker("intro", EPISODE_1, 0, 1000))
        check()
        asyncio.run(commands.add_marker("credits", EPISODE_1, 5000, 6000))
        check()
        asyncio.run(commands.add_marker("intro", EPISODE_3, 0, 1000))
        check()
        asyncio.run(commands.edit_marker("credits", first.id, 0, 1500, user_created=True))
        check()
        asyncio.run(commands.delete_marker(first.id))
        check()
        asyncio.run(commands.bulk_delete(EPISODE_3))
        check()
