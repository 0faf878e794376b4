"""Tests for purge commands and the application context around them."""

import asyncio
import os
from unittest.mock import MagicMock

import pytest

from conftest import (
    EPISODE_1, EPISODE_2, MOVIE_1, MOVIE_SECTION, SEASON, SHOW, TV_SECTION, add_and_purge, make_config,
)
from core.app import MarkerEditorApp
from core.errors import BackupDisabledError, ServerError
from core.marker_breakdown import LegacyMarkerBreakdown
from core.plex_types import MarkerConflictResolution
from core.purge_cache import PurgeCache, PurgeCacheStatus
from core.purge_commands import PurgeCommands


class TestBackupDisabled:

    def test_purge_check_fails_before_touching_databases(self):
        plex = MagicMock()
        purges = PurgeCommands(plex, None, PurgeCache(), LegacyMarkerBreakdown())

        with pytest.raises(BackupDisabledError) as exc_info:
            asyncio.run(purges.purge_check(EPISODE_1))

        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "Action is not enabled due to configuration settings."
        assert plex.method_calls == []

    def test_every_purge_command_is_guarded(self, editor_without_backup):
        purges = editor_without_backup.purges
        assert not editor_without_backup.backup_enabled
        for call in (
            lambda: purges.all_purges(TV_SECTION),
            lambda: purges.purge_count(),
            lambda: purges.restore_markers([1], TV_SECTION, 1),
            lambda: purges.ignore_purged_markers([1], TV_SECTION),
        ):
            with pytest.raises(BackupDisabledError):
                asyncio.run(call())

    def test_unusable_backup_folder_disables_feature(self, temp_dir, plex_db):
        blocker = os.path.join(temp_dir, "not_a_folder")
        with open(blocker, "w") as f:
            f.write("")

        app = MarkerEditorApp(make_config(temp_dir, plex_db.path, blocker))
        asyncio.run(app.start())
        try:
            assert app.is_running
            assert not app.backup_enabled
            with pytest.raises(BackupDisabledError):
                asyncio.run(app.purges.purge_check(EPISODE_1))
            # Marker editing still works
            asyncio.run(app.commands.add_marker("intro", EPISODE_1, 0, 1000))
        finally:
            asyncio.run(app.shutdown())

    def test_missing_plex_database_fails_startup(self, temp_dir, backup_folder):
        app = MarkerEditorApp(make_config(temp_dir, os.path.join(temp_dir, "missing.db"), backup_folder))
        with pytest.raises(ServerError):
            asyncio.run(app.start())


class TestPurgeQueries:

    def test_purge_check_for_show(self, editor, plex_db):
        first = add_and_purge(editor, plex_db, EPISODE_1, 1000, 2000)
        second = add_and_purge(editor, plex_db, EPISODE_2, 1000, 2000)

        purged = asyncio.run(editor.purges.purge_check(SHOW))

        assert sorted(a.marker_id for a in purged) == sorted([first, second])
        assert editor.purge_cache.section(TV_SECTION).count == 2

    def test_purge_check_refreshes_cached_item(self, editor, plex_db):
        first = add_and_purge(editor, plex_db, EPISODE_1, 1000, 2000)
        add_and_purge(editor, plex_db, EPISODE_2, 1000, 2000)
        asyncio.run(editor.purges.all_purges(TV_SECTION))
        section = editor.purge_cache.section(TV_SECTION)
        assert section.status == PurgeCacheStatus.COMPLETE

        asyncio.run(editor.backup.ignore_purged_markers([first], TV_SECTION))
        assert asyncio.run(editor.purges.purge_check(EPISODE_1)) == []

        assert editor.purge_cache.count == 1
        assert section.status == PurgeCacheStatus.COMPLETE
        assert editor.purge_cache.server.validate()

    def test_all_purges_tree(self, editor, plex_db):
        marker_id = add_and_purge(editor, plex_db, EPISODE_1, 1000, 2000)

        tree = asyncio.run(editor.purges.all_purges(TV_SECTION))

        assert tree["count"] == 1
        assert tree["status"] == "complete"
        episode = tree["children"][str(SHOW)]["children"][str(SEASON)]["children"][str(EPISODE_1)]
        assert list(episode["children"]) == [str(marker_id)]

    def test_all_purges_movie_section(self, editor, plex_db):
        add_and_purge(editor, plex_db, MOVIE_1, 0, 5000)
        tree = asyncio.run(editor.purges.all_purges(MOVIE_SECTION))
        assert tree["children"][str(MOVIE_1)]["kind"] == "movie"

    def test_purge_count_scans_every_section(self, editor, plex_db):
        add_and_purge(editor, plex_db, EPISODE_1, 1000, 2000)
        add_and_purge(editor, plex_db, MOVIE_1, 0, 5000)

        assert asyncio.run(editor.purges.purge_count()) == 2
        assert editor.purge_cache.server.status == PurgeCacheStatus.COMPLETE

    def test_unknown_section(self, editor):
        with pytest.raises(ServerError) as exc_info:
            asyncio.run(editor.purges.all_purges(42))
        assert exc_info.value.status_code == 400


class TestPurgeActions:

    def test_restore_removes_from_cache(self, editor, plex_db):
        first = add_and_purge(editor, plex_db, EPISODE_1, 1000, 2000)
        second = add_and_purge(editor, plex_db, EPISODE_2, 1000, 2000)
        asyncio.run(editor.purges.all_purges(TV_SECTION))

        asyncio.run(editor.purges.restore_markers([first], TV_SECTION, MarkerConflictResolution.OVERWRITE))

        assert editor.purge_cache.count == 1
        assert [a.marker_id for a in editor.purge_cache.section(TV_SECTION).actions()] == [second]

    def test_ignore_removes_from_cache(self, editor, plex_db):
        marker_id = add_and_purge(editor, plex_db, EPISODE_1, 1000, 2000)
        asyncio.run(editor.purges.all_purges(TV_SECTION))

        asyncio.run(editor.purges.ignore_purged_markers([marker_id], TV_SECTION))

        assert editor.purge_cache.count == 0
        assert asyncio.run(editor.purges.purge_check(EPISODE_1)) == []

    def test_bad_resolution_type(self, editor, plex_db):
        marker_id = add_and_purge(editor, plex_db, EPISODE_1, 1000, 2000)
        with pytest.raises(ServerError) as exc_info:
            asyncio.run(editor.purges.restore_markers([marker_id], TV_SECTION, 7))
        assert exc_info.value.status_code == 400

    def test_live_marker_cannot_be_restored(self, editor):
        marker = asyncio.run(editor.commands.add_marker("intro", EPISODE_1, 0, 1000))
        with pytest.raises(ServerError) as exc_info:
            asyncio.run(editor.purges.restore_markers([marker.id], TV_SECTION, 1))
        assert exc_info.value.status_code == 400

    def test_empty_id_list(self, editor):
        with pytest.raises(ServerError):
            asyncio.run(editor.purges.ignore_purged_markers([], TV_SECTION))
