"""Shared test fixtures for the marker editor test suite."""

import asyncio
import os
import shutil
import sqlite3
import sys
import tempfile
from typing import List, Optional

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.app import MarkerEditorApp
from core.config import ConfigManager
from core.marker_backup import MarkerBackupManager
from core.plex_queries import MARKER_TAG_TYPE, PlexQueryManager
from core.plex_types import ExtraData


# ============================================================================
# Plex database layout used by every test
# ============================================================================

TV_SECTION = 1
MOVIE_SECTION = 2
TV_UUID = "5c5a0f24-tv-section"
MOVIE_UUID = "9e1f5b3a-movie-section"

SHOW = 100
SEASON = 101
EPISODE_1 = 102
EPISODE_2 = 103
EPISODE_3 = 104
MOVIE_1 = 200
MOVIE_2 = 201

MARKER_TAG_ID = 5

_SCHEMA = """
CREATE TABLE library_sections (
    id INTEGER PRIMARY KEY,
    uuid VARCHAR(255),
    section_type INTEGER,
    name VARCHAR(255)
);
CREATE TABLE metadata_items (
    id INTEGER PRIMARY KEY,
    library_section_id INTEGER,
    parent_id INTEGER,
    metadata_type INTEGER,
    guid VARCHAR(255),
    title VARCHAR(255),
    `index` INTEGER
);
CREATE TABLE tags (
    id INTEGER PRIMARY KEY,
    tag VARCHAR(255),
    tag_type INTEGER
);
CREATE TABLE taggings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    metadata_item_id INTEGER,
    tag_id INTEGER,
    `index` INTEGER,
    text VARCHAR(255),
    time_offset INTEGER,
    end_time_offset INTEGER,
    thumb_url VARCHAR(255),
    created_at INTEGER,
    extra_data VARCHAR(255)
);
"""


class PlexDatabase:
    """A small Plex-shaped database, edited behind the editor's back to simulate Plex."""

    def __init__(self, path: str):
        self.path = path
        self._connection = sqlite3.connect(path, isolation_level=None)
        self._connection.executescript(_SCHEMA)
        self._populate()

    def _populate(self):
        self.execute("INSERT INTO library_sections VALUES (?, ?, 2, 'TV Shows');", (TV_SECTION, TV_UUID))
        self.execute("INSERT INTO library_sections VALUES (?, ?, 1, 'Movies');", (MOVIE_SECTION, MOVIE_UUID))
        self.execute("INSERT INTO tags VALUES (1, 'Comedy', 0);")
        self.execute("INSERT INTO tags VALUES (?, '', ?);", (MARKER_TAG_ID, MARKER_TAG_TYPE))

        self.add_item(SHOW, TV_SECTION, None, 2, "Test Show")
        self.add_item(SEASON, TV_SECTION, SHOW, 3, "Season 1", 1)
        for index, episode in enumerate((EPISODE_1, EPISODE_2, EPISODE_3), start=1):
            self.add_item(episode, TV_SECTION, SEASON, 4, f"Episode {index}", index)
        self.add_item(MOVIE_1, MOVIE_SECTION, None, 1, "Movie One")
        self.add_item(MOVIE_2, MOVIE_SECTION, None, 1, "Movie Two")

        # Non-marker tagging that marker queries must ignore
        self.execute("INSERT INTO taggings (metadata_item_id, tag_id, `index`) VALUES (?, 1, 0);", (EPISODE_1,))

    def execute(self, query: str, parameters=()):
        return self._connection.execute(query, parameters)

    def add_item(self, item_id: int, section_id: int, parent_id: Optional[int], metadata_type: int,
                 title: str, index: int = 1, guid: Optional[str] = None):
        self.execute(
            "INSERT INTO metadata_items VALUES (?, ?, ?, ?, ?, ?, ?);",
            (item_id, section_id, parent_id, metadata_type, guid or f"plex://item/{item_id}", title, index))

    def remove_item(self, item_id: int):
        self.execute("DELETE FROM taggings WHERE metadata_item_id=?;", (item_id,))
        self.execute("DELETE FROM metadata_items WHERE id=?;", (item_id,))

    def add_marker(self, item_id: int, start: int, end: int, index: int, marker_type: str = "intro",
                   final: bool = False, marker_id: Optional[int] = None) -> int:
        cursor = self.execute(
            "INSERT INTO taggings (id, metadata_item_id, tag_id, `index`, text, time_offset, end_time_offset, "
            "thumb_url, created_at, extra_data) VALUES (?, ?, ?, ?, ?, ?, ?, '', 1700000000, ?);",
            (marker_id, item_id, MARKER_TAG_ID, index, marker_type, start, end, ExtraData.get(marker_type, final)))
        return cursor.lastrowid

    def purge_marker(self, marker_id: int):
        """Drop a marker the way a Plex re-analysis would."""
        self.execute("DELETE FROM taggings WHERE id=?;", (marker_id,))

    def markers(self, item_id: int) -> List[tuple]:
        """(index, start, end, type) for every marker on an item, ordered by index."""
        return self.execute(
            "SELECT `index`, time_offset, end_time_offset, text FROM taggings "
            "WHERE metadata_item_id=? AND tag_id=? ORDER BY `index` ASC;",
            (item_id, MARKER_TAG_ID)).fetchall()

    def close(self):
        self._connection.close()


# ============================================================================
# Filesystem fixtures
# ============================================================================

@pytest.fixture
def temp_dir():
    """Provide a temporary directory, cleaned up after test."""
    d = tempfile.mkdtemp(prefix="marker_editor_test_")
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def plex_db(temp_dir):
    db = PlexDatabase(os.path.join(temp_dir, "com.plexapp.plugins.library.db"))
    yield db
    db.close()


@pytest.fixture
def backup_folder(temp_dir):
    return os.path.join(temp_dir, "Backup")


# ============================================================================
# Core object factories
# ============================================================================

@pytest.fixture
def plex_queries(plex_db):
    queries = asyncio.run(PlexQueryManager.create(plex_db.path))
    yield queries
    asyncio.run(queries.close())


@pytest.fixture
def backup(plex_queries, backup_folder):
    manager = asyncio.run(MarkerBackupManager.create(plex_queries, backup_folder))
    yield manager
    asyncio.run(manager.close())


def make_config(temp_dir: str, database_path: str, backup_folder: str, backup_actions: bool = True) -> ConfigManager:
    """ConfigManager populated in memory, without a settings file."""
    config = ConfigManager(os.path.join(temp_dir, "marker_editor_settings.json"))
    config.database.database_path = database_path
    config.features.backup_actions = backup_actions
    config.backup.backup_folder = backup_folder
    config.logs.logs_folder = os.path.join(temp_dir, "logs")
    return config


@pytest.fixture
def editor(temp_dir, plex_db, backup_folder):
    """Started application context with marker backup enabled."""
    app = MarkerEditorApp(make_config(temp_dir, plex_db.path, backup_folder))
    asyncio.run(app.start())
    yield app
    asyncio.run(app.shutdown())


@pytest.fixture
def editor_without_backup(temp_dir, plex_db, backup_folder):
    app = MarkerEditorApp(make_config(temp_dir, plex_db.path, backup_folder, backup_actions=False))
    asyncio.run(app.start())
    yield app
    asyncio.run(app.shutdown())


def add_and_purge(editor: MarkerEditorApp, plex_db: PlexDatabase, item_id: int, start: int, end: int,
                  marker_type: str = "intro") -> int:
    """Add a marker through the editor (so it's logged), then have 'Plex' drop it."""
    marker = asyncio.run(editor.commands.add_marker(marker_type, item_id, start, end))
    plex_db.purge_marker(marker.id)
    return marker.id
