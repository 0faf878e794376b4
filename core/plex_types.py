"""
Data types shared across the marker editor: marker/metadata enums, marker rows
read from the Plex database, and rows of the marker action log.
"""

from dataclasses import dataclass, asdict
from enum import Enum, IntEnum
from typing import Any, Dict, Mapping, Optional


class MarkerType(str, Enum):
    """Marker types we know how to edit."""
    INTRO = "intro"
    CREDITS = "credits"

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in (cls.INTRO.value, cls.CREDITS.value)


class MarkerOp(IntEnum):
    """Operation recorded in the action log."""
    ADD = 1
    EDIT = 2
    DELETE = 3
    RESTORE = 4


class MetadataType(IntEnum):
    """metadata_type values from Plex's metadata_items table."""
    INVALID = 0
    MOVIE = 1
    SHOW = 2
    SEASON = 3
    EPISODE = 4


BASE_METADATA_TYPES = (MetadataType.MOVIE, MetadataType.EPISODE)


class SectionType(IntEnum):
    """section_type values from Plex's library_sections table."""
    MOVIE = 1
    TV = 2


class MarkerConflictResolution(IntEnum):
    """How to resolve a purged marker that overlaps a live one."""
    OVERWRITE = 1
    MERGE = 2
    IGNORE = 3


class ExtraData:
    """extra_data strings Plex stores alongside each marker."""
    INTRO = "pv%3Aversion=5"
    CREDITS = "pv%3Aversion=4"
    CREDITS_FINAL = "pv%3Afinal=1&pv%3Aversion=4"

    @staticmethod
    def get(marker_type: str, final: bool) -> str:
        if marker_type == MarkerType.INTRO.value:
            return ExtraData.INTRO
        return ExtraData.CREDITS_FINAL if final else ExtraData.CREDITS

    @staticmethod
    def is_final(extra_data: Optional[str]) -> bool:
        return bool(extra_data) and "final=1" in extra_data


@dataclass
class MarkerData:
    """A single marker as it currently exists in the Plex database.

    Movie markers carry -1 for season_id and show_id.
    """
    id: int
    parent_id: int
    start: int
    end: int
    index: int = 0
    marker_type: str = MarkerType.INTRO.value
    is_final: bool = False
    season_id: int = -1
    show_id: int = -1
    section_id: int = -1
    parent_guid: str = ""
    modified_date: Optional[int] = None
    create_date: Optional[int] = None
    created_by_user: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "MarkerData":
        """Build from a row returned by the extended marker query."""
        modified = row.get("modified_date")
        try:
            modified = int(modified) if modified not in (None, "") else None
        except (TypeError, ValueError):
            modified = None

        return cls(
            id=row["id"],
            parent_id=row["parent_id"],
            start=int(row["start"]),
            end=int(row["end"]),
            index=row.get("index", 0) or 0,
            marker_type=row.get("marker_type") or MarkerType.INTRO.value,
            is_final=ExtraData.is_final(row.get("extra_data")),
            season_id=row.get("season_id", -1),
            show_id=row.get("show_id", -1),
            section_id=row.get("section_id", -1),
            parent_guid=row.get("parent_guid") or "",
            modified_date=abs(modified) if modified is not None else None,
            create_date=row.get("created_at"),
            created_by_user=modified is not None and modified < 0,
        )

    def overlaps(self, start: int, end: int) -> bool:
        return self.end >= start and self.start <= end

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MarkerAction:
    """One row of the action log.

    restored_id is NULL while the action is live, the id of the replacement
    marker once restored, or IGNORED_RESTORE_ID once the user ignores it.
    """
    id: int
    op: int
    marker_id: int
    parent_id: int
    start: int
    end: int
    marker_type: str = MarkerType.INTRO.value
    final: bool = False
    season_id: int = -1
    show_id: int = -1
    section_id: int = -1
    section_uuid: str = ""
    old_start: Optional[int] = None
    old_end: Optional[int] = None
    modified_at: Optional[int] = None
    created_at: Optional[int] = None
    recorded_at: Optional[str] = None
    extra_data: str = ExtraData.INTRO
    user_created: bool = False
    parent_guid: str = ""
    restores_id: Optional[int] = None
    restored_id: Optional[int] = None
    readded: bool = False
    readded_id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "MarkerAction":
        return cls(
            id=row["id"],
            op=row["op"],
            marker_id=row["marker_id"],
            parent_id=row["parent_id"],
            start=row["start"],
            end=row["end"],
            marker_type=row.get("marker_type") or MarkerType.INTRO.value,
            final=bool(row.get("final")),
            season_id=row.get("season_id", -1),
            show_id=row.get("show_id", -1),
            section_id=row.get("section_id", -1),
            section_uuid=row.get("section_uuid") or "",
            old_start=row.get("old_start"),
            old_end=row.get("old_end"),
            modified_at=row.get("modified_at"),
            created_at=row.get("created_at"),
            recorded_at=row.get("recorded_at"),
            extra_data=row.get("extra_data") or ExtraData.INTRO,
            user_created=bool(row.get("user_created")),
            parent_guid=row.get("parent_guid") or "",
            restores_id=row.get("restores_id"),
            restored_id=row.get("restored_id"),
        )

    @property
    def is_movie(self) -> bool:
        return self.season_id == -1

    def overlaps(self, start: int, end: int) -> bool:
        return self.end >= start and self.start <= end

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


IGNORED_RESTORE_ID = -1
