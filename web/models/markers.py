"""Pydantic models for marker edits"""

from typing import List

from pydantic import BaseModel, Field

from core.plex_types import MarkerConflictResolution, MarkerType


class AddMarkerRequest(BaseModel):
    """Add a marker to an episode or movie"""
    metadata_id: int
    start: int
    end: int
    marker_type: MarkerType = MarkerType.INTRO
    final: bool = False


class EditMarkerRequest(BaseModel):
    """Change an existing marker's bounds or type"""
    marker_id: int
    start: int
    end: int
    marker_type: MarkerType = MarkerType.INTRO
    user_created: bool = False
    final: bool = False


class DeleteMarkerRequest(BaseModel):
    marker_id: int


class BulkDeleteRequest(BaseModel):
    """Delete every marker under a show, season or episode"""
    metadata_id: int
    dry_run: bool = False
    ignored_marker_ids: List[int] = Field(default_factory=list)


class BulkAddRequest(BaseModel):
    """Add the same marker to every episode under a show, season or episode"""
    metadata_id: int
    start: int
    end: int
    marker_type: MarkerType = MarkerType.INTRO
    final: bool = False
    resolve_type: MarkerConflictResolution = MarkerConflictResolution.MERGE
    ignored_episode_ids: List[int] = Field(default_factory=list)
