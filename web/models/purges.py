"""Pydantic models for purged marker actions"""

from typing import List

from pydantic import BaseModel

from core.plex_types import MarkerConflictResolution


class RestoreRequest(BaseModel):
    """Restore purged markers in a section"""
    marker_ids: List[int]
    section_id: int
    resolution_type: int = MarkerConflictResolution.OVERWRITE.value


class IgnoreRequest(BaseModel):
    marker_ids: List[int]
    section_id: int
