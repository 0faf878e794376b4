"""Marker query and edit routes"""

from fastapi import APIRouter, Depends

from core.commands import CoreCommands
from web.dependencies import get_commands
from web.models.markers import (
    AddMarkerRequest,
    BulkAddRequest,
    BulkDeleteRequest,
    DeleteMarkerRequest,
    EditMarkerRequest,
)

router = APIRouter()


@router.get("/{metadata_id}")
async def get_markers(metadata_id: int, commands: CoreCommands = Depends(get_commands)):
    """All markers under a show, season, episode or movie"""
    markers = await commands.get_markers(metadata_id)
    return {"markers": [m.to_dict() for m in markers]}


@router.post("/add")
async def add_marker(body: AddMarkerRequest, commands: CoreCommands = Depends(get_commands)):
    marker = await commands.add_marker(body.marker_type.value, body.metadata_id, body.start, body.end, body.final)
    return marker.to_dict()


@router.post("/edit")
async def edit_marker(body: EditMarkerRequest, commands: CoreCommands = Depends(get_commands)):
    marker = await commands.edit_marker(
        body.marker_type.value, body.marker_id, body.start, body.end, body.user_created, body.final)
    return marker.to_dict()


@router.post("/delete")
async def delete_marker(body: DeleteMarkerRequest, commands: CoreCommands = Depends(get_commands)):
    marker = await commands.delete_marker(body.marker_id)
    return marker.to_dict()


@router.post("/bulk_delete")
async def bulk_delete(body: BulkDeleteRequest, commands: CoreCommands = Depends(get_commands)):
    result = await commands.bulk_delete(body.metadata_id, body.dry_run, body.ignored_marker_ids)
    return {
        "markers": [m.to_dict() for m in result["markers"]],
        "deleted_markers": [m.to_dict() for m in result["deleted_markers"]],
    }


@router.post("/bulk_add")
async def bulk_add(body: BulkAddRequest, commands: CoreCommands = Depends(get_commands)):
    result = await commands.bulk_add(
        body.marker_type.value, body.metadata_id, body.start, body.end, body.final, body.resolve_type,
        body.ignored_episode_ids)
    return {
        "markers": [m.to_dict() for m in result["markers"]],
        "added_markers": [m.to_dict() for m in result["added_markers"]],
        "edited_markers": [m.to_dict() for m in result["edited_markers"]],
        "deleted_markers": [m.to_dict() for m in result["deleted_markers"]],
        "ignored_episode_ids": result["ignored_episode_ids"],
    }
