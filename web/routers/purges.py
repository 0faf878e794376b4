"""Purged marker routes"""

from fastapi import APIRouter, Depends

from core.purge_commands import PurgeCommands
from web.dependencies import get_purge_commands
from web.models.purges import RestoreRequest, IgnoreRequest

router = APIRouter()


@router.get("/check/{metadata_id}")
async def purge_check(metadata_id: int, purges: PurgeCommands = Depends(get_purge_commands)):
    """Purged markers under a single show, season, episode or movie"""
    actions = await purges.purge_check(metadata_id)
    return {"purged": [a.to_dict() for a in actions]}


@router.get("/section/{section_id}")
async def all_purges(section_id: int, purges: PurgeCommands = Depends(get_purge_commands)):
    return await purges.all_purges(section_id)


@router.get("/count")
async def purge_count(purges: PurgeCommands = Depends(get_purge_commands)):
    return {"count": await purges.purge_count()}


@router.post("/restore")
async def restore_markers(body: RestoreRequest, purges: PurgeCommands = Depends(get_purge_commands)):
    result = await purges.restore_markers(body.marker_ids, body.section_id, body.resolution_type)
    return result.to_dict()


@router.post("/ignore")
async def ignore_purged_markers(body: IgnoreRequest, purges: PurgeCommands = Depends(get_purge_commands)):
    await purges.ignore_purged_markers(body.marker_ids, body.section_id)
    return {"success": True}
