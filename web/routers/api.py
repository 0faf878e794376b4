"""General API routes: health, library sections, marker breakdown"""

from fastapi import APIRouter, Depends, Request

from core import __version__
from core.app import MarkerEditorApp
from web.dependencies import get_editor

router = APIRouter()


@router.get("/health")
def health_check(request: Request):
    """Health check endpoint, available before the editor has finished starting"""
    editor = getattr(request.app.state, "editor", None)
    running = editor is not None and editor.is_running
    return {
        "status": "healthy" if running else "starting",
        "version": __version__,
        "backup_enabled": running and editor.backup_enabled,
    }


@router.get("/sections")
async def get_sections(editor: MarkerEditorApp = Depends(get_editor)):
    return {"sections": await editor.get_sections()}


@router.get("/breakdown/{section_id}")
async def get_breakdown(section_id: int, rebuild: bool = False, editor: MarkerEditorApp = Depends(get_editor)):
    """Marker breakdown for a library section, optionally rebuilt from the Plex database"""
    return await editor.get_breakdown(section_id, rebuild=rebuild)
