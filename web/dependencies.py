"""FastAPI dependencies - shared instances and utilities"""

from fastapi import Request

from core.app import MarkerEditorApp
from core.commands import CoreCommands
from core.errors import ServerError
from core.purge_commands import PurgeCommands


def get_editor(request: Request) -> MarkerEditorApp:
    """Application context created by the lifespan handler."""
    editor = getattr(request.app.state, "editor", None)
    if editor is None or not editor.is_running:
        raise ServerError("Marker editor is not running", 503)
    return editor


def get_commands(request: Request) -> CoreCommands:
    return get_editor(request).commands


def get_purge_commands(request: Request) -> PurgeCommands:
    return get_editor(request).purges
