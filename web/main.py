"""Marker Editor - FastAPI Application"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from core import __version__
from core.app import MarkerEditorApp
from core.config import ConfigManager
from core.errors import ServerError
from web.config import PROJECT_ROOT, SETTINGS_FILE
from web.routers import api, markers, purges
from web.services import PurgeScanner


def _suppress_noisy_loggers():
    """Suppress debug spam from third-party libraries"""
    logging.getLogger("multipart").setLevel(logging.WARNING)
    logging.getLogger("python_multipart").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def _load_config(app: FastAPI) -> ConfigManager:
    config_manager = getattr(app.state, "config_manager", None)
    if config_manager is None:
        config_manager = ConfigManager(str(SETTINGS_FILE))
        config_manager.load_config()
    return config_manager


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown"""
    # Startup
    _suppress_noisy_loggers()
    config_manager = _load_config(app)

    editor = MarkerEditorApp(config_manager)
    if getattr(app.state, "setup_logging", True):
        editor.setup_logging()
    logging.info(f"Project root: {PROJECT_ROOT}")

    await editor.start()
    app.state.editor = editor

    scanner = PurgeScanner(editor.purges, config_manager.features.purge_scan_interval_hours)
    scanner.start()
    app.state.purge_scanner = scanner

    yield

    # Shutdown
    logging.info("Marker Editor shutting down...")
    scanner.stop()
    app.state.editor = None
    await editor.shutdown()


async def server_error_handler(request: Request, exc: ServerError):
    """Return ServerErrors as JSON with their status code"""
    if exc.is_client_error:
        logging.warning(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logging.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


def create_app(config_manager: Optional[ConfigManager] = None, setup_logging: bool = True) -> FastAPI:
    """Build the FastAPI app. A preloaded ConfigManager skips reading the settings file."""
    app = FastAPI(
        title="Marker Editor",
        description="Edit and restore Plex intro/credits markers",
        version=__version__,
        lifespan=lifespan
    )
    app.state.config_manager = config_manager
    app.state.setup_logging = setup_logging
    app.state.editor = None

    app.add_exception_handler(ServerError, server_error_handler)

    # Include routers
    app.include_router(api.router, prefix="/api", tags=["api"])
    app.include_router(markers.router, prefix="/markers", tags=["markers"])
    app.include_router(purges.router, prefix="/purges", tags=["purges"])
    return app


app = create_app()
