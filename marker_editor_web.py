#!/usr/bin/env python3
"""
Marker Editor

Starts the FastAPI server for editing and restoring Plex markers.

Usage:
    python marker_editor_web.py                  # Host/port from settings, else 127.0.0.1:3232
    python marker_editor_web.py --port 8080      # Custom port
    python marker_editor_web.py --host 0.0.0.0   # Listen on all interfaces
    python marker_editor_web.py --settings /path/to/marker_editor_settings.json
"""

import argparse
import os
import sys
from pathlib import Path

# Ensure project root is in path
PROJECT_ROOT = Path(__file__).parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


def main():
    parser = argparse.ArgumentParser(
        description='Plex Marker Editor',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python marker_editor_web.py                    # Start with settings file host/port
    python marker_editor_web.py --port 8080        # Use custom port
    python marker_editor_web.py --host 0.0.0.0     # Listen on all interfaces
    python marker_editor_web.py --reload           # Auto-reload on code changes
        """
    )
    parser.add_argument(
        '--host',
        help='Host to bind to (default: settings file, then 127.0.0.1)'
    )
    parser.add_argument(
        '--port',
        type=int,
        help='Port to listen on (default: settings file, then 3232)'
    )
    parser.add_argument(
        '--settings',
        help='Path to marker_editor_settings.json'
    )
    parser.add_argument(
        '--reload',
        action='store_true',
        help='Enable auto-reload for development'
    )
    args = parser.parse_args()

    if args.settings:
        # Read by web.config at import time, and by reloaded workers
        os.environ["MARKER_EDITOR_SETTINGS"] = str(Path(args.settings).resolve())

    import uvicorn
    from core.config import ConfigManager
    from web.config import SETTINGS_FILE, DEFAULT_HOST, DEFAULT_PORT

    config_manager = ConfigManager(str(SETTINGS_FILE))
    try:
        config_manager.load_config()
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        print("")
        print(f"Create {SETTINGS_FILE} with at least a \"database_path\" entry pointing at")
        print("your com.plexapp.plugins.library.db file.")
        sys.exit(1)

    host = args.host or config_manager.server.host or DEFAULT_HOST
    port = args.port or config_manager.server.port or DEFAULT_PORT

    print("=" * 60)
    print("  Plex Marker Editor")
    print("=" * 60)
    print(f"  URL: http://{host}:{port}")
    print(f"  Settings: {SETTINGS_FILE}")
    print(f"  Reload: {'Enabled' if args.reload else 'Disabled'}")
    print("=" * 60)
    print("")
    print("Press Ctrl+C to stop the server")
    print("")

    uvicorn.run(
        "web.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info"
    )


if __name__ == "__main__":
    main()
