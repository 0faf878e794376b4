"""Background services"""

from web.services.purge_scanner import PurgeScanner

__all__ = [
    "PurgeScanner",
]
