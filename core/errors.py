"""
Error types shared by the core and web layers.
"""

import sqlite3


class ServerError(Exception):
    """An error that maps onto an HTTP status code.

    Raised for expected failures (bad input, conflicts, disabled features) as
    well as wrapped database errors.
    """

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500

    @classmethod
    def from_db_error(cls, err: Exception) -> "ServerError":
        """Wrap a sqlite3 error (or anything else from the database layer) as a 500."""
        if isinstance(err, ServerError):
            return err
        if isinstance(err, sqlite3.Error):
            return cls(f"Database error: {err}", 500)
        return cls(str(err), 500)


class BackupDisabledError(ServerError):
    """Raised when a backup/purge action is requested but the action log is unavailable."""

    def __init__(self):
        super().__init__("Action is not enabled due to configuration settings.", 400)
