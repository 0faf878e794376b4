"""Core package for the Plex marker editor."""

__version__ = "0.1.0"
