"""Web server for TalkLoop calls."""
from .server import CallServer, create_app, main, run_server

__all__ = ["CallServer", "create_app", "main", "run_server"]
