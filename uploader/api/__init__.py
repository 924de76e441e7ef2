"""API module."""

from uploader.api.routes import router
from uploader.api.websocket import ConnectionManager, manager

__all__ = ["router", "ConnectionManager", "manager"]
