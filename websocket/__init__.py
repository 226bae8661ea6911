"""
WebSocket module pushing live tracking engine events to clients.
"""

from .connection_manager import ConnectionManager

__all__ = ["ConnectionManager"]
