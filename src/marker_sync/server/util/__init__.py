"""Small helpers shared by the server transports."""

from .websocket import safe_send

__all__ = ["safe_send"]
