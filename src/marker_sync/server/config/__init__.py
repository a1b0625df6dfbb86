"""Shared configuration dataclasses for the marker-sync server."""

from .logging_policy import DebugPolicy, LoggingToggles, load_debug_policy
from .models import ServerConfig, ServerCtx, load_server_config, load_server_ctx

__all__ = [
    "DebugPolicy",
    "LoggingToggles",
    "ServerConfig",
    "ServerCtx",
    "load_debug_policy",
    "load_server_config",
    "load_server_ctx",
]
