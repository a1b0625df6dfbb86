"""Typed server configuration and its environment loader.

``load_server_config`` has no side effects; the entry point resolves a
``ServerCtx`` once at startup and passes it down.

Environment keys consulted:
- MARKER_SYNC_HOST, MARKER_SYNC_PORT, MARKER_SYNC_NAMESPACE
- MARKER_SYNC_FEEDBACK_CONFLICT_S, MARKER_SYNC_PUBLISH_ON_FEEDBACK
- MARKER_SYNC_SEND_TIMEOUT_S
- MARKER_SYNC_DEBUG (see ``logging_policy``)
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from typing import Mapping, Optional

from .logging_policy import DebugPolicy, load_debug_policy

logger = logging.getLogger(__name__)


# ---- Helpers -----------------------------------------------------------------

def _env_bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    v = env.get(name)
    if v is None:
        return bool(default)
    v = v.strip().lower()
    return v not in ("0", "", "false", "no", "off")


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    v = env.get(name)
    if v is None:
        return int(default)
    try:
        return int(v)
    except ValueError:
        logger.warning("Invalid integer for %s=%r; using %d", name, v, default)
        return int(default)


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    v = env.get(name)
    if v is None:
        return float(default)
    try:
        return float(v)
    except ValueError:
        logger.warning("Invalid float for %s=%r; using %s", name, v, default)
        return float(default)


def _env_str(env: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    v = env.get(name)
    if v is None:
        return default
    v = v.strip()
    return v if v != "" else default


# ---- Types -------------------------------------------------------------------

@dataclass(frozen=True)
class ServerConfig:
    """Top-level server configuration."""

    # Network
    host: str = "0.0.0.0"
    port: int = 8091
    namespace: str = "markers"

    # Feedback
    feedback_conflict_s: float = 1.0
    publish_on_feedback: bool = True

    # Transport
    send_timeout_s: float = 5.0


@dataclass(frozen=True)
class ServerCtx:
    """Resolved runtime context shared across the registry and transport."""

    cfg: ServerConfig = field(default_factory=ServerConfig)
    debug_policy: DebugPolicy = field(default_factory=DebugPolicy)


def load_server_config(env: Optional[Mapping[str, str]] = None) -> ServerConfig:
    env = os.environ if env is None else env
    defaults = ServerConfig()

    host = _env_str(env, "MARKER_SYNC_HOST", defaults.host) or defaults.host
    port = _env_int(env, "MARKER_SYNC_PORT", defaults.port)
    if not 0 <= port <= 65535:
        logger.warning("MARKER_SYNC_PORT=%d out of range; using %d", port, defaults.port)
        port = defaults.port
    namespace = _env_str(env, "MARKER_SYNC_NAMESPACE", defaults.namespace) or defaults.namespace

    conflict_s = max(0.0, _env_float(env, "MARKER_SYNC_FEEDBACK_CONFLICT_S", defaults.feedback_conflict_s))
    publish_on_feedback = _env_bool(env, "MARKER_SYNC_PUBLISH_ON_FEEDBACK", defaults.publish_on_feedback)
    send_timeout_s = _env_float(env, "MARKER_SYNC_SEND_TIMEOUT_S", defaults.send_timeout_s)
    if send_timeout_s <= 0.0:
        send_timeout_s = defaults.send_timeout_s

    return ServerConfig(
        host=host,
        port=port,
        namespace=namespace,
        feedback_conflict_s=conflict_s,
        publish_on_feedback=publish_on_feedback,
        send_timeout_s=send_timeout_s,
    )


def load_server_ctx(env: Optional[Mapping[str, str]] = None) -> ServerCtx:
    env = os.environ if env is None else env
    return ServerCtx(cfg=load_server_config(env), debug_policy=load_debug_policy(env))


__all__ = [
    "ServerConfig",
    "ServerCtx",
    "load_server_config",
    "load_server_ctx",
]
