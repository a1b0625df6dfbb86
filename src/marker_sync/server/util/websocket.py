"""Frame delivery helper for marker-sync WebSocket peers."""

from __future__ import annotations

import logging
from typing import Any, Union

logger = logging.getLogger(__name__)


async def safe_send(ws: Any, frame: Union[str, bytes], *, peer: str = "marker client") -> bool:
    """Write one frame to *ws*; on failure close the peer and return False.

    Transports treat False as "drop this subscriber", so errors are logged
    here and not raised.
    """

    try:
        await ws.send(frame)
    except Exception:
        logger.debug("%s: frame send failed (%d bytes)", peer, len(frame), exc_info=True)
        try:
            await ws.close()
        except Exception:
            logger.debug("%s: close after failed send also failed", peer, exc_info=True)
        return False
    return True


__all__ = ["safe_send"]
