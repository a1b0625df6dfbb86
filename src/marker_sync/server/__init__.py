"""Marker registry server components.

The command-line entry point lives in :mod:`marker_sync.server.app`. The
layout separates authoritative state (`registry`, `marker_store`,
`pending_updates`), feedback routing (`feedback`), transports (`transport`,
`websocket_transport`) and configuration (`config`).
"""

from .errors import MarkerNotFound, MarkerSyncError, StaleFeedback, TransportFailure
from .feedback import FeedbackDispatcher
from .registry import FeedbackDecision, MarkerRegistry, PublishResult
from .transport import DeliveryReport, LoopbackTransport, TransportAdapter

__all__ = [
    "DeliveryReport",
    "FeedbackDecision",
    "FeedbackDispatcher",
    "LoopbackTransport",
    "MarkerNotFound",
    "MarkerRegistry",
    "MarkerSyncError",
    "PublishResult",
    "StaleFeedback",
    "TransportAdapter",
    "TransportFailure",
]
