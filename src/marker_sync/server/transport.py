"""Transport adapter contract and an in-process loopback implementation."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import uuid
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from marker_sync.protocol import FeedbackEvent, UpdateBatch

SubscribeHook = Callable[[str], None]
FeedbackHook = Callable[[FeedbackEvent], None]
BatchSink = Callable[[UpdateBatch], None]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryReport:
    delivered: Tuple[str, ...] = ()
    failed: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failed


class TransportAdapter(Protocol):
    def broadcast(self, batch: UpdateBatch) -> DeliveryReport:
        """Best-effort delivery of *batch* to every current subscriber."""

    def send(self, client_id: str, batch: UpdateBatch) -> DeliveryReport:
        """Deliver *batch* to a single subscriber."""

    def on_subscribe(self, callback: SubscribeHook) -> None:
        """Register the hook invoked with the id of each newly joined client."""

    def on_feedback(self, callback: FeedbackHook) -> None:
        """Register the hook invoked for each inbound feedback event."""


class LoopbackTransport:
    """Deliver batches to in-process sinks.

    Useful for embedding the registry in a single process and for tests. A
    sink that raises is reported as failed for that delivery and stays
    connected.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sinks: Dict[str, BatchSink] = {}
        self._subscribe_hooks: List[SubscribeHook] = []
        self._feedback_hooks: List[FeedbackHook] = []

    # ------------------------------------------------------------------
    def connect(self, client_id: str, sink: BatchSink) -> None:
        """Attach *sink* as *client_id* and fire the subscribe hooks."""

        assert callable(sink), "loopback sink must be callable"
        with self._lock:
            self._sinks[str(client_id)] = sink
            hooks = list(self._subscribe_hooks)
        logger.debug("loopback client connected: %s", client_id)
        for hook in hooks:
            hook(str(client_id))

    def disconnect(self, client_id: str) -> None:
        with self._lock:
            self._sinks.pop(str(client_id), None)

    def clients(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._sinks)

    def inject_feedback(self, event: FeedbackEvent) -> None:
        """Hand *event* to the feedback hooks as if a client had sent it."""

        with self._lock:
            hooks = list(self._feedback_hooks)
        for hook in hooks:
            hook(event)

    # ------------------------------------------------------------------
    def broadcast(self, batch: UpdateBatch) -> DeliveryReport:
        with self._lock:
            targets = list(self._sinks.items())
        return self._deliver(batch, targets)

    def send(self, client_id: str, batch: UpdateBatch) -> DeliveryReport:
        with self._lock:
            sink = self._sinks.get(str(client_id))
        if sink is None:
            return DeliveryReport(failed=(str(client_id),))
        return self._deliver(batch, [(str(client_id), sink)])

    def on_subscribe(self, callback: SubscribeHook) -> None:
        with self._lock:
            self._subscribe_hooks.append(callback)

    def on_feedback(self, callback: FeedbackHook) -> None:
        with self._lock:
            self._feedback_hooks.append(callback)

    # ------------------------------------------------------------------
    @staticmethod
    def _deliver(batch: UpdateBatch, targets: List[Tuple[str, BatchSink]]) -> DeliveryReport:
        delivered: List[str] = []
        failed: List[str] = []
        for client_id, sink in targets:
            try:
                sink(batch)
            except Exception:
                logger.debug("loopback delivery to %s failed", client_id, exc_info=True)
                failed.append(client_id)
            else:
                delivered.append(client_id)
        return DeliveryReport(delivered=tuple(delivered), failed=tuple(failed))


def default_client_id(prefix: Optional[str] = None) -> str:
    base = uuid.uuid4().hex[:8]
    return f"{prefix}-{base}" if prefix else base


__all__ = [
    "BatchSink",
    "DeliveryReport",
    "FeedbackHook",
    "LoopbackTransport",
    "SubscribeHook",
    "TransportAdapter",
    "default_client_id",
]
