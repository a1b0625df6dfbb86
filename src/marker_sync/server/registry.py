"""Authoritative interactive marker registry.

Mutations are staged in a coalescing log and become visible to clients only
when ``publish`` drains the log into a single ordered batch. ``full_sync``
answers newly joined clients from the published store alone, so a client
observes state only at publish boundaries.

Locking: ``_lock`` (re-entrant) guards the store and the log and is never held
while the transport runs or while user callbacks execute. ``_deliver_lock``
serialises publish and full-sync delivery so batches reach the transport in
sequence order.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import threading
import time
from typing import Callable, List, Optional, Tuple

from marker_sync.protocol import (
    FEEDBACK_POSE_UPDATE,
    Erase,
    FeedbackEvent,
    FullUpdate,
    Header,
    Insert,
    InteractiveMarker,
    PendingUpdate,
    Pose,
    PoseUpdate,
    UpdateBatch,
    validate_marker,
)

from .config import DebugPolicy
from .errors import MarkerNotFound, TransportFailure
from .marker_store import FeedbackCallback, MarkerStore
from .pending_updates import PendingUpdateLog
from .transport import DeliveryReport, TransportAdapter

logger = logging.getLogger(__name__)

FEEDBACK_ACCEPTED = "accepted"
FEEDBACK_STALE = "stale"
FEEDBACK_CONFLICT = "conflict"


@dataclass(frozen=True)
class PublishResult:
    batch: UpdateBatch
    delivered: Tuple[str, ...] = ()
    failed: Tuple[str, ...] = ()

    @property
    def sent(self) -> bool:
        return bool(self.batch.updates)


@dataclass(frozen=True)
class FeedbackDecision:
    status: str
    callback: Optional[FeedbackCallback] = None
    pose_staged: bool = False

    @property
    def accepted(self) -> bool:
        return self.status == FEEDBACK_ACCEPTED


class MarkerRegistry:
    """Thread-safe marker map with staged, batched publication."""

    def __init__(
        self,
        *,
        namespace: str = "",
        transport: Optional[TransportAdapter] = None,
        debug_policy: Optional[DebugPolicy] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._namespace = str(namespace)
        self._clock = clock
        self._lock = threading.RLock()
        self._deliver_lock = threading.RLock()
        self._delivery = threading.local()
        self._store = MarkerStore()
        self._pending = PendingUpdateLog()
        self._seq = 0
        self._transport: Optional[TransportAdapter] = None
        policy = debug_policy or DebugPolicy()
        self._log_publish = policy.logging.log_publish
        self._log_sync = policy.logging.log_sync
        if transport is not None:
            self.attach(transport)

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def sequence_number(self) -> int:
        with self._lock:
            return self._seq

    # ------------------------------------------------------------------
    def attach(self, transport: TransportAdapter) -> None:
        """Use *transport* for delivery and answer its subscribe hook with a full sync."""

        with self._lock:
            self._transport = transport
        transport.on_subscribe(self._handle_subscribe)

    # ------------------------------------------------------------------
    def insert(
        self,
        marker: InteractiveMarker,
        *,
        callback: Optional[FeedbackCallback] = None,
        control_name: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> None:
        """Add or replace *marker*; takes effect for clients on ``publish``.

        A *callback* is registered immediately.
        """

        validate_marker(marker)
        marker = replace(marker, pose=marker.pose.normalized())
        with self._lock:
            if isinstance(self._pending.get(marker.name), Erase):
                # the erased marker's callbacks and owner do not carry over
                self._store.forget(marker.name)
            self._pending.stage_insert(marker)
            if callback is not None:
                self._store.set_callback(
                    marker.name,
                    callback,
                    control_name=control_name,
                    event_type=event_type,
                )

    def set_full(self, marker: InteractiveMarker) -> None:
        """Replace the content (controls, menu, ...) of an existing marker."""

        validate_marker(marker)
        marker = replace(marker, pose=marker.pose.normalized())
        with self._lock:
            if self._staged(marker.name) is None:
                raise MarkerNotFound(marker.name)
            self._pending.stage_full(marker)

    def set_pose(self, name: str, pose: Pose, header: Optional[Header] = None) -> None:
        """Stage a pose change; ``header=None`` keeps the marker's frame."""

        if not pose.is_finite():
            raise ValueError(f"pose for marker '{name}' must be finite")
        pose = pose.normalized()
        with self._lock:
            if self._staged(name) is None:
                raise MarkerNotFound(name)
            self._pending.stage_pose(name, pose, header)

    def erase(self, name: str) -> bool:
        """Stage removal of *name*; absent names are ignored."""

        with self._lock:
            if self._staged(name) is None:
                return False
            self._pending.stage_erase(name)
            return True

    def clear(self) -> None:
        """Stage removal of every marker."""

        with self._lock:
            for name in self._pending.names():
                if name not in self._store:
                    self._store.drop_callbacks(name)
            self._pending.clear()
            for name in self._store.names():
                self._pending.stage_erase(name)

    def set_callback(
        self,
        name: str,
        callback: Optional[FeedbackCallback],
        *,
        control_name: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> bool:
        """Register (or with ``None`` remove) a feedback callback.

        Returns False when no marker called *name* exists or is staged.
        """

        with self._lock:
            if self._staged(name) is None:
                return False
            self._store.set_callback(
                name,
                callback,
                control_name=control_name,
                event_type=event_type,
            )
            return True

    # ------------------------------------------------------------------
    def get(self, name: str) -> Optional[InteractiveMarker]:
        """Return the marker as it will look after the next publish."""

        with self._lock:
            return self._staged(name)

    def names(self) -> Tuple[str, ...]:
        with self._lock:
            candidates = set(self._store.names()) | set(self._pending.names())
            return tuple(sorted(name for name in candidates if self._staged(name) is not None))

    def published(self, name: str) -> Optional[InteractiveMarker]:
        with self._lock:
            return self._store.get(name)

    def size(self) -> int:
        with self._lock:
            return len(self._store)

    def empty(self) -> bool:
        return self.size() == 0

    def has_pending(self) -> bool:
        with self._lock:
            return len(self._pending) > 0

    # ------------------------------------------------------------------
    def publish(self) -> PublishResult:
        """Apply staged changes and broadcast them as one batch.

        Raises ``TransportFailure`` when delivery fails; the registry state is
        committed either way and the batch is not re-queued.
        A publish requested from inside a delivery on the same thread returns
        an empty batch and runs after the current batch has been handed off;
        if that delivery fails, the changes stay staged for the next publish.
        """

        if getattr(self._delivery, "active", False):
            # called from inside a delivery; run once the current batch is out
            self._delivery.deferred = True
            logger.debug("publish requested during delivery; deferred")
            with self._lock:
                return PublishResult(batch=UpdateBatch(seq=self._seq, namespace=self._namespace))

        with self._deliver_lock:
            with self._lock:
                updates = self._apply_pending()
                if updates:
                    self._seq += 1
                batch = UpdateBatch(seq=self._seq, updates=tuple(updates), namespace=self._namespace)
                transport = self._transport

            if not batch.updates:
                logger.debug("publish: no net changes")
                return PublishResult(batch=batch)

            (logger.info if self._log_publish else logger.debug)(
                "publish: seq=%d updates=%d ops=%s",
                batch.seq,
                len(batch.updates),
                ",".join(f"{update.op}:{update.name}" for update in batch.updates),
            )
            if transport is None:
                return PublishResult(batch=batch)
            report = self._deliver(batch, lambda: transport.broadcast(batch))
            self._run_deferred()
            return PublishResult(batch=batch, delivered=report.delivered, failed=report.failed)

    def full_sync(self, client_id: Optional[str] = None) -> UpdateBatch:
        """Build a snapshot of all published markers.

        With *client_id*, the snapshot is also sent to that client.
        """

        with self._deliver_lock:
            with self._lock:
                batch = UpdateBatch(
                    seq=self._seq,
                    updates=tuple(Insert(marker) for marker in self._store.all()),
                    full_sync=True,
                    namespace=self._namespace,
                )
                transport = self._transport

            (logger.info if self._log_sync else logger.debug)(
                "full sync: client=%s seq=%d markers=%d",
                client_id,
                batch.seq,
                len(batch.updates),
            )
            if client_id is None or transport is None:
                return batch
            self._deliver(batch, lambda: transport.send(client_id, batch))
            self._run_deferred()
            return batch

    # ------------------------------------------------------------------
    def accept_feedback(self, event: FeedbackEvent, *, conflict_window_s: float = 0.0) -> FeedbackDecision:
        """Check *event* against the published state and resolve its callback.

        Pose feedback is staged as a pose update so other clients follow it.
        """

        name = event.marker_name
        now = float(self._clock())
        with self._lock:
            if name not in self._store:
                return FeedbackDecision(status=FEEDBACK_STALE)

            owner = self._store.feedback_owner(name)
            if (
                owner is not None
                and owner.client_id != event.client_id
                and now - owner.timestamp < conflict_window_s
            ):
                return FeedbackDecision(status=FEEDBACK_CONFLICT)
            self._store.note_feedback(name, event.client_id, now)

            pose_staged = False
            if event.event_type == FEEDBACK_POSE_UPDATE and event.pose is not None:
                if not event.pose.is_finite():
                    logger.warning("ignoring non-finite pose feedback for '%s'", name)
                elif self._staged(name) is not None:
                    header = event.header if event.header is not None and event.header.frame_id else None
                    self._pending.stage_pose(name, event.pose.normalized(), header)
                    pose_staged = True

            callback = self._store.lookup_callback(name, event.control_name, event.event_type)
            return FeedbackDecision(status=FEEDBACK_ACCEPTED, callback=callback, pose_staged=pose_staged)

    # ------------------------------------------------------------------
    def _staged(self, name: str) -> Optional[InteractiveMarker]:
        entry = self._pending.get(name)
        published = self._store.get(name)
        if entry is None:
            return published
        if isinstance(entry, Erase):
            return None
        if isinstance(entry, (Insert, FullUpdate)):
            return entry.marker
        if published is None:
            return None
        return published.with_pose(entry.pose, entry.header)

    def _apply_pending(self) -> List[PendingUpdate]:
        updates: List[PendingUpdate] = []
        for entry in self._pending.drain():
            if isinstance(entry, Insert):
                updates.append(Insert(self._store.insert(entry.marker)))
            elif isinstance(entry, FullUpdate):
                if entry.name not in self._store:
                    logger.error("pending full update for unpublished marker '%s'; dropped", entry.name)
                    continue
                updates.append(FullUpdate(self._store.insert(entry.marker)))
            elif isinstance(entry, PoseUpdate):
                try:
                    stored = self._store.set_pose(entry.name, entry.pose, entry.header)
                except MarkerNotFound:
                    logger.error("pending pose update for unpublished marker '%s'; dropped", entry.name)
                    continue
                updates.append(
                    PoseUpdate(
                        name=stored.name,
                        pose=stored.pose,
                        header=stored.header,
                        version=stored.version,
                    )
                )
            elif self._store.erase(entry.name):
                updates.append(entry)
        return updates

    def _deliver(self, batch: UpdateBatch, send: Callable[[], DeliveryReport]) -> DeliveryReport:
        outer = getattr(self._delivery, "active", False)
        self._delivery.active = True
        try:
            report = send()
        except Exception as exc:
            raise TransportFailure(batch, (), f"transport raised while sending batch seq={batch.seq}: {exc}") from exc
        finally:
            self._delivery.active = outer
        if report.failed:
            logger.warning(
                "batch seq=%d (full_sync=%s) failed for subscribers: %s",
                batch.seq,
                batch.full_sync,
                ", ".join(report.failed),
            )
            raise TransportFailure(batch, report.failed)
        return report

    def _run_deferred(self) -> None:
        """Publish changes staged by a publish call made during delivery."""

        if getattr(self._delivery, "deferred", False):
            self._delivery.deferred = False
            self.publish()

    def _handle_subscribe(self, client_id: str) -> None:
        try:
            self.full_sync(client_id)
        except TransportFailure as exc:
            logger.warning("full sync to %s failed: %s", client_id, exc)


__all__ = [
    "FEEDBACK_ACCEPTED",
    "FEEDBACK_CONFLICT",
    "FEEDBACK_STALE",
    "FeedbackDecision",
    "MarkerRegistry",
    "PublishResult",
]
