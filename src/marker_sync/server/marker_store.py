"""Authoritative published marker map.

The store has no locking of its own; ``MarkerRegistry`` serialises access.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
from typing import Callable, Dict, Iterable, Iterator, Optional, Tuple

from marker_sync.protocol import FeedbackEvent, Header, InteractiveMarker, Pose

from .errors import MarkerNotFound

FeedbackCallback = Callable[[FeedbackEvent], None]
CallbackKey = Tuple[Optional[str], Optional[str]]

logger = logging.getLogger(__name__)


@dataclass
class FeedbackOwner:
    client_id: str
    timestamp: float


class _MarkerView:
    """Restartable iterable over the store contents in name order."""

    __slots__ = ("_store",)

    def __init__(self, store: "MarkerStore") -> None:
        self._store = store

    def __iter__(self) -> Iterator[InteractiveMarker]:
        markers = self._store._markers
        for name in sorted(markers):
            yield markers[name]

    def __len__(self) -> int:
        return len(self._store._markers)


class MarkerStore:
    """Name-keyed markers plus callback and feedback bookkeeping."""

    def __init__(self) -> None:
        self._markers: Dict[str, InteractiveMarker] = {}
        self._versions: Dict[str, int] = {}
        self._callbacks: Dict[str, Dict[CallbackKey, FeedbackCallback]] = {}
        self._feedback_owners: Dict[str, FeedbackOwner] = {}

    # ------------------------------------------------------------------
    def insert(self, marker: InteractiveMarker) -> InteractiveMarker:
        """Add or replace *marker* and return the stored snapshot."""

        stored = replace(marker, version=self._next_version(marker.name))
        self._markers[marker.name] = stored
        return stored

    def get(self, name: str) -> Optional[InteractiveMarker]:
        return self._markers.get(name)

    def require(self, name: str) -> InteractiveMarker:
        marker = self._markers.get(name)
        if marker is None:
            raise MarkerNotFound(name)
        return marker

    def erase(self, name: str) -> bool:
        """Remove *name*; returns False when it was not present."""

        marker = self._markers.pop(name, None)
        self.forget(name)
        return marker is not None

    def set_pose(self, name: str, pose: Pose, header: Optional[Header] = None) -> InteractiveMarker:
        current = self.require(name)
        stored = replace(
            current.with_pose(pose, header),
            version=self._next_version(name),
        )
        self._markers[name] = stored
        return stored

    def all(self) -> Iterable[InteractiveMarker]:
        return _MarkerView(self)

    def names(self) -> Tuple[str, ...]:
        return tuple(sorted(self._markers))

    def current_version(self, name: str) -> Optional[int]:
        return self._versions.get(name)

    def __len__(self) -> int:
        return len(self._markers)

    def __contains__(self, name: object) -> bool:
        return name in self._markers

    # ------------------------------------------------------------------
    def set_callback(
        self,
        name: str,
        callback: Optional[FeedbackCallback],
        *,
        control_name: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> None:
        """Register *callback*; ``None`` removes the registration."""

        key: CallbackKey = (control_name or None, event_type or None)
        if callback is None:
            registered = self._callbacks.get(name)
            if registered is not None:
                registered.pop(key, None)
                if not registered:
                    self._callbacks.pop(name, None)
            return
        assert callable(callback), "feedback callback must be callable"
        self._callbacks.setdefault(name, {})[key] = callback

    def lookup_callback(
        self,
        name: str,
        control_name: Optional[str],
        event_type: Optional[str],
    ) -> Optional[FeedbackCallback]:
        registered = self._callbacks.get(name)
        if not registered:
            return None
        control = control_name or None
        for key in ((control, event_type), (control, None), (None, event_type), (None, None)):
            callback = registered.get(key)
            if callback is not None:
                return callback
        return None

    def drop_callbacks(self, name: str) -> None:
        self._callbacks.pop(name, None)

    def forget(self, name: str) -> None:
        """Drop callbacks and feedback ownership for *name*, keeping its version."""

        self._callbacks.pop(name, None)
        self._feedback_owners.pop(name, None)

    def has_callbacks(self, name: str) -> bool:
        return bool(self._callbacks.get(name))

    # ------------------------------------------------------------------
    def note_feedback(self, name: str, client_id: str, timestamp: float) -> None:
        self._feedback_owners[name] = FeedbackOwner(client_id=client_id, timestamp=timestamp)

    def feedback_owner(self, name: str) -> Optional[FeedbackOwner]:
        return self._feedback_owners.get(name)

    # ------------------------------------------------------------------
    def _next_version(self, name: str) -> int:
        version = self._versions.get(name, 0) + 1
        self._versions[name] = version
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("store version bump: name=%s version=%d", name, version)
        return version


__all__ = ["CallbackKey", "FeedbackCallback", "FeedbackOwner", "MarkerStore"]
