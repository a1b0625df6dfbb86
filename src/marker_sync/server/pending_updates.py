"""Coalescing log of staged marker mutations.

Each marker name has at most one pending entry. A new mutation for a name
merges into the existing entry, which keeps its first-touch position so a
drained batch is ordered deterministically.
"""

from __future__ import annotations

from collections import OrderedDict
import logging
from typing import Optional, Tuple

from marker_sync.protocol import (
    Erase,
    FullUpdate,
    Header,
    Insert,
    InteractiveMarker,
    PendingUpdate,
    Pose,
    PoseUpdate,
)

logger = logging.getLogger(__name__)


class PendingUpdateLog:
    """Net mutations per marker name since the last drain."""

    def __init__(self) -> None:
        self._entries: "OrderedDict[str, PendingUpdate]" = OrderedDict()

    # ------------------------------------------------------------------
    def stage_insert(self, marker: InteractiveMarker) -> PendingUpdate:
        return self._store(marker.name, Insert(marker))

    def stage_full(self, marker: InteractiveMarker) -> PendingUpdate:
        prior = self._entries.get(marker.name)
        if isinstance(prior, Erase):
            raise ValueError(f"full update for '{marker.name}' after a pending erase")
        if isinstance(prior, Insert):
            # Clients have not seen the marker yet; it stays an insert.
            merged: PendingUpdate = Insert(marker)
        else:
            merged = FullUpdate(marker)
        return self._store(marker.name, merged)

    def stage_pose(self, name: str, pose: Pose, header: Optional[Header] = None) -> PendingUpdate:
        prior = self._entries.get(name)
        if isinstance(prior, Erase):
            raise ValueError(f"pose update for '{name}' after a pending erase")
        if isinstance(prior, Insert):
            merged: PendingUpdate = Insert(prior.marker.with_pose(pose, header))
        elif isinstance(prior, FullUpdate):
            merged = FullUpdate(prior.marker.with_pose(pose, header))
        elif isinstance(prior, PoseUpdate):
            merged = PoseUpdate(name=name, pose=pose, header=header if header is not None else prior.header)
        else:
            merged = PoseUpdate(name=name, pose=pose, header=header)
        return self._store(name, merged)

    def stage_erase(self, name: str) -> PendingUpdate:
        return self._store(name, Erase(name))

    # ------------------------------------------------------------------
    def get(self, name: str) -> Optional[PendingUpdate]:
        return self._entries.get(name)

    def drain(self) -> Tuple[PendingUpdate, ...]:
        """Return all pending entries in first-touch order and reset the log."""

        entries = tuple(self._entries.values())
        self._entries.clear()
        return entries

    def discard(self, name: str) -> Optional[PendingUpdate]:
        return self._entries.pop(name, None)

    def clear(self) -> None:
        self._entries.clear()

    def names(self) -> Tuple[str, ...]:
        return tuple(self._entries.keys())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    # ------------------------------------------------------------------
    def _store(self, name: str, entry: PendingUpdate) -> PendingUpdate:
        prior = self._entries.get(name)
        self._entries[name] = entry
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "pending merge: name=%s prior=%s merged=%s pending_len=%d",
                name,
                prior.op if prior is not None else None,
                entry.op,
                len(self._entries),
            )
        return entry


__all__ = ["PendingUpdateLog"]
