"""Error taxonomy for the marker registry."""

from __future__ import annotations

from typing import Iterable, Optional, Tuple

from marker_sync.protocol import UpdateBatch


class MarkerSyncError(RuntimeError):
    """Base class for registry errors."""


class MarkerNotFound(MarkerSyncError):
    """A mutation referenced a marker name that does not exist."""

    def __init__(self, name: str) -> None:
        super().__init__(f"marker '{name}' not found")
        self.name = str(name)

    def __str__(self) -> str:
        return f"marker '{self.name}' not found"


class TransportFailure(MarkerSyncError):
    """The transport could not deliver a batch to one or more subscribers.

    Registry state is already committed when this is raised.
    """

    def __init__(
        self,
        batch: UpdateBatch,
        failed: Iterable[str],
        message: Optional[str] = None,
    ) -> None:
        self.batch = batch
        self.failed: Tuple[str, ...] = tuple(str(item) for item in failed)
        if message is None:
            message = f"batch seq={batch.seq} not delivered to {len(self.failed)} subscriber(s)"
        super().__init__(message)


class StaleFeedback(MarkerSyncError):
    """Feedback referenced a marker that is no longer published."""

    def __init__(self, name: str) -> None:
        super().__init__(f"feedback for unknown marker '{name}'")
        self.name = str(name)


__all__ = [
    "MarkerNotFound",
    "MarkerSyncError",
    "StaleFeedback",
    "TransportFailure",
]
