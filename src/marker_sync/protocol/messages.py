"""Update batch shapes and their JSON frame encoding.

A batch is an ordered tuple of net marker updates plus a monotonically
increasing sequence number and a ``full_sync`` flag. Incremental batches are
produced by ``MarkerRegistry.publish``; full-sync batches carry the complete
published state and the sequence number of the last incremental batch they
subsume.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .models import FeedbackEvent, Header, InteractiveMarker, Pose

UPDATE_FRAME_TYPE = "markers.update"
FEEDBACK_FRAME_TYPE = "markers.feedback"
PROTO_VERSION = 1

OP_INSERT = "insert"
OP_FULL = "full"
OP_POSE = "pose"
OP_ERASE = "erase"


@dataclass(frozen=True)
class Insert:
    marker: InteractiveMarker

    op = OP_INSERT

    @property
    def name(self) -> str:
        return self.marker.name

    def to_dict(self) -> Dict[str, Any]:
        return {"op": self.op, "marker": self.marker.to_dict()}


@dataclass(frozen=True)
class FullUpdate:
    marker: InteractiveMarker

    op = OP_FULL

    @property
    def name(self) -> str:
        return self.marker.name

    def to_dict(self) -> Dict[str, Any]:
        return {"op": self.op, "marker": self.marker.to_dict()}


@dataclass(frozen=True)
class PoseUpdate:
    name: str
    pose: Pose
    header: Optional[Header] = None
    version: int = 0

    op = OP_POSE

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "op": self.op,
            "name": self.name,
            "pose": self.pose.to_dict(),
            "version": self.version,
        }
        if self.header is not None:
            payload["header"] = self.header.to_dict()
        return payload


@dataclass(frozen=True)
class Erase:
    name: str

    op = OP_ERASE

    def to_dict(self) -> Dict[str, Any]:
        return {"op": self.op, "name": self.name}


PendingUpdate = Union[Insert, FullUpdate, PoseUpdate, Erase]


def update_from_dict(data: Mapping[str, Any]) -> PendingUpdate:
    op = data.get("op")
    if op == OP_INSERT:
        return Insert(InteractiveMarker.from_dict(data["marker"]))
    if op == OP_FULL:
        return FullUpdate(InteractiveMarker.from_dict(data["marker"]))
    if op == OP_POSE:
        header = data.get("header")
        return PoseUpdate(
            name=str(data["name"]),
            pose=Pose.from_dict(data["pose"]),
            header=Header.from_dict(header) if isinstance(header, Mapping) else None,
            version=int(data.get("version", 0)),
        )
    if op == OP_ERASE:
        return Erase(name=str(data["name"]))
    raise ValueError(f"unknown update op {op!r}")


@dataclass(frozen=True)
class UpdateBatch:
    seq: int
    updates: Tuple[PendingUpdate, ...] = ()
    full_sync: bool = False
    namespace: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "updates", tuple(self.updates))

    def __len__(self) -> int:
        return len(self.updates)

    def names(self) -> Tuple[str, ...]:
        return tuple(update.name for update in self.updates)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": UPDATE_FRAME_TYPE,
            "version": PROTO_VERSION,
            "namespace": self.namespace,
            "seq": self.seq,
            "full_sync": self.full_sync,
            "updates": [update.to_dict() for update in self.updates],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UpdateBatch":
        if data.get("type") != UPDATE_FRAME_TYPE:
            raise ValueError(f"expected {UPDATE_FRAME_TYPE} frame, got {data.get('type')!r}")
        return cls(
            seq=int(data["seq"]),
            updates=tuple(update_from_dict(item) for item in data.get("updates", ())),
            full_sync=bool(data.get("full_sync", False)),
            namespace=str(data.get("namespace", "")),
        )


def encode_batch(batch: UpdateBatch) -> str:
    return json.dumps(batch.to_dict(), separators=(",", ":"))


def decode_batch(text: Union[str, bytes]) -> UpdateBatch:
    return UpdateBatch.from_dict(json.loads(text))


def encode_feedback(event: FeedbackEvent, *, namespace: str = "") -> str:
    payload = {"type": FEEDBACK_FRAME_TYPE, "version": PROTO_VERSION, "namespace": namespace}
    payload.update(event.to_dict())
    return json.dumps(payload, separators=(",", ":"))


def decode_feedback(text: Union[str, bytes]) -> FeedbackEvent:
    """Decode a feedback frame; raises ``ValueError`` on malformed input."""

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError("feedback frame is not valid JSON") from exc
    if not isinstance(data, dict) or data.get("type") != FEEDBACK_FRAME_TYPE:
        raise ValueError("not a markers.feedback frame")
    try:
        return FeedbackEvent.from_dict(data)
    except (KeyError, TypeError, OverflowError) as exc:
        raise ValueError(f"malformed feedback frame: {exc}") from exc


__all__ = [
    "Erase",
    "FEEDBACK_FRAME_TYPE",
    "FullUpdate",
    "Insert",
    "OP_ERASE",
    "OP_FULL",
    "OP_INSERT",
    "OP_POSE",
    "PROTO_VERSION",
    "PendingUpdate",
    "PoseUpdate",
    "UPDATE_FRAME_TYPE",
    "UpdateBatch",
    "decode_batch",
    "decode_feedback",
    "encode_batch",
    "encode_feedback",
    "update_from_dict",
]
