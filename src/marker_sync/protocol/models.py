"""Marker data model shared by the server core and the wire codec.

Markers, controls and poses are frozen dataclasses so the registry can hand
out snapshots without copying. Visual primitives attached to a control are
opaque mappings and are passed through untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np


# Control interaction modes
INTERACTION_NONE = "none"
INTERACTION_MENU = "menu"
INTERACTION_BUTTON = "button"
INTERACTION_MOVE_AXIS = "move_axis"
INTERACTION_MOVE_PLANE = "move_plane"
INTERACTION_ROTATE_AXIS = "rotate_axis"
INTERACTION_MOVE_ROTATE = "move_rotate"
INTERACTION_MOVE_3D = "move_3d"
INTERACTION_ROTATE_3D = "rotate_3d"
INTERACTION_MOVE_ROTATE_3D = "move_rotate_3d"

INTERACTION_MODES = frozenset(
    {
        INTERACTION_NONE,
        INTERACTION_MENU,
        INTERACTION_BUTTON,
        INTERACTION_MOVE_AXIS,
        INTERACTION_MOVE_PLANE,
        INTERACTION_ROTATE_AXIS,
        INTERACTION_MOVE_ROTATE,
        INTERACTION_MOVE_3D,
        INTERACTION_ROTATE_3D,
        INTERACTION_MOVE_ROTATE_3D,
    }
)

# Control orientation modes
ORIENTATION_INHERIT = "inherit"
ORIENTATION_FIXED = "fixed"
ORIENTATION_VIEW_FACING = "view_facing"

ORIENTATION_MODES = frozenset({ORIENTATION_INHERIT, ORIENTATION_FIXED, ORIENTATION_VIEW_FACING})

# Feedback event kinds
FEEDBACK_KEEP_ALIVE = "keep_alive"
FEEDBACK_POSE_UPDATE = "pose_update"
FEEDBACK_MENU_SELECT = "menu_select"
FEEDBACK_BUTTON_CLICK = "button_click"
FEEDBACK_MOUSE_DOWN = "mouse_down"
FEEDBACK_MOUSE_UP = "mouse_up"

FEEDBACK_EVENT_TYPES = frozenset(
    {
        FEEDBACK_KEEP_ALIVE,
        FEEDBACK_POSE_UPDATE,
        FEEDBACK_MENU_SELECT,
        FEEDBACK_BUTTON_CLICK,
        FEEDBACK_MOUSE_DOWN,
        FEEDBACK_MOUSE_UP,
    }
)


def _float_triplet(value: Any, label: str) -> Tuple[float, float, float]:
    if isinstance(value, Mapping):
        value = (value.get("x", 0.0), value.get("y", 0.0), value.get("z", 0.0))
    arr = np.asarray(value, dtype=float).reshape(-1)
    if arr.shape != (3,):
        raise ValueError(f"{label} must have exactly 3 components")
    return float(arr[0]), float(arr[1]), float(arr[2])


@dataclass(frozen=True)
class Point:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=float)

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "z": self.z}

    @classmethod
    def from_value(cls, value: Any) -> "Point":
        if isinstance(value, Point):
            return value
        x, y, z = _float_triplet(value, "point")
        return cls(x=x, y=y, z=z)


@dataclass(frozen=True)
class Quaternion:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    w: float = 1.0

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z, self.w], dtype=float)

    def normalized(self) -> "Quaternion":
        """Return a unit quaternion; an all-zero quaternion maps to identity."""

        arr = self.as_array()
        norm = float(np.linalg.norm(arr))
        if norm == 0.0:
            return Quaternion()
        arr = arr / norm
        return Quaternion(x=float(arr[0]), y=float(arr[1]), z=float(arr[2]), w=float(arr[3]))

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "z": self.z, "w": self.w}

    @classmethod
    def from_value(cls, value: Any) -> "Quaternion":
        if isinstance(value, Quaternion):
            return value
        if isinstance(value, Mapping):
            value = (
                value.get("x", 0.0),
                value.get("y", 0.0),
                value.get("z", 0.0),
                value.get("w", 1.0),
            )
        arr = np.asarray(value, dtype=float).reshape(-1)
        if arr.shape != (4,):
            raise ValueError("orientation must have exactly 4 components")
        return cls(x=float(arr[0]), y=float(arr[1]), z=float(arr[2]), w=float(arr[3]))


@dataclass(frozen=True)
class Pose:
    position: Point = field(default_factory=Point)
    orientation: Quaternion = field(default_factory=Quaternion)

    def is_finite(self) -> bool:
        values = np.concatenate([self.position.as_array(), self.orientation.as_array()])
        return bool(np.all(np.isfinite(values)))

    def normalized(self) -> "Pose":
        return Pose(position=self.position, orientation=self.orientation.normalized())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position.to_dict(),
            "orientation": self.orientation.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Pose":
        return cls(
            position=Point.from_value(data.get("position", (0.0, 0.0, 0.0))),
            orientation=Quaternion.from_value(data.get("orientation", (0.0, 0.0, 0.0, 1.0))),
        )


def make_pose(
    position: Any = (0.0, 0.0, 0.0),
    orientation: Any = (0.0, 0.0, 0.0, 1.0),
) -> Pose:
    """Build a validated pose with a unit orientation.

    Raises ``ValueError`` for non-finite components.
    """

    pose = Pose(position=Point.from_value(position), orientation=Quaternion.from_value(orientation))
    if not pose.is_finite():
        raise ValueError("pose components must be finite")
    return pose.normalized()


@dataclass(frozen=True)
class Header:
    frame_id: str = ""
    stamp: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"frame_id": self.frame_id, "stamp": self.stamp}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Header":
        return cls(frame_id=str(data.get("frame_id", "")), stamp=float(data.get("stamp", 0.0)))


@dataclass(frozen=True)
class MenuEntry:
    id: int
    title: str
    parent_id: int = 0
    command: str = ""
    command_type: str = "feedback"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "title": self.title,
            "command": self.command,
            "command_type": self.command_type,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MenuEntry":
        return cls(
            id=int(data["id"]),
            title=str(data.get("title", "")),
            parent_id=int(data.get("parent_id", 0)),
            command=str(data.get("command", "")),
            command_type=str(data.get("command_type", "feedback")),
        )


@dataclass(frozen=True)
class MarkerControl:
    name: str
    interaction_mode: str = INTERACTION_NONE
    orientation_mode: str = ORIENTATION_INHERIT
    orientation: Quaternion = field(default_factory=Quaternion)
    always_visible: bool = False
    description: str = ""
    markers: Tuple[Mapping[str, Any], ...] = ()

    def __post_init__(self) -> None:
        if self.interaction_mode not in INTERACTION_MODES:
            raise ValueError(f"unknown interaction mode '{self.interaction_mode}'")
        if self.orientation_mode not in ORIENTATION_MODES:
            raise ValueError(f"unknown orientation mode '{self.orientation_mode}'")
        object.__setattr__(self, "markers", tuple(self.markers))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "interaction_mode": self.interaction_mode,
            "orientation_mode": self.orientation_mode,
            "orientation": self.orientation.to_dict(),
            "always_visible": self.always_visible,
            "description": self.description,
            "markers": [dict(item) for item in self.markers],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MarkerControl":
        return cls(
            name=str(data.get("name", "")),
            interaction_mode=str(data.get("interaction_mode", INTERACTION_NONE)),
            orientation_mode=str(data.get("orientation_mode", ORIENTATION_INHERIT)),
            orientation=Quaternion.from_value(data.get("orientation", (0.0, 0.0, 0.0, 1.0))),
            always_visible=bool(data.get("always_visible", False)),
            description=str(data.get("description", "")),
            markers=tuple(dict(item) for item in data.get("markers", ())),
        )


@dataclass(frozen=True)
class InteractiveMarker:
    """Authoritative description of one marker.

    ``version`` is the per-marker update sequence number. It is owned by the
    marker store; values supplied by callers are overwritten on acceptance.
    """

    name: str
    header: Header = field(default_factory=Header)
    pose: Pose = field(default_factory=Pose)
    scale: float = 1.0
    description: str = ""
    menu_entries: Tuple[MenuEntry, ...] = ()
    controls: Tuple[MarkerControl, ...] = ()
    version: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "menu_entries", tuple(self.menu_entries))
        object.__setattr__(self, "controls", tuple(self.controls))

    def control(self, name: str) -> Optional[MarkerControl]:
        for control in self.controls:
            if control.name == name:
                return control
        return None

    def with_pose(self, pose: Pose, header: Optional[Header] = None) -> "InteractiveMarker":
        return replace(self, pose=pose, header=header if header is not None else self.header)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "header": self.header.to_dict(),
            "pose": self.pose.to_dict(),
            "scale": self.scale,
            "description": self.description,
            "menu_entries": [entry.to_dict() for entry in self.menu_entries],
            "controls": [control.to_dict() for control in self.controls],
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "InteractiveMarker":
        return cls(
            name=str(data["name"]),
            header=Header.from_dict(data.get("header", {})),
            pose=Pose.from_dict(data.get("pose", {})),
            scale=float(data.get("scale", 1.0)),
            description=str(data.get("description", "")),
            menu_entries=tuple(MenuEntry.from_dict(item) for item in data.get("menu_entries", ())),
            controls=tuple(MarkerControl.from_dict(item) for item in data.get("controls", ())),
            version=int(data.get("version", 0)),
        )


def validate_marker(marker: InteractiveMarker) -> None:
    """Raise ``ValueError`` when *marker* cannot be stored."""

    if not isinstance(marker, InteractiveMarker):
        raise TypeError("expected an InteractiveMarker")
    if not marker.name:
        raise ValueError("marker name must be a non-empty string")
    if not marker.pose.is_finite():
        raise ValueError(f"marker '{marker.name}' has a non-finite pose")
    names = [control.name for control in marker.controls]
    if len(names) != len(set(names)):
        raise ValueError(f"marker '{marker.name}' has duplicate control names")


@dataclass(frozen=True)
class FeedbackEvent:
    """Inbound interaction report from a client."""

    marker_name: str
    event_type: str
    client_id: str = ""
    control_name: Optional[str] = None
    pose: Optional[Pose] = None
    header: Optional[Header] = None
    menu_entry_id: Optional[int] = None
    mouse_point: Optional[Point] = None

    def __post_init__(self) -> None:
        if self.event_type not in FEEDBACK_EVENT_TYPES:
            raise ValueError(f"unknown feedback event type '{self.event_type}'")

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "marker_name": self.marker_name,
            "event_type": self.event_type,
            "client_id": self.client_id,
        }
        if self.control_name:
            payload["control_name"] = self.control_name
        if self.pose is not None:
            payload["pose"] = self.pose.to_dict()
        if self.header is not None:
            payload["header"] = self.header.to_dict()
        if self.menu_entry_id is not None:
            payload["menu_entry_id"] = self.menu_entry_id
        if self.mouse_point is not None:
            payload["mouse_point"] = self.mouse_point.to_dict()
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FeedbackEvent":
        pose = data.get("pose")
        header = data.get("header")
        menu_entry_id = data.get("menu_entry_id")
        mouse_point = data.get("mouse_point")
        return cls(
            marker_name=str(data["marker_name"]),
            event_type=str(data["event_type"]),
            client_id=str(data.get("client_id", "")),
            control_name=str(data["control_name"]) if data.get("control_name") else None,
            pose=Pose.from_dict(pose) if isinstance(pose, Mapping) else None,
            header=Header.from_dict(header) if isinstance(header, Mapping) else None,
            menu_entry_id=int(menu_entry_id) if menu_entry_id is not None else None,
            mouse_point=Point.from_value(mouse_point) if mouse_point is not None else None,
        )


__all__ = [
    "FEEDBACK_BUTTON_CLICK",
    "FEEDBACK_EVENT_TYPES",
    "FEEDBACK_KEEP_ALIVE",
    "FEEDBACK_MENU_SELECT",
    "FEEDBACK_MOUSE_DOWN",
    "FEEDBACK_MOUSE_UP",
    "FEEDBACK_POSE_UPDATE",
    "FeedbackEvent",
    "Header",
    "INTERACTION_BUTTON",
    "INTERACTION_MENU",
    "INTERACTION_MODES",
    "INTERACTION_MOVE_3D",
    "INTERACTION_MOVE_AXIS",
    "INTERACTION_MOVE_PLANE",
    "INTERACTION_MOVE_ROTATE",
    "INTERACTION_MOVE_ROTATE_3D",
    "INTERACTION_NONE",
    "INTERACTION_ROTATE_3D",
    "INTERACTION_ROTATE_AXIS",
    "InteractiveMarker",
    "MarkerControl",
    "MenuEntry",
    "ORIENTATION_FIXED",
    "ORIENTATION_INHERIT",
    "ORIENTATION_MODES",
    "ORIENTATION_VIEW_FACING",
    "Point",
    "Pose",
    "Quaternion",
    "make_pose",
    "validate_marker",
]
