from __future__ import annotations

import json
import math

import pytest

from marker_sync.protocol import (
    FEEDBACK_POSE_UPDATE,
    INTERACTION_MOVE_AXIS,
    Erase,
    FeedbackEvent,
    FullUpdate,
    Header,
    Insert,
    InteractiveMarker,
    MarkerControl,
    MenuEntry,
    Pose,
    PoseUpdate,
    Quaternion,
    UpdateBatch,
    decode_batch,
    decode_feedback,
    encode_batch,
    encode_feedback,
    make_pose,
    validate_marker,
)


def _marker(name: str = "arrow") -> InteractiveMarker:
    return InteractiveMarker(
        name=name,
        header=Header(frame_id="map", stamp=3.5),
        pose=make_pose((1.0, 2.0, 3.0)),
        scale=0.5,
        description="an arrow",
        menu_entries=(MenuEntry(id=1, title="Reset"), MenuEntry(id=2, title="Hide", parent_id=1)),
        controls=(
            MarkerControl(
                name="x",
                interaction_mode=INTERACTION_MOVE_AXIS,
                markers=({"type": "arrow", "scale": [1.0, 0.1, 0.1]},),
            ),
        ),
        version=4,
    )


def test_make_pose_normalizes_orientation() -> None:
    pose = make_pose((0.0, 0.0, 0.0), (0.0, 0.0, 2.0, 0.0))
    assert pose.orientation.z == pytest.approx(1.0)
    assert pose.orientation.w == pytest.approx(0.0)


def test_zero_quaternion_normalizes_to_identity() -> None:
    assert Quaternion(0.0, 0.0, 0.0, 0.0).normalized() == Quaternion()


def test_make_pose_rejects_non_finite() -> None:
    with pytest.raises(ValueError):
        make_pose((math.nan, 0.0, 0.0))
    with pytest.raises(ValueError):
        make_pose((0.0, 0.0, 0.0), (0.0, 0.0, 0.0, math.inf))


def test_validate_marker_rejects_bad_input() -> None:
    with pytest.raises(ValueError):
        validate_marker(InteractiveMarker(name=""))
    with pytest.raises(ValueError):
        validate_marker(
            InteractiveMarker(name="dup", controls=(MarkerControl(name="c"), MarkerControl(name="c")))
        )
    with pytest.raises(TypeError):
        validate_marker("not a marker")  # type: ignore[arg-type]


def test_control_rejects_unknown_interaction_mode() -> None:
    with pytest.raises(ValueError):
        MarkerControl(name="c", interaction_mode="teleport")


def test_encode_batch_emits_compact_update_frame() -> None:
    batch = UpdateBatch(
        seq=7,
        updates=(
            Insert(_marker("a")),
            PoseUpdate(name="b", pose=make_pose((1.0, 0.0, 0.0)), version=3),
            Erase("c"),
        ),
        namespace="markers",
    )

    text = encode_batch(batch)
    assert ", " not in text
    data = json.loads(text)
    assert data["type"] == "markers.update"
    assert data["namespace"] == "markers"
    assert data["seq"] == 7
    assert data["full_sync"] is False
    assert [item["op"] for item in data["updates"]] == ["insert", "pose", "erase"]
    assert data["updates"][1]["version"] == 3
    assert "header" not in data["updates"][1]


def test_decode_batch_restores_updates() -> None:
    marker = _marker()
    batch = UpdateBatch(
        seq=2,
        updates=(FullUpdate(marker), PoseUpdate(name="arrow", pose=Pose(), header=Header(frame_id="odom"))),
        full_sync=True,
        namespace="ns",
    )

    decoded = decode_batch(encode_batch(batch))

    assert decoded == batch
    assert decoded.names() == ("arrow", "arrow")
    full = decoded.updates[0]
    assert isinstance(full, FullUpdate)
    assert full.marker.controls[0].markers[0]["type"] == "arrow"
    assert full.marker.menu_entries[1].parent_id == 1


def test_decode_batch_rejects_other_frames() -> None:
    with pytest.raises(ValueError):
        decode_batch(json.dumps({"type": "markers.feedback", "seq": 1}))
    with pytest.raises(ValueError):
        decode_batch(json.dumps({"type": "markers.update", "seq": 1, "updates": [{"op": "move"}]}))


def test_feedback_frame_decodes_pose_and_header() -> None:
    event = FeedbackEvent(
        marker_name="arrow",
        event_type=FEEDBACK_POSE_UPDATE,
        client_id="c1",
        control_name="x",
        pose=make_pose((4.0, 5.0, 6.0)),
        header=Header(frame_id="map"),
    )

    text = encode_feedback(event, namespace="markers")
    assert json.loads(text)["type"] == "markers.feedback"

    decoded = decode_feedback(text)
    assert decoded == event


@pytest.mark.parametrize(
    "frame",
    [
        "not json",
        json.dumps([1, 2, 3]),
        json.dumps({"type": "markers.update"}),
        json.dumps({"type": "markers.feedback", "event_type": "pose_update"}),
        json.dumps({"type": "markers.feedback", "marker_name": "a", "event_type": "wiggle"}),
        '{"type":"markers.feedback","marker_name":"a","event_type":"menu_select","menu_entry_id":1e400}',
    ],
)
def test_decode_feedback_rejects_malformed_frames(frame: str) -> None:
    with pytest.raises(ValueError):
        decode_feedback(frame)
