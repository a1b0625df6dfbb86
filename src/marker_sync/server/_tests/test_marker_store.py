from __future__ import annotations

import pytest

from marker_sync.protocol import FeedbackEvent, Header, InteractiveMarker, make_pose
from marker_sync.server.errors import MarkerNotFound
from marker_sync.server.marker_store import MarkerStore


def test_insert_assigns_increasing_versions() -> None:
    store = MarkerStore()

    first = store.insert(InteractiveMarker(name="a", version=99))
    second = store.insert(InteractiveMarker(name="a", description="again"))

    assert first.version == 1
    assert second.version == 2
    assert store.get("a") is second
    assert store.current_version("a") == 2


def test_set_pose_keeps_header_unless_given() -> None:
    store = MarkerStore()
    store.insert(InteractiveMarker(name="a", header=Header(frame_id="map")))

    moved = store.set_pose("a", make_pose((1.0, 0.0, 0.0)))
    assert moved.header.frame_id == "map"
    assert moved.version == 2

    reframed = store.set_pose("a", make_pose(), Header(frame_id="odom"))
    assert reframed.header.frame_id == "odom"


def test_set_pose_on_missing_marker_raises() -> None:
    store = MarkerStore()
    with pytest.raises(MarkerNotFound) as excinfo:
        store.set_pose("ghost", make_pose())
    assert excinfo.value.name == "ghost"


def test_erase_drops_callbacks_and_version_survives_reuse() -> None:
    store = MarkerStore()
    store.insert(InteractiveMarker(name="a"))
    store.set_callback("a", lambda event: None)

    assert store.erase("a") is True
    assert store.erase("a") is False
    assert store.has_callbacks("a") is False
    assert "a" not in store

    reused = store.insert(InteractiveMarker(name="a"))
    assert reused.version == 2


def test_all_is_restartable_and_sorted() -> None:
    store = MarkerStore()
    for name in ("c", "a", "b"):
        store.insert(InteractiveMarker(name=name))

    view = store.all()

    assert [marker.name for marker in view] == ["a", "b", "c"]
    assert [marker.name for marker in view] == ["a", "b", "c"]
    assert len(view) == 3


def test_lookup_callback_prefers_most_specific_registration() -> None:
    store = MarkerStore()
    store.insert(InteractiveMarker(name="a"))
    calls: list[str] = []
    store.set_callback("a", lambda event: calls.append("any"))
    store.set_callback("a", lambda event: calls.append("marker-click"), event_type="button_click")
    store.set_callback("a", lambda event: calls.append("control"), control_name="x")
    store.set_callback(
        "a",
        lambda event: calls.append("control-click"),
        control_name="x",
        event_type="button_click",
    )

    def run(control: str | None, event_type: str) -> None:
        callback = store.lookup_callback("a", control, event_type)
        assert callback is not None
        callback(FeedbackEvent(marker_name="a", event_type=event_type, control_name=control))

    run("x", "button_click")
    run("x", "mouse_down")
    run("y", "button_click")
    run(None, "mouse_up")

    assert calls == ["control-click", "control", "marker-click", "any"]


def test_set_callback_none_removes_registration() -> None:
    store = MarkerStore()
    store.insert(InteractiveMarker(name="a"))
    store.set_callback("a", lambda event: None, event_type="menu_select")

    store.set_callback("a", None, event_type="menu_select")

    assert store.lookup_callback("a", None, "menu_select") is None
    assert store.has_callbacks("a") is False


def test_note_feedback_tracks_owner() -> None:
    store = MarkerStore()
    store.insert(InteractiveMarker(name="a"))
    store.note_feedback("a", "c1", 10.0)

    owner = store.feedback_owner("a")
    assert owner is not None
    assert owner.client_id == "c1"
    assert owner.timestamp == pytest.approx(10.0)
