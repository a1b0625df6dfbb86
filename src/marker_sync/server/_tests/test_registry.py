from __future__ import annotations

from dataclasses import replace
import math
import threading

import pytest

from marker_sync.protocol import (
    Erase,
    FullUpdate,
    Header,
    Insert,
    InteractiveMarker,
    MarkerControl,
    Point,
    Pose,
    PoseUpdate,
    UpdateBatch,
    make_pose,
)
from marker_sync.server.errors import MarkerNotFound, TransportFailure
from marker_sync.server.registry import MarkerRegistry
from marker_sync.server.transport import DeliveryReport, LoopbackTransport


def _marker(name: str, x: float = 0.0, description: str = "") -> InteractiveMarker:
    return InteractiveMarker(
        name=name,
        header=Header(frame_id="map"),
        pose=make_pose((x, 0.0, 0.0)),
        description=description,
    )


def _registry_with_client() -> tuple[MarkerRegistry, list[UpdateBatch]]:
    transport = LoopbackTransport()
    registry = MarkerRegistry(namespace="markers", transport=transport)
    received: list[UpdateBatch] = []
    transport.connect("viewer", received.append)
    received.clear()
    return registry, received


def test_mutations_are_staged_until_publish() -> None:
    registry, received = _registry_with_client()

    registry.insert(_marker("a", 1.0))

    staged = registry.get("a")
    assert staged is not None
    assert staged.pose.position.x == pytest.approx(1.0)
    assert registry.published("a") is None
    assert registry.size() == 0
    assert registry.empty() is True
    assert registry.has_pending() is True
    assert received == []

    result = registry.publish()

    assert result.sent is True
    assert result.delivered == ("viewer",)
    assert registry.size() == 1
    assert registry.has_pending() is False
    assert received == [result.batch]


def test_insert_then_pose_drag_scenario() -> None:
    registry, received = _registry_with_client()
    p0, p1, p2 = make_pose((0.0, 0.0, 0.0)), make_pose((1.0, 0.0, 0.0)), make_pose((2.0, 0.0, 0.0))

    registry.insert(replace(_marker("A"), pose=p0))
    first = registry.publish().batch
    assert first.seq == 1
    assert len(first.updates) == 1
    insert = first.updates[0]
    assert isinstance(insert, Insert)
    assert insert.marker.pose == p0
    assert insert.marker.version == 1

    registry.set_pose("A", p1)
    registry.set_pose("A", p2)
    second = registry.publish().batch
    assert second.seq == 2
    assert second.updates == (PoseUpdate(name="A", pose=p2, header=Header(frame_id="map"), version=2),)

    registry.erase("A")
    assert registry.get("A") is None
    registry.publish()
    assert "A" not in registry.full_sync().names()
    assert [batch.seq for batch in received] == [1, 2, 3]


def test_insert_then_erase_in_same_batch_is_net_zero() -> None:
    registry, received = _registry_with_client()
    registry.insert(_marker("B"), callback=lambda event: None)
    registry.erase("B")

    result = registry.publish()

    assert result.batch.updates == ()
    assert result.sent is False
    assert received == []
    assert registry.sequence_number == 0
    assert registry.set_callback("B", lambda event: None) is False


def test_empty_publish_does_not_consume_sequence_number() -> None:
    registry, received = _registry_with_client()
    registry.insert(_marker("a"))
    registry.publish()

    empty = registry.publish()
    registry.set_pose("a", make_pose((1.0, 0.0, 0.0)))
    after = registry.publish()

    assert empty.batch.seq == 1
    assert after.batch.seq == 2
    assert [batch.seq for batch in received] == [1, 2]


def test_erase_is_idempotent() -> None:
    registry, _ = _registry_with_client()
    registry.insert(_marker("a"))
    registry.insert(_marker("b"))
    registry.publish()

    assert registry.erase("a") is True
    assert registry.erase("a") is False
    batch = registry.publish().batch
    assert batch.updates == (Erase("a"),)

    assert registry.erase("a") is False
    assert registry.erase("never-existed") is False
    assert registry.publish().batch.updates == ()
    assert registry.names() == ("b",)


def test_set_pose_and_set_full_require_existing_marker() -> None:
    registry = MarkerRegistry()

    with pytest.raises(MarkerNotFound):
        registry.set_pose("ghost", make_pose())
    with pytest.raises(MarkerNotFound):
        registry.set_full(_marker("ghost"))
    assert registry.has_pending() is False


def test_set_pose_rejects_non_finite_pose() -> None:
    registry = MarkerRegistry()
    registry.insert(_marker("a"))

    with pytest.raises(ValueError):
        registry.set_pose("a", Pose(position=Point(math.nan, 0.0, 0.0)))
    with pytest.raises(ValueError):
        registry.insert(replace(_marker("b"), pose=Pose(position=Point(0.0, math.inf, 0.0))))
    with pytest.raises(ValueError):
        registry.insert(InteractiveMarker(name=""))


def test_pose_after_pending_erase_raises_not_found() -> None:
    registry = MarkerRegistry()
    registry.insert(_marker("a"))
    registry.publish()
    registry.erase("a")

    with pytest.raises(MarkerNotFound):
        registry.set_pose("a", make_pose((1.0, 0.0, 0.0)))

    assert registry.publish().batch.updates == (Erase("a"),)


def test_erase_then_insert_reuses_name() -> None:
    registry = MarkerRegistry()
    registry.insert(_marker("a", description="first"))
    registry.publish()

    registry.erase("a")
    registry.insert(_marker("a", description="second"))
    batch = registry.publish().batch

    assert len(batch.updates) == 1
    update = batch.updates[0]
    assert isinstance(update, Insert)
    assert update.marker.description == "second"
    assert update.marker.version == 2


def test_coalesced_entry_matches_sequential_application() -> None:
    registry = MarkerRegistry()
    control = MarkerControl(name="grab")

    registry.insert(_marker("a", 0.0, "v1"))
    registry.set_pose("a", make_pose((1.0, 0.0, 0.0)))
    registry.set_full(replace(_marker("a", 5.0, "v2"), controls=(control,)))
    registry.set_pose("a", make_pose((3.0, 0.0, 0.0)), Header(frame_id="odom"))

    batch = registry.publish().batch

    expected = InteractiveMarker(
        name="a",
        header=Header(frame_id="odom"),
        pose=make_pose((3.0, 0.0, 0.0)),
        description="v2",
        controls=(control,),
        version=1,
    )
    assert batch.updates == (Insert(expected),)
    assert registry.published("a") == expected


def test_full_update_after_pose_is_sent_as_full() -> None:
    registry = MarkerRegistry()
    registry.insert(_marker("a"))
    registry.publish()

    registry.set_pose("a", make_pose((1.0, 0.0, 0.0)))
    registry.set_full(_marker("a", 2.0, "new content"))
    batch = registry.publish().batch

    assert len(batch.updates) == 1
    update = batch.updates[0]
    assert isinstance(update, FullUpdate)
    assert update.marker.description == "new content"
    assert update.marker.pose.position.x == pytest.approx(2.0)


def test_batch_order_follows_first_touch() -> None:
    registry = MarkerRegistry()
    for name in ("x", "y", "z"):
        registry.insert(_marker(name))
    registry.publish()

    registry.set_pose("z", make_pose((1.0, 0.0, 0.0)))
    registry.erase("x")
    registry.insert(_marker("w"))
    registry.set_pose("z", make_pose((2.0, 0.0, 0.0)))

    assert registry.publish().batch.names() == ("z", "x", "w")


def test_full_sync_enumerates_published_markers() -> None:
    registry = MarkerRegistry(namespace="markers")
    for index, name in enumerate(("c", "a", "b")):
        registry.insert(_marker(name, float(index)))
    registry.publish()
    registry.set_pose("a", make_pose((9.0, 0.0, 0.0)))
    registry.erase("b")
    registry.publish()

    snapshot = registry.full_sync()

    assert snapshot.full_sync is True
    assert snapshot.namespace == "markers"
    assert snapshot.seq == registry.sequence_number == 2
    assert snapshot.names() == ("a", "c")
    assert all(isinstance(update, Insert) for update in snapshot.updates)
    markers = {update.name: update.marker for update in snapshot.updates}
    assert markers["a"].pose.position.x == pytest.approx(9.0)
    assert markers["a"] == registry.published("a")


def test_full_sync_excludes_unpublished_changes() -> None:
    registry = MarkerRegistry()
    registry.insert(_marker("a"))
    registry.publish()
    registry.set_pose("a", make_pose((4.0, 0.0, 0.0)))
    registry.insert(_marker("b"))

    snapshot = registry.full_sync()

    assert snapshot.names() == ("a",)
    assert snapshot.updates[0].marker.pose.position.x == pytest.approx(0.0)


def test_subscribe_delivers_full_sync_to_new_client() -> None:
    transport = LoopbackTransport()
    registry = MarkerRegistry(transport=transport)
    registry.insert(_marker("a"))
    registry.publish()

    late: list[UpdateBatch] = []
    transport.connect("late", late.append)

    assert len(late) == 1
    assert late[0].full_sync is True
    assert late[0].names() == ("a",)
    assert late[0].seq == 1


def test_clear_erases_published_markers_only() -> None:
    registry = MarkerRegistry()
    registry.insert(_marker("a"))
    registry.insert(_marker("b"))
    registry.publish()
    registry.insert(_marker("c"))
    registry.set_pose("a", make_pose((1.0, 0.0, 0.0)))

    registry.clear()

    assert registry.names() == ()
    batch = registry.publish().batch
    assert batch.updates == (Erase("a"), Erase("b"))
    assert registry.empty() is True


def test_transport_failure_reports_subscribers_and_keeps_state() -> None:
    transport = LoopbackTransport()
    registry = MarkerRegistry(transport=transport)
    good: list[UpdateBatch] = []

    def flaky(batch: UpdateBatch) -> None:
        if not batch.full_sync:
            raise ConnectionError("peer gone")

    transport.connect("good", good.append)
    transport.connect("flaky", flaky)
    registry.insert(_marker("a"))

    with pytest.raises(TransportFailure) as excinfo:
        registry.publish()

    assert excinfo.value.failed == ("flaky",)
    assert excinfo.value.batch.seq == 1
    assert registry.published("a") is not None
    assert registry.has_pending() is False
    assert [batch.seq for batch in good if not batch.full_sync] == [1]
    assert registry.publish().batch.updates == ()


def test_adapter_exception_surfaces_as_transport_failure() -> None:
    class BrokenTransport:
        def broadcast(self, batch: UpdateBatch) -> DeliveryReport:
            raise OSError("socket closed")

        def send(self, client_id: str, batch: UpdateBatch) -> DeliveryReport:
            return DeliveryReport(delivered=(client_id,))

        def on_subscribe(self, callback) -> None:
            pass

        def on_feedback(self, callback) -> None:
            pass

    registry = MarkerRegistry(transport=BrokenTransport())
    registry.insert(_marker("a"))

    with pytest.raises(TransportFailure) as excinfo:
        registry.publish()

    assert isinstance(excinfo.value.__cause__, OSError)
    assert registry.size() == 1
    registry.set_pose("a", make_pose((1.0, 0.0, 0.0)))
    assert registry.get("a").pose.position.x == pytest.approx(1.0)


def test_concurrent_set_pose_on_distinct_markers_is_not_lost() -> None:
    count = 32
    registry = MarkerRegistry()
    names = [f"m{index:02d}" for index in range(count)]
    for name in names:
        registry.insert(_marker(name))
    registry.publish()

    barrier = threading.Barrier(count)

    def move(name: str, x: float) -> None:
        barrier.wait()
        registry.set_pose(name, make_pose((x, 0.0, 0.0)))

    threads = [
        threading.Thread(target=move, args=(name, float(index + 1)))
        for index, name in enumerate(names)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    batch = registry.publish().batch

    assert len(batch.updates) == count
    assert sorted(batch.names()) == names
    assert all(isinstance(update, PoseUpdate) for update in batch.updates)


def test_concurrent_publish_and_full_sync_are_ordered() -> None:
    transport = LoopbackTransport()
    registry = MarkerRegistry(transport=transport)
    received: list[UpdateBatch] = []
    transport.connect("viewer", received.append)
    registry.insert(_marker("a"))
    registry.publish()

    def mover() -> None:
        for step in range(50):
            registry.set_pose("a", make_pose((float(step), 0.0, 0.0)))
            registry.publish()

    def syncer() -> None:
        for _ in range(50):
            registry.full_sync("viewer")

    threads = [threading.Thread(target=mover), threading.Thread(target=syncer)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    seqs = [batch.seq for batch in received]
    assert seqs == sorted(seqs)
    incremental = [batch.seq for batch in received if not batch.full_sync]
    assert incremental == list(range(1, 52))


def test_publish_from_inside_delivery_keeps_sequence_order() -> None:
    transport = LoopbackTransport()
    registry = MarkerRegistry(transport=transport)
    nested: list[UpdateBatch] = []
    second: list[UpdateBatch] = []

    def first(batch: UpdateBatch) -> None:
        if not batch.full_sync and batch.seq == 2:
            registry.set_pose("a", make_pose((7.0, 0.0, 0.0)))
            nested.append(registry.publish().batch)

    transport.connect("first", first)
    transport.connect("second", second.append)
    registry.insert(_marker("a"))
    registry.publish()

    registry.set_pose("a", make_pose((1.0, 0.0, 0.0)))
    result = registry.publish()

    assert result.batch.seq == 2
    assert nested[0].updates == ()
    assert [batch.seq for batch in second if not batch.full_sync] == [1, 2, 3]
    assert registry.published("a").pose.position.x == pytest.approx(7.0)
    assert registry.has_pending() is False
