from __future__ import annotations

from typing import List

from backend.app.graph import EventBus, GraphChanged, GraphEvent, Notification, SelectionChanged


def test_handlers_receive_matching_events_only() -> None:
    bus = EventBus()
    changes: List[GraphChanged] = []
    bus.subscribe(GraphChanged, changes.append)

    bus.publish(GraphChanged(reason="node-added", node_ids=("a",)))
    bus.publish(SelectionChanged(node_id="a"))

    assert changes == [GraphChanged(reason="node-added", node_ids=("a",))]


def test_base_class_subscription_receives_subclasses() -> None:
    bus = EventBus()
    seen: List[GraphEvent] = []
    bus.subscribe(GraphEvent, seen.append)

    bus.publish(Notification(level="success", message="PDF generated successfully"))
    bus.publish(SelectionChanged())

    assert [type(event) for event in seen] == [Notification, SelectionChanged]


def test_unsubscribe_stops_delivery_and_is_repeatable() -> None:
    bus = EventBus()
    seen: List[GraphEvent] = []
    unsubscribe = bus.subscribe(Notification, seen.append)

    unsubscribe()
    unsubscribe()
    bus.publish(Notification(level="error", message="boom"))

    assert seen == []


def test_failing_handler_does_not_block_others(caplog) -> None:
    bus = EventBus()
    seen: List[GraphEvent] = []

    def _broken(event: GraphEvent) -> None:
        raise RuntimeError("handler exploded")

    bus.subscribe(Notification, _broken)
    bus.subscribe(Notification, seen.append)

    with caplog.at_level("ERROR"):
        bus.publish(Notification(level="error", message="Failed to generate PDF"))

    assert len(seen) == 1
    assert "handler exploded" in caplog.text
