from __future__ import annotations

import math

import pytest
from pydantic import ValidationError

from backend.app.contracts import (
    Edge,
    EdgeType,
    Entity,
    Highlight,
    Node,
    NodeType,
    Position,
    Relationship,
    display_name,
    finite_or_zero,
    normalise_type,
)


def test_node_contract_normalises_type_and_position() -> None:
    node = Node(id="n1", type="Person", label="Napoleon", position=None)
    assert node.type == "person"
    assert node.position == Position(x=0.0, y=0.0)


def test_node_unknown_type_is_kept_but_empty_type_defaults() -> None:
    assert Node(id="n1", type="Dynasty", label="Tudors").type == "dynasty"
    assert Node(id="n2", type="", label="Thing").type == NodeType.CONCEPT.value


def test_node_is_frozen() -> None:
    node = Node(id="n1", label="Rome")
    with pytest.raises(ValidationError):
        node.label = "Carthage"  # type: ignore[misc]


def test_position_coerces_non_finite_values() -> None:
    position = Position(x=math.nan, y="not-a-number")
    assert position.x == 0.0
    assert position.y == 0.0
    assert Position(x=math.inf, y=12).y == 12.0


def test_edge_type_normalisation() -> None:
    edge = Edge(id="e1", source="a", target="b", type="Caused_By")
    assert edge.type == "caused-by"
    assert Edge(id="e2", source="a", target="b").type == EdgeType.RELATED_TO.value


def test_entity_offsets_must_be_ordered() -> None:
    entity = Entity(id="x", type="event", text="Battle", start_index=3, end_index=9)
    assert entity.end_index == 9
    with pytest.raises(ValidationError):
        Entity(id="x", type="event", text="Battle", start_index=9, end_index=3)


def test_relationship_requires_endpoints() -> None:
    with pytest.raises(ValidationError):
        Relationship(source="", target="b", type="causes")


def test_highlight_offsets_and_timestamp() -> None:
    highlight = Highlight(id="h1", text="Magna Carta", from_offset=4, to_offset=15)
    assert highlight.created_at.tzinfo is not None
    with pytest.raises(ValidationError):
        Highlight(id="h2", text="oops", from_offset=10, to_offset=2)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("Caused By", "caused-by"), ("  LED_TO ", "led-to"), (EdgeType.PART_OF, "part-of"), (None, "")],
)
def test_normalise_type(raw, expected) -> None:
    assert normalise_type(raw) == expected


def test_display_name_and_enum_parse() -> None:
    assert display_name("caused-by") == "Caused By"
    assert display_name(EdgeType.INFLUENCES) == "Influences"
    assert EdgeType.parse("Opposed To") is EdgeType.OPPOSED_TO
    assert EdgeType.parse("unknown") is None
    assert NodeType.parse("PLACE") is NodeType.PLACE
    assert NodeType.parse(42) is None


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(True, 0.0), (math.nan, 0.0), (-math.inf, 0.0), ("3.5", 3.5), (None, 0.0), (7, 7.0)],
)
def test_finite_or_zero(raw, expected) -> None:
    assert finite_or_zero(raw) == expected
