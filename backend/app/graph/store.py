"""In-memory graph session state: nodes, edges, selection and extraction merge."""
from __future__ import annotations

import logging
import random
import uuid
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Union

from backend.app.config import ArrangementConfig
from backend.app.contracts import (
    Edge,
    EdgeType,
    Entity,
    ExtractionResult,
    GraphSnapshot,
    Node,
    Position,
    display_name,
    normalise_type,
)
from backend.app.extraction.client import ExtractionError
from backend.app.graph.events import (
    AnalysisStateChanged,
    EventBus,
    GraphChanged,
    SelectionChanged,
)
from backend.app.ui.geometry import INSERT_GAP, compute_bounding_box, compute_default_insert_position
from backend.app.ui.layout import LayoutAdapter, arrange_entities
from backend.app.ui.styles import node_size_hint

LOGGER = logging.getLogger(__name__)

ADD_NODE_JITTER = 50.0


class ExtractionBackend(Protocol):
    """Anything able to turn text into entities and relationships."""

    def validate_text(self, text: str) -> str:
        ...

    async def analyze(self, text: str) -> ExtractionResult:
        ...


def _coerce_id(value: Union[str, Node, Edge, None]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (Node, Edge)):
        return value.id
    return str(value)


class GraphStore:
    """Single source of truth for the nodes and edges of one editing session.

    All mutations are synchronous. ``analyze_text`` is the only coroutine; it
    keeps ``loading`` set for its whole duration and records the last error.
    """

    def __init__(
        self,
        extraction_client: Optional[ExtractionBackend] = None,
        *,
        arrangement: Optional[ArrangementConfig] = None,
        default_edge_type: str = EdgeType.INFLUENCES.value,
        events: Optional[EventBus] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._extraction_client = extraction_client
        self._arrangement = arrangement or ArrangementConfig()
        self._default_edge_type = normalise_type(default_edge_type) or EdgeType.INFLUENCES.value
        self._events = events or EventBus()
        self._rng = rng or random.Random()
        self._nodes: List[Node] = []
        self._edges: List[Edge] = []
        self._entities: List[Entity] = []
        self._selected_node_id: Optional[str] = None
        self._selected_edge_id: Optional[str] = None
        self._container_width = 0.0
        self._container_height = 0.0
        self._loading = False
        self._error: Optional[str] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------
    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def nodes(self) -> List[Node]:
        return list(self._nodes)

    @property
    def edges(self) -> List[Edge]:
        return list(self._edges)

    @property
    def entities(self) -> List[Entity]:
        return list(self._entities)

    @property
    def selected_node(self) -> Optional[Node]:
        if self._selected_node_id is None:
            return None
        return self.get_node(self._selected_node_id)

    @property
    def selected_edge(self) -> Optional[Edge]:
        if self._selected_edge_id is None:
            return None
        return self.get_edge(self._selected_edge_id)

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def default_edge_type(self) -> str:
        return self._default_edge_type

    @property
    def container_dimensions(self) -> Dict[str, float]:
        return {"width": self._container_width, "height": self._container_height}

    @property
    def closed(self) -> bool:
        return self._closed

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self._nodes:
            if node.id == node_id:
                return node
        return None

    def get_edge(self, edge_id: str) -> Optional[Edge]:
        for edge in self._edges:
            if edge.id == edge_id:
                return edge
        return None

    def snapshot(self) -> GraphSnapshot:
        return GraphSnapshot(nodes=list(self._nodes), edges=list(self._edges))

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    def set_container_dimensions(self, width: float, height: float) -> None:
        """Record the visible viewport size used to place manually added nodes."""

        self._container_width = max(float(width), 0.0)
        self._container_height = max(float(height), 0.0)

    def set_default_edge_type(self, edge_type: str) -> None:
        normalised = normalise_type(edge_type)
        if not normalised:
            raise ValueError("Default edge type must not be empty")
        self._default_edge_type = normalised

    # ------------------------------------------------------------------
    # Node operations
    # ------------------------------------------------------------------
    def _new_node_position(self) -> Position:
        if self._container_width <= 0 or self._container_height <= 0:
            return compute_default_insert_position(self._nodes)
        return Position(
            x=self._container_width / 2 + self._rng.uniform(-ADD_NODE_JITTER, ADD_NODE_JITTER),
            y=self._container_height / 2 + self._rng.uniform(-ADD_NODE_JITTER, ADD_NODE_JITTER),
        )

    def _new_id(self, prefix: str = "") -> str:
        existing = {node.id for node in self._nodes} | {edge.id for edge in self._edges}
        while True:
            candidate = f"{prefix}{uuid.uuid4()}"
            if candidate not in existing:
                return candidate

    def add_node(self, data: Mapping[str, Any]) -> Node:
        """Append a node with a fresh id.

        The node is placed near the centre of the current viewport with a small
        random offset unless ``data`` carries an explicit position. Without a
        known viewport it goes to the right of the rightmost node.
        """

        payload = {key: value for key, value in dict(data).items() if key != "id"}
        if payload.get("position") is None:
            payload["position"] = self._new_node_position()
        payload["id"] = self._new_id()
        node = Node.model_validate(payload)
        self._nodes.append(node)
        LOGGER.debug("Added node %s (%s)", node.id, node.label)
        self._events.publish(GraphChanged(reason="node-added", node_ids=(node.id,)))
        return node

    def update_node(self, node_id: str, changes: Mapping[str, Any]) -> Optional[Node]:
        """Merge ``changes`` into the node; unknown ids are a logged no-op."""

        for index, node in enumerate(self._nodes):
            if node.id != node_id:
                continue
            merged = {**node.model_dump(), **{k: v for k, v in changes.items() if k != "id"}}
            updated = Node.model_validate(merged)
            self._nodes[index] = updated
            self._events.publish(GraphChanged(reason="node-updated", node_ids=(node_id,)))
            return updated
        LOGGER.info("Ignoring update for unknown node %s", node_id)
        return None

    def move_node(self, node_id: str, x: float, y: float) -> Optional[Node]:
        return self.update_node(node_id, {"position": Position(x=x, y=y)})

    def remove_node(self, node_id: str) -> bool:
        """Remove a node together with every edge touching it."""

        remaining = [node for node in self._nodes if node.id != node_id]
        if len(remaining) == len(self._nodes):
            LOGGER.info("Ignoring removal of unknown node %s", node_id)
            return False
        self._nodes = remaining
        removed_edges = tuple(
            edge.id for edge in self._edges if edge.source == node_id or edge.target == node_id
        )
        if removed_edges:
            self._edges = [edge for edge in self._edges if edge.id not in removed_edges]
        if self._selected_edge_id in removed_edges:
            self._selected_edge_id = None
            self._events.publish(SelectionChanged())
        if self._selected_node_id == node_id:
            self._selected_node_id = None
            self._events.publish(SelectionChanged())
        self._events.publish(
            GraphChanged(reason="node-removed", node_ids=(node_id,), edge_ids=removed_edges)
        )
        return True

    # ------------------------------------------------------------------
    # Edge operations
    # ------------------------------------------------------------------
    def _endpoints_exist(self, source: Optional[str], target: Optional[str]) -> bool:
        if not source or not target:
            LOGGER.warning("Invalid edge: missing source or target")
            return False
        node_ids = {node.id for node in self._nodes}
        if source not in node_ids or target not in node_ids:
            missing = "source" if source not in node_ids else "target"
            LOGGER.warning(
                "Cannot create edge: %s node %s does not exist",
                missing,
                source if missing == "source" else target,
            )
            return False
        return True

    def add_edge(self, data: Mapping[str, Any]) -> Optional[Edge]:
        """Append an edge between two existing nodes.

        Edges with a missing or unknown endpoint are rejected with a warning
        and ``None`` is returned. The type defaults to ``default_edge_type`` and
        the label to the type's display name.
        """

        source = data.get("source")
        target = data.get("target")
        if not self._endpoints_exist(source, target):
            return None
        payload = {key: value for key, value in dict(data).items() if key != "id"}
        edge_type = normalise_type(payload.get("type")) or self._default_edge_type
        payload["type"] = edge_type
        if not payload.get("label"):
            payload["label"] = display_name(edge_type)
        payload["id"] = self._new_id("e")
        edge = Edge.model_validate(payload)
        self._edges.append(edge)
        self._events.publish(GraphChanged(reason="edge-added", edge_ids=(edge.id,)))
        return edge

    def update_edge(self, edge_id: str, changes: Mapping[str, Any]) -> Optional[Edge]:
        """Merge ``changes`` into the edge; unknown ids and dangling endpoints are no-ops."""

        for index, edge in enumerate(self._edges):
            if edge.id != edge_id:
                continue
            merged = {**edge.model_dump(), **{k: v for k, v in changes.items() if k != "id"}}
            if not self._endpoints_exist(merged.get("source"), merged.get("target")):
                return None
            updated = Edge.model_validate(merged)
            self._edges[index] = updated
            self._events.publish(GraphChanged(reason="edge-updated", edge_ids=(edge_id,)))
            return updated
        LOGGER.info("Ignoring update for unknown edge %s", edge_id)
        return None

    def remove_edge(self, edge_id: str) -> bool:
        remaining = [edge for edge in self._edges if edge.id != edge_id]
        if len(remaining) == len(self._edges):
            LOGGER.info("Ignoring removal of unknown edge %s", edge_id)
            return False
        self._edges = remaining
        if self._selected_edge_id == edge_id:
            self._selected_edge_id = None
            self._events.publish(SelectionChanged())
        self._events.publish(GraphChanged(reason="edge-removed", edge_ids=(edge_id,)))
        return True

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------
    def select_node(self, node: Union[str, Node, None]) -> Optional[Node]:
        """Select a node (or clear with ``None``); the edge selection is always cleared."""

        node_id = _coerce_id(node)
        if node_id is not None and self.get_node(node_id) is None:
            LOGGER.warning("Cannot select unknown node %s", node_id)
            node_id = None
        self._selected_node_id = node_id
        self._selected_edge_id = None
        self._events.publish(SelectionChanged(node_id=node_id))
        return self.selected_node

    def select_edge(self, edge: Union[str, Edge, None]) -> Optional[Edge]:
        """Select an edge (or clear with ``None``); the node selection is always cleared."""

        edge_id = _coerce_id(edge)
        if edge_id is not None and self.get_edge(edge_id) is None:
            LOGGER.warning("Cannot select unknown edge %s", edge_id)
            edge_id = None
        self._selected_edge_id = edge_id
        self._selected_node_id = None
        self._events.publish(SelectionChanged(edge_id=edge_id))
        return self.selected_edge

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------
    def convert_entities_to_nodes(self, entities: Sequence[Entity]) -> List[Node]:
        """Promote entities to nodes, skipping ids that already exist.

        When the graph already has nodes the new grid starts below their
        bounding box so a second extraction does not land on the first.

        Returns:
            List[Node]: The nodes that were appended; empty when nothing was new.
        """

        if not entities:
            LOGGER.warning("No entities to convert")
            return []
        existing = {node.id for node in self._nodes}
        fresh: List[Entity] = []
        for entity in entities:
            if entity.id in existing:
                continue
            existing.add(entity.id)
            fresh.append(entity)
        if not fresh:
            LOGGER.info("All entities already exist as nodes")
            return []
        LOGGER.info("Converting %d new entities to nodes", len(fresh))
        origin = None
        if self._nodes:
            bounds = compute_bounding_box(self._nodes, size_hint=node_size_hint)
            origin = Position(x=bounds.x, y=bounds.y + bounds.height + INSERT_GAP)
        new_nodes = arrange_entities(fresh, self._arrangement, rng=self._rng, origin=origin)
        self._nodes.extend(new_nodes)
        self._events.publish(
            GraphChanged(reason="entities-converted", node_ids=tuple(node.id for node in new_nodes))
        )
        return new_nodes

    def _edges_from_relationships(self, result: ExtractionResult) -> List[Edge]:
        node_ids = {node.id for node in self._nodes}
        edges: List[Edge] = []
        for relationship in result.relationships:
            if relationship.source not in node_ids or relationship.target not in node_ids:
                LOGGER.warning(
                    "Skipping relationship %s -> %s with unknown endpoint",
                    relationship.source,
                    relationship.target,
                )
                continue
            edges.append(
                Edge(
                    id=self._new_id("e"),
                    source=relationship.source,
                    target=relationship.target,
                    label=relationship.description or relationship.type,
                    type=relationship.type,
                    description=relationship.description,
                )
            )
        return edges

    def _set_analysis_state(self, *, loading: bool, error: Optional[str]) -> None:
        self._loading = loading
        self._error = error
        self._events.publish(AnalysisStateChanged(loading=loading, error=error))

    async def analyze_text(self, text: str) -> ExtractionResult:
        """Extract entities from ``text`` and merge them into the graph.

        Entities become nodes through the grid arrangement before relationships
        are turned into edges, so every relationship resolves against the nodes
        just added. Failures are recorded in ``error`` and re-raised.
        """

        if self._extraction_client is None:
            raise ExtractionError("No extraction client configured")
        try:
            self._extraction_client.validate_text(text)
        except ValueError as exc:
            self._set_analysis_state(loading=False, error=str(exc))
            raise
        self._set_analysis_state(loading=True, error=None)
        try:
            result = await self._extraction_client.analyze(text)
            if self._closed:
                LOGGER.info("Graph session closed; ignoring late extraction result")
                return result
            self.convert_entities_to_nodes(result.entities)
            new_edges = self._edges_from_relationships(result)
            if new_edges:
                self._edges.extend(new_edges)
                self._events.publish(
                    GraphChanged(
                        reason="relationships-merged",
                        edge_ids=tuple(edge.id for edge in new_edges),
                    )
                )
            self._entities = list(result.entities)
            return result
        except Exception as exc:
            LOGGER.error("Text analysis failed: %s", exc)
            if not self._closed:
                self._error = str(exc) or exc.__class__.__name__
            raise
        finally:
            if not self._closed:
                self._set_analysis_state(loading=False, error=self._error)
            else:
                self._loading = False

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------
    def auto_layout(
        self,
        adapter: Optional[LayoutAdapter] = None,
        *,
        direction: Optional[str] = None,
    ) -> List[Node]:
        """Reposition every node with the layered layout engine."""

        if not self._nodes:
            return []
        layout = adapter or LayoutAdapter()
        self._nodes = layout.apply(self._nodes, self._edges, direction=direction)
        self._events.publish(
            GraphChanged(reason="layout", node_ids=tuple(node.id for node in self._nodes))
        )
        return list(self._nodes)

    def close(self) -> None:
        """Mark the session closed; in-flight extraction results are discarded."""

        self._closed = True
