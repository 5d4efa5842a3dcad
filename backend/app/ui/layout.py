"""Utility functions for computing graph layouts server-side."""
from __future__ import annotations

import logging
import math
import random
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

import networkx as nx

from backend.app.config import ArrangementConfig, LayoutConfig
from backend.app.contracts import Edge, Entity, Node, Position
from backend.app.ui.styles import node_size_hint

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class LayoutNodeInput:
    """Node identifier plus the size hint handed to the layout engine."""

    node_id: str
    width: float
    height: float


class LayeredLayoutEngine(Protocol):
    """Layered graph drawing procedure returning centre-based coordinates."""

    def layout(
        self,
        nodes: Sequence[LayoutNodeInput],
        edges: Sequence[Tuple[str, str]],
        *,
        direction: str,
        node_spacing: float,
        layer_spacing: float,
    ) -> Mapping[str, Tuple[float, float]]:
        """Return node centres keyed by node id."""


class NetworkXLayeredEngine:
    """Layered layout backed by networkx condensation and topological generations.

    Strongly connected components are collapsed so cyclic graphs still layer.
    Each node's layer is its component's topological generation and nodes keep
    their insertion order within a layer.
    """

    def layout(
        self,
        nodes: Sequence[LayoutNodeInput],
        edges: Sequence[Tuple[str, str]],
        *,
        direction: str,
        node_spacing: float,
        layer_spacing: float,
    ) -> Mapping[str, Tuple[float, float]]:
        if not nodes:
            return {}
        graph = nx.DiGraph()
        for item in nodes:
            graph.add_node(item.node_id)
        for source, target in edges:
            if source != target and graph.has_node(source) and graph.has_node(target):
                graph.add_edge(source, target)

        condensed = nx.condensation(graph)
        members = condensed.graph["mapping"]
        component_layer: Dict[int, int] = {}
        for index, generation in enumerate(nx.topological_generations(condensed)):
            for component in generation:
                component_layer[component] = index
        horizontal = direction.upper() == "LR"
        sizes = {item.node_id: item for item in nodes}
        layers: Dict[int, List[str]] = defaultdict(list)
        for node_id in graph.nodes:
            layers[component_layer[members[node_id]]].append(node_id)

        def _along(item: LayoutNodeInput) -> float:
            return item.width if horizontal else item.height

        def _across(item: LayoutNodeInput) -> float:
            return item.height if horizontal else item.width

        centres: Dict[str, Tuple[float, float]] = {}
        offset = 0.0
        for layer_index in sorted(layers):
            members_in_layer = layers[layer_index]
            depth = max(_along(sizes[nid]) for nid in members_in_layer)
            breadth = sum(_across(sizes[nid]) for nid in members_in_layer)
            breadth += node_spacing * (len(members_in_layer) - 1)
            cursor = -breadth / 2.0
            primary = offset + depth / 2.0
            for node_id in members_in_layer:
                extent = _across(sizes[node_id])
                secondary = cursor + extent / 2.0
                cursor += extent + node_spacing
                centres[node_id] = (primary, secondary) if horizontal else (secondary, primary)
            offset += depth + layer_spacing
        return centres


class LayoutAdapter:
    """Translate nodes and edges for a layered engine and map positions back."""

    def __init__(
        self,
        settings: Optional[LayoutConfig] = None,
        *,
        engine: Optional[LayeredLayoutEngine] = None,
    ) -> None:
        self._settings = settings or LayoutConfig()
        self._engine = engine or NetworkXLayeredEngine()

    @property
    def settings(self) -> LayoutConfig:
        return self._settings

    def size_hint(self, node: Node) -> Tuple[float, float]:
        return node_size_hint(
            node,
            default_width=self._settings.default_node_width,
            default_height=self._settings.default_node_height,
            event_height=self._settings.event_node_height,
        )

    def apply(
        self,
        nodes: Sequence[Node],
        edges: Iterable[Edge],
        *,
        direction: Optional[str] = None,
    ) -> List[Node]:
        """Return copies of ``nodes`` positioned by the layout engine.

        Args:
            nodes: Nodes to lay out.
            edges: Edges between the nodes; edges touching unknown nodes are ignored.
            direction: Optional override of the configured ``TB``/``LR`` direction.

        Returns:
            List[Node]: Nodes in their original order with top-left positions.
                Nodes the engine did not place keep their previous position.
        """

        if not nodes:
            return []
        resolved_direction = (direction or self._settings.direction).upper()
        if resolved_direction not in {"TB", "LR"}:
            raise ValueError(f"Unsupported layout direction: {direction}")
        inputs: List[LayoutNodeInput] = []
        known_ids = set()
        for node in nodes:
            width, height = self.size_hint(node)
            inputs.append(LayoutNodeInput(node_id=node.id, width=width, height=height))
            known_ids.add(node.id)
        edge_pairs = [
            (edge.source, edge.target)
            for edge in edges
            if edge.source in known_ids and edge.target in known_ids
        ]
        centres = self._engine.layout(
            inputs,
            edge_pairs,
            direction=resolved_direction,
            node_spacing=self._settings.node_spacing,
            layer_spacing=self._settings.layer_spacing,
        )

        positioned: List[Node] = []
        missing = 0
        for node, item in zip(nodes, inputs):
            centre = centres.get(node.id)
            if centre is None:
                missing += 1
                positioned.append(node)
                continue
            centre_x, centre_y = centre
            position = Position(x=centre_x - item.width / 2.0, y=centre_y - item.height / 2.0)
            positioned.append(node.model_copy(update={"position": position}))
        if missing:
            LOGGER.warning("Layout engine omitted %d node(s); kept previous positions", missing)
        return positioned


def grid_columns(count: int, *, minimum: int = 2, maximum: int = 4) -> int:
    """Return ``clamp(ceil(sqrt(count)), minimum, maximum)``."""

    return max(minimum, min(maximum, math.ceil(math.sqrt(max(count, 0)))))


def arrange_entities(
    entities: Sequence[Entity],
    settings: Optional[ArrangementConfig] = None,
    *,
    rng: Optional[random.Random] = None,
    origin: Optional[Position] = None,
) -> List[Node]:
    """Place freshly extracted entities on a per-type grid.

    Entities are bucketed by type in first-seen order. Each bucket fills rows
    of ``grid_columns(len(entities))`` cells spaced ``settings.spacing`` apart and
    the next bucket starts on a new row. The grid's top-left cell sits at
    ``origin`` (default ``(0, 0)``). A small uniform jitter keeps duplicate
    labels from stacking exactly on top of each other.
    """

    if not entities:
        return []
    config = settings or ArrangementConfig()
    generator = rng or random.Random()
    start = origin or Position(x=0.0, y=0.0)
    columns = grid_columns(len(entities), minimum=config.min_columns, maximum=config.max_columns)

    buckets: Dict[str, List[Entity]] = {}
    for entity in entities:
        buckets.setdefault(entity.type, []).append(entity)

    def _jitter() -> float:
        if config.jitter <= 0:
            return 0.0
        return generator.uniform(-config.jitter, config.jitter)

    nodes: List[Node] = []
    row = 0
    for bucket in buckets.values():
        column = 0
        for entity in bucket:
            position = Position(
                x=start.x + column * config.spacing + _jitter(),
                y=start.y + row * config.spacing + _jitter(),
            )
            nodes.append(
                Node(
                    id=entity.id,
                    type=entity.type,
                    label=entity.text,
                    description=entity.context,
                    context=entity.context,
                    position=position,
                )
            )
            column += 1
            if column >= columns:
                column = 0
                row += 1
        if column > 0:
            row += 1
    return nodes
