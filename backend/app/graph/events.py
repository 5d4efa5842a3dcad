"""Typed publish/subscribe channel for graph session changes."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Type, TypeVar

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class GraphEvent:
    """Base class for events published on the bus."""


@dataclass(frozen=True)
class GraphChanged(GraphEvent):
    """Nodes or edges were added, updated, moved or removed."""

    reason: str
    node_ids: Tuple[str, ...] = ()
    edge_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SelectionChanged(GraphEvent):
    """The selected node or edge changed; at most one of the two is set."""

    node_id: Optional[str] = None
    edge_id: Optional[str] = None


@dataclass(frozen=True)
class AnalysisStateChanged(GraphEvent):
    """Loading flag or last error of the text analysis changed."""

    loading: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class Notification(GraphEvent):
    """User-visible message such as an export failure."""

    level: str
    message: str


EventT = TypeVar("EventT", bound=GraphEvent)


class EventBus:
    """Deliver events synchronously to handlers registered per event type.

    Handlers registered for a base class also receive its subclasses. A
    handler that raises is logged and the remaining handlers still run.
    """

    def __init__(self) -> None:
        self._handlers: Dict[Type[GraphEvent], List[Callable[[GraphEvent], None]]] = {}

    def subscribe(self, event_type: Type[EventT], handler: Callable[[EventT], None]) -> Callable[[], None]:
        """Register ``handler`` and return a callable that removes it again."""

        handlers = self._handlers.setdefault(event_type, [])
        handlers.append(handler)  # type: ignore[arg-type]

        def _unsubscribe() -> None:
            try:
                handlers.remove(handler)  # type: ignore[arg-type]
            except ValueError:
                LOGGER.debug("Handler for %s already unsubscribed", event_type.__name__)

        return _unsubscribe

    def publish(self, event: GraphEvent) -> None:
        for event_type, handlers in list(self._handlers.items()):
            if not isinstance(event, event_type):
                continue
            for handler in list(handlers):
                try:
                    handler(event)
                except Exception:  # noqa: BLE001
                    LOGGER.exception(
                        "Event handler %r failed for %s", handler, type(event).__name__
                    )


__all__ = [
    "AnalysisStateChanged",
    "EventBus",
    "GraphChanged",
    "GraphEvent",
    "Notification",
    "SelectionChanged",
]
