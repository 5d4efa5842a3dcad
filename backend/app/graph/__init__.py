"""Graph session state and change notifications."""

from backend.app.graph.events import (
    AnalysisStateChanged,
    EventBus,
    GraphChanged,
    GraphEvent,
    Notification,
    SelectionChanged,
)
from backend.app.graph.store import GraphStore

__all__ = [
    "AnalysisStateChanged",
    "EventBus",
    "GraphChanged",
    "GraphEvent",
    "GraphStore",
    "Notification",
    "SelectionChanged",
]
