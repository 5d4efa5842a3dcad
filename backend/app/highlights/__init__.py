"""Text highlight persistence."""

from backend.app.highlights.store import HighlightStore, JSONKeyValueStore, KeyValueStorage

__all__ = ["HighlightStore", "JSONKeyValueStore", "KeyValueStorage"]
