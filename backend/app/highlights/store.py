"""Persistence for text highlights kept apart from the graph."""
from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Union

from pydantic import ValidationError

from backend.app.contracts import Highlight

LOGGER = logging.getLogger(__name__)


class KeyValueStorage(Protocol):
    """Durable string key/value record, the shape of browser local storage."""

    def get_item(self, key: str) -> Optional[str]:
        ...

    def set_item(self, key: str, value: str) -> None:
        ...

    def remove_item(self, key: str) -> None:
        ...


class JSONKeyValueStore:
    """Persist string values under keys in a single JSON file."""

    def __init__(self, path: Union[str, Path]) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def get_item(self, key: str) -> Optional[str]:
        value = self._load().get(key)
        return value if isinstance(value, str) else None

    def set_item(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._write(data)

    def remove_item(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._write(data)

    def _write(self, data: Mapping[str, str]) -> None:
        try:
            self._path.write_text(json.dumps(dict(data), indent=2, sort_keys=True), encoding="utf-8")
        except OSError:
            LOGGER.exception("Failed to persist key/value store to %s", self._path)
            raise

    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            raw = self._path.read_text(encoding="utf-8")
        except OSError:
            LOGGER.warning("Unable to read key/value store at %s", self._path)
            return {}
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.warning("Corrupt key/value store at %s; starting empty", self._path)
            return {}
        if not isinstance(data, dict):
            LOGGER.warning("Unexpected key/value store format at %s", self._path)
            return {}
        return data


class HighlightStore:
    """Highlight list restored on construction and persisted after every change."""

    def __init__(self, storage: KeyValueStorage, *, key: str = "highlights") -> None:
        self._storage = storage
        self._key = key
        self._highlights: List[Highlight] = self._restore()

    @property
    def highlights(self) -> List[Highlight]:
        return list(self._highlights)

    def _restore(self) -> List[Highlight]:
        raw = self._storage.get_item(self._key)
        if raw is None:
            return []
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.warning("Stored highlights under %r are not valid JSON; ignoring", self._key)
            return []
        if not isinstance(payload, list):
            LOGGER.warning("Stored highlights under %r are not a list; ignoring", self._key)
            return []
        restored: List[Highlight] = []
        for item in payload:
            try:
                restored.append(Highlight.model_validate(item))
            except ValidationError as exc:
                LOGGER.warning("Skipping invalid stored highlight %r: %s", item, exc)
        return restored

    def _persist(self) -> None:
        serialised = json.dumps([highlight.model_dump(mode="json") for highlight in self._highlights])
        self._storage.set_item(self._key, serialised)

    def add_highlight(self, highlight: Union[Highlight, Mapping[str, Any]]) -> Highlight:
        """Append a highlight, generating an id when the payload carries none."""

        if not isinstance(highlight, Highlight):
            payload = dict(highlight)
            if not payload.get("id"):
                payload["id"] = str(uuid.uuid4())
            highlight = Highlight.model_validate(payload)
        self._highlights.append(highlight)
        self._persist()
        return highlight

    def remove_highlight(self, highlight_id: str) -> bool:
        remaining = [item for item in self._highlights if item.id != highlight_id]
        removed = len(remaining) != len(self._highlights)
        self._highlights = remaining
        self._persist()
        return removed

    def set_highlights(self, highlights: Iterable[Union[Highlight, Mapping[str, Any]]]) -> List[Highlight]:
        self._highlights = [
            item if isinstance(item, Highlight) else Highlight.model_validate(item)
            for item in highlights
        ]
        self._persist()
        return list(self._highlights)

    def clear_highlights(self) -> None:
        """Drop every highlight and delete the stored record entirely."""

        self._highlights = []
        self._storage.remove_item(self._key)


__all__ = ["HighlightStore", "JSONKeyValueStore", "KeyValueStorage"]
