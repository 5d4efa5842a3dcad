"""Immutable data contracts for the Historiflow backend."""
from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator


class _FrozenBaseModel(BaseModel):
    """Base model enforcing immutability after creation."""

    model_config = ConfigDict(frozen=True)


class NodeType(str, Enum):
    """Closed set of entity categories rendered as graph nodes."""

    PERSON = "person"
    PLACE = "place"
    EVENT = "event"
    CONCEPT = "concept"

    @classmethod
    def parse(cls, value: object) -> Optional["NodeType"]:
        """Return the matching member or ``None`` for unknown values."""

        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(normalise_type(value))
        except ValueError:
            return None


class EdgeType(str, Enum):
    """Closed set of relationship categories rendered as graph edges."""

    CAUSES = "causes"
    CAUSED_BY = "caused-by"
    LED_TO = "led-to"
    INFLUENCES = "influences"
    PARTICIPATES = "participates"
    LOCATED = "located"
    PART_OF = "part-of"
    OPPOSED_TO = "opposed-to"
    RELATED_TO = "related-to"

    @classmethod
    def parse(cls, value: object) -> Optional["EdgeType"]:
        """Return the matching member or ``None`` for unknown values."""

        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(normalise_type(value))
        except ValueError:
            return None


def normalise_type(value: object) -> str:
    """Lower-case a type string and join words with hyphens."""

    if isinstance(value, Enum):
        value = value.value
    text = str(value or "").strip().lower()
    return "-".join(part for part in text.replace("_", " ").replace("-", " ").split() if part)


def display_name(value: object) -> str:
    """Return a human readable label for a type, e.g. ``caused-by`` -> ``Caused By``."""

    normalised = normalise_type(value)
    return " ".join(part.capitalize() for part in normalised.split("-") if part)


def finite_or_zero(value: Any) -> float:
    """Return ``value`` as a finite float; booleans, junk and NaN/inf become ``0.0``."""

    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return number


class Position(_FrozenBaseModel):
    """Top-left anchor of a node in diagram coordinates."""

    x: float = 0.0
    y: float = 0.0

    @field_validator("x", "y", mode="before")
    @classmethod
    def _coerce_finite(cls, value: Any) -> float:
        return finite_or_zero(value)


class Node(_FrozenBaseModel):
    """Graph vertex representing a historical entity."""

    id: str = Field(..., min_length=1)
    type: str = Field(NodeType.CONCEPT.value, min_length=1)
    label: str = Field(..., min_length=1)
    subtitle: Optional[str] = None
    image_url: Optional[str] = None
    description: Optional[str] = None
    context: Optional[str] = None
    position: Position = Field(default_factory=Position)
    width: Optional[float] = Field(default=None, ge=0)
    height: Optional[float] = Field(default=None, ge=0)

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: Any) -> str:
        normalised = normalise_type(value)
        return normalised or NodeType.CONCEPT.value

    @field_validator("position", mode="before")
    @classmethod
    def _default_position(cls, value: Any) -> Any:
        if value is None:
            return Position()
        return value


class Edge(_FrozenBaseModel):
    """Directed relationship between two nodes."""

    id: str = Field(..., min_length=1)
    source: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    label: str = ""
    type: str = Field(EdgeType.RELATED_TO.value, min_length=1)
    description: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: Any) -> str:
        normalised = normalise_type(value)
        return normalised or EdgeType.RELATED_TO.value


class Entity(_FrozenBaseModel):
    """Extraction-stage entity, later promoted to a node."""

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)
    start_index: int = Field(0, ge=0)
    end_index: int = Field(0, ge=0)
    context: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: Any) -> str:
        normalised = normalise_type(value)
        return normalised or NodeType.CONCEPT.value

    @field_validator("end_index")
    @classmethod
    def _ensure_end_not_before_start(cls, value: int, info: ValidationInfo) -> int:
        start = info.data.get("start_index", 0)
        if value < start:
            raise ValueError("end_index cannot precede start_index")
        return value


class Relationship(_FrozenBaseModel):
    """Relationship between two extracted entities, referenced by id."""

    source: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    description: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: Any) -> str:
        normalised = normalise_type(value)
        return normalised or EdgeType.RELATED_TO.value


class ExtractionResult(_FrozenBaseModel):
    """Entities and resolved relationships returned by the extraction client."""

    entities: List[Entity] = Field(default_factory=list)
    relationships: List[Relationship] = Field(default_factory=list)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Highlight(_FrozenBaseModel):
    """User-marked span of source text, stored apart from the graph."""

    id: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)
    type: Optional[str] = None
    from_offset: Optional[int] = Field(default=None, ge=0)
    to_offset: Optional[int] = Field(default=None, ge=0)
    color: Optional[str] = None
    created_at: datetime = Field(default_factory=_utc_now)

    @field_validator("to_offset")
    @classmethod
    def _ensure_range(cls, value: Optional[int], info: ValidationInfo) -> Optional[int]:
        start = info.data.get("from_offset")
        if value is not None and start is not None and value < start:
            raise ValueError("to_offset cannot precede from_offset")
        return value


class BoundingBox(_FrozenBaseModel):
    """Axis-aligned rectangle covering a node set."""

    x: float = 0.0
    y: float = 0.0
    width: float = Field(0.0, ge=0)
    height: float = Field(0.0, ge=0)


class GraphSnapshot(_FrozenBaseModel):
    """Point-in-time copy of the graph for serialisation."""

    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)


__all__ = [
    "BoundingBox",
    "Edge",
    "EdgeType",
    "Entity",
    "ExtractionResult",
    "GraphSnapshot",
    "Highlight",
    "Node",
    "NodeType",
    "Position",
    "Relationship",
    "display_name",
    "finite_or_zero",
    "normalise_type",
]
