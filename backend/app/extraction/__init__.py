"""Extraction utilities for the Historiflow backend."""

from backend.app.extraction.client import (
    ExtractionContractError,
    ExtractionError,
    ExtractionServiceError,
    ExtractionUnavailableError,
    GeminiExtractionClient,
    TextValidationError,
    build_extraction_result,
    parse_marked_result,
)
from backend.app.extraction.node_context import NodeContext, NodeContextClient, NodeContextError

__all__ = [
    "ExtractionContractError",
    "ExtractionError",
    "ExtractionServiceError",
    "ExtractionUnavailableError",
    "GeminiExtractionClient",
    "NodeContext",
    "NodeContextClient",
    "NodeContextError",
    "TextValidationError",
    "build_extraction_result",
    "parse_marked_result",
]
