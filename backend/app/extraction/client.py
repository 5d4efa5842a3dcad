"""Entity and relationship extraction backed by the Gemini generateContent API."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import httpx

from backend.app.config import ExtractionConfig
from backend.app.contracts import EdgeType, Entity, ExtractionResult, NodeType, Relationship

LOGGER = logging.getLogger(__name__)

RESULT_START = "RESULT_START:"
RESULT_END = "RESULT_END:"

_HTTPPostCallable = Callable[[str, Dict[str, Any], Dict[str, str]], Awaitable[Any]]
_SleepCallable = Callable[[float], Awaitable[None]]


class TextValidationError(ValueError):
    """Raised when the input text is empty or exceeds the configured cap."""


class ExtractionError(RuntimeError):
    """Base error for extraction failures."""


class ExtractionServiceError(ExtractionError):
    """Raised when the extraction endpoint answers with a non-retryable error."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ExtractionUnavailableError(ExtractionError):
    """Raised when the endpoint stays unavailable after every retry."""


class ExtractionContractError(ExtractionError):
    """Raised when the model response does not honour the marker/JSON contract."""


EXTRACTION_PROMPT = (
    "You are an expert historian analysing a historical text.\n"
    "Identify the key entities and the relationships between them.\n"
    "Classify every entity as exactly one of: {node_types}.\n"
    "Describe every relationship with exactly one of: {edge_types}.\n"
    "Relationships must reference entities by their exact text.\n"
    "Return only the following, with no markdown and no commentary:\n"
    f"{RESULT_START}\n"
    '{{"entities": [{{"text": "...", "type": "...", "context": "..."}}], '
    '"relationships": [{{"source": "...", "target": "...", "type": "...", "description": "..."}}]}}\n'
    f"{RESULT_END}\n"
    "Prompt version: {prompt_version}\n\n"
    "Text to analyse:\n"
)


def render_prompt(prompt_version: str) -> str:
    """Return the instruction prompt prepended to the user's text."""

    return EXTRACTION_PROMPT.format(
        node_types=", ".join(member.value for member in NodeType),
        edge_types=", ".join(member.value for member in EdgeType),
        prompt_version=prompt_version,
    )


def extract_envelope_text(payload: Any) -> str:
    """Return ``candidates[0].content.parts[0].text`` from a Gemini response.

    Raises:
        ExtractionContractError: If the envelope does not have the expected shape.
    """

    try:
        text = payload["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError) as exc:
        LOGGER.error("Extraction response envelope malformed: %s", payload)
        raise ExtractionContractError(
            "Extraction response is missing candidates[0].content.parts[0].text"
        ) from exc
    if not isinstance(text, str):
        LOGGER.error("Extraction response text was not a string: %r", text)
        raise ExtractionContractError("Extraction response text must be a string")
    return text


def _strip_code_fence(block: str) -> str:
    stripped = block.strip()
    if stripped.startswith("```"):
        first_newline = stripped.find("\n")
        stripped = stripped[first_newline + 1 :] if first_newline != -1 else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()


def parse_marked_result(raw: str) -> Dict[str, Any]:
    """Return the JSON object enclosed by the result markers.

    Args:
        raw: Free-form text returned by the model.

    Returns:
        Dict[str, Any]: The decoded object with ``entities`` and ``relationships`` lists.

    Raises:
        ExtractionContractError: If a marker is missing, the JSON is invalid or
            the top-level shape is wrong.
    """

    start = raw.find(RESULT_START)
    end = raw.find(RESULT_END, start + len(RESULT_START)) if start != -1 else -1
    if start == -1 or end == -1:
        LOGGER.error("Extraction response missing result markers: %s", raw)
        raise ExtractionContractError("Extraction response is missing RESULT_START:/RESULT_END: markers")
    block = _strip_code_fence(raw[start + len(RESULT_START) : end])
    try:
        payload = json.loads(block)
    except json.JSONDecodeError as exc:
        LOGGER.error("Extraction response contained invalid JSON: %s", raw)
        raise ExtractionContractError("Extraction response contained invalid JSON") from exc
    if not isinstance(payload, dict):
        LOGGER.error("Extraction JSON root must be an object: %s", raw)
        raise ExtractionContractError("Extraction JSON root must be an object")
    entities = payload.get("entities", [])
    relationships = payload.get("relationships", [])
    if not isinstance(entities, list) or not isinstance(relationships, list):
        LOGGER.error("Extraction JSON entities/relationships must be lists: %s", raw)
        raise ExtractionContractError("Extraction JSON entities and relationships must be lists")
    return {"entities": entities, "relationships": relationships}


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def build_extraction_result(
    payload: Mapping[str, Any],
    *,
    source_text: str = "",
    id_factory: Optional[Callable[[], str]] = None,
) -> ExtractionResult:
    """Turn the decoded model payload into typed entities and resolved relationships.

    Entity ids are generated when absent. Relationships reference entities by
    text; they are resolved to ids by exact match first and case-insensitive
    match second, and dropped when either end does not resolve.
    """

    make_id = id_factory or (lambda: f"entity-{uuid.uuid4().hex[:12]}")
    entities: List[Entity] = []
    exact: Dict[str, str] = {}
    folded: Dict[str, str] = {}
    for index, item in enumerate(payload.get("entities", [])):
        if not isinstance(item, Mapping):
            raise ExtractionContractError(f"Entity #{index} is not an object")
        text = _optional_text(item.get("text"))
        if text is None:
            raise ExtractionContractError(f"Entity #{index} is missing text")
        if text in exact:
            LOGGER.debug("Collapsing duplicate entity text %r", text)
            continue
        entity_id = _optional_text(item.get("id")) or make_id()
        start_index = source_text.find(text) if source_text else -1
        start, end = (start_index, start_index + len(text)) if start_index >= 0 else (0, 0)
        entity = Entity(
            id=entity_id,
            type=_optional_text(item.get("type")) or NodeType.CONCEPT.value,
            text=text,
            start_index=start,
            end_index=end,
            context=_optional_text(item.get("context")),
        )
        entities.append(entity)
        exact[text] = entity.id
        folded.setdefault(text.casefold(), entity.id)

    def _resolve(reference: Any) -> Optional[str]:
        text = _optional_text(reference)
        if text is None:
            return None
        return exact.get(text) or folded.get(text.casefold())

    relationships: List[Relationship] = []
    dropped = 0
    for index, item in enumerate(payload.get("relationships", [])):
        if not isinstance(item, Mapping):
            raise ExtractionContractError(f"Relationship #{index} is not an object")
        source_id = _resolve(item.get("source"))
        target_id = _resolve(item.get("target"))
        if source_id is None or target_id is None:
            dropped += 1
            continue
        relationships.append(
            Relationship(
                source=source_id,
                target=target_id,
                type=_optional_text(item.get("type")) or "related-to",
                description=_optional_text(item.get("description")),
            )
        )
    if dropped:
        LOGGER.info("Dropped %d relationship(s) referencing unknown entities", dropped)
    return ExtractionResult(entities=entities, relationships=relationships)


class GeminiExtractionClient:
    """Adapter that calls the Gemini generateContent API for extraction."""

    def __init__(
        self,
        *,
        settings: ExtractionConfig,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        http_post: Optional[_HTTPPostCallable] = None,
        sleep: Optional[_SleepCallable] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        """Initialise the client with configuration and networking hooks."""

        if client is not None and http_post is not None:
            raise ValueError("Provide either a client or http_post, not both")
        resolved_key = api_key or os.getenv("GEMINI_API_KEY")
        if not resolved_key:
            raise ExtractionError("Gemini API key must be provided via argument or GEMINI_API_KEY")
        self._settings = settings
        self._api_key = resolved_key
        self._http_post = http_post
        self._sleep = sleep or asyncio.sleep
        self._id_factory = id_factory
        self._client = client
        self._owns_client = client is None and http_post is None
        self._retry_statuses = set(settings.retry_statuses)
        self._prompt = render_prompt(settings.prompt_version)
        self._url = f"{settings.base_url.rstrip('/')}/models/{settings.model}:generateContent"

    @property
    def settings(self) -> ExtractionConfig:
        return self._settings

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance owns it."""

        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def validate_text(self, text: str) -> str:
        """Return ``text`` or raise ``TextValidationError`` when it is unusable."""

        if not isinstance(text, str) or not text.strip():
            raise TextValidationError("Text to analyse must not be empty")
        if len(text) > self._settings.max_text_length:
            raise TextValidationError(
                f"Text is too long ({len(text)} characters); the maximum is "
                f"{self._settings.max_text_length}"
            )
        return text

    async def analyze(self, text: str) -> ExtractionResult:
        """Extract entities and relationships from ``text``.

        Args:
            text: Non-empty source text no longer than ``max_text_length``.

        Returns:
            ExtractionResult: Entities with ids plus relationships resolved to those ids.

        Raises:
            TextValidationError: If the text is empty or too long.
            ExtractionServiceError: If the endpoint returns a non-retryable error.
            ExtractionUnavailableError: If retries are exhausted.
            ExtractionContractError: If the response violates the contract.
        """

        self.validate_text(text)
        payload = {"contents": [{"parts": [{"text": f"{self._prompt}{text}"}]}]}
        response_json = await self._post_with_retries(payload)
        raw = extract_envelope_text(response_json)
        parsed = parse_marked_result(raw)
        try:
            result = build_extraction_result(parsed, source_text=text, id_factory=self._id_factory)
        except ExtractionContractError:
            LOGGER.error("Extraction response entries malformed: %s", raw)
            raise
        except ValueError as exc:
            LOGGER.error("Extraction response entries failed validation: %s", raw)
            raise ExtractionContractError(f"Extraction response entries invalid: {exc}") from exc
        LOGGER.info(
            "Extracted %d entities and %d relationships",
            len(result.entities),
            len(result.relationships),
        )
        return result

    async def _post_with_retries(self, payload: Dict[str, Any]) -> Any:
        """Send the payload with retry semantics for transient unavailability."""

        attempt = 0
        delay = self._settings.backoff_initial_seconds
        while True:
            start = time.perf_counter()
            try:
                status_code, body = await self._dispatch_request(payload)
            except httpx.HTTPError as exc:
                LOGGER.error("Extraction request failed: %s", exc)
                raise ExtractionUnavailableError(f"Extraction request failed: {exc}") from exc
            elapsed = time.perf_counter() - start
            if status_code < 400:
                if attempt > 0:
                    LOGGER.info(
                        "Extraction succeeded after %s retries (elapsed %.2fs, status %s)",
                        attempt,
                        elapsed,
                        status_code,
                    )
                return self._decode(body)
            if status_code not in self._retry_statuses:
                message = self._error_message(body)
                LOGGER.error(
                    "Extraction failed with status %s after %.2fs: %s",
                    status_code,
                    elapsed,
                    message,
                )
                raise ExtractionServiceError(
                    f"Extraction failed with status {status_code}: {message}",
                    status_code=status_code,
                )
            if attempt >= self._settings.max_retries:
                LOGGER.error(
                    "Extraction endpoint still unavailable (status %s) after %s retries",
                    status_code,
                    attempt,
                )
                raise ExtractionUnavailableError(
                    f"Extraction service unavailable after {attempt} retries"
                )
            attempt += 1
            LOGGER.warning(
                "Extraction received status %s after %.2fs; retrying in %.2fs (attempt %s)",
                status_code,
                elapsed,
                delay,
                attempt,
            )
            await self._sleep(delay)
            delay = min(delay * 2, self._settings.backoff_max_seconds)

    async def _dispatch_request(self, payload: Dict[str, Any]) -> Tuple[int, Any]:
        headers = {"Content-Type": "application/json", "x-goog-api-key": self._api_key}
        if self._http_post is not None:
            response = await self._http_post(self._url, payload, headers)
        else:
            if self._client is None:
                self._client = httpx.AsyncClient(timeout=self._settings.timeout_seconds)
                self._owns_client = True
            response = await self._client.post(self._url, json=payload, headers=headers)
        return int(getattr(response, "status_code", 0) or 0), response

    @staticmethod
    def _decode(response: Any) -> Any:
        try:
            return response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            LOGGER.error("Extraction response was not valid JSON: %s", getattr(response, "text", ""))
            raise ExtractionContractError("Extraction response was not valid JSON") from exc

    @staticmethod
    def _error_message(response: Any) -> str:
        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError):
            return str(getattr(response, "text", "") or "unknown error")
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if isinstance(error, str):
                return error
        return json.dumps(data)


__all__ = [
    "EXTRACTION_PROMPT",
    "ExtractionContractError",
    "ExtractionError",
    "ExtractionServiceError",
    "ExtractionUnavailableError",
    "GeminiExtractionClient",
    "RESULT_END",
    "RESULT_START",
    "TextValidationError",
    "build_extraction_result",
    "extract_envelope_text",
    "parse_marked_result",
    "render_prompt",
]
