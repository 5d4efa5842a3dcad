"""Historical background for a single node via an OpenAI-compatible chat endpoint."""
from __future__ import annotations

import json
import logging
import os
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from pydantic import BaseModel, ConfigDict, model_validator

from backend.app.config import NodeContextConfig

LOGGER = logging.getLogger(__name__)

_HTTPPostCallable = Callable[[str, Dict[str, Any], Dict[str, str]], Awaitable[Any]]

SYSTEM_PROMPT = (
    "You are a knowledgeable historian providing focused context about historical "
    "entities. Be concise but informative."
)

USER_PROMPT_TEMPLATE = (
    "Generate a detailed but concise context about this historical entity:\n"
    "Type: {type}\n"
    "Name/Label: {label}\n"
    "Description: {description}\n\n"
    "Focus on historical significance, key events, and relationships with other entities.\n"
    "Format the response with appropriate markdown headings and bullet points."
)


class NodeContextError(RuntimeError):
    """Raised when the node context endpoint cannot produce a description."""


class NodeContext(BaseModel):
    """Either markdown ``context`` or an ``error`` message, never both."""

    model_config = ConfigDict(frozen=True)

    context: Optional[str] = None
    error: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "NodeContext":
        if (self.context is None) == (self.error is None):
            raise ValueError("NodeContext requires exactly one of context or error")
        return self

    @property
    def ok(self) -> bool:
        return self.error is None


class NodeContextClient:
    """Ask a chat completions endpoint for a markdown summary of a node."""

    _ENDPOINT = "/chat/completions"

    def __init__(
        self,
        *,
        settings: NodeContextConfig,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        http_post: Optional[_HTTPPostCallable] = None,
    ) -> None:
        if client is not None and http_post is not None:
            raise ValueError("Provide either a client or http_post, not both")
        resolved_key = api_key or os.getenv("OPENAI_API_KEY")
        if not resolved_key:
            raise NodeContextError("OpenAI API key must be provided via argument or OPENAI_API_KEY")
        self._settings = settings
        self._api_key = resolved_key
        self._client = client
        self._http_post = http_post
        self._owns_client = client is None and http_post is None
        self._url = f"{settings.base_url.rstrip('/')}{self._ENDPOINT}"

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def build_payload(self, label: str, node_type: str, description: Optional[str]) -> Dict[str, Any]:
        user_prompt = USER_PROMPT_TEMPLATE.format(
            type=node_type,
            label=label,
            description=description or "No description provided",
        )
        return {
            "model": self._settings.model,
            "temperature": self._settings.temperature,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
        }

    async def describe(
        self,
        label: str,
        node_type: str,
        description: Optional[str] = None,
    ) -> NodeContext:
        """Return generated context for a node, or the error that prevented it."""

        if not label or not label.strip():
            return NodeContext(error="Node label must not be empty")
        try:
            content = await self._request(self.build_payload(label, node_type, description))
        except NodeContextError as exc:
            LOGGER.warning("Node context request for %r failed: %s", label, exc)
            return NodeContext(error=str(exc))
        return NodeContext(context=content)

    async def _request(self, payload: Dict[str, Any]) -> str:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        try:
            if self._http_post is not None:
                response = await self._http_post(self._url, payload, headers)
            else:
                if self._client is None:
                    self._client = httpx.AsyncClient(timeout=self._settings.timeout_seconds)
                    self._owns_client = True
                response = await self._client.post(self._url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise NodeContextError(f"Node context request failed: {exc}") from exc

        status_code = int(getattr(response, "status_code", 0) or 0)
        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise NodeContextError(f"Node context response was not valid JSON (status {status_code})") from exc
        if status_code >= 400:
            message = data.get("error") if isinstance(data, dict) else None
            if isinstance(message, dict):
                message = message.get("message")
            raise NodeContextError(f"Node context failed with status {status_code}: {message or 'unknown error'}")
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            LOGGER.error("Node context response missing choices: %s", data)
            raise NodeContextError("Node context response missing choices") from exc
        if not isinstance(content, str) or not content.strip():
            raise NodeContextError("Node context response was empty")
        return content


__all__ = ["NodeContext", "NodeContextClient", "NodeContextError"]
