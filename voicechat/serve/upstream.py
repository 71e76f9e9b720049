"""
Upstream completion client for the chat relay.

Talks to a Responses-style completion API that supports continuation via
``previous_response_id``: when a token is supplied only the newest user turn
is sent and the upstream rebuilds the earlier context server-side.
"""

import asyncio
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union

import httpx

from voicechat.exceptions import (
    UpstreamError,
    UpstreamRateLimitedError,
    UpstreamTimeoutError,
)

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 1

# "Please try again in 2.5s" / "try again in 640ms"
RETRY_HINT_PATTERN = re.compile(r"try again in\s+(\d+(?:\.\d+)?)\s*(ms|s)\b", re.I)


# =============================================================================
# Reply normalization
# =============================================================================


@dataclass
class TextContent:
    """Reply content delivered as a plain string."""

    text: str


@dataclass
class PartsContent:
    """Reply content delivered as a list of typed parts."""

    parts: List[str]


ReplyContent = Union[TextContent, PartsContent]


def parse_content(raw: Any) -> ReplyContent:
    """
    Tag a raw content value as either plain text or a list of parts.

    Parts may be bare strings or objects carrying a ``text`` field; parts
    without text (images, annotations, refusals without text) are skipped.
    """
    if isinstance(raw, str):
        return TextContent(raw)
    if isinstance(raw, list):
        parts = []
        for part in raw:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return PartsContent(parts)
    raise UpstreamError(f"Unexpected reply content type: {type(raw).__name__}")


def content_text(content: ReplyContent) -> str:
    """Collapse tagged content into one text value."""
    if isinstance(content, TextContent):
        return content.text
    return "".join(content.parts)


def normalize_reply(payload: Mapping[str, Any]) -> str:
    """
    Extract the assistant reply text from an upstream payload.

    Accepts the Responses shape (``output_text`` or ``output`` message items)
    and the older chat-completions shape (``choices[0].message.content``).

    Raises:
        UpstreamError: If no reply text can be found
    """
    output_text = payload.get("output_text")
    if isinstance(output_text, str) and output_text.strip():
        return output_text.strip()

    texts = []
    for item in payload.get("output") or []:
        if not isinstance(item, dict) or item.get("type", "message") != "message":
            continue
        if "content" in item:
            texts.append(content_text(parse_content(item["content"])))

    if not texts:
        choices = payload.get("choices") or []
        if choices and isinstance(choices[0], dict):
            message = choices[0].get("message") or {}
            if "content" in message and message["content"] is not None:
                texts.append(content_text(parse_content(message["content"])))

    text = "".join(texts).strip()
    if not text:
        raise UpstreamError("Upstream returned an empty reply")
    return text


# =============================================================================
# Rate limit parsing
# =============================================================================


def parse_retry_after(
    headers: Optional[Mapping[str, str]] = None, message: Optional[str] = None
) -> int:
    """
    Work out how many whole seconds to wait before retrying.

    Checks ``retry-after-ms``, then ``retry-after``, then a "try again in"
    hint inside the error message. Always returns at least one second.
    """
    seconds: Optional[float] = None
    headers = headers or {}

    raw_ms = headers.get("retry-after-ms")
    raw_s = headers.get("retry-after")
    try:
        if raw_ms is not None:
            seconds = float(raw_ms) / 1000.0
        elif raw_s is not None:
            seconds = float(raw_s)
    except ValueError:
        seconds = None

    if seconds is None and message:
        match = RETRY_HINT_PATTERN.search(message)
        if match:
            value = float(match.group(1))
            seconds = value / 1000.0 if match.group(2).lower() == "ms" else value

    if seconds is None:
        return DEFAULT_RETRY_AFTER
    return max(1, math.ceil(seconds))


# =============================================================================
# Client
# =============================================================================


@dataclass
class CompletionResult:
    """Reply text plus the continuation token for the next turn."""

    text: str
    response_id: Optional[str]


class CompletionClient:
    """
    Client for the upstream completion API.

    Args:
        api_key: API credential
        model: Model name
        api_base: Base URL of the API
        temperature: Sampling temperature
        vector_store_id: Optional knowledge base bound through file search
        timeout: Upper bound on one completion call, in seconds
        http_client: Optional pre-built client (used by tests)
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-4o-mini",
        api_base: str = "https://api.openai.com/v1",
        temperature: float = 0.7,
        vector_store_id: Optional[str] = None,
        timeout: float = 55.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.url = f"{api_base.rstrip('/')}/responses"
        self.temperature = temperature
        self.vector_store_id = vector_store_id
        self.timeout = timeout
        self._client = http_client

    def build_payload(
        self,
        user_text: str,
        instruction: Optional[str] = None,
        previous_response_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build the upstream request body for one user turn."""
        messages: List[Dict[str, str]] = []
        if previous_response_id is None and instruction:
            messages.append({"role": "system", "content": instruction})
        messages.append({"role": "user", "content": user_text})

        payload: Dict[str, Any] = {
            "model": self.model,
            "input": messages,
            "temperature": self.temperature,
        }
        if previous_response_id:
            payload["previous_response_id"] = previous_response_id
        if self.vector_store_id:
            payload["tools"] = [
                {"type": "file_search", "vector_store_ids": [self.vector_store_id]}
            ]
        return payload

    async def complete(
        self,
        user_text: str,
        instruction: Optional[str] = None,
        previous_response_id: Optional[str] = None,
    ) -> CompletionResult:
        """
        Request a reply for the newest user turn.

        Raises:
            UpstreamRateLimitedError: On HTTP 429
            UpstreamTimeoutError: If the call exceeds the timeout
            UpstreamError: On any other failure
        """
        payload = self.build_payload(user_text, instruction, previous_response_id)
        logger.debug(
            f"Upstream request: model={self.model}, "
            f"continuation={previous_response_id is not None}"
        )

        try:
            response = await asyncio.wait_for(self._post(payload), self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.error(f"Upstream completion timed out after {self.timeout}s")
            raise UpstreamTimeoutError(
                f"Upstream completion timed out after {self.timeout:g} seconds"
            )
        except httpx.HTTPError as e:
            logger.error(f"Upstream request failed: {e}")
            raise UpstreamError(f"Upstream request failed: {e}")

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        error = data.get("error")
        message = None
        if isinstance(error, dict):
            message = error.get("message")
        elif isinstance(error, str):
            message = error

        if response.status_code == 429:
            retry_after = parse_retry_after(response.headers, message)
            logger.warning(f"Upstream rate limited, retry after {retry_after}s")
            raise UpstreamRateLimitedError(
                message or "Rate limit exceeded", retry_after=retry_after
            )

        if response.status_code >= 400 or error:
            logger.error(f"Upstream error {response.status_code}: {message}")
            raise UpstreamError(
                message or f"Upstream request failed with status {response.status_code}"
            )

        text = normalize_reply(data)
        return CompletionResult(text=text, response_id=data.get("id"))

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        if self._client is not None:
            return await self._client.post(self.url, json=payload, headers=headers)

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.url, json=payload, headers=headers)
