"""
Request/Retry client for the chat endpoint.

Sends one conversation turn to the relay and hands back the reply text, the
continuation token and the reply audio as an async byte iterator. Rate-limit
responses are retried in a bounded loop after the advised wait.
"""

import asyncio
import base64
import binascii
import logging
import math
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Optional,
    Sequence,
)
from urllib.parse import unquote

import httpx
from pydantic import ValidationError

from voicechat.exceptions import ChatRequestError, RateLimitExceededError
from voicechat.serve.protocol import (
    REPLY_TEXT_HEADER,
    RESPONSE_ID_HEADER,
    ChatRequest,
    ChatResponse,
    Turn,
)

logger = logging.getLogger(__name__)

AUDIO_SEGMENT_SIZE = 16 * 1024
DEFAULT_RETRY_AFTER = 1


@dataclass
class ChatReply:
    """Reply to one turn."""

    text: str
    previous_response_id: Optional[str]
    audio: AsyncIterator[bytes]
    streamed: bool = False
    _response: Optional[httpx.Response] = field(default=None, repr=False)

    async def aclose(self) -> None:
        """Release the underlying response if the audio was not consumed."""
        aclose = getattr(self.audio, "aclose", None)
        if aclose is not None:
            await aclose()
        if self._response is not None:
            await self._response.aclose()


async def _segments(
    data: bytes, size: int = AUDIO_SEGMENT_SIZE
) -> AsyncIterator[bytes]:
    for start in range(0, len(data), size):
        yield data[start : start + size]


async def _stream_body(response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    except httpx.HTTPError as e:
        raise ChatRequestError(f"Audio stream interrupted: {e}")
    finally:
        await response.aclose()


class ChatTransport:
    """
    HTTP client for ``POST /api/chat``.

    Args:
        server_url: Full URL of the chat endpoint
        max_attempts: Total attempts per turn while rate limited
        timeout: Request timeout in seconds
        stream: Ask the relay to stream audio by default
        http_client: Optional pre-built client (used by tests)
        sleep: Coroutine used to wait between retries
    """

    def __init__(
        self,
        server_url: str = "http://localhost:8000/api/chat",
        max_attempts: int = 5,
        timeout: float = 60.0,
        stream: bool = True,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.server_url = server_url
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.stream = stream
        self._client = http_client
        self._owns_client = http_client is None
        self._sleep = sleep

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def build_body(
        self,
        conversation: Sequence[Turn],
        previous_response_id: Optional[str] = None,
        stream: Optional[bool] = None,
    ) -> Dict[str, Any]:
        request = ChatRequest(
            conversation=list(conversation),
            previous_response_id=previous_response_id,
            stream=self.stream if stream is None else stream,
        )
        return request.model_dump(mode="json", exclude_none=True)

    async def send(
        self,
        conversation: Sequence[Turn],
        previous_response_id: Optional[str] = None,
        stream: Optional[bool] = None,
        on_status: Optional[Callable[[str], None]] = None,
    ) -> ChatReply:
        """
        Send a turn and return the reply.

        The identical request is re-issued after each rate-limit response
        that asks for a retry, up to ``max_attempts`` attempts in total.

        Raises:
            RateLimitExceededError: If still rate limited after the last attempt
            ChatRequestError: On network failure, error status or malformed body
        """
        body = self.build_body(conversation, previous_response_id, stream)

        for attempt in range(1, self.max_attempts + 1):
            response = await self._post(body)

            if response.status_code == 429:
                data = await self._read_json(response)
                if not data.get("shouldRetry"):
                    raise ChatRequestError(
                        data.get("error") or "Rate limit exceeded", status_code=429
                    )
                if attempt >= self.max_attempts:
                    logger.error(f"Still rate limited after {attempt} attempts")
                    raise RateLimitExceededError(
                        f"Rate limit exceeded after {attempt} attempts",
                        attempts=attempt,
                    )
                retry_after = _retry_after(data)
                logger.warning(
                    f"Rate limited (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {retry_after}s"
                )
                if on_status:
                    on_status(f"Rate limited, retrying in {retry_after} seconds...")
                await self._sleep(retry_after)
                continue

            if not response.is_success:
                data = await self._read_json(response)
                message = data.get("error") or (
                    f"Request failed with status {response.status_code}"
                )
                logger.error(f"Chat request failed: {response.status_code} {message}")
                raise ChatRequestError(message, status_code=response.status_code)

            return await self._build_reply(response)

        # Unreachable: the loop either returns or raises
        raise RateLimitExceededError("Rate limit exceeded", attempts=self.max_attempts)

    async def _post(self, body: Dict[str, Any]) -> httpx.Response:
        client = self._get_client()
        request = client.build_request("POST", self.server_url, json=body)
        try:
            return await client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error(f"Chat request failed: {e}")
            raise ChatRequestError(f"Network error: {e}")

    async def _read_json(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            await response.aread()
            data = response.json()
        except (httpx.HTTPError, ValueError):
            data = {}
        finally:
            await response.aclose()
        return data if isinstance(data, dict) else {}

    async def _build_reply(self, response: httpx.Response) -> ChatReply:
        content_type = response.headers.get("content-type", "")

        if content_type.startswith("audio/"):
            text = unquote(response.headers.get(REPLY_TEXT_HEADER, ""))
            return ChatReply(
                text=text,
                previous_response_id=response.headers.get(RESPONSE_ID_HEADER),
                audio=_stream_body(response),
                streamed=True,
                _response=response,
            )

        try:
            await response.aread()
            reply = ChatResponse.model_validate(response.json())
            audio = b""
            if reply.audio:
                audio = base64.b64decode(reply.audio, validate=True)
        except httpx.HTTPError as e:
            raise ChatRequestError(f"Network error: {e}")
        except (ValueError, ValidationError, binascii.Error) as e:
            logger.error(f"Malformed chat response: {e}")
            raise ChatRequestError("Malformed response from server")
        finally:
            await response.aclose()

        return ChatReply(
            text=reply.reply,
            previous_response_id=reply.previous_response_id,
            audio=_segments(audio),
        )


def _retry_after(data: Dict[str, Any]) -> int:
    value = data.get("retryAfter")
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER
    return max(math.ceil(seconds), 0)
