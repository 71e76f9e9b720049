"""
Speech synthesis for the chat relay.

This module provides text-to-speech synthesis with pluggable backends.
Every backend can return a whole payload or stream the encoded audio as it
is produced, so the relay can forward bytes before synthesis finishes.
"""

import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional

import httpx

from voicechat.exceptions import SynthesisError

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 4096


def _prepare_text_for_tts(text: str) -> str:
    """
    Preprocess text for better TTS pronunciation.

    Handles special characters like percentages, temperatures, etc.
    """
    replacements = {
        "%": " percent",
        "°C": " degrees Celsius",
        "°F": " degrees Fahrenheit",
        "°": " degrees",
    }

    for original, replacement in replacements.items():
        text = text.replace(original, replacement)

    # Strip markdown annotations like *nods*
    result = ""
    in_annotation = False
    for ch in text:
        if ch == "*":
            in_annotation = not in_annotation
        elif not in_annotation:
            result += ch

    return " ".join(result.split())


class SpeechSynthesizer(ABC):
    """
    Abstract base class for text-to-speech synthesizers.

    Subclasses must implement ``stream``; ``synthesize`` collects it.
    """

    media_type = "audio/mpeg"

    @abstractmethod
    def stream(self, text: str) -> AsyncIterator[bytes]:
        """
        Synthesize speech, yielding encoded audio as it arrives.

        Raises:
            SynthesisError: If the backend fails
        """

    async def synthesize(self, text: str) -> bytes:
        """Synthesize speech and return the whole encoded payload."""
        audio = bytearray()
        async for chunk in self.stream(text):
            audio.extend(chunk)
        return bytes(audio)


class OpenAISpeechSynthesizer(SpeechSynthesizer):
    """
    Synthesizer using an OpenAI-compatible ``/audio/speech`` endpoint.

    The endpoint streams mp3 bytes as they are generated.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "tts-1",
        voice: str = "alloy",
        api_base: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the synthesizer.

        Args:
            api_key: API credential
            model: TTS model name
            voice: Voice name
            api_base: Base URL of the API
            timeout: Request timeout in seconds
            http_client: Optional pre-built client (used by tests)
        """
        self.api_key = api_key
        self.model = model
        self.voice = voice
        self.url = f"{api_base.rstrip('/')}/audio/speech"
        self.timeout = timeout
        self._client = http_client

    def _request_args(self, text: str) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "model": self.model,
            "voice": self.voice,
            "input": _prepare_text_for_tts(text),
            "response_format": "mp3",
        }
        return {"json": payload, "headers": headers}

    async def stream(self, text: str) -> AsyncIterator[bytes]:
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            async with client.stream(
                "POST", self.url, **self._request_args(text)
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    logger.error(
                        f"Speech synthesis failed: {response.status_code} "
                        f"{body[:200]!r}"
                    )
                    raise SynthesisError(
                        f"Speech synthesis failed with status {response.status_code}"
                    )
                async for chunk in response.aiter_bytes(STREAM_CHUNK_SIZE):
                    if chunk:
                        yield chunk
        except httpx.HTTPError as e:
            logger.error(f"Speech synthesis request failed: {e}")
            raise SynthesisError(f"Speech synthesis request failed: {e}")
        finally:
            if self._client is None:
                await client.aclose()


class EdgeSpeechSynthesizer(SpeechSynthesizer):
    """
    Synthesizer using Microsoft Edge TTS.

    Free TTS service with good quality voices; produces mp3.
    """

    def __init__(
        self,
        voice: str = "en-US-GuyNeural",
        rate: str = "+0%",
        volume: str = "+0%",
    ):
        """
        Initialize the Edge TTS synthesizer.

        Args:
            voice: Voice name (e.g., "en-US-GuyNeural", "en-US-JennyNeural")
            rate: Speech rate adjustment (e.g., "+10%", "-20%")
            volume: Volume adjustment (e.g., "+10%", "-20%")
        """
        self.voice = voice
        self.rate = rate
        self.volume = volume

    async def stream(self, text: str) -> AsyncIterator[bytes]:
        import edge_tts

        communicate = edge_tts.Communicate(
            _prepare_text_for_tts(text),
            voice=self.voice,
            rate=self.rate,
            volume=self.volume,
        )

        try:
            async for chunk in communicate.stream():
                if chunk["type"] == "audio" and chunk["data"]:
                    yield chunk["data"]
        except Exception as e:
            logger.error(f"Edge TTS failed: {e}")
            raise SynthesisError(f"Edge TTS failed: {e}")


def create_synthesizer(
    backend: str = "openai",
    **kwargs,
) -> SpeechSynthesizer:
    """
    Create a synthesizer with the specified backend.

    Args:
        backend: Backend type ("openai", "edge")
        **kwargs: Additional arguments passed to the synthesizer

    Returns:
        SpeechSynthesizer instance
    """
    backends = {
        "openai": OpenAISpeechSynthesizer,
        "edge": EdgeSpeechSynthesizer,
    }

    if backend not in backends:
        raise ValueError(
            f"Unknown backend: {backend}. Available: {list(backends.keys())}"
        )

    return backends[backend](**kwargs)
