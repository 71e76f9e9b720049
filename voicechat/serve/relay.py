"""
Chat relay: one conversation turn in, reply text and speech out.

The relay validates the incoming conversation, forwards the newest user turn
to the upstream completion API, synthesizes the reply once, and hands back
either the whole audio payload or a byte stream to forward.
"""

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from voicechat.exceptions import ConversationValidationError, SynthesisError
from voicechat.serve.config import RelaySettings
from voicechat.serve.instructions import get_instruction
from voicechat.serve.protocol import ChatRequest, Turn
from voicechat.serve.speech import SpeechSynthesizer, create_synthesizer
from voicechat.serve.upstream import CompletionClient

logger = logging.getLogger(__name__)


@dataclass
class RelayReply:
    """Result of relaying one turn."""

    text: str
    response_id: Optional[str]
    audio: Optional[bytes] = None
    audio_stream: Optional[AsyncIterator[bytes]] = None

    @property
    def streaming(self) -> bool:
        return self.audio_stream is not None


class ChatRelay:
    """Relays conversation turns to the upstream model and speech service."""

    def __init__(
        self,
        completion: CompletionClient,
        synthesizer: SpeechSynthesizer,
        settings: Optional[RelaySettings] = None,
    ):
        self.completion = completion
        self.synthesizer = synthesizer
        self.settings = settings or RelaySettings()

    @classmethod
    def from_settings(cls, settings: RelaySettings) -> "ChatRelay":
        """Build a relay with clients configured from settings."""
        completion = CompletionClient(
            api_key=settings.api_key,
            model=settings.model,
            api_base=settings.api_base,
            temperature=settings.temperature,
            vector_store_id=settings.vector_store_id,
            timeout=settings.completion_timeout,
        )
        if settings.tts_backend == "openai":
            synthesizer = create_synthesizer(
                "openai",
                api_key=settings.api_key,
                model=settings.tts_model,
                voice=settings.tts_voice,
                api_base=settings.api_base,
                timeout=settings.tts_timeout,
            )
        else:
            synthesizer = create_synthesizer(
                settings.tts_backend, voice=settings.tts_voice
            )
        return cls(completion, synthesizer, settings)

    def validate(self, request: ChatRequest) -> Turn:
        """
        Check the conversation and return the turn to forward.

        Raises:
            ConversationValidationError: If there is nothing to answer
        """
        if not request.conversation:
            raise ConversationValidationError("Invalid conversation history")

        user_turn = request.latest_user_turn()
        if user_turn is None or not user_turn.content.strip():
            raise ConversationValidationError("Conversation has no user message")
        return user_turn

    async def handle(self, request: ChatRequest) -> RelayReply:
        """
        Relay one turn.

        Raises:
            ConversationValidationError: If the conversation is malformed
            UpstreamError: If the completion call fails, times out or is
                rate limited
            SynthesisError: If speech synthesis fails
        """
        user_turn = self.validate(request)

        instruction = None
        if request.previous_response_id is None:
            profile = request.instruction_profile or self.settings.instruction_profile
            instruction = get_instruction(
                profile,
                instruction_file=self.settings.instruction_file,
                file_search=bool(self.settings.vector_store_id),
            )

        result = await self.completion.complete(
            user_turn.content,
            instruction=instruction,
            previous_response_id=request.previous_response_id,
        )
        logger.info(
            f"Reply received ({len(result.text)} chars, "
            f"response_id={result.response_id})"
        )

        stream = request.stream
        if stream is None:
            stream = self.settings.stream_audio

        if stream:
            audio_stream = await self._open_audio_stream(result.text)
            return RelayReply(
                text=result.text,
                response_id=result.response_id,
                audio_stream=audio_stream,
            )

        audio = await self._synthesize(result.text)
        return RelayReply(text=result.text, response_id=result.response_id, audio=audio)

    async def _synthesize(self, text: str) -> bytes:
        try:
            return await self.synthesizer.synthesize(text)
        except Exception as e:
            logger.error(f"Speech synthesis failed: {e}")
            raise SynthesisError(f"Speech synthesis failed: {e}", reply=text)

    async def _open_audio_stream(self, text: str) -> AsyncIterator[bytes]:
        """
        Start synthesis and wait for the first chunk.

        Failures before any audio exists surface as SynthesisError so the
        caller can still answer with an error status.
        """
        iterator = self.synthesizer.stream(text).__aiter__()
        try:
            first = await iterator.__anext__()
        except StopAsyncIteration:
            first = b""
        except Exception as e:
            logger.error(f"Speech synthesis failed: {e}")
            raise SynthesisError(f"Speech synthesis failed: {e}", reply=text)

        async def forward() -> AsyncIterator[bytes]:
            sent = 0
            try:
                if first:
                    sent += len(first)
                    yield first
                async for chunk in iterator:
                    sent += len(chunk)
                    yield chunk
            except Exception as e:
                logger.error(f"Audio stream aborted after {sent} bytes: {e}")
                raise
            finally:
                aclose = getattr(iterator, "aclose", None)
                if aclose is not None:
                    await aclose()
                logger.debug(f"Audio stream closed after {sent} bytes")

        return forward()
