"""
Voice chat client.

Wires the conversation store, the request/retry transport, the streaming
audio receiver and the playback/microphone coordinator into one object that
a front end (the terminal CLI, or tests) drives with user actions:

- send_message(): typed or spoken turn
- start_listening() / stop_listening(): microphone toggle
- interrupt(): stop the agent, optionally listening afterwards
- clear(): forget the conversation and its continuation token
"""

import asyncio
import functools
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from voicechat.exceptions import ChatRequestError, RateLimitExceededError
from voicechat.serve.config import env_bool
from voicechat.serve.protocol import Role
from voicechat.voice.capture import ConsoleCapture, SpeechCapture
from voicechat.voice.coordinator import (
    CoordinatorCallbacks,
    InteractionMode,
    PlaybackCoordinator,
)
from voicechat.voice.receiver import (
    AudioSession,
    ReceiverCallbacks,
    ReceiverSettings,
    SessionState,
    StreamingAudioReceiver,
)
from voicechat.voice.sink import create_ffplay_output
from voicechat.voice.store import ConversationStore, default_store_path
from voicechat.voice.transport import ChatTransport

logger = logging.getLogger(__name__)


@dataclass
class VoiceChatSettings:
    """Settings for the voice chat client."""

    # Server connection
    server_url: str = "http://localhost:8000/api/chat"
    stream_audio: bool = True
    max_attempts: int = 5
    request_timeout: float = 60.0

    # Conversation persistence
    store_path: Optional[str] = None

    # Microphone re-arm
    rearm_delay: float = 0.5
    error_rearm_delay: Optional[float] = None

    # Playback
    play_threshold_bytes: int = 16 * 1024
    player_bitrate: int = 128_000

    # Metrics
    metrics_enabled: bool = True

    @classmethod
    def from_env(cls) -> "VoiceChatSettings":
        """Create settings from environment variables."""
        error_rearm = os.environ.get("VOICECHAT_ERROR_REARM_DELAY")
        return cls(
            server_url=os.environ.get(
                "VOICECHAT_SERVER_URL", "http://localhost:8000/api/chat"
            ),
            stream_audio=env_bool("VOICECHAT_STREAM_AUDIO", True),
            max_attempts=int(os.environ.get("VOICECHAT_MAX_ATTEMPTS", "5")),
            request_timeout=float(os.environ.get("VOICECHAT_REQUEST_TIMEOUT", "60")),
            store_path=os.environ.get("VOICECHAT_STORE_PATH") or None,
            rearm_delay=float(os.environ.get("VOICECHAT_REARM_DELAY", "0.5")),
            error_rearm_delay=float(error_rearm) if error_rearm else None,
            play_threshold_bytes=int(
                os.environ.get("VOICECHAT_PLAY_THRESHOLD", str(16 * 1024))
            ),
            metrics_enabled=env_bool("STATSD_ENABLED", True),
        )


@dataclass
class ClientCallbacks:
    """Callbacks for user-visible client events."""

    on_status: Optional[Callable[[str], None]] = None
    on_reply: Optional[Callable[[str], None]] = None
    on_error: Optional[Callable[[str], None]] = None
    on_mode_change: Optional[Callable[[InteractionMode], None]] = None


class VoiceChatClient:
    """
    Voice and text chat against the relay's ``/api/chat`` endpoint.

    Only one request is in flight at a time. A new turn stops any reply that
    is still playing.
    """

    def __init__(
        self,
        settings: Optional[VoiceChatSettings] = None,
        store: Optional[ConversationStore] = None,
        transport: Optional[ChatTransport] = None,
        receiver: Optional[StreamingAudioReceiver] = None,
        capture: Optional[SpeechCapture] = None,
        callbacks: Optional[ClientCallbacks] = None,
        metrics=None,
    ):
        """
        Initialize the client.

        Args:
            settings: Client settings (uses defaults if not provided)
            store: Conversation store (persisted at the default path if omitted)
            transport: Request/retry transport
            receiver: Streaming audio receiver (ffplay output if omitted)
            capture: Speech capture adapter (console capture if omitted)
            callbacks: Optional callbacks for user-visible events
            metrics: Metrics client; created from the environment if omitted
                and metrics are enabled
        """
        self.settings = settings or VoiceChatSettings()
        self.callbacks = callbacks or ClientCallbacks()

        if store is None:
            path = self.settings.store_path or default_store_path()
            store = ConversationStore.open(Path(path))
        self.store = store

        self.transport = transport or ChatTransport(
            server_url=self.settings.server_url,
            max_attempts=self.settings.max_attempts,
            timeout=self.settings.request_timeout,
            stream=self.settings.stream_audio,
        )

        receiver_callbacks = ReceiverCallbacks(
            on_playing=self._on_session_playing,
            on_finished=self._on_session_finished,
        )
        if receiver is None:
            receiver = StreamingAudioReceiver(
                output_factory=functools.partial(
                    create_ffplay_output, bitrate=self.settings.player_bitrate
                ),
                settings=ReceiverSettings(
                    play_threshold_bytes=self.settings.play_threshold_bytes
                ),
            )
        receiver.callbacks = receiver_callbacks
        self.receiver = receiver

        self.capture = capture or ConsoleCapture()
        self.capture.on_final = self._on_utterance

        self.coordinator = PlaybackCoordinator(
            capture=self.capture,
            rearm_delay=self.settings.rearm_delay,
            error_rearm_delay=self.settings.error_rearm_delay,
            callbacks=CoordinatorCallbacks(
                on_mode_change=self._on_mode_change,
                on_rearm=lambda: self._incr("microphone.rearm"),
                on_interrupt=lambda: self._incr("client.interrupt"),
            ),
        )

        self._in_flight = False
        self._request: Optional[asyncio.Task] = None
        self._pending_sends: set = set()

        self._metrics = metrics
        self._owns_metrics = False
        if self._metrics is None and self.settings.metrics_enabled:
            from voicechat.voice.metrics import create_metrics_client

            self._metrics = create_metrics_client()
            self._owns_metrics = True

    def _incr(self, name: str, value: int = 1) -> None:
        """Increment a counter metric."""
        if self._metrics:
            self._metrics.incr(name, value)

    def _timing(self, name: str, value_ms: float) -> None:
        """Record a timing metric."""
        if self._metrics:
            self._metrics.timing(name, value_ms)

    @property
    def mode(self) -> InteractionMode:
        return self.coordinator.mode

    @property
    def busy(self) -> bool:
        """Whether a request is in flight."""
        return self._in_flight

    # =========================================================================
    # User actions
    # =========================================================================

    async def send_message(self, text: str, from_voice: bool = False) -> Optional[str]:
        """
        Send one user turn and start playing the reply.

        Args:
            text: Typed or transcribed text
            from_voice: Whether the turn came from speech capture

        Returns:
            The reply text, or None if the turn was not sent or failed
        """
        text = text.strip()
        if not text:
            return None
        if self._in_flight:
            self._status("Still waiting for the previous reply")
            return None

        self._in_flight = True
        try:
            if self.coordinator.active_session is not None:
                await self.coordinator.interrupt()
            self.coordinator.begin_turn(from_voice=from_voice)
            self.store.append(Role.USER, text)
            self._incr("request.sent")

            request = asyncio.get_running_loop().create_task(
                self._exchange(), name="chat_request"
            )
            self._request = request
            try:
                await asyncio.wait({request})
            except asyncio.CancelledError:
                request.cancel()
                raise
        finally:
            self._request = None
            self._in_flight = False

        if request.cancelled():
            logger.info("Turn interrupted before the reply arrived")
            self._incr("request.interrupted")
            return None
        return request.result()

    def submit_message(self, text: str, from_voice: bool = False) -> asyncio.Task:
        """
        Send a turn in the background so the caller can keep handling input.

        Returns:
            The task running send_message()
        """
        task = asyncio.get_running_loop().create_task(
            self.send_message(text, from_voice=from_voice), name="chat_turn"
        )
        self._pending_sends.add(task)
        task.add_done_callback(self._pending_sends.discard)
        return task

    async def _cancel_request(self) -> None:
        """Abandon the in-flight request so its reply is never played."""
        request = self._request
        if request is None or request.done():
            return
        logger.info("Cancelling in-flight chat request")
        request.cancel()
        await asyncio.wait({request})

    async def _exchange(self) -> Optional[str]:
        start = time.monotonic()
        try:
            reply = await self.transport.send(
                self.store.turns,
                previous_response_id=self.store.previous_response_id,
                on_status=self._on_retry_status,
            )
        except RateLimitExceededError as e:
            self._incr("request.rate_limit_exceeded")
            self._fail(str(e))
            return None
        except ChatRequestError as e:
            self._incr("request.error")
            self._fail(str(e))
            return None

        self._timing("request.latency", (time.monotonic() - start) * 1000)
        logger.info(f"Reply received: {reply.text[:50]}")

        self.store.append(Role.ASSISTANT, reply.text)
        self.store.set_previous_response_id(reply.previous_response_id)
        if self.callbacks.on_reply:
            self.callbacks.on_reply(reply.text)

        session = self.receiver.consume(reply.audio)
        self.coordinator.attach(session)
        self._incr("session.started")
        return reply.text

    def start_listening(self) -> bool:
        """Turn the microphone on; refused while the agent is speaking."""
        self.receiver.notify_user_interaction()
        return self.coordinator.start_listening()

    def stop_listening(self) -> None:
        self.receiver.notify_user_interaction()
        self.coordinator.stop_listening()

    async def interrupt(self, listen_after: bool = False) -> None:
        """Stop the agent's reply, or the request still waiting for it."""
        self.receiver.notify_user_interaction()
        await self._cancel_request()
        await self.coordinator.interrupt(listen_after=listen_after)

    def notify_user_interaction(self) -> None:
        """Let deferred playback start after a user gesture."""
        self.receiver.notify_user_interaction()

    async def clear(self) -> None:
        """Stop any reply and forget the conversation."""
        await self._cancel_request()
        if self.coordinator.active_session is not None:
            await self.coordinator.interrupt()
        self.store.clear()
        self._incr("conversation.cleared")

    async def close(self) -> None:
        """Stop playback and release network resources."""
        await self._cancel_request()
        if self.coordinator.active_session is not None:
            await self.coordinator.interrupt()
        for task in list(self._pending_sends):
            task.cancel()
        await self.transport.aclose()
        if self._owns_metrics:
            self._metrics.close()

    # =========================================================================
    # Event handlers
    # =========================================================================

    def _on_utterance(self, text: str) -> None:
        """A finalized utterance from speech capture becomes a voice turn."""
        self.submit_message(text, from_voice=True)

    def _on_retry_status(self, message: str) -> None:
        self._incr("request.retry")
        self._status(message)

    def _on_session_playing(self, session: AudioSession) -> None:
        self.coordinator.session_playing(session)

    def _on_session_finished(self, session: AudioSession) -> None:
        self._incr(f"session.{session.state.value}")
        if session.state == SessionState.ENDED and session.started_at is not None:
            elapsed = asyncio.get_running_loop().time() - session.started_at
            self._timing("session.duration", elapsed * 1000)
        if session.state == SessionState.ERROR:
            self._error(session.error or "Playback failed")
        self.coordinator.session_finished(session)

    def _on_mode_change(self, mode: InteractionMode) -> None:
        if self.callbacks.on_mode_change:
            self.callbacks.on_mode_change(mode)

    def _fail(self, message: str) -> None:
        logger.error(f"Turn failed: {message}")
        self._error(message)
        self.coordinator.turn_failed()

    def _status(self, message: str) -> None:
        if self.callbacks.on_status:
            self.callbacks.on_status(message)

    def _error(self, message: str) -> None:
        if self.callbacks.on_error:
            self.callbacks.on_error(message)
