"""
Streaming Audio Receiver.

This module turns a chunked audio byte stream into progressive playback.
Each assistant utterance gets an AudioSession driven by its own asyncio
task:

- a reader task moves chunks from the network into a bounded queue
- the session task is the only appender: it awaits each sink append before
  taking the next chunk, so appends are serialized and in arrival order
- playback starts once enough bytes are buffered, not at end of stream
- end of stream is signalled after the queue drains, with a retry and a
  duration-based fallback when the sink refuses to close

Cancelling the session task is the single way to stop a session: it stops
the network read, drops queued chunks and releases the sink and element.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterable, Callable, Optional, Set

from voicechat.exceptions import (
    ChatRequestError,
    PlaybackBlockedError,
    PlaybackError,
    SinkStateError,
)
from voicechat.voice.sink import (
    MediaSink,
    OutputFactory,
    PlaybackElement,
    SinkState,
    create_ffplay_output,
)

logger = logging.getLogger(__name__)

_END = object()
_session_ids = itertools.count(1)


class SessionState(Enum):
    """Lifecycle of an audio session."""

    PENDING = "pending"  # Waiting for the sink to open
    BUFFERING = "buffering"  # Receiving, not yet audible
    PLAYING = "playing"  # Audible
    ENDED = "ended"  # Finished normally (including empty streams)
    ERROR = "error"  # Failed; see AudioSession.error
    CANCELLED = "cancelled"  # Stopped by the user


FINAL_STATES = frozenset(
    {SessionState.ENDED, SessionState.ERROR, SessionState.CANCELLED}
)


@dataclass
class ReceiverSettings:
    """Tuning for the streaming receiver."""

    play_threshold_bytes: int = 16 * 1024
    max_pending_chunks: int = 64
    open_timeout: float = 5.0
    close_retry_delay: float = 0.25
    duration_margin: float = 0.5
    duration_poll_interval: float = 0.05
    duration_wait_timeout: float = 5.0


@dataclass
class ReceiverCallbacks:
    """Callbacks for session events."""

    on_playing: Optional[Callable[["AudioSession"], None]] = None
    on_finished: Optional[Callable[["AudioSession"], None]] = None


class _ReadFailure:
    """Wraps an exception raised while reading the byte stream."""

    def __init__(self, error: Exception):
        self.error = error


class AudioSession:
    """
    One synthesized-speech playback, from first byte to completion.

    The sink and element belong to the session; outside callers control it
    only through ``cancel()`` and ``notify_user_interaction()``.
    """

    def __init__(self, sink: MediaSink, element: PlaybackElement):
        self.id = next(_session_ids)
        self.state = SessionState.PENDING
        self.buffering = False
        self.playing = False
        self.bytes_received = 0
        self.chunks_appended = 0
        self.empty = False
        self.ended_by_heuristic = False
        self.error: Optional[str] = None
        self.started_at: Optional[float] = None

        self._sink = sink
        self._element = element
        self._task: Optional[asyncio.Task] = None
        self._play_requested = False
        self._deferred_play: Optional[asyncio.Task] = None
        self._interaction = asyncio.Event()

    def __repr__(self) -> str:
        return f"<AudioSession {self.id} {self.state.value}>"

    @property
    def done(self) -> bool:
        return self.state in FINAL_STATES

    @property
    def awaiting_interaction(self) -> bool:
        """Whether playback is deferred until the next user interaction."""
        return self._deferred_play is not None and not self._deferred_play.done()

    def notify_user_interaction(self) -> None:
        """Retry a deferred playback start."""
        self._interaction.set()

    def cancel(self) -> None:
        """Stop the session: network read, queue, sink and output."""
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> SessionState:
        """Wait for the session to finish and return its final state."""
        if self._task is not None:
            await asyncio.wait({self._task})
        return self.state

    async def stop(self) -> SessionState:
        """Cancel the session and wait until its resources are released."""
        self.cancel()
        return await self.wait()


class StreamingAudioReceiver:
    """
    Feeds chunked audio streams into buffered sinks for progressive playback.
    """

    def __init__(
        self,
        output_factory: Optional[OutputFactory] = None,
        settings: Optional[ReceiverSettings] = None,
        callbacks: Optional[ReceiverCallbacks] = None,
    ):
        """
        Initialize the receiver.

        Args:
            output_factory: Creates a (sink, element) pair per session
            settings: Receiver tuning (uses defaults if not provided)
            callbacks: Optional callbacks for session events
        """
        self.output_factory = output_factory or create_ffplay_output
        self.settings = settings or ReceiverSettings()
        self.callbacks = callbacks or ReceiverCallbacks()
        self._sessions: Set[AudioSession] = set()

    @property
    def active_sessions(self) -> Set[AudioSession]:
        return set(self._sessions)

    def consume(self, byte_stream: AsyncIterable[bytes]) -> AudioSession:
        """
        Start receiving a byte stream.

        Returns immediately with the session; playback begins as soon as
        enough audio is buffered.
        """
        sink, element = self.output_factory()
        session = AudioSession(sink, element)
        self._sessions.add(session)
        session._task = asyncio.create_task(
            self._run(session, byte_stream), name=f"audio_session_{session.id}"
        )
        logger.debug(f"Audio session {session.id} created")
        return session

    def notify_user_interaction(self) -> None:
        """Forward a user interaction to every live session."""
        for session in list(self._sessions):
            session.notify_user_interaction()

    # -------------------------------------------------------------------------
    # Session task
    # -------------------------------------------------------------------------

    async def _run(self, session: AudioSession, byte_stream: AsyncIterable[bytes]):
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.settings.max_pending_chunks)
        reader: Optional[asyncio.Task] = None

        try:
            await asyncio.wait_for(
                session._sink.wait_open(), timeout=self.settings.open_timeout
            )
            session.state = SessionState.BUFFERING
            session.buffering = True

            reader = asyncio.create_task(
                self._read(session, byte_stream, queue),
                name=f"audio_reader_{session.id}",
            )

            while True:
                item = await queue.get()
                if item is _END:
                    break
                if isinstance(item, _ReadFailure):
                    raise ChatRequestError(f"Audio stream failed: {item.error}")

                await session._sink.append(item)
                session.chunks_appended += 1

                if (
                    not session._play_requested
                    and session._sink.buffered_bytes
                    >= self.settings.play_threshold_bytes
                ):
                    await self._start_playback(session)

            session.buffering = False

            if session.bytes_received == 0:
                logger.info(f"Audio session {session.id}: empty stream")
                session.empty = True
                await self._close_sink(session)
                session.state = SessionState.ENDED
                return

            closed = await self._close_sink(session)
            if not session._play_requested:
                await self._start_playback(session)
            await self._wait_for_end(session, closed)
            session.state = SessionState.ENDED
            logger.info(
                f"Audio session {session.id} ended "
                f"({session.bytes_received} bytes, {session.chunks_appended} chunks)"
            )

        except asyncio.CancelledError:
            session.state = SessionState.CANCELLED
            logger.info(f"Audio session {session.id} cancelled")
            raise
        except asyncio.TimeoutError:
            session.state = SessionState.ERROR
            session.error = "Audio output did not open in time"
            logger.error(f"Audio session {session.id}: {session.error}")
        except Exception as e:
            session.state = SessionState.ERROR
            session.error = _describe(e)
            logger.error(f"Audio session {session.id} failed: {session.error}")
        finally:
            session.buffering = False
            session.playing = False
            if reader is not None and not reader.done():
                reader.cancel()
                await asyncio.gather(reader, return_exceptions=True)
            _drain(queue)
            self._release(session)
            self._sessions.discard(session)
            if self.callbacks.on_finished:
                self.callbacks.on_finished(session)

    async def _read(
        self,
        session: AudioSession,
        byte_stream: AsyncIterable[bytes],
        queue: asyncio.Queue,
    ) -> None:
        """Reader task: network -> pending chunk queue."""
        try:
            async for chunk in byte_stream:
                if not chunk:
                    continue
                session.bytes_received += len(chunk)
                await queue.put(bytes(chunk))
            await queue.put(_END)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await queue.put(_ReadFailure(e))
        finally:
            aclose = getattr(byte_stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _start_playback(self, session: AudioSession) -> None:
        session._play_requested = True
        try:
            await session._element.play()
        except PlaybackBlockedError:
            logger.info(
                f"Audio session {session.id}: playback blocked, "
                "waiting for user interaction"
            )
            session._interaction.clear()
            session._deferred_play = asyncio.create_task(
                self._play_after_interaction(session),
                name=f"audio_deferred_play_{session.id}",
            )
            return
        self._mark_playing(session)

    async def _play_after_interaction(self, session: AudioSession) -> None:
        while True:
            await session._interaction.wait()
            session._interaction.clear()
            try:
                await session._element.play()
            except PlaybackBlockedError:
                logger.debug(f"Audio session {session.id}: still blocked")
                continue
            self._mark_playing(session)
            return

    def _mark_playing(self, session: AudioSession) -> None:
        session.state = SessionState.PLAYING
        session.playing = True
        session.started_at = asyncio.get_running_loop().time()
        logger.info(f"Audio session {session.id} playing")
        if self.callbacks.on_playing:
            self.callbacks.on_playing(session)

    async def _close_sink(self, session: AudioSession) -> bool:
        """Signal end of stream, retrying once; False if it never took."""
        for attempt in range(2):
            try:
                session._sink.end_of_stream()
                return True
            except SinkStateError as e:
                if attempt == 0:
                    logger.debug(
                        f"Audio session {session.id}: end of stream refused ({e}), "
                        "retrying"
                    )
                    await asyncio.sleep(self.settings.close_retry_delay)
                else:
                    logger.warning(
                        f"Audio session {session.id}: end of stream refused ({e}), "
                        "falling back to duration"
                    )
        return False

    async def _wait_for_end(self, session: AudioSession, closed: bool) -> None:
        if session._deferred_play is not None:
            await session._deferred_play

        if closed:
            await session._element.wait_ended()
            return

        duration = await self._wait_for_duration(session)
        loop = asyncio.get_running_loop()
        started_at = session.started_at
        if started_at is None:
            started_at = loop.time()
        remaining = started_at + duration + self.settings.duration_margin - loop.time()

        ended = asyncio.create_task(session._element.wait_ended())
        try:
            done, _ = await asyncio.wait({ended}, timeout=max(0.0, remaining))
        finally:
            ended.cancel()
        for task in done:
            task.result()
        if not done:
            session.ended_by_heuristic = True
            logger.info(
                f"Audio session {session.id}: assuming playback ended "
                f"after {duration:.2f}s"
            )

    async def _wait_for_duration(self, session: AudioSession) -> float:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.duration_wait_timeout
        while True:
            duration = session._element.duration
            if duration is not None:
                return duration
            if loop.time() >= deadline:
                raise PlaybackError("Could not determine when playback ends")
            await asyncio.sleep(self.settings.duration_poll_interval)

    def _release(self, session: AudioSession) -> None:
        if session._deferred_play is not None and not session._deferred_play.done():
            session._deferred_play.cancel()

        if session._sink.ready_state == SinkState.OPEN:
            try:
                session._sink.abort()
            except Exception as e:
                logger.debug(f"Audio session {session.id}: sink abort failed: {e}")

        if session.state != SessionState.ENDED:
            try:
                session._element.pause()
            except Exception as e:
                logger.debug(f"Audio session {session.id}: pause failed: {e}")
        try:
            session._element.close()
        except Exception as e:
            logger.debug(f"Audio session {session.id}: close failed: {e}")


def _drain(queue: asyncio.Queue) -> None:
    while not queue.empty():
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            break


def _describe(error: Exception) -> str:
    message = str(error) or type(error).__name__
    if isinstance(error, PlaybackError):
        return f"Playback failed: {message}"
    return message
