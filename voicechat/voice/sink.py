"""
Audio sinks and playback elements.

A MediaSink receives encoded audio incrementally; a PlaybackElement plays
whatever the sink has buffered. The receiver owns one pair per audio
session. ``create_ffplay_output`` pairs both over an ``ffplay`` subprocess
fed through its stdin.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Optional, Sequence, Tuple

from voicechat.exceptions import (
    PlaybackError,
    SinkBusyError,
    SinkError,
    SinkStateError,
)

logger = logging.getLogger(__name__)

FFPLAY_COMMAND = (
    "ffplay",
    "-nodisp",
    "-autoexit",
    "-loglevel",
    "quiet",
    "-i",
    "pipe:0",
)


class SinkState(Enum):
    """Lifecycle of a media sink."""

    CLOSED = "closed"  # Not yet open, or aborted
    OPEN = "open"  # Accepting appends
    ENDED = "ended"  # End of stream signalled


class MediaSink(ABC):
    """
    Buffered target for incrementally appended audio.

    Implementations must allow at most one append in flight and raise
    SinkBusyError on a concurrent attempt.
    """

    @property
    @abstractmethod
    def ready_state(self) -> SinkState:
        """Current lifecycle state."""

    @property
    @abstractmethod
    def buffered_bytes(self) -> int:
        """Bytes appended so far."""

    @abstractmethod
    async def wait_open(self) -> None:
        """Return once the sink accepts appends."""

    @abstractmethod
    async def append(self, chunk: bytes) -> None:
        """Append a chunk and return when the append has completed."""

    @abstractmethod
    def end_of_stream(self) -> None:
        """
        Signal that no more data will be appended.

        Raises:
            SinkStateError: If the sink is not open
        """

    @abstractmethod
    def abort(self) -> None:
        """Discard buffered data and release the sink."""


class PlaybackElement(ABC):
    """Plays audio buffered in its paired sink."""

    @abstractmethod
    async def play(self) -> None:
        """
        Start playback.

        Raises:
            PlaybackBlockedError: If playback needs a user interaction first
            PlaybackError: If playback cannot start
        """

    @abstractmethod
    def pause(self) -> None:
        """Stop producing sound."""

    @property
    @abstractmethod
    def duration(self) -> Optional[float]:
        """Media duration in seconds, once known."""

    @abstractmethod
    async def wait_ended(self) -> None:
        """Return when playback reaches the end of the media."""

    @abstractmethod
    def close(self) -> None:
        """Release playback resources."""


OutputFactory = Callable[[], Tuple[MediaSink, PlaybackElement]]


# =============================================================================
# ffplay-backed output
# =============================================================================


class _FFplayProcess:
    """Shared ffplay subprocess for one sink/element pair."""

    def __init__(self, command: Sequence[str]):
        self.command = list(command)
        self.process: Optional[asyncio.subprocess.Process] = None
        self.pending = bytearray()
        self.input_closed = False
        self.ended = asyncio.Event()
        self._watcher: Optional[asyncio.Task] = None

    @property
    def started(self) -> bool:
        return self.process is not None

    async def start(self) -> None:
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            raise PlaybackError(f"Audio player not found: {self.command[0]}")

        self._watcher = asyncio.create_task(self._watch(), name="ffplay_watch")

        # Data appended before playback started
        if self.pending:
            data = bytes(self.pending)
            self.pending.clear()
            await self.write(data)
        if self.input_closed:
            self._close_stdin()

    async def _watch(self) -> None:
        await self.process.wait()
        logger.debug(f"ffplay exited with code {self.process.returncode}")
        self.ended.set()

    async def write(self, data: bytes) -> None:
        if self.process is None:
            self.pending.extend(data)
            return
        try:
            self.process.stdin.write(data)
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise SinkError(f"Audio player closed its input: {e}")

    def close_input(self) -> None:
        self.input_closed = True
        if self.process is not None:
            self._close_stdin()

    def _close_stdin(self) -> None:
        if self.process.stdin and not self.process.stdin.is_closing():
            self.process.stdin.close()

    def kill(self) -> None:
        self.pending.clear()
        if self.process is not None and self.process.returncode is None:
            self.process.kill()
        self.ended.set()


class FFplaySink(MediaSink):
    """Sink that pipes chunks into ffplay's stdin."""

    def __init__(self, proc: _FFplayProcess):
        self._proc = proc
        self._state = SinkState.OPEN
        self._buffered = 0
        self._appending = False

    @property
    def ready_state(self) -> SinkState:
        return self._state

    @property
    def buffered_bytes(self) -> int:
        return self._buffered

    async def wait_open(self) -> None:
        if self._state != SinkState.OPEN:
            raise SinkStateError(f"Sink is {self._state.value}")

    async def append(self, chunk: bytes) -> None:
        if self._appending:
            raise SinkBusyError("Another append is in progress")
        if self._state != SinkState.OPEN:
            raise SinkStateError(f"Cannot append to a {self._state.value} sink")

        self._appending = True
        try:
            await self._proc.write(chunk)
            self._buffered += len(chunk)
        finally:
            self._appending = False

    def end_of_stream(self) -> None:
        if self._state != SinkState.OPEN or self._appending:
            raise SinkStateError(f"Cannot end a {self._state.value} sink")
        self._state = SinkState.ENDED
        self._proc.close_input()

    def abort(self) -> None:
        self._state = SinkState.CLOSED
        self._proc.kill()


class FFplayElement(PlaybackElement):
    """
    Playback element driving ffplay.

    The process starts on the first ``play()``; pausing stops it for good.
    Duration is estimated from the byte count and bitrate once the paired
    sink has ended.
    """

    def __init__(self, proc: _FFplayProcess, sink: FFplaySink, bitrate: int):
        self._proc = proc
        self._sink = sink
        self._bitrate = bitrate

    async def play(self) -> None:
        if not self._proc.started:
            await self._proc.start()

    def pause(self) -> None:
        self._proc.kill()

    @property
    def duration(self) -> Optional[float]:
        if self._sink.ready_state != SinkState.ENDED or self._bitrate <= 0:
            return None
        return self._sink.buffered_bytes * 8 / self._bitrate

    async def wait_ended(self) -> None:
        await self._proc.ended.wait()

    def close(self) -> None:
        self._proc.kill()


def create_ffplay_output(
    command: Sequence[str] = FFPLAY_COMMAND,
    bitrate: int = 128_000,
) -> Tuple[MediaSink, PlaybackElement]:
    """
    Create a sink/element pair backed by one ffplay process.

    Args:
        command: Player command reading encoded audio from stdin
        bitrate: Assumed encoding bitrate (bits/s) for duration estimates

    Returns:
        (sink, element) tuple
    """
    proc = _FFplayProcess(command)
    sink = FFplaySink(proc)
    return sink, FFplayElement(proc, sink, bitrate)
