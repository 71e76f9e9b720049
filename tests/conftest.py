"""Shared fixtures: in-memory audio sinks and playback elements."""

import asyncio
from typing import List, Optional

import pytest

from voicechat.exceptions import (
    PlaybackBlockedError,
    SinkBusyError,
    SinkError,
    SinkStateError,
)
from voicechat.voice.sink import MediaSink, PlaybackElement, SinkState


class MockSink(MediaSink):
    """
    Records appends and enforces the single-append rule.

    Args:
        append_delay: Seconds each append takes
        refuse_close: Number of end_of_stream calls to refuse
        never_open: Make wait_open hang forever
        fail_append_at: Index of the append that raises SinkError
    """

    def __init__(
        self,
        append_delay: float = 0.0,
        refuse_close: int = 0,
        never_open: bool = False,
        fail_append_at: Optional[int] = None,
    ):
        self.append_delay = append_delay
        self.refuse_close = refuse_close
        self.never_open = never_open
        self.fail_append_at = fail_append_at

        self.state = SinkState.OPEN
        self.appended: List[bytes] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.close_attempts = 0
        self.aborted = False

    @property
    def ready_state(self) -> SinkState:
        return self.state

    @property
    def buffered_bytes(self) -> int:
        return sum(len(c) for c in self.appended)

    async def wait_open(self) -> None:
        if self.never_open:
            await asyncio.Event().wait()

    async def append(self, chunk: bytes) -> None:
        if self.in_flight:
            raise SinkBusyError("append in flight")
        if self.state != SinkState.OPEN:
            raise SinkStateError(f"sink is {self.state.value}")
        if self.fail_append_at == len(self.appended):
            raise SinkError("decode error")

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.append_delay)
            self.appended.append(chunk)
        finally:
            self.in_flight -= 1

    def end_of_stream(self) -> None:
        self.close_attempts += 1
        if self.close_attempts <= self.refuse_close:
            raise SinkStateError("sink is updating")
        if self.state != SinkState.OPEN:
            raise SinkStateError(f"sink is {self.state.value}")
        self.state = SinkState.ENDED

    def abort(self) -> None:
        self.aborted = True
        self.state = SinkState.CLOSED


class MockElement(PlaybackElement):
    """
    Playback element whose end is controlled by the test.

    Args:
        sink: Paired sink
        auto_end: End playback as soon as the sink has ended
        blocked_plays: Number of play() calls to block before succeeding
        known_duration: Duration reported once the sink has ended
    """

    def __init__(
        self,
        sink: MockSink,
        auto_end: bool = True,
        blocked_plays: int = 0,
        known_duration: Optional[float] = None,
    ):
        self.sink = sink
        self.auto_end = auto_end
        self.blocked_plays = blocked_plays
        self.known_duration = known_duration

        self.play_calls = 0
        self.paused = False
        self.closed = False
        self.ended = asyncio.Event()

    async def play(self) -> None:
        self.play_calls += 1
        if self.blocked_plays > 0:
            self.blocked_plays -= 1
            raise PlaybackBlockedError("needs a user gesture")

    def pause(self) -> None:
        self.paused = True

    @property
    def duration(self) -> Optional[float]:
        return self.known_duration

    async def wait_ended(self) -> None:
        if self.auto_end:
            while self.sink.state != SinkState.ENDED:
                await asyncio.sleep(0.001)
            return
        await self.ended.wait()

    def close(self) -> None:
        self.closed = True


class MockOutputFactory:
    """Output factory recording every sink/element pair it creates."""

    def __init__(self, **options):
        self.sink_options = {
            k: options.pop(k)
            for k in ("append_delay", "refuse_close", "never_open", "fail_append_at")
            if k in options
        }
        self.element_options = options
        self.pairs = []

    def __call__(self):
        sink = MockSink(**self.sink_options)
        element = MockElement(sink, **self.element_options)
        self.pairs.append((sink, element))
        return sink, element

    @property
    def sink(self) -> MockSink:
        return self.pairs[-1][0]

    @property
    def element(self) -> MockElement:
        return self.pairs[-1][1]


class ChunkStream:
    """
    Async byte stream fed by the test.

    Chunks given up front are yielded first; after that the stream waits for
    ``push``/``finish``/``fail`` calls.
    """

    def __init__(self, chunks=(), finished: bool = True):
        self._queue: asyncio.Queue = asyncio.Queue()
        for chunk in chunks:
            self._queue.put_nowait(chunk)
        if finished:
            self._queue.put_nowait(None)
        self.closed = False
        self.yielded = 0

    def push(self, chunk: bytes) -> None:
        self._queue.put_nowait(chunk)

    def finish(self) -> None:
        self._queue.put_nowait(None)

    def fail(self, error: Exception) -> None:
        self._queue.put_nowait(error)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        try:
            while True:
                item = await self._queue.get()
                if item is None:
                    return
                if isinstance(item, Exception):
                    raise item
                self.yielded += 1
                yield item
        finally:
            self.closed = True


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll until ``predicate()`` is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def output_factory():
    return MockOutputFactory()


@pytest.fixture
def make_output():
    return MockOutputFactory


@pytest.fixture
def make_stream():
    return ChunkStream


@pytest.fixture
def until():
    return wait_until
