"""Tests for the playback/microphone coordinator."""

import asyncio

import pytest

from voicechat.exceptions import ChatRequestError
from voicechat.voice.capture import ConsoleCapture, SpeechCapture
from voicechat.voice.coordinator import (
    CoordinatorCallbacks,
    InteractionMode,
    PlaybackCoordinator,
)
from voicechat.voice.receiver import (
    ReceiverCallbacks,
    ReceiverSettings,
    SessionState,
    StreamingAudioReceiver,
)

REARM_DELAY = 0.02


class RecordingCapture(SpeechCapture):
    """Capture that counts start/stop calls."""

    def __init__(self):
        super().__init__()
        self.starts = 0
        self.stops = 0

    def start(self) -> None:
        self.starts += 1
        self._listening = True

    def stop(self) -> None:
        self.stops += 1
        self._listening = False


class Harness:
    """Coordinator wired to a receiver with mock outputs."""

    def __init__(self, output_factory, error_rearm_delay=None):
        self.capture = RecordingCapture()
        self.modes = []
        self.rearms = 0
        self.interrupts = 0
        self.coordinator = PlaybackCoordinator(
            capture=self.capture,
            rearm_delay=REARM_DELAY,
            error_rearm_delay=error_rearm_delay,
            callbacks=CoordinatorCallbacks(
                on_mode_change=self.modes.append,
                on_rearm=self._on_rearm,
                on_interrupt=self._on_interrupt,
            ),
        )
        self.receiver = StreamingAudioReceiver(
            output_factory,
            ReceiverSettings(play_threshold_bytes=4, close_retry_delay=0.01),
            ReceiverCallbacks(
                on_playing=self.coordinator.session_playing,
                on_finished=self.coordinator.session_finished,
            ),
        )

    def _on_rearm(self):
        self.rearms += 1

    def _on_interrupt(self):
        self.interrupts += 1

    def play(self, stream):
        session = self.receiver.consume(stream)
        self.coordinator.attach(session)
        return session

    @property
    def mode(self):
        return self.coordinator.mode


async def settle(delay: float = REARM_DELAY * 4) -> None:
    await asyncio.sleep(delay)


class TestUserActions:
    """Test explicit microphone controls."""

    def test_initial_state(self, output_factory):
        h = Harness(output_factory)
        assert h.mode == InteractionMode.IDLE
        assert h.coordinator.active_session is None

    def test_start_and_stop_listening(self, output_factory):
        h = Harness(output_factory)

        assert h.coordinator.start_listening()
        assert h.mode == InteractionMode.LISTENING
        assert h.capture.listening

        h.coordinator.stop_listening()
        assert h.mode == InteractionMode.IDLE
        assert not h.capture.listening
        assert h.modes == [InteractionMode.LISTENING, InteractionMode.IDLE]

    def test_start_listening_twice_starts_capture_once(self, output_factory):
        h = Harness(output_factory)
        h.coordinator.start_listening()
        h.coordinator.start_listening()
        assert h.capture.starts == 1

    @pytest.mark.asyncio
    async def test_start_refused_while_speaking(
        self, make_output, make_stream, until
    ):
        output = make_output(auto_end=False)
        h = Harness(output)
        h.play(make_stream([b"x" * 8]))
        await until(lambda: h.mode == InteractionMode.AGENT_SPEAKING)

        assert not h.coordinator.start_listening()
        assert h.mode == InteractionMode.AGENT_SPEAKING
        assert h.capture.starts == 0

        await h.coordinator.interrupt()

    @pytest.mark.asyncio
    async def test_interrupt_without_session(self, output_factory):
        h = Harness(output_factory)
        h.coordinator.start_listening()

        await h.coordinator.interrupt()

        assert h.mode == InteractionMode.IDLE
        assert not h.capture.listening
        assert h.interrupts == 1


class TestTurnLifecycle:
    """Test mode transitions across a full turn."""

    @pytest.mark.asyncio
    async def test_voice_turn_rearms_after_playback(
        self, output_factory, make_stream, until
    ):
        h = Harness(output_factory)
        h.coordinator.start_listening()

        h.coordinator.begin_turn(from_voice=True)
        assert h.mode == InteractionMode.IDLE
        assert not h.capture.listening

        session = h.play(make_stream([b"x" * 8]))
        await session.wait()
        assert InteractionMode.AGENT_SPEAKING in h.modes
        assert h.coordinator.rearm_pending

        await until(lambda: h.mode == InteractionMode.LISTENING)
        assert h.rearms == 1
        assert h.capture.starts == 2
        assert h.coordinator.active_session is None

    @pytest.mark.asyncio
    async def test_typed_turn_stays_idle(self, output_factory, make_stream):
        h = Harness(output_factory)

        h.coordinator.begin_turn(from_voice=False)
        session = h.play(make_stream([b"x" * 8]))
        await session.wait()
        await settle()

        assert h.mode == InteractionMode.IDLE
        assert h.rearms == 0
        assert h.capture.starts == 0

    @pytest.mark.asyncio
    async def test_typed_turn_while_listening_rearms(
        self, output_factory, make_stream, until
    ):
        h = Harness(output_factory)
        h.coordinator.start_listening()

        h.coordinator.begin_turn(from_voice=False)
        h.play(make_stream([b"x" * 8]))

        await until(lambda: h.rearms == 1)
        assert h.mode == InteractionMode.LISTENING

    @pytest.mark.asyncio
    async def test_empty_stream_rearms(self, output_factory, make_stream, until):
        h = Harness(output_factory)
        h.coordinator.begin_turn(from_voice=True)

        session = h.play(make_stream([]))
        await until(lambda: h.mode == InteractionMode.LISTENING)

        assert session.empty
        assert InteractionMode.AGENT_SPEAKING not in h.modes

    @pytest.mark.asyncio
    async def test_failed_session_rearms_after_error_delay(
        self, output_factory, make_stream, until
    ):
        h = Harness(output_factory, error_rearm_delay=0.05)
        h.coordinator.begin_turn(from_voice=True)
        stream = make_stream([b"x" * 8], finished=False)
        stream.fail(ChatRequestError("stream broke"))

        session = h.play(stream)
        await session.wait()
        assert session.state == SessionState.ERROR

        await asyncio.sleep(REARM_DELAY * 1.5)
        assert h.mode != InteractionMode.LISTENING
        await until(lambda: h.mode == InteractionMode.LISTENING)

    @pytest.mark.asyncio
    async def test_turn_failed_rearms(self, output_factory, until):
        h = Harness(output_factory)
        h.coordinator.start_listening()
        h.coordinator.begin_turn(from_voice=True)

        h.coordinator.turn_failed()
        await until(lambda: h.mode == InteractionMode.LISTENING)
        assert h.rearms == 1

    @pytest.mark.asyncio
    async def test_turn_failed_without_auto_rearm(self, output_factory):
        h = Harness(output_factory)
        h.coordinator.begin_turn(from_voice=False)

        h.coordinator.turn_failed()
        await settle()

        assert h.mode == InteractionMode.IDLE
        assert h.rearms == 0


class TestRaces:
    """Test robustness against late and concurrent events."""

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_rearm(
        self, output_factory, make_stream, until
    ):
        h = Harness(output_factory)
        h.coordinator.begin_turn(from_voice=True)
        session = h.play(make_stream([b"x" * 8]))
        await session.wait()

        h.coordinator.stop_listening()
        await settle()

        assert h.mode == InteractionMode.IDLE
        assert h.rearms == 0
        assert not h.coordinator.rearm_pending

        assert h.coordinator.start_listening()
        assert h.mode == InteractionMode.LISTENING

    @pytest.mark.asyncio
    async def test_finished_session_leaves_speaking_before_rearm(
        self, output_factory, make_stream
    ):
        h = Harness(output_factory)
        h.coordinator.begin_turn(from_voice=True)
        session = h.play(make_stream([b"x" * 8]))
        await session.wait()

        assert h.coordinator.rearm_pending
        assert h.mode == InteractionMode.IDLE
        assert h.modes[-2:] == [InteractionMode.AGENT_SPEAKING, InteractionMode.IDLE]

    @pytest.mark.asyncio
    async def test_interrupt_while_speaking(self, make_output, make_stream, until):
        output = make_output(auto_end=False, append_delay=0.005)
        h = Harness(output)
        h.coordinator.begin_turn(from_voice=True)
        stream = make_stream([b"x" * 8, b"y" * 8], finished=False)
        session = h.play(stream)
        await until(lambda: h.mode == InteractionMode.AGENT_SPEAKING)

        await h.coordinator.interrupt()
        appended = len(output.sink.appended)
        stream.push(b"more")
        await settle()

        assert session.state == SessionState.CANCELLED
        assert h.mode == InteractionMode.IDLE
        assert h.rearms == 0
        assert len(output.sink.appended) == appended
        assert output.element.paused

    @pytest.mark.asyncio
    async def test_ended_and_stop_race_user_wins(
        self, make_output, make_stream, until
    ):
        output = make_output(auto_end=False)
        h = Harness(output)
        h.coordinator.begin_turn(from_voice=True)
        session = h.play(make_stream([b"x" * 8]))
        await until(lambda: output.sink.state.value == "ended")
        await until(lambda: h.mode == InteractionMode.AGENT_SPEAKING)

        # Both events land in the same loop iteration
        output.element.ended.set()
        await h.coordinator.interrupt()
        await settle()

        assert session.done
        assert h.mode == InteractionMode.IDLE
        assert h.rearms == 0
        assert h.capture.starts == 0

    @pytest.mark.asyncio
    async def test_stop_and_listen_rearms_exactly_once(
        self, make_output, make_stream, until
    ):
        output = make_output(auto_end=False)
        h = Harness(output)
        h.coordinator.begin_turn(from_voice=True)
        h.play(make_stream([b"x" * 8]))
        await until(lambda: h.mode == InteractionMode.AGENT_SPEAKING)

        output.element.ended.set()
        await h.coordinator.interrupt(listen_after=True)
        await settle()

        assert h.mode == InteractionMode.LISTENING
        assert h.capture.starts == 1
        assert h.rearms == 0

    @pytest.mark.asyncio
    async def test_stale_session_events_ignored(
        self, make_output, make_stream, until
    ):
        output = make_output(auto_end=False)
        h = Harness(output)
        h.coordinator.begin_turn(from_voice=True)
        first = h.play(make_stream([b"x" * 8]))
        await until(lambda: h.mode == InteractionMode.AGENT_SPEAKING)

        second = h.play(make_stream([b"y" * 8]))
        assert h.coordinator.active_session is second

        # The first session finishing must not re-arm under the second
        output.pairs[0][1].ended.set()
        await first.wait()
        await settle()

        assert h.mode == InteractionMode.AGENT_SPEAKING
        assert h.rearms == 0

        output.pairs[1][1].ended.set()
        await until(lambda: h.mode == InteractionMode.LISTENING)
        assert h.rearms == 1


class TestConsoleCapture:
    """Test the typed-line capture adapter."""

    def test_feed_only_while_listening(self):
        utterances = []
        capture = ConsoleCapture(on_final=utterances.append)

        assert not capture.feed("ignored")
        capture.start()
        assert capture.feed("  hello there  ")
        assert utterances == ["hello there"]
        assert capture.transcript == "hello there"

    def test_blank_line_not_final(self):
        utterances = []
        capture = ConsoleCapture(on_final=utterances.append)
        capture.start()
        capture.feed("   ")
        assert utterances == []
