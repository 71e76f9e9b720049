"""
Playback/Microphone Coordinator.

This module arbitrates between the microphone and the agent's voice so the
two never run destructively at the same time:

- IDLE: neither listening nor speaking
- LISTENING: capturing the user's speech
- AGENT_SPEAKING: an audio session is audible

Automatic re-arm of the microphone after the agent speaks is always subject
to the user's last explicit action: a user stop disables it, and every
session event is checked against the currently attached session before it
has any effect.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional

from voicechat.voice.capture import SpeechCapture
from voicechat.voice.receiver import AudioSession, SessionState

logger = logging.getLogger(__name__)


class InteractionMode(Enum):
    """Current interaction mode of the client."""

    IDLE = auto()  # Microphone off, agent silent
    LISTENING = auto()  # Microphone live
    AGENT_SPEAKING = auto()  # Agent audio playing


@dataclass
class CoordinatorCallbacks:
    """Callbacks for coordinator events."""

    on_mode_change: Optional[Callable[[InteractionMode], None]] = None
    on_rearm: Optional[Callable[[], None]] = None
    on_interrupt: Optional[Callable[[], None]] = None


class PlaybackCoordinator:
    """
    Coordinates the microphone and agent playback lifecycle.

    Args:
        capture: Speech capture adapter to start and stop
        rearm_delay: Seconds to wait after the agent finishes before the
            microphone is re-armed
        error_rearm_delay: Delay used instead when the session failed
            (defaults to rearm_delay)
        callbacks: Optional callbacks for mode changes
    """

    def __init__(
        self,
        capture: Optional[SpeechCapture] = None,
        rearm_delay: float = 0.5,
        error_rearm_delay: Optional[float] = None,
        callbacks: Optional[CoordinatorCallbacks] = None,
    ):
        self.capture = capture
        self.rearm_delay = rearm_delay
        self.error_rearm_delay = (
            rearm_delay if error_rearm_delay is None else error_rearm_delay
        )
        self._callbacks = callbacks or CoordinatorCallbacks()
        self._mode = InteractionMode.IDLE
        self._active: Optional[AudioSession] = None
        self._auto_rearm = False
        self._rearm_task: Optional[asyncio.Task] = None

    @property
    def mode(self) -> InteractionMode:
        """Current interaction mode."""
        return self._mode

    @property
    def active_session(self) -> Optional[AudioSession]:
        return self._active

    @property
    def rearm_pending(self) -> bool:
        return self._rearm_task is not None and not self._rearm_task.done()

    def _set_mode(self, new_mode: InteractionMode) -> None:
        """Set mode and trigger callback."""
        if new_mode != self._mode:
            old_mode = self._mode
            self._mode = new_mode
            logger.info(f"Interaction mode: {old_mode.name} -> {new_mode.name}")
            if self._callbacks.on_mode_change:
                self._callbacks.on_mode_change(new_mode)

    def _cancel_rearm(self) -> None:
        if self._rearm_task is not None and not self._rearm_task.done():
            self._rearm_task.cancel()
        self._rearm_task = None

    def _enter_listening(self) -> None:
        if self._mode == InteractionMode.LISTENING:
            return
        if self.capture:
            self.capture.start()
        self._set_mode(InteractionMode.LISTENING)

    # =========================================================================
    # User actions
    # =========================================================================

    def start_listening(self) -> bool:
        """
        Explicit user request to start capture.

        Returns:
            False if the agent is speaking (interrupt first)
        """
        if self._mode == InteractionMode.AGENT_SPEAKING:
            logger.info("Ignoring start request while the agent is speaking")
            return False
        self._cancel_rearm()
        self._auto_rearm = True
        self._enter_listening()
        return True

    def stop_listening(self) -> None:
        """Explicit user request to stop capture; disables automatic re-arm."""
        self._auto_rearm = False
        self._cancel_rearm()
        if self._mode == InteractionMode.LISTENING:
            if self.capture:
                self.capture.stop()
            self._set_mode(InteractionMode.IDLE)

    async def interrupt(self, listen_after: bool = False) -> None:
        """
        Explicit user stop.

        Cancels any pending re-arm and the active audio session (pausing
        output and aborting its sink), then leaves the client idle, or
        listening when ``listen_after`` is set.
        """
        logger.info(f"Interrupt requested (listen_after={listen_after})")
        self._auto_rearm = False
        self._cancel_rearm()

        session = self._active
        self._active = None
        if session is not None:
            await session.stop()

        if self._mode == InteractionMode.LISTENING and self.capture:
            self.capture.stop()
        self._set_mode(InteractionMode.IDLE)

        if self._callbacks.on_interrupt:
            self._callbacks.on_interrupt()

        if listen_after:
            self.start_listening()

    # =========================================================================
    # Turn and session events
    # =========================================================================

    def begin_turn(self, from_voice: bool = False) -> None:
        """
        Hand a turn to the request client.

        Capture stops before the turn is sent so the agent's own voice is
        never captured. The microphone is re-armed after the reply when the
        turn came from speech or the microphone was live.
        """
        was_listening = self._mode == InteractionMode.LISTENING
        self._cancel_rearm()
        if was_listening:
            if self.capture:
                self.capture.stop()
            self._set_mode(InteractionMode.IDLE)
        self._auto_rearm = from_voice or was_listening

    def attach(self, session: AudioSession) -> None:
        """Make ``session`` the one whose events drive the mode."""
        self._cancel_rearm()
        self._active = session

    def session_playing(self, session: AudioSession) -> None:
        """An audio session became audible."""
        if session is not self._active:
            logger.debug(f"Ignoring playback start from stale {session!r}")
            return
        if self._mode == InteractionMode.LISTENING and self.capture:
            self.capture.stop()
        self._set_mode(InteractionMode.AGENT_SPEAKING)

    def session_finished(self, session: AudioSession) -> None:
        """
        An audio session ended, failed or was cancelled.

        The agent is no longer audible, so the mode leaves AGENT_SPEAKING at
        once; the microphone comes back only when the re-arm delay elapses.
        """
        if session is not self._active:
            logger.debug(f"Ignoring completion from stale {session!r}")
            return
        self._active = None
        if self._mode == InteractionMode.AGENT_SPEAKING:
            self._set_mode(InteractionMode.IDLE)
        failed = session.state == SessionState.ERROR
        self._schedule_rearm(self.error_rearm_delay if failed else self.rearm_delay)

    def turn_failed(self) -> None:
        """The request for a turn failed before any audio session existed."""
        if self._active is not None:
            return
        self._schedule_rearm(self.error_rearm_delay)

    def _schedule_rearm(self, delay: float) -> None:
        self._cancel_rearm()
        if not self._auto_rearm:
            self._set_mode(InteractionMode.IDLE)
            return
        self._rearm_task = asyncio.create_task(
            self._rearm_after(delay), name="microphone_rearm"
        )

    async def _rearm_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._rearm_task = None
        if self._active is not None:
            return
        if not self._auto_rearm:
            self._set_mode(InteractionMode.IDLE)
            return
        logger.info("Re-arming microphone")
        self._enter_listening()
        if self._callbacks.on_rearm:
            self._callbacks.on_rearm()
