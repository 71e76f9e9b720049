"""
Speech capture adapters.

Speech-to-text is an external capability; adapters only expose a live
transcript, start/stop controls and a callback for finalized utterances.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class SpeechCapture(ABC):
    """
    Abstract base class for speech capture.

    Subclasses call ``_finalize`` when an utterance is complete.
    """

    def __init__(self, on_final: Optional[Callable[[str], None]] = None):
        self.on_final = on_final
        self._listening = False
        self._transcript = ""

    @property
    def listening(self) -> bool:
        """Whether the microphone is live."""
        return self._listening

    @property
    def transcript(self) -> str:
        """Transcript of the current (or last) utterance."""
        return self._transcript

    @abstractmethod
    def start(self) -> None:
        """Start capturing speech."""

    @abstractmethod
    def stop(self) -> None:
        """Stop capturing speech."""

    def reset_transcript(self) -> None:
        self._transcript = ""

    def _finalize(self, text: str) -> None:
        text = text.strip()
        self._transcript = text
        if not text:
            return
        logger.info(f"Utterance finalized: {text[:50]}")
        if self.on_final:
            self.on_final(text)


class ConsoleCapture(SpeechCapture):
    """
    Capture that treats typed lines as finalized utterances.

    Lines fed while the microphone is off are not utterances and are left to
    the caller.
    """

    def start(self) -> None:
        self._listening = True
        self.reset_transcript()

    def stop(self) -> None:
        self._listening = False

    def feed(self, line: str) -> bool:
        """
        Offer a typed line to the capture.

        Returns:
            True if the line was consumed as an utterance
        """
        if not self._listening:
            return False
        self._finalize(line)
        return True
