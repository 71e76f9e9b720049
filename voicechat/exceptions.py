"""
Exceptions for voicechat.

Client-side errors derive from ChatClientError or PlaybackError; relay-side
errors derive from RelayError and carry the HTTP status they map onto.
"""

from typing import Optional


# =============================================================================
# Client
# =============================================================================


class ChatClientError(Exception):
    """Base exception for chat client operations."""


class ChatRequestError(ChatClientError):
    """A chat request failed terminally (transport, status or body)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitExceededError(ChatRequestError):
    """The server kept rate limiting past the retry cap."""

    def __init__(self, message: str, attempts: int):
        super().__init__(message, status_code=429)
        self.attempts = attempts


class ConversationImportError(ChatClientError):
    """An imported conversation document is malformed."""


class PlaybackError(Exception):
    """Base exception for audio sink and playback failures."""


class SinkError(PlaybackError):
    """The media sink failed or rejected an operation."""


class SinkBusyError(SinkError):
    """An append was attempted while another append was in flight."""


class SinkStateError(SinkError):
    """The sink is not in a state that allows the operation."""


class PlaybackBlockedError(PlaybackError):
    """Playback cannot start until the next user interaction."""


# =============================================================================
# Relay
# =============================================================================


class RelayError(Exception):
    """Base exception for relay operations."""

    status_code = 500


class ConversationValidationError(RelayError):
    """The incoming conversation is empty or malformed."""

    status_code = 400


class UpstreamError(RelayError):
    """The upstream completion API returned an error."""


class UpstreamRateLimitedError(UpstreamError):
    """The upstream completion API is rate limiting us."""

    status_code = 429

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamTimeoutError(UpstreamError):
    """The upstream completion call exceeded its time budget."""


class SynthesisError(RelayError):
    """Speech synthesis failed for a reply."""

    def __init__(self, message: str, reply: Optional[str] = None):
        super().__init__(message)
        self.reply = reply
