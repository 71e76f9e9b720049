"""
Voice chat client.

This package provides the client side of the chat widget: request/retry
transport, streaming audio playback, microphone coordination and the
persisted conversation.
"""

from voicechat.voice.coordinator import InteractionMode, PlaybackCoordinator
from voicechat.voice.receiver import (
    AudioSession,
    ReceiverSettings,
    SessionState,
    StreamingAudioReceiver,
)
from voicechat.voice.store import ConversationStore
from voicechat.voice.transport import ChatReply, ChatTransport

__all__ = [
    "AudioSession",
    "ChatReply",
    "ChatTransport",
    "ConversationStore",
    "InteractionMode",
    "PlaybackCoordinator",
    "ReceiverSettings",
    "SessionState",
    "StreamingAudioReceiver",
]
