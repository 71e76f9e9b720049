"""
Chat relay server.

This package provides the HTTP endpoint that relays conversation turns to an
upstream language model and returns the reply as synthesized speech.
"""

from voicechat.serve.protocol import (
    AUDIO_MEDIA_TYPE,
    REPLY_TEXT_HEADER,
    RESPONSE_ID_HEADER,
    ChatRequest,
    ChatResponse,
    ErrorResponse,
    InstructionProfile,
    ProtocolError,
    Role,
    Turn,
    parse_chat_request,
)

__all__ = [
    "AUDIO_MEDIA_TYPE",
    "REPLY_TEXT_HEADER",
    "RESPONSE_ID_HEADER",
    "ChatRequest",
    "ChatResponse",
    "ErrorResponse",
    "InstructionProfile",
    "ProtocolError",
    "Role",
    "Turn",
    "parse_chat_request",
]
