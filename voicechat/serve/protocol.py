"""
Wire protocol for the chat endpoint.

This module defines the request and response bodies exchanged between the
chat client and the relay over ``POST /api/chat``.

Request:
    {"conversation": [Turn, ...], "previous_response_id": "...", "stream": bool}

Responses:
- 200 JSON: {"reply", "audio" (base64 mp3), "previous_response_id"}
- 200 stream: raw audio/mpeg bytes, continuation token in ``x-response-id``
- 4xx/5xx JSON: {"error", "shouldRetry"?, "retryAfter"?, "reply"?}
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

# Headers used by the streamed variant
RESPONSE_ID_HEADER = "x-response-id"
REPLY_TEXT_HEADER = "x-reply-text"

AUDIO_MEDIA_TYPE = "audio/mpeg"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Who authored a turn."""

    USER = "user"
    ASSISTANT = "assistant"


class InstructionProfile(str, Enum):
    """Selectable system instruction profiles."""

    STANDARD = "standard"
    ADVANCED = "advanced"


# =============================================================================
# Conversation
# =============================================================================


class Turn(BaseModel):
    """One message in the conversation."""

    role: Role = Field(..., description="Author of the turn")
    content: str = Field(..., min_length=1, description="Text of the turn")
    timestamp: datetime = Field(default_factory=_now)


# =============================================================================
# Client -> Server
# =============================================================================


class ChatRequest(BaseModel):
    """Body of ``POST /api/chat``."""

    conversation: List[Turn] = Field(..., description="Ordered conversation turns")
    previous_response_id: Optional[str] = Field(
        None, description="Continuation token from the previous reply"
    )
    stream: Optional[bool] = Field(
        None, description="Stream audio bytes instead of returning base64 JSON"
    )
    instruction_profile: Optional[InstructionProfile] = Field(
        None, description="Instruction profile override"
    )

    def latest_user_turn(self) -> Optional[Turn]:
        """Return the newest user turn, if any."""
        for turn in reversed(self.conversation):
            if turn.role == Role.USER:
                return turn
        return None


# =============================================================================
# Server -> Client
# =============================================================================


class ChatResponse(BaseModel):
    """Successful buffered reply."""

    reply: str = Field(..., description="Assistant reply text")
    audio: Optional[str] = Field(None, description="Base64-encoded mp3 audio")
    previous_response_id: Optional[str] = Field(
        None, description="Continuation token for the next request"
    )


class ErrorResponse(BaseModel):
    """Error envelope for every non-2xx reply."""

    error: str
    shouldRetry: Optional[bool] = None
    retryAfter: Optional[int] = None
    reply: Optional[str] = None

    def to_content(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ProtocolError(Exception):
    """Error in protocol handling."""

    def __init__(
        self, code: str, message: str, details: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


def parse_chat_request(data: Any) -> ChatRequest:
    """
    Parse a chat request from a JSON string or an already-decoded object.

    Raises:
        ProtocolError: If the body is not a valid chat request
    """
    import json

    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except ValueError as e:
            raise ProtocolError(
                code="INVALID_JSON",
                message=f"Failed to parse JSON: {e}",
            )

    if not isinstance(data, dict):
        raise ProtocolError(
            code="INVALID_MESSAGE",
            message="Request body must be a JSON object",
        )

    conversation = data.get("conversation")
    if not isinstance(conversation, list):
        raise ProtocolError(
            code="INVALID_CONVERSATION",
            message="Invalid conversation history",
        )

    try:
        return ChatRequest.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(
            code="VALIDATION_ERROR",
            message="Invalid conversation history",
            details={"error": str(e)},
        )

