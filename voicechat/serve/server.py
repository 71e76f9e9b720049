"""FastAPI application for the chat relay."""

import base64
import logging
from typing import Optional
from urllib.parse import quote

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from voicechat.exceptions import (
    RelayError,
    SynthesisError,
    UpstreamRateLimitedError,
)
from voicechat.serve.config import RelaySettings
from voicechat.serve.protocol import (
    AUDIO_MEDIA_TYPE,
    REPLY_TEXT_HEADER,
    RESPONSE_ID_HEADER,
    ChatResponse,
    ErrorResponse,
    ProtocolError,
    parse_chat_request,
)
from voicechat.serve.relay import ChatRelay

logger = logging.getLogger(__name__)

# Longest percent-encoded x-reply-text header; longer replies are truncated
REPLY_TEXT_HEADER_LIMIT = 4096

HTTP_ERROR_MESSAGES = {
    status.HTTP_404_NOT_FOUND: "Not found",
    status.HTTP_405_METHOD_NOT_ALLOWED: "Method not allowed",
}


def create_app(
    settings: Optional[RelaySettings] = None,
    relay: Optional[ChatRelay] = None,
) -> FastAPI:
    """
    Create the relay application.

    Args:
        settings: Relay settings (read from the environment if not provided)
        relay: Pre-built relay (built from settings if not provided)
    """
    settings = settings or RelaySettings.from_env()
    relay = relay or ChatRelay.from_settings(settings)

    app = FastAPI(
        title="Voice Chat Relay",
        description="Relays chat turns to a language model and speaks the reply",
        version="0.1.0",
    )
    app.state.relay = relay
    app.state.settings = settings

    @app.get("/health", tags=["health"])
    async def health_check():
        """Liveness probe."""
        return {"status": "ok"}

    @app.post("/api/chat", tags=["chat"])
    async def chat(request: Request):
        """
        Relay one conversation turn.

        Returns the reply text with base64 audio as JSON, or streams
        ``audio/mpeg`` with the continuation token in ``x-response-id``.
        """
        body = await request.body()
        try:
            chat_request = parse_chat_request(body)
        except ProtocolError as e:
            logger.warning(f"Rejected chat request: {e.code} {e.message}")
            return _error(status.HTTP_400_BAD_REQUEST, ErrorResponse(error=e.message))

        reply = await app.state.relay.handle(chat_request)

        if reply.streaming:
            headers = {REPLY_TEXT_HEADER: _reply_text_header(reply.text)}
            if reply.response_id:
                headers[RESPONSE_ID_HEADER] = reply.response_id
            return StreamingResponse(
                reply.audio_stream,
                media_type=AUDIO_MEDIA_TYPE,
                headers=headers,
            )

        audio = base64.b64encode(reply.audio).decode("ascii") if reply.audio else None
        return ChatResponse(
            reply=reply.text,
            audio=audio,
            previous_response_id=reply.response_id,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle routing errors with the chat error envelope."""
        message = HTTP_ERROR_MESSAGES.get(exc.status_code, str(exc.detail))
        return _error(exc.status_code, ErrorResponse(error=message))

    @app.exception_handler(RelayError)
    async def relay_exception_handler(request: Request, exc: RelayError):
        """Map relay failures onto status codes."""
        if isinstance(exc, UpstreamRateLimitedError):
            return _error(
                status.HTTP_429_TOO_MANY_REQUESTS,
                ErrorResponse(
                    error=(
                        f"Rate limit exceeded. Retrying in {exc.retry_after} seconds."
                    ),
                    shouldRetry=True,
                    retryAfter=exc.retry_after,
                ),
            )

        if isinstance(exc, SynthesisError):
            return _error(
                exc.status_code, ErrorResponse(error=str(exc), reply=exc.reply)
            )

        if exc.status_code >= 500:
            logger.error(f"Relay error: {exc}")
        return _error(exc.status_code, ErrorResponse(error=str(exc)))

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.error(f"Unexpected error: {exc}", exc_info=True)
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            ErrorResponse(error="Internal server error"),
        )

    return app


def _reply_text_header(text: str, limit: int = REPLY_TEXT_HEADER_LIMIT) -> str:
    """Percent-encode the reply text, truncating it to fit in ``limit``."""
    encoded = quote(text)
    if len(encoded) <= limit:
        return encoded

    logger.warning(f"Reply text header truncated ({len(encoded)} > {limit} bytes)")
    while len(encoded) > limit:
        text = text[: len(text) * limit // len(encoded)]
        encoded = quote(text)
    return encoded


def _error(status_code: int, body: ErrorResponse) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.to_content())


def run_server(settings: RelaySettings, host: str = "0.0.0.0", port: int = 8000):
    """Run the relay with uvicorn."""
    import uvicorn

    app = create_app(settings)
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())
