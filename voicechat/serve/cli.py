"""
CLI command for the chat relay server.
"""

import logging
from typing import Annotated, Optional

import cyclopts

from voicechat.serve.protocol import InstructionProfile

serve_app = cyclopts.App(name="serve", help="Run the chat relay server")


@serve_app.default
def serve(
    host: Annotated[str, cyclopts.Parameter(help="Host to bind to")] = "0.0.0.0",
    port: Annotated[int, cyclopts.Parameter(help="Port to listen on")] = 8000,
    model: Annotated[
        Optional[str], cyclopts.Parameter(help="Upstream model name")
    ] = None,
    profile: Annotated[
        Optional[str],
        cyclopts.Parameter(help="Instruction profile (standard, advanced)"),
    ] = None,
    tts_backend: Annotated[
        Optional[str], cyclopts.Parameter(help="TTS backend (openai, edge)")
    ] = None,
    tts_voice: Annotated[Optional[str], cyclopts.Parameter(help="TTS voice")] = None,
    buffered: Annotated[
        bool, cyclopts.Parameter(help="Return base64 audio instead of streaming")
    ] = False,
    verbose: Annotated[bool, cyclopts.Parameter(help="Enable verbose logging")] = False,
):
    """
    Run the chat relay server.

    The server accepts conversation turns on POST /api/chat, forwards them to
    the upstream model and answers with synthesized speech.

    Example:
        voicechat serve --port 8000
        voicechat serve --profile advanced --tts-backend edge
    """
    from voicechat.serve.config import RelaySettings
    from voicechat.serve.server import run_server

    settings = RelaySettings.from_env()
    if model:
        settings.model = model
    if profile:
        try:
            settings.instruction_profile = InstructionProfile(profile.lower())
        except ValueError:
            valid = [p.value for p in InstructionProfile]
            print(f"Error: Invalid profile: {profile}. Valid profiles: {valid}")
            return 1
    if tts_backend:
        settings.tts_backend = tts_backend
    if tts_voice:
        settings.tts_voice = tts_voice
    if buffered:
        settings.stream_audio = False
    if verbose:
        settings.log_level = "DEBUG"

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if not settings.api_key:
        print("Warning: OPENAI_API_KEY is not set; upstream calls will fail.")

    print("Starting chat relay...")
    print(f"  Host: {host}")
    print(f"  Port: {port}")
    print(f"  Model: {settings.model}")
    print(f"  Profile: {settings.instruction_profile.value}")
    print(f"  TTS: {settings.tts_backend} ({settings.tts_voice})")
    print(f"  Audio: {'streamed' if settings.stream_audio else 'buffered'}")
    print()
    print(f"Endpoint: http://{host}:{port}/api/chat")
    print()

    run_server(settings, host=host, port=port)
