"""
Configuration for the chat relay.

Settings are read from the environment (a ``.env`` file is loaded by the
CLI before this runs).
"""

import os
from dataclasses import dataclass
from typing import Optional

from voicechat.serve.protocol import InstructionProfile


def env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RelaySettings:
    """Settings for the chat relay."""

    # Upstream completion API
    api_key: Optional[str] = None
    api_base: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    vector_store_id: Optional[str] = None
    completion_timeout: float = 55.0

    # Instructions
    instruction_profile: InstructionProfile = InstructionProfile.STANDARD
    instruction_file: Optional[str] = None

    # Speech synthesis
    tts_backend: str = "openai"
    tts_model: str = "tts-1"
    tts_voice: str = "alloy"
    tts_timeout: float = 30.0

    # Response shape
    stream_audio: bool = True

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "RelaySettings":
        """Create settings from environment variables."""
        return cls(
            api_key=os.environ.get("OPENAI_API_KEY"),
            api_base=os.environ.get("OPENAI_API_BASE", "https://api.openai.com/v1"),
            model=os.environ.get("VOICECHAT_MODEL", "gpt-4o-mini"),
            temperature=float(os.environ.get("VOICECHAT_TEMPERATURE", "0.7")),
            vector_store_id=os.environ.get("VECTOR_STORE_ID") or None,
            completion_timeout=float(
                os.environ.get("VOICECHAT_COMPLETION_TIMEOUT", "55")
            ),
            instruction_profile=InstructionProfile(
                os.environ.get("VOICECHAT_INSTRUCTION_PROFILE", "standard").lower()
            ),
            instruction_file=os.environ.get("VOICECHAT_INSTRUCTION_FILE") or None,
            tts_backend=os.environ.get("VOICECHAT_TTS_BACKEND", "openai"),
            tts_model=os.environ.get("VOICECHAT_TTS_MODEL", "tts-1"),
            tts_voice=os.environ.get("VOICECHAT_TTS_VOICE", "alloy"),
            tts_timeout=float(os.environ.get("VOICECHAT_TTS_TIMEOUT", "30")),
            stream_audio=env_bool("VOICECHAT_STREAM_AUDIO", True),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )
