"""Conversation Store.

Holds the ordered turns of the conversation and the continuation token,
persists both to a single JSON file, and exports/imports transcripts.

Persisted layout (``~/.voicechat/chatConversation.json``)::

    {"conversation": [Turn, ...], "previous_response_id": "resp_..." | null}
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import TypeAdapter, ValidationError

from voicechat.exceptions import ConversationImportError
from voicechat.serve.protocol import Role, Turn

logger = logging.getLogger(__name__)

STORAGE_KEY = "chatConversation"
DEFAULT_STORE_DIR = Path.home() / ".voicechat"

_turns_adapter = TypeAdapter(list[Turn])


def default_store_path() -> Path:
    return DEFAULT_STORE_DIR / f"{STORAGE_KEY}.json"


class ConversationStore:
    """Ordered conversation turns plus the continuation token.

    Every mutation is written through to ``path`` when one is set; a store
    without a path lives in memory only.

    Args:
        path: JSON file backing the store, or None for an in-memory store.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else None
        self._turns: list[Turn] = []
        self.previous_response_id: Optional[str] = None

    @property
    def turns(self) -> list[Turn]:
        return list(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def append(self, role: Role | str, content: str) -> Turn:
        """Append a turn stamped with the current time and persist."""
        turn = Turn(role=Role(role), content=content)
        self._turns.append(turn)
        self.save()
        return turn

    def set_previous_response_id(self, response_id: Optional[str]) -> None:
        self.previous_response_id = response_id
        self.save()

    def clear(self) -> None:
        """Empty the conversation and drop the continuation token."""
        self._turns = []
        self.previous_response_id = None
        self.save()
        logger.info("Conversation cleared")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation": [t.model_dump(mode="json") for t in self._turns],
            "previous_response_id": self.previous_response_id,
        }

    def save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self.to_dict(), indent=2) + "\n")

    def load(self) -> bool:
        """Load persisted state.

        A missing or unreadable file leaves the store empty.

        Returns:
            True if state was loaded from disk.
        """
        if self.path is None or not self.path.exists():
            return False
        try:
            data = json.loads(self.path.read_text())
            # Older files hold a bare list of turns
            if isinstance(data, list):
                data = {"conversation": data}
            turns = _turns_adapter.validate_python(data.get("conversation", []))
        except (OSError, json.JSONDecodeError, AttributeError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable conversation file {self.path}: {e}")
            return False

        self._turns = turns
        self.previous_response_id = data.get("previous_response_id")
        logger.debug(f"Loaded {len(turns)} turns from {self.path}")
        return True

    @classmethod
    def open(cls, path: Optional[Path] = None) -> "ConversationStore":
        """Create a store on ``path`` (default location if omitted) and load it."""
        store = cls(path or default_store_path())
        store.load()
        return store

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_json(self) -> str:
        """Export as ``{conversation, timestamp}``."""
        document = {
            "conversation": [t.model_dump(mode="json") for t in self._turns],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return json.dumps(document, indent=2)

    def export_text(self) -> str:
        """Export as ``[timestamp] role: content`` lines."""
        lines = [
            f"[{t.timestamp.isoformat()}] {t.role.value}: {t.content}"
            for t in self._turns
        ]
        return "\n".join(lines) + ("\n" if lines else "")

    def import_json(self, document: str | bytes | dict[str, Any]) -> int:
        """Replace the conversation with an exported document.

        The continuation token is cleared since it belongs to the replaced
        conversation.

        Returns:
            Number of imported turns.

        Raises:
            ConversationImportError: If the document is not valid JSON or its
                ``conversation`` is missing or not a list of valid turns.
        """
        if isinstance(document, (str, bytes)):
            try:
                document = json.loads(document)
            except json.JSONDecodeError as e:
                raise ConversationImportError(f"Invalid JSON: {e}")

        if not isinstance(document, dict) or "conversation" not in document:
            raise ConversationImportError("Missing conversation")
        if not isinstance(document["conversation"], list):
            raise ConversationImportError("Conversation must be a list of turns")

        try:
            turns = _turns_adapter.validate_python(document["conversation"])
        except ValidationError as e:
            raise ConversationImportError(f"Invalid turn in conversation: {e}")

        self._turns = turns
        self.previous_response_id = None
        self.save()
        logger.info(f"Imported {len(turns)} turns")
        return len(turns)
