"""
Conversation persistence.

The retry orchestrator never touches a store: it returns events
(TurnAppended / TurnReplaced / CodeAccepted) and the caller applies them
to a Conversation and saves it. Two stores share one CRUD interface:

  - JsonFileConversationStore: one ``<id>.json`` document per conversation
  - InMemoryConversationStore: process-local dict, used by tests and as a
    fallback when no storage dir is configured
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Union

from pydantic import BaseModel, Field

from shared.files import ensure_dir, safe_name, write_text_atomic

from ..schemas import ImageAttachmentModel
from .errors import ConversationNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Untitled Design"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class ConversationTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    image_attachment: ImageAttachmentModel | None = None
    created_at: datetime = Field(default_factory=_utc_now)


class TurnAppended(BaseModel):
    kind: Literal["turn_appended"] = "turn_appended"
    turn: ConversationTurn


class TurnReplaced(BaseModel):
    """Replace the turn at ``index`` (an orphaned user turn left by an aborted request)."""

    kind: Literal["turn_replaced"] = "turn_replaced"
    index: int
    turn: ConversationTurn


class CodeAccepted(BaseModel):
    kind: Literal["code_accepted"] = "code_accepted"
    code: str
    prompt: str = ""


ConversationEvent = Union[TurnAppended, TurnReplaced, CodeAccepted]


class Conversation(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    title: str = DEFAULT_TITLE
    turns: list[ConversationTurn] = Field(default_factory=list)
    current_code: str | None = None
    last_prompt: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @property
    def history(self) -> list[tuple[str, str]]:
        return [(t.role, t.content) for t in self.turns]

    def apply(self, event: ConversationEvent) -> None:
        if isinstance(event, TurnAppended):
            self.turns.append(event.turn)
            if event.turn.role == "user" and self.title == DEFAULT_TITLE:
                self.title = event.turn.content.strip()[:60] or DEFAULT_TITLE
        elif isinstance(event, TurnReplaced):
            if not 0 <= event.index < len(self.turns):
                raise IndexError(f"turn index {event.index} out of range")
            self.turns[event.index] = event.turn
        elif isinstance(event, CodeAccepted):
            self.current_code = event.code
            if event.prompt:
                self.last_prompt = event.prompt
        else:
            raise TypeError(f"unknown event: {type(event).__name__}")
        self.updated_at = _utc_now()

    def apply_all(self, events: list[ConversationEvent]) -> "Conversation":
        for event in events:
            self.apply(event)
        return self

    def summary(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "last_prompt": self.last_prompt,
            "message_count": len(self.turns),
            "last_message": self.turns[-1].content[:100] if self.turns else None,
            "updated_at": self.updated_at,
            "created_at": self.created_at,
        }


# ---------------------------------------------------------------------------
# Store interface
# ---------------------------------------------------------------------------

class ConversationStore(ABC):
    def create(
        self,
        title: str | None = None,
        turns: list[ConversationTurn] | None = None,
        current_code: str | None = None,
        last_prompt: str | None = None,
    ) -> Conversation:
        conversation = Conversation(
            title=title or DEFAULT_TITLE,
            turns=list(turns or []),
            current_code=current_code,
            last_prompt=last_prompt,
        )
        self.save(conversation)
        return conversation

    @abstractmethod
    def get(self, conversation_id: str) -> Conversation: ...

    @abstractmethod
    def save(self, conversation: Conversation) -> None: ...

    @abstractmethod
    def delete(self, conversation_id: str) -> None: ...

    @abstractmethod
    def list(self) -> list[Conversation]: ...

    def import_many(self, conversations: list[Conversation]) -> int:
        for conversation in conversations:
            self.save(conversation)
        return len(conversations)


class InMemoryConversationStore(ConversationStore):
    def __init__(self):
        self._items: dict[str, Conversation] = {}
        self._lock = threading.Lock()

    def get(self, conversation_id: str) -> Conversation:
        with self._lock:
            item = self._items.get(conversation_id)
        if item is None:
            raise ConversationNotFoundError(conversation_id)
        return item.model_copy(deep=True)

    def save(self, conversation: Conversation) -> None:
        with self._lock:
            self._items[conversation.id] = conversation.model_copy(deep=True)

    def delete(self, conversation_id: str) -> None:
        with self._lock:
            if self._items.pop(conversation_id, None) is None:
                raise ConversationNotFoundError(conversation_id)

    def list(self) -> list[Conversation]:
        with self._lock:
            items = [c.model_copy(deep=True) for c in self._items.values()]
        return sorted(items, key=lambda c: c.updated_at, reverse=True)


class JsonFileConversationStore(ConversationStore):
    def __init__(self, root: Path):
        self.root = ensure_dir(Path(root))
        self._lock = threading.Lock()

    def _path(self, conversation_id: str) -> Path:
        # Only ids that are already filesystem-safe map to a file; anything
        # safe_name would rewrite could alias another conversation.
        if safe_name(conversation_id, fallback="") != conversation_id:
            raise ConversationNotFoundError(conversation_id)
        return self.root / f"{conversation_id}.json"

    def get(self, conversation_id: str) -> Conversation:
        path = self._path(conversation_id)
        if not path.exists():
            raise ConversationNotFoundError(conversation_id)
        return Conversation.model_validate_json(path.read_text(encoding="utf-8"))

    def save(self, conversation: Conversation) -> None:
        if safe_name(conversation.id, fallback="") != conversation.id:
            raise ValueError(f"conversation id is not filesystem-safe: {conversation.id!r}")
        with self._lock:
            write_text_atomic(self._path(conversation.id), conversation.model_dump_json(indent=2))

    def delete(self, conversation_id: str) -> None:
        path = self._path(conversation_id)
        with self._lock:
            if not path.exists():
                raise ConversationNotFoundError(conversation_id)
            path.unlink()

    def list(self) -> list[Conversation]:
        items: list[Conversation] = []
        for path in self.root.glob("*.json"):
            try:
                items.append(Conversation.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable conversation file %s: %s", path.name, exc)
        return sorted(items, key=lambda c: c.updated_at, reverse=True)


def build_store(storage_dir: Path | None) -> ConversationStore:
    if storage_dir is None:
        return InMemoryConversationStore()
    return JsonFileConversationStore(storage_dir)


