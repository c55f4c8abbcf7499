"""
store.py - Session store

Chat sessions outlive a single run, so the agents load and save them through
a small store interface instead of a module-level dict. Swap in any
persistence by implementing get / put / delete.
"""

from dataclasses import dataclass, field
from typing import Protocol

from .types import DocumentInfo


@dataclass
class ChatSession:
    """Persistent state of one chat conversation."""
    messages: list[dict] = field(default_factory=list)
    attached_images: list[str] = field(default_factory=list)
    attached_documents: list[DocumentInfo] = field(default_factory=list)
    total_tokens: int = 0

    @property
    def is_new(self) -> bool:
        return not self.messages


class SessionStore(Protocol):
    def get(self, session_id: str) -> ChatSession | None: ...

    def put(self, session_id: str, state: ChatSession) -> None: ...

    def delete(self, session_id: str) -> bool: ...


class InMemorySessionStore:
    def __init__(self):
        self._sessions: dict[str, ChatSession] = {}

    def get(self, session_id: str) -> ChatSession | None:
        return self._sessions.get(session_id)

    def put(self, session_id: str, state: ChatSession) -> None:
        self._sessions[session_id] = state

    def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def __len__(self) -> int:
        return len(self._sessions)
