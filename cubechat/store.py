"""Conversation persistence interface, message model, and in-memory store."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import os
from threading import RLock
from typing import Any, Literal, Protocol
import uuid

Role = Literal["user", "assistant", "system"]


def utc_now_iso() -> str:
    """Current UTC time as an ISO8601 string with a ``Z`` suffix."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class Message:
    """Durable projection of one conversation turn."""

    role: str
    content: str
    timestamp: str
    metadata: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        metadata = data.get("metadata")
        return cls(
            role=data.get("role", "assistant"),
            content=data.get("content") or "",
            timestamp=data.get("timestamp", ""),
            metadata=metadata if isinstance(metadata, dict) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.metadata is not None:
            out["metadata"] = self.metadata
        return out


@dataclass
class ConversationSummary:
    """Sidebar row for a conversation."""

    id: str
    title: str | None
    created_at: str
    last_message: str | None = None
    last_timestamp: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at,
            "lastMessage": self.last_message,
            "lastTimestamp": self.last_timestamp,
        }


class ConversationStore(Protocol):
    """Storage collaborator. Implementations serialize their own writes."""

    def create_conversation(self, user_id: str, title: str | None = None) -> str: ...

    def add_message(self, conversation_id: str, message: Message) -> None: ...

    def list_messages(self, conversation_id: str, user_id: str) -> list[Message] | None: ...

    def list_conversations(self, user_id: str) -> list[ConversationSummary]: ...


@dataclass
class _Conversation:
    id: str
    user_id: str
    title: str | None
    created_at: str


class InMemoryConversationStore:
    """Process-local store; messages are kept in insertion order."""

    def __init__(self) -> None:
        self._conversations: dict[str, _Conversation] = {}
        self._messages: dict[str, list[Message]] = {}
        self._lock = RLock()

    def create_conversation(self, user_id: str, title: str | None = None) -> str:
        with self._lock:
            cid = str(uuid.uuid4())
            self._conversations[cid] = _Conversation(
                id=cid, user_id=user_id, title=title, created_at=utc_now_iso()
            )
            self._messages[cid] = []
            return cid

    def add_message(self, conversation_id: str, message: Message) -> None:
        with self._lock:
            if conversation_id not in self._conversations:
                raise KeyError(f"Conversation not found: {conversation_id}")
            stored = Message(
                role=message.role,
                content=message.content,
                timestamp=message.timestamp,
                metadata=dict(message.metadata) if message.metadata is not None else None,
            )
            self._messages[conversation_id].append(stored)

    def list_messages(self, conversation_id: str, user_id: str) -> list[Message] | None:
        with self._lock:
            convo = self._conversations.get(conversation_id)
            if convo is None or convo.user_id != user_id:
                return None
            return list(self._messages.get(conversation_id, []))

    def list_conversations(self, user_id: str) -> list[ConversationSummary]:
        with self._lock:
            out: list[ConversationSummary] = []
            for convo in self._conversations.values():
                if convo.user_id != user_id:
                    continue
                messages = self._messages.get(convo.id, [])
                last = messages[-1] if messages else None
                out.append(
                    ConversationSummary(
                        id=convo.id,
                        title=convo.title,
                        created_at=convo.created_at,
                        last_message=last.content if last else None,
                        last_timestamp=last.timestamp if last else None,
                    )
                )
            # Newest first
            return sorted(out, key=lambda c: c.created_at, reverse=True)


_store: ConversationStore | None = None


def get_store(database_url: str | None = None) -> ConversationStore:
    """Process-wide store: SQL when a database URL is configured, else in-memory."""
    global _store
    if _store is None:
        url = database_url or os.environ.get("CUBECHAT_DATABASE_URL")
        if url:
            from .db import SQLConversationStore

            _store = SQLConversationStore(url)
        else:
            _store = InMemoryConversationStore()
    return _store


def reset_store() -> None:
    global _store
    _store = None
