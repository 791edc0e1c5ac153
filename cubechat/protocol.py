"""
Downstream NDJSON protocol between the chat service and its clients.

Protocol (one JSON object per line):
    {"type":"delta","content":"<fragment>"}
    {"type":"event","raw":{...upstream envelope...}}
    {"type":"done","conversationId":"<id>","messages":[...]}
    {"type":"error","error":"<message>"}

Zero or more ``delta``/``event`` lines precede exactly one terminal
``done`` (or ``error`` when the upstream fails mid-stream).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import json
import logging
from typing import Any

from .store import Message

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/x-ndjson"


class DownstreamType(str, Enum):
    """Downstream envelope kinds."""

    DELTA = "delta"
    EVENT = "event"
    DONE = "done"
    ERROR = "error"


@dataclass
class DownstreamEnvelope:
    """Base class for all downstream envelopes."""

    type: DownstreamType

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DownstreamEnvelope | None:
        """Parse a decoded line. Unknown or incomplete envelopes yield None."""
        try:
            kind = DownstreamType(data.get("type"))
        except ValueError:
            logger.debug("Unknown downstream envelope type: %r", data.get("type"))
            return None

        if kind is DownstreamType.DELTA:
            content = data.get("content")
            if not isinstance(content, str):
                return None
            return DeltaEnvelope(type=kind, content=content)

        if kind is DownstreamType.EVENT:
            raw = data.get("raw")
            if not isinstance(raw, dict):
                return None
            return EventEnvelope(type=kind, raw=raw)

        if kind is DownstreamType.DONE:
            messages = data.get("messages")
            if not isinstance(messages, list):
                return None
            return DoneEnvelope(
                type=kind,
                conversation_id=data.get("conversationId"),
                messages=[Message.from_dict(m) for m in messages if isinstance(m, dict)],
            )

        return ErrorEnvelope(type=kind, error=str(data.get("error") or "Unknown error"))


@dataclass
class DeltaEnvelope(DownstreamEnvelope):
    """One assistant text fragment (never the accumulated text)."""

    content: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "content": self.content}


@dataclass
class EventEnvelope(DownstreamEnvelope):
    """A raw upstream envelope carrying side-channel data."""

    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "raw": self.raw}


@dataclass
class DoneEnvelope(DownstreamEnvelope):
    """Terminal envelope with the canonical, persisted message list."""

    conversation_id: str | None = None
    messages: list[Message] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "conversationId": self.conversation_id,
            "messages": [m.to_dict() for m in self.messages],
        }


@dataclass
class ErrorEnvelope(DownstreamEnvelope):
    """Terminal envelope signalling the stream ended without a ``done``."""

    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "error": self.error}


def delta(content: str) -> DeltaEnvelope:
    return DeltaEnvelope(type=DownstreamType.DELTA, content=content)


def event(raw: dict[str, Any]) -> EventEnvelope:
    return EventEnvelope(type=DownstreamType.EVENT, raw=raw)


def done(conversation_id: str | None, messages: list[Message]) -> DoneEnvelope:
    return DoneEnvelope(
        type=DownstreamType.DONE, conversation_id=conversation_id, messages=messages
    )


def error(message: str) -> ErrorEnvelope:
    return ErrorEnvelope(type=DownstreamType.ERROR, error=message)


def encode_line(envelope: DownstreamEnvelope) -> str:
    """Serialize one envelope as an NDJSON line (with trailing newline)."""
    return json.dumps(envelope.to_dict(), ensure_ascii=False) + "\n"


def parse_line(line: str) -> DownstreamEnvelope | None:
    """Decode one NDJSON line. Malformed lines are logged and skipped."""
    if not line or not line.strip():
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        logger.warning("Failed to parse downstream line: %s", line[:200])
        return None
    if not isinstance(data, dict):
        logger.warning("Downstream line is not an object: %s", line[:200])
        return None
    return DownstreamEnvelope.from_dict(data)
