"""
Upstream envelope model and line decoder.

Each line of the Cube chat stream is one JSON object. Any subset of the
known fields may be present, and an explicit ``null`` is kept distinct
from an absent key by holding on to the raw dictionary.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
import json
import logging
from typing import Any

from ._exceptions import DecodeError

logger = logging.getLogger(__name__)

CUTOFF_ID = "__cutoff__"

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"

# Fields whose presence makes an envelope worth forwarding as an ``event``
SIDE_CHANNEL_FIELDS: tuple[str, ...] = (
    "thinking",
    "toolCall",
    "toolCallResult",
    "sqlToolCall",
    "sqlToolCallResult",
    "chartType",
    "visualization",
    "query",
)


def as_text(value: Any) -> str:
    """Text of a field that should be a string; other JSON values are serialized."""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


@dataclass
class Envelope:
    """One decoded upstream stream object."""

    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Envelope":
        return cls(raw=dict(data))

    def has(self, name: str) -> bool:
        """True if the field is present, even when its value is null."""
        return name in self.raw

    def get(self, name: str, default: Any = None) -> Any:
        return self.raw.get(name, default)

    @property
    def id(self) -> Any:
        return self.raw.get("id")

    @property
    def role(self) -> str | None:
        role = self.raw.get("role")
        return role if isinstance(role, str) else None

    @property
    def content(self) -> Any:
        return self.raw.get("content")

    @property
    def is_cutoff(self) -> bool:
        return self.raw.get("id") == CUTOFF_ID

    @property
    def is_streaming(self) -> bool:
        """Literal ``state.isStreaming is True``; anything else reads as not streaming."""
        state = self.raw.get("state")
        return isinstance(state, dict) and state.get("isStreaming") is True

    @property
    def is_user_echo(self) -> bool:
        return self.role == ROLE_USER

    def has_side_channel(self) -> bool:
        """True if at least one side-channel field carries a value."""
        return any(self.raw.get(name) is not None for name in SIDE_CHANNEL_FIELDS)


def decode_envelope(
    line: str, on_error: Callable[[DecodeError], None] | None = None
) -> Envelope | None:
    """
    Decode one framed line.

    Malformed lines are logged and skipped; this never raises.

    Args:
        line: One complete line from the framer
        on_error: Optional callback receiving the DecodeError for the line

    Returns:
        The Envelope, or None if the line could not be decoded
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        _report(DecodeError(f"Failed to parse stream line: {e}", line=line), on_error)
        return None

    if not isinstance(data, dict):
        _report(
            DecodeError(f"Expected JSON object, got {type(data).__name__}", line=line), on_error
        )
        return None

    return Envelope.from_dict(data)


def _report(error: DecodeError, on_error: Callable[[DecodeError], None] | None) -> None:
    logger.warning("%s: %s", error.message, error.line[:200])
    if on_error is not None:
        on_error(error)
