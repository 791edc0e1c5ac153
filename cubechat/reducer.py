"""
Client-side folding of the downstream protocol into renderable segments.

``SegmentReducer`` keeps the conversation as a list of ``MessageView``
objects. While a turn streams, the last view is an optimistic assistant
message that grows one segment at a time; the terminal ``done`` replaces
the whole list with the persisted record.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import json
import logging
import re
from typing import Any

from .envelope import as_text
from .protocol import (
    DeltaEnvelope,
    DoneEnvelope,
    DownstreamEnvelope,
    ErrorEnvelope,
    EventEnvelope,
)
from .store import Message, utc_now_iso

logger = logging.getLogger(__name__)

# A paragraph ends at a blank line
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")

_CALL_ID_KEYS = ("id", "toolCallId", "callId")

_HINT_FIELDS = ("chartType", "visualization", "query")


def canonical(value: Any) -> str:
    """Stable serialization used for structural equality."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def canonical_equal(a: Any, b: Any) -> bool:
    return canonical(a) == canonical(b)


def split_paragraphs(text: str) -> list[str]:
    return [part.strip() for part in _PARAGRAPH_BREAK.split(text) if part.strip()]


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    return list(value) if isinstance(value, list) else [value]


def _call_id(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    for key in _CALL_ID_KEYS:
        value = payload.get(key)
        if isinstance(value, str | int) and not isinstance(value, bool):
            return str(value)
    return None


class SegmentType(str, Enum):
    """Kinds of timeline segments."""

    THINKING = "thinking"
    TEXT = "text"
    TOOL_CALL = "toolCall"
    TOOL_RESULT = "toolResult"
    SQL = "sql"
    SQL_RESULT = "sqlResult"


@dataclass
class Segment:
    """One typed unit of the rendered timeline."""

    type: SegmentType
    value: Any

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "value": self.value}

    def same_as(self, other: Segment) -> bool:
        return self.type is other.type and canonical_equal(self.value, other.value)


@dataclass
class MessageView:
    """A message as the client renders it."""

    role: str
    content: str = ""
    timestamp: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    segments: list[Segment] = field(default_factory=list)
    assistant_chunks: list[str] = field(default_factory=list)
    thinking_steps: list[str] = field(default_factory=list)
    thinking_buffer: str = ""
    tool_calls: list[Any] = field(default_factory=list)
    tool_results: list[Any] = field(default_factory=list)
    sql_tool_calls: list[Any] = field(default_factory=list)
    sql_tool_results: list[Any] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_message(cls, message: Message) -> MessageView:
        """Build a view from a persisted message.

        Assistant messages get thinking steps, tool calls and results
        derived from their stored metadata, and a segment list in the
        order thinking, tools, SQL, text.
        """
        metadata = dict(message.metadata or {})
        view = cls(
            role=message.role,
            content=message.content,
            timestamp=message.timestamp,
            metadata=metadata,
        )
        if message.role != "assistant":
            return view

        view.assistant_chunks = [message.content] if message.content else []
        thinking = metadata.get("thinking")
        view.thinking_steps = split_paragraphs(thinking) if isinstance(thinking, str) else []
        view.tool_calls = _as_list(metadata.get("toolCall"))
        view.tool_results = _as_list(metadata.get("toolCallResult"))
        view.sql_tool_calls = _as_list(metadata.get("sqlToolCall"))
        view.sql_tool_results = _as_list(metadata.get("sqlToolCallResult"))

        for step in view.thinking_steps:
            view.segments.append(Segment(SegmentType.THINKING, step))
        for i, call in enumerate(view.tool_calls):
            if i < len(view.tool_results):
                result = view.tool_results[i]
            else:
                result = call.get("result") if isinstance(call, dict) else None
            view.segments.append(Segment(SegmentType.TOOL_CALL, {"call": call, "result": result}))
        for value in view.sql_tool_calls:
            view.segments.append(Segment(SegmentType.SQL, value))
        for value in view.sql_tool_results:
            view.segments.append(Segment(SegmentType.SQL_RESULT, value))
        if message.content:
            view.segments.append(Segment(SegmentType.TEXT, message.content))
        return view

    def to_message(self) -> Message:
        return Message(
            role=self.role,
            content=self.content,
            timestamp=self.timestamp,
            metadata=dict(self.metadata) or None,
        )


class SegmentReducer:
    """Folds downstream envelopes into per-message segment lists.

    Usage:
        reducer = SegmentReducer()
        reducer.begin("Sales by region?")
        for line in lines:
            envelope = parse_line(line)
            if envelope is not None:
                reducer.apply(envelope)
        print(reducer.messages[-1].content)
    """

    def __init__(self, messages: list[Message] | None = None):
        self.messages: list[MessageView] = [MessageView.from_message(m) for m in messages or []]
        self.conversation_id: str | None = None
        self.error: str | None = None
        self.finished = False
        self._open_calls: dict[str, Segment] = {}
        self._last_open_call: Segment | None = None

    def begin(self, user_content: str | None = None) -> MessageView:
        """Start a turn: append the optimistic user message and an empty assistant view."""
        self._reset_transient()
        self.error = None
        self.finished = False
        if user_content is not None:
            self.messages.append(
                MessageView(role="user", content=user_content, timestamp=utc_now_iso())
            )
        view = MessageView(role="assistant", timestamp=utc_now_iso())
        self.messages.append(view)
        return view

    @property
    def current(self) -> MessageView | None:
        """The in-flight assistant view, if any."""
        if self.messages and self.messages[-1].role == "assistant" and not self.finished:
            return self.messages[-1]
        return None

    def _assistant(self) -> MessageView:
        return self.current or self.begin()

    def apply(self, envelope: DownstreamEnvelope) -> None:
        if isinstance(envelope, DeltaEnvelope):
            self._on_delta(envelope.content)
        elif isinstance(envelope, EventEnvelope):
            self._on_event(envelope.raw)
        elif isinstance(envelope, DoneEnvelope):
            self._on_done(envelope)
        elif isinstance(envelope, ErrorEnvelope):
            self._on_error(envelope.error)

    def _push(self, view: MessageView, segment: Segment) -> None:
        if view.segments and view.segments[-1].same_as(segment):
            return
        view.segments.append(segment)

    @staticmethod
    def _dedup_append(values: list[Any], value: Any) -> None:
        if value is None:
            return
        if values and canonical_equal(values[-1], value):
            return
        values.append(value)

    def _on_delta(self, content: str) -> None:
        view = self._assistant()
        view.assistant_chunks.append(content)
        view.content += content
        view.segments.append(Segment(SegmentType.TEXT, content))

    def _on_event(self, raw: dict[str, Any]) -> None:
        view = self._assistant()
        if view.events and canonical_equal(view.events[-1], raw):
            logger.debug("Dropping repeated event")
            return
        view.events.append(raw)

        thinking = raw.get("thinking")
        if thinking is not None:
            self._on_thinking(view, as_text(thinking))
        if raw.get("isInProcess") is False:
            self._flush_thinking(view)

        tool_call = raw.get("toolCall")
        if tool_call is not None:
            self._on_tool_call(view, tool_call)

        tool_result = raw.get("toolCallResult")
        if tool_result is not None:
            self._on_tool_result(view, tool_result)

        sql_call = raw.get("sqlToolCall")
        if sql_call is not None:
            self._dedup_append(view.sql_tool_calls, sql_call)
            self._push(view, Segment(SegmentType.SQL, sql_call))

        sql_result = raw.get("sqlToolCallResult")
        if sql_result is not None:
            self._dedup_append(view.sql_tool_results, sql_result)
            self._push(view, Segment(SegmentType.SQL_RESULT, sql_result))

        for name in _HINT_FIELDS:
            if raw.get(name) is not None:
                view.metadata[name] = raw[name]

    def _on_thinking(self, view: MessageView, fragment: str) -> None:
        view.metadata["thinking"] = view.metadata.get("thinking", "") + fragment
        view.thinking_buffer += fragment
        *complete, view.thinking_buffer = _PARAGRAPH_BREAK.split(view.thinking_buffer)
        for part in complete:
            if part.strip():
                self._add_thinking_step(view, part.strip())

    def _flush_thinking(self, view: MessageView) -> None:
        remainder = view.thinking_buffer.strip()
        view.thinking_buffer = ""
        if remainder:
            self._add_thinking_step(view, remainder)

    @staticmethod
    def _add_thinking_step(view: MessageView, step: str) -> None:
        # Buffered text is consumed once, so equal paragraphs are separate steps
        view.thinking_steps.append(step)
        view.segments.append(Segment(SegmentType.THINKING, step))

    def _on_tool_call(self, view: MessageView, call: Any) -> None:
        self._dedup_append(view.tool_calls, call)
        result = call.get("result") if isinstance(call, dict) else None
        if result is not None:
            self._dedup_append(view.tool_results, result)

        call_id = _call_id(call)
        existing = self._open_calls.get(call_id) if call_id is not None else None
        if existing is not None:
            # Same call seen again, possibly now carrying its result
            if result is None:
                result = existing.value["result"]
            merged = {"call": call, "result": result}
            if not canonical_equal(existing.value, merged):
                existing.value = merged
            if merged["result"] is not None and self._last_open_call is existing:
                self._last_open_call = None
            return

        segment = Segment(SegmentType.TOOL_CALL, {"call": call, "result": result})
        if view.segments and view.segments[-1].same_as(segment):
            return
        view.segments.append(segment)
        if call_id is not None:
            self._open_calls[call_id] = segment
        self._last_open_call = segment if result is None else None

    def _on_tool_result(self, view: MessageView, result: Any) -> None:
        self._dedup_append(view.tool_results, result)
        call_id = _call_id(result)
        target = self._open_calls.get(call_id) if call_id is not None else None
        if target is None:
            target = self._last_open_call
        if target is not None and target.value.get("result") is None:
            target.value = {"call": target.value["call"], "result": result}
            if self._last_open_call is target:
                self._last_open_call = None
            return
        self._push(view, Segment(SegmentType.TOOL_RESULT, result))

    def _on_done(self, envelope: DoneEnvelope) -> None:
        self._reset_transient()
        if envelope.conversation_id:
            self.conversation_id = envelope.conversation_id
        self.messages = [MessageView.from_message(m) for m in envelope.messages]
        self.finished = True

    def _on_error(self, message: str) -> None:
        logger.warning("Stream ended with error: %s", message)
        self.error = message
        self.finished = True

    def _reset_transient(self) -> None:
        self._open_calls = {}
        self._last_open_call = None
