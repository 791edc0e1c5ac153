"""
Replay gate and delta aggregation for the upstream Cube chat stream.

The upstream first replays the whole conversation, then sends a cutoff
marker, then streams the live turn. ``ReplayGate`` drops the replay;
``DeltaAggregator`` folds the live envelopes into one assistant reply plus
side-channel metadata and tells the caller what to forward downstream.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Any

from .envelope import ROLE_ASSISTANT, Envelope, as_text

logger = logging.getLogger(__name__)


class GateState(str, Enum):
    """Replay gate states."""

    SUPPRESSING = "suppressing"
    STREAMING = "streaming"


class ReplayGate:
    """Two-state gate that suppresses replayed history until the cutoff marker.

    On a cutoff envelope the next state is STREAMING iff ``state.isStreaming``
    is literally ``true``; the cutoff itself is never admitted. While
    STREAMING, user echoes are dropped.
    """

    def __init__(self) -> None:
        self.state = GateState.SUPPRESSING
        self.saw_cutoff = False

    def admit(self, envelope: Envelope) -> bool:
        """Return True if the envelope belongs to the live assistant turn."""
        if envelope.is_cutoff:
            self.saw_cutoff = True
            self.state = GateState.STREAMING if envelope.is_streaming else GateState.SUPPRESSING
            logger.debug("Cutoff marker observed, gate is now %s", self.state.value)
            return False

        if self.state is GateState.SUPPRESSING:
            return False

        return not envelope.is_user_echo


class MergePolicy(str, Enum):
    """How a side channel folds successive values."""

    OVERWRITE = "overwrite"
    APPEND = "append"
    SHALLOW_MERGE = "shallow_merge"


@dataclass(frozen=True)
class Channel:
    """A named side channel of the upstream envelope."""

    name: str
    policy: MergePolicy


CHANNELS: tuple[Channel, ...] = (
    Channel("metadata", MergePolicy.SHALLOW_MERGE),
    Channel("thinking", MergePolicy.APPEND),
    Channel("toolCall", MergePolicy.OVERWRITE),
    Channel("toolCallResult", MergePolicy.OVERWRITE),
    Channel("sqlToolCall", MergePolicy.OVERWRITE),
    Channel("sqlToolCallResult", MergePolicy.OVERWRITE),
)


class AggregatedMetadata:
    """Per-turn accumulator of side-channel values.

    Keys are only ever set or overwritten, never removed. Null values are
    treated as "no update" so a key cannot be cleared mid-turn.
    """

    def __init__(self, channels: tuple[Channel, ...] = CHANNELS) -> None:
        self._channels = channels
        self._values: dict[str, Any] = {}

    def merge(self, envelope: Envelope) -> None:
        for channel in self._channels:
            if not envelope.has(channel.name):
                continue
            value = envelope.get(channel.name)
            if value is None:
                continue

            if channel.policy is MergePolicy.SHALLOW_MERGE:
                if isinstance(value, dict):
                    self._values.update(value)
                else:
                    logger.debug("Ignoring non-object %s: %r", channel.name, value)
            elif channel.policy is MergePolicy.APPEND:
                existing = self._values.get(channel.name)
                if not isinstance(existing, str):
                    existing = ""
                self._values[channel.name] = existing + as_text(value)
            else:
                self._values[channel.name] = value

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __bool__(self) -> bool:
        return bool(self._values)

    def to_dict(self) -> dict[str, Any]:
        return dict(self._values)


@dataclass
class DeltaUnit:
    """An assistant text fragment to forward as a ``delta``."""

    content: str


@dataclass
class EventUnit:
    """An accepted raw envelope to forward as an ``event``."""

    envelope: Envelope


StreamUnit = DeltaUnit | EventUnit


@dataclass
class AggregatedReply:
    """Final projection of one assistant turn."""

    text: str
    metadata: dict[str, Any] = field(default_factory=dict)
    saw_cutoff: bool = False


class DeltaAggregator:
    """
    Folds gated upstream envelopes into one assistant reply.

    Lives for exactly one turn. Every accepted envelope is returned as an
    EventUnit so downstream consumers see fields the aggregator does not
    interpret; assistant string content is additionally returned as a
    DeltaUnit carrying just that fragment.
    """

    def __init__(self) -> None:
        self.gate = ReplayGate()
        self.metadata = AggregatedMetadata()
        self._text_parts: list[str] = []
        self.accepted = 0

    def process(self, envelope: Envelope) -> list[StreamUnit]:
        """Process one envelope and return the units to forward."""
        if not self.gate.admit(envelope):
            return []

        self.accepted += 1
        self.metadata.merge(envelope)
        units: list[StreamUnit] = [EventUnit(envelope)]

        content = envelope.content
        if envelope.role == ROLE_ASSISTANT and isinstance(content, str):
            self._text_parts.append(content)
            units.append(DeltaUnit(content))

        return units

    @property
    def text(self) -> str:
        """Assistant text accumulated so far."""
        return "".join(self._text_parts)

    def result(self) -> AggregatedReply:
        return AggregatedReply(
            text=self.text,
            metadata=self.metadata.to_dict(),
            saw_cutoff=self.gate.saw_cutoff,
        )
