"""
Downstream re-emission of one chat turn.

``ChatService.start_turn`` prepares the conversation and opens the upstream
stream; the returned ``ChatTurn`` is a generator of NDJSON lines ready to be
written to the client. Persistence of the assistant message happens only
after a clean upstream close.
"""

from __future__ import annotations

from collections.abc import Generator, Iterator
import logging

from ._exceptions import NotFoundError, UpstreamHttpError
from .aggregator import AggregatedReply, DeltaAggregator, DeltaUnit, EventUnit
from .protocol import DownstreamEnvelope, delta, done, encode_line, error, event
from .store import ConversationStore, Message, utc_now_iso
from .upstream import CubeClient, UpstreamStream

logger = logging.getLogger(__name__)

NO_RESPONSE = "No response"
TITLE_HINT_LENGTH = 50


class ChatTurn:
    """One assistant turn, re-emitted as the downstream protocol.

    Iterating yields encoded lines; ``envelopes()`` yields the envelope
    objects. Closing the iterator early (client disconnect) closes the
    upstream response and skips persistence.
    """

    def __init__(
        self,
        *,
        conversation_id: str,
        user_id: str,
        stream: UpstreamStream,
        store: ConversationStore,
    ):
        self.conversation_id = conversation_id
        self.user_id = user_id
        self._stream = stream
        self._store = store
        self.reply: AggregatedReply | None = None
        self.completed = False
        self.aborted = False
        self.failed: str | None = None

    def envelopes(self) -> Generator[DownstreamEnvelope, None, None]:
        aggregator = DeltaAggregator()
        try:
            for envelope in self._stream:
                for unit in aggregator.process(envelope):
                    if isinstance(unit, DeltaUnit):
                        if unit.content:
                            yield delta(unit.content)
                    elif isinstance(unit, EventUnit) and unit.envelope.has_side_channel():
                        yield event(unit.envelope.raw)
        except UpstreamHttpError as e:
            if self.aborted:
                logger.info("Turn %s aborted by the consumer", self.conversation_id)
                return
            logger.warning("Upstream failed mid-stream for %s: %s", self.conversation_id, e)
            self.failed = e.message
            yield error(e.message)
            return
        finally:
            self._stream.close()

        if self.aborted:
            # A closed response reads as EOF; what arrived so far is partial
            logger.info(
                "Turn %s aborted by the consumer; nothing persisted", self.conversation_id
            )
            return

        self.reply = aggregator.result()
        if not self.reply.saw_cutoff:
            logger.warning(
                "Upstream closed without a cutoff marker for %s; no content streamed",
                self.conversation_id,
            )

        try:
            self._store.add_message(
                self.conversation_id,
                Message(
                    role="assistant",
                    content=self.reply.text or NO_RESPONSE,
                    timestamp=utc_now_iso(),
                    metadata=self.reply.metadata or None,
                ),
            )
            messages = self._store.list_messages(self.conversation_id, self.user_id) or []
        except Exception as e:
            logger.exception("Failed to persist reply for %s", self.conversation_id)
            self.failed = f"Failed to save reply: {e}"
            yield error(self.failed)
            return
        self.completed = True
        logger.info(
            "Turn complete for %s: %d chars, %d envelopes accepted",
            self.conversation_id,
            len(self.reply.text),
            aggregator.accepted,
        )
        yield done(self.conversation_id, messages)

    def close(self) -> None:
        """Abort the turn; no further upstream reads happen and nothing is persisted."""
        self.aborted = True
        self._stream.close()

    def __iter__(self) -> Iterator[str]:
        envelopes = self.envelopes()
        try:
            for envelope in envelopes:
                yield encode_line(envelope)
        finally:
            envelopes.close()


class ChatService:
    """Wires the upstream client to the conversation store.

    Usage:
        service = ChatService(CubeClient(), InMemoryConversationStore())
        turn = service.start_turn(user_id="u1", content="Sales by region?")
        for line in turn:
            response.write(line)
    """

    def __init__(self, upstream: CubeClient, store: ConversationStore):
        self.upstream = upstream
        self.store = store

    def start_turn(
        self, *, user_id: str, content: str, conversation_id: str | None = None
    ) -> ChatTurn:
        """Open the upstream stream for one prompt.

        Raises UpstreamHttpError before any downstream byte exists; in that
        case no message is persisted. Raises NotFoundError when the given
        conversation does not belong to the user.
        """
        if not conversation_id:
            conversation_id = self.store.create_conversation(
                user_id, content[:TITLE_HINT_LENGTH]
            )
        elif self.store.list_messages(conversation_id, user_id) is None:
            raise NotFoundError(f"Conversation not found: {conversation_id}", status_code=404)
        user_message = Message(role="user", content=content, timestamp=utc_now_iso())

        stream = self.upstream.open_stream(
            chat_id=conversation_id, input=content, external_id=user_id
        )
        try:
            self.store.add_message(conversation_id, user_message)
        except Exception:
            stream.close()
            raise
        return ChatTurn(
            conversation_id=conversation_id, user_id=user_id, stream=stream, store=self.store
        )
