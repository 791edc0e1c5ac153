"""Python client for a running cubechat service."""

from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING, Any

from ._http import HTTPClient
from .framing import LineFramer
from .protocol import DeltaEnvelope, DownstreamEnvelope, parse_line
from .reducer import MessageView, SegmentReducer
from .store import ConversationSummary, Message

if TYPE_CHECKING:
    import requests


class ChatStream:
    """Iterable stream of downstream envelopes. Use as context manager or iterate directly.

    Usage:
        with client.chat.send("Sales by region?", user_id="u1") as stream:
            for envelope in stream:
                print(envelope.type, envelope.to_dict())
        print(stream.text)  # full assistant reply
    """

    def __init__(
        self,
        response: requests.Response,
        *,
        content: str | None = None,
        history: list[Message] | None = None,
    ):
        self._response = response
        self._framer = LineFramer()
        self._reducer = SegmentReducer(history)
        self._reducer.begin(content)
        self._deltas: list[str] = []
        self._closed = False

    def _close(self) -> None:
        """Close the underlying response (idempotent)."""
        if not self._closed:
            self._closed = True
            self._response.close()

    def _apply(self, line: str) -> DownstreamEnvelope | None:
        envelope = parse_line(line)
        if envelope is None:
            return None
        if isinstance(envelope, DeltaEnvelope):
            self._deltas.append(envelope.content)
        self._reducer.apply(envelope)
        return envelope

    def __iter__(self) -> Iterator[DownstreamEnvelope]:
        try:
            for chunk in self._response.iter_content(chunk_size=None):
                for line in self._framer.feed(chunk):
                    envelope = self._apply(line)
                    if envelope is not None:
                        yield envelope
            for line in self._framer.flush():
                envelope = self._apply(line)
                if envelope is not None:
                    yield envelope
        finally:
            self._close()

    def __enter__(self) -> ChatStream:
        return self

    def __exit__(self, *_: object) -> None:
        self._close()

    def until_done(self) -> ChatStream:
        """Consume the remaining stream and return self."""
        for _ in self:
            pass
        return self

    @property
    def reducer(self) -> SegmentReducer:
        return self._reducer

    @property
    def text(self) -> str:
        """Full assistant text; the persisted reply once ``done`` arrived."""
        message = self.message
        if message is not None and self._reducer.finished and not self.error:
            return message.content
        return "".join(self._deltas)

    @property
    def message(self) -> MessageView | None:
        """The last assistant message."""
        for view in reversed(self._reducer.messages):
            if view.role == "assistant":
                return view
        return None

    @property
    def messages(self) -> list[MessageView]:
        return self._reducer.messages

    @property
    def conversation_id(self) -> str | None:
        return self._reducer.conversation_id

    @property
    def error(self) -> str | None:
        return self._reducer.error


class Chat:
    """client.chat: send prompts and stream replies."""

    def __init__(self, http: HTTPClient):
        self._http = http

    def send(
        self,
        content: str,
        *,
        user_id: str | None = None,
        conversation_id: str | None = None,
        history: list[Message] | None = None,
    ) -> ChatStream:
        """Post one prompt. Returns an iterable ChatStream of downstream envelopes."""
        body: dict[str, Any] = {"content": content}
        if user_id is not None:
            body["userId"] = user_id
        if conversation_id is not None:
            body["conversationId"] = conversation_id
        resp = self._http.stream("POST", "/api/chat", json=body, retry=False)
        return ChatStream(resp, content=content, history=history)


class CubeChat:
    """Client for the cubechat HTTP service.

    Usage:
        client = CubeChat("http://localhost:4000")
        stream = client.chat.send("Sales by month?", user_id="u1").until_done()
        print(stream.conversation_id, stream.text)
    """

    def __init__(self, base_url: str = "http://localhost:4000", timeout: int = 300):
        self._http = HTTPClient(base_url=base_url, timeout=timeout)
        self.chat = Chat(self._http)

    def conversations(self, user_id: str) -> list[ConversationSummary]:
        resp = self._http.request("GET", "/api/conversations", params={"userId": user_id})
        return [
            ConversationSummary(
                id=item["id"],
                title=item.get("title"),
                created_at=item.get("createdAt", ""),
                last_message=item.get("lastMessage"),
                last_timestamp=item.get("lastTimestamp"),
            )
            for item in resp.json()
        ]

    def messages(self, conversation_id: str, user_id: str) -> list[Message]:
        """Persisted messages of a conversation. Raises NotFoundError for unknown ids."""
        resp = self._http.request(
            "GET", f"/api/conversations/{conversation_id}/messages", params={"userId": user_id}
        )
        return [Message.from_dict(m) for m in resp.json()]

    def token(self, external_id: str) -> str:
        resp = self._http.request("GET", "/api/token", params={"externalId": external_id})
        return resp.json()["token"]

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> CubeChat:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
