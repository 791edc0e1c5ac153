"""Cube chat stream client: opens the upstream request and yields decoded envelopes."""

from __future__ import annotations

from collections.abc import Iterator
import logging
from typing import TYPE_CHECKING, Any

import requests

from ._exceptions import (
    AuthenticationError,
    DecodeError,
    PermissionDeniedError,
    UpstreamHttpError,
)
from ._http import HTTPClient
from .auth import StaticTokenProvider, TokenProvider
from .config import CubeConfig
from .envelope import Envelope, decode_envelope
from .framing import LineFramer

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


def build_request_body(*, chat_id: str, input: str, external_id: str) -> dict[str, Any]:
    """JSON body of the upstream chat request."""
    return {
        "sessionSettings": {"externalId": external_id, "email": external_id},
        "chatId": chat_id,
        "input": input,
    }


class UpstreamStream:
    """Iterable stream of upstream envelopes. Use as context manager or iterate directly.

    Usage:
        with client.open_stream(chat_id="c1", input="hi", external_id="u1") as stream:
            for envelope in stream:
                print(envelope.raw)
        print(stream.decode_errors)
    """

    def __init__(
        self,
        response: requests.Response,
        on_decode_error: Callable[[DecodeError], None] | None = None,
    ):
        self._response = response
        self._framer = LineFramer()
        self._on_decode_error = on_decode_error
        self._closed = False
        self.decode_errors = 0

    def _close(self) -> None:
        """Close the underlying response (idempotent)."""
        if not self._closed:
            self._closed = True
            self._response.close()

    def close(self) -> None:
        self._close()

    @property
    def closed(self) -> bool:
        return self._closed

    def _decode(self, line: str) -> Envelope | None:
        return decode_envelope(line, on_error=self._count_error)

    def _count_error(self, error: DecodeError) -> None:
        self.decode_errors += 1
        if self._on_decode_error is not None:
            self._on_decode_error(error)

    def __iter__(self) -> Iterator[Envelope]:
        try:
            try:
                for chunk in self._response.iter_content(chunk_size=None):
                    for line in self._framer.feed(chunk):
                        envelope = self._decode(line)
                        if envelope is not None:
                            yield envelope
            except requests.RequestException as e:
                raise UpstreamHttpError(f"Upstream stream interrupted: {e}") from e

            for line in self._framer.flush():
                envelope = self._decode(line)
                if envelope is not None:
                    yield envelope
        finally:
            self._close()

    def __enter__(self) -> UpstreamStream:
        return self

    def __exit__(self, *_: object) -> None:
        self._close()


class CubeClient:
    """Client for the Cube streaming chat endpoint.

    Usage:
        client = CubeClient(CubeConfig.from_env())
        stream = client.open_stream(chat_id=conversation_id, input="Sales by month?",
                                    external_id=user_id)
    """

    def __init__(
        self,
        config: CubeConfig | None = None,
        tokens: TokenProvider | None = None,
        http: HTTPClient | None = None,
    ):
        self.config = (config or CubeConfig.from_env()).require()
        self._tokens = tokens or StaticTokenProvider(self.config.api_key)
        self._http = http or HTTPClient(timeout=self.config.timeout)

    def open_stream(
        self,
        *,
        chat_id: str,
        input: str,
        external_id: str,
        on_decode_error: Callable[[DecodeError], None] | None = None,
    ) -> UpstreamStream:
        """Open the upstream request. Raises UpstreamHttpError before yielding anything."""
        body = build_request_body(chat_id=chat_id, input=input, external_id=external_id)
        url = self.config.chat_url

        token = self._tokens.get_token(external_id)
        try:
            resp = self._http.stream("POST", url, json=body, api_key=token, retry=False)
        except (AuthenticationError, PermissionDeniedError):
            if not self._tokens.refreshable:
                raise
            # Cached session token may be stale; refresh once
            logger.info("Upstream rejected credential for %s, refreshing", external_id)
            self._tokens.invalidate(external_id)
            token = self._tokens.get_token(external_id, force_refresh=True)
            resp = self._http.stream("POST", url, json=body, api_key=token, retry=False)

        if resp.raw is None:
            resp.close()
            raise UpstreamHttpError(
                f"Cube API HTTP {resp.status_code}: empty body", status_code=resp.status_code
            )

        logger.debug("Opened upstream stream for chat %s", chat_id)
        return UpstreamStream(resp, on_decode_error=on_decode_error)
