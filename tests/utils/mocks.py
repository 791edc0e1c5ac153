"""Mock utilities for cubechat tests."""

from unittest.mock import MagicMock

import requests


def create_streaming_mock(
    chunks: list[bytes], error: Exception | None = None, eof_on_close: bool = False
) -> MagicMock:
    """Mock requests.Response whose body arrives as the given chunks.

    When ``error`` is set it is raised after the last chunk, as a dropped
    connection would be. With ``eof_on_close`` the body ends as soon as the
    response is closed, the way a closed urllib3 response reads.
    """

    def iter_content(chunk_size=None):
        for chunk in chunks:
            if eof_on_close and resp.close.called:
                return
            yield chunk
        if error is not None:
            raise error

    resp = MagicMock(spec=requests.Response)
    resp.status_code = 200
    resp.ok = True
    resp.raw = MagicMock()
    resp.iter_content.side_effect = iter_content
    resp.close = MagicMock()
    return resp


def split_every(body: bytes, size: int) -> list[bytes]:
    """Split a body into fixed-size chunks."""
    return [body[i : i + size] for i in range(0, len(body), size)]


class FakeUpstream:
    """Stands in for CubeClient; hands out pre-built streams and records calls."""

    def __init__(self, *responses_or_errors):
        self._queue = list(responses_or_errors)
        self.calls: list[dict] = []
        self.opened = []

    def open_stream(self, *, chat_id, input, external_id, on_decode_error=None):
        from cubechat.upstream import UpstreamStream

        self.calls.append({"chat_id": chat_id, "input": input, "external_id": external_id})
        item = self._queue.pop(0)
        if isinstance(item, Exception):
            raise item
        stream = UpstreamStream(item, on_decode_error=on_decode_error)
        self.opened.append(stream)
        return stream
