"""Tests for the upstream Cube chat client."""

import json
from unittest.mock import MagicMock

import pytest
import requests
import responses

from cubechat._exceptions import (
    AuthenticationError,
    ConfigurationError,
    UpstreamHttpError,
)
from cubechat.config import CubeConfig
from cubechat.upstream import CubeClient, UpstreamStream, build_request_body
from tests.utils.factories import ndjson, sales_scenario
from tests.utils.mocks import create_streaming_mock, split_every


def test_request_body():
    assert build_request_body(chat_id="c1", input="hi", external_id="u1") == {
        "sessionSettings": {"externalId": "u1", "email": "u1"},
        "chatId": "c1",
        "input": "hi",
    }


class TestUpstreamStream:
    def test_yields_envelopes_across_chunks(self):
        resp = create_streaming_mock(split_every(sales_scenario(), 3))
        stream = UpstreamStream(resp)
        contents = [env.content for env in stream]
        assert contents == ["hi", None, "Sales ", "are up."]
        resp.close.assert_called_once()
        assert stream.closed

    def test_bad_lines_are_counted_and_skipped(self):
        resp = create_streaming_mock([ndjson({"a": 1}, "{broken", "42", {"b": 2})])
        seen = []
        stream = UpstreamStream(resp, on_decode_error=seen.append)
        assert [env.raw for env in stream] == [{"a": 1}, {"b": 2}]
        assert stream.decode_errors == 2
        assert len(seen) == 2

    def test_unterminated_last_line(self):
        resp = create_streaming_mock([b'{"a": 1}\n{"b": 2}'])
        assert [env.raw for env in UpstreamStream(resp)] == [{"a": 1}, {"b": 2}]

    def test_connection_drop_becomes_upstream_error(self):
        resp = create_streaming_mock(
            [ndjson({"a": 1})], error=requests.exceptions.ChunkedEncodingError("reset")
        )
        stream = UpstreamStream(resp)
        it = iter(stream)
        assert next(it).raw == {"a": 1}
        with pytest.raises(UpstreamHttpError, match="interrupted"):
            next(it)
        resp.close.assert_called_once()

    def test_context_manager_closes(self):
        resp = create_streaming_mock([])
        with UpstreamStream(resp):
            pass
        resp.close.assert_called_once()

    def test_close_is_idempotent(self):
        resp = create_streaming_mock([])
        stream = UpstreamStream(resp)
        stream.close()
        stream.close()
        resp.close.assert_called_once()


class TestCubeClient:
    def test_requires_configuration(self):
        with pytest.raises(ConfigurationError):
            CubeClient(CubeConfig(api_base="https://cube.test"))

    @responses.activate
    def test_open_stream(self, cube_config, chat_url):
        responses.add(responses.POST, chat_url, body=sales_scenario(), status=200)
        client = CubeClient(cube_config)
        with client.open_stream(chat_id="c1", input="hi", external_id="u1") as stream:
            envelopes = list(stream)
        assert [e.content for e in envelopes][-2:] == ["Sales ", "are up."]
        request = responses.calls[0].request
        assert request.headers["Authorization"] == "Api-Key test-api-key-12345"
        assert json.loads(request.body)["chatId"] == "c1"

    @responses.activate
    def test_http_500_raises_before_streaming(self, cube_config, chat_url):
        responses.add(responses.POST, chat_url, json={"error": "boom"}, status=500)
        responses.add(responses.POST, chat_url, body=sales_scenario(), status=200)
        with pytest.raises(UpstreamHttpError) as exc_info:
            CubeClient(cube_config).open_stream(chat_id="c1", input="hi", external_id="u1")
        assert exc_info.value.status_code == 500
        # The prompt is sent once; a resend would start a second turn
        assert len(responses.calls) == 1

    @responses.activate
    def test_static_key_is_not_refreshed(self, cube_config, chat_url):
        responses.add(responses.POST, chat_url, json={"error": "bad key"}, status=401)
        with pytest.raises(AuthenticationError):
            CubeClient(cube_config).open_stream(chat_id="c1", input="hi", external_id="u1")
        assert len(responses.calls) == 1

    @responses.activate
    def test_refreshable_token_retried_once(self, cube_config, chat_url):
        responses.add(responses.POST, chat_url, json={"error": "expired"}, status=401)
        responses.add(responses.POST, chat_url, body=sales_scenario(), status=200)
        tokens = MagicMock()
        tokens.refreshable = True
        tokens.get_token.side_effect = ["stale", "fresh"]

        stream = CubeClient(cube_config, tokens=tokens).open_stream(
            chat_id="c1", input="hi", external_id="u1"
        )
        stream.close()

        tokens.invalidate.assert_called_once_with("u1")
        tokens.get_token.assert_called_with("u1", force_refresh=True)
        assert responses.calls[1].request.headers["Authorization"] == "Api-Key fresh"
