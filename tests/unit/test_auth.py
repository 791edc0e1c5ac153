"""Tests for upstream credential providers."""

import json

import pytest
import responses

from cubechat._exceptions import ConfigurationError, UpstreamHttpError
from cubechat._http import HTTPClient
from cubechat.auth import (
    SESSION_PATH,
    TOKEN_PATH,
    SessionTokenProvider,
    StaticTokenProvider,
)
from cubechat.config import CubeConfig

BASE = "https://cube.test"


def _add_exchange(session_id="sess_1", token="tok_1"):
    responses.add(responses.POST, BASE + SESSION_PATH, json={"sessionId": session_id})
    responses.add(responses.POST, BASE + TOKEN_PATH, json={"token": token})


@pytest.fixture
def provider():
    return SessionTokenProvider(HTTPClient(base_url=BASE, api_key="k"))


class TestStaticTokenProvider:
    def test_returns_key(self):
        provider = StaticTokenProvider("k")
        assert provider.get_token("anyone") == "k"
        assert not provider.refreshable

    def test_missing_key(self):
        with pytest.raises(ConfigurationError):
            StaticTokenProvider(None)


class TestSessionTokenProvider:
    @responses.activate
    def test_two_step_exchange(self, provider):
        _add_exchange()
        assert provider.get_token("user-42") == "tok_1"
        assert json.loads(responses.calls[0].request.body) == {
            "externalId": "user-42",
            "email": "user-42",
        }
        assert json.loads(responses.calls[1].request.body) == {"sessionId": "sess_1"}
        assert responses.calls[0].request.headers["Authorization"] == "Api-Key k"

    @responses.activate
    def test_token_is_cached_per_user(self, provider):
        _add_exchange()
        _add_exchange(token="tok_2")
        assert provider.get_token("u1") == "tok_1"
        assert provider.get_token("u1") == "tok_1"
        assert provider.get_token("u2") == "tok_2"
        assert len(responses.calls) == 4

    @responses.activate
    def test_force_refresh(self, provider):
        _add_exchange()
        _add_exchange(token="tok_fresh")
        provider.get_token("u1")
        assert provider.get_token("u1", force_refresh=True) == "tok_fresh"

    @responses.activate
    def test_invalidate(self, provider):
        _add_exchange()
        _add_exchange(token="tok_again")
        provider.get_token("u1")
        provider.invalidate("u1")
        assert provider.get_token("u1") == "tok_again"

    @responses.activate
    def test_missing_field(self, provider):
        responses.add(responses.POST, BASE + SESSION_PATH, json={"unexpected": True})
        with pytest.raises(UpstreamHttpError, match="sessionId"):
            provider.get_token("u1")

    def test_from_config_requires_base_and_key(self):
        with pytest.raises(ConfigurationError) as exc_info:
            SessionTokenProvider.from_config(CubeConfig(api_base=BASE))
        assert exc_info.value.missing == ["CUBE_API_KEY"]

    def test_from_config(self):
        provider = SessionTokenProvider.from_config(CubeConfig(api_base=BASE, api_key="k"))
        assert provider.refreshable
