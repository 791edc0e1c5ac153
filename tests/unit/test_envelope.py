"""Tests for upstream envelope decoding."""

import logging

from cubechat._exceptions import DecodeError
from cubechat.envelope import CUTOFF_ID, Envelope, decode_envelope


class TestDecodeEnvelope:
    def test_decodes_object(self):
        env = decode_envelope('{"role":"assistant","content":"hi"}')
        assert env is not None
        assert env.role == "assistant"
        assert env.content == "hi"

    def test_invalid_json_is_skipped_with_warning(self, caplog):
        errors = []
        with caplog.at_level(logging.WARNING, logger="cubechat.envelope"):
            assert decode_envelope("{not json", on_error=errors.append) is None
        assert len(errors) == 1
        assert isinstance(errors[0], DecodeError)
        assert errors[0].line == "{not json"
        assert "Failed to parse" in caplog.text

    def test_non_object_is_skipped(self):
        errors = []
        assert decode_envelope("[1, 2]", on_error=errors.append) is None
        assert "Expected JSON object" in errors[0].message

    def test_no_callback_needed(self):
        assert decode_envelope("nope") is None


class TestEnvelope:
    def test_null_is_distinct_from_absent(self):
        env = Envelope.from_dict({"toolCall": None})
        assert env.has("toolCall")
        assert not env.has("thinking")
        assert env.get("toolCall") is None

    def test_cutoff_detection(self):
        env = Envelope.from_dict({"id": CUTOFF_ID, "state": {"isStreaming": True}})
        assert env.is_cutoff
        assert env.is_streaming

    def test_streaming_flag_requires_literal_true(self):
        for state in ({"isStreaming": False}, {"isStreaming": "true"}, {}, None):
            assert not Envelope.from_dict({"id": CUTOFF_ID, "state": state}).is_streaming

    def test_user_echo(self):
        assert Envelope.from_dict({"role": "user", "content": "q"}).is_user_echo
        assert not Envelope.from_dict({"role": "assistant"}).is_user_echo

    def test_side_channel_requires_a_value(self):
        assert Envelope.from_dict({"chartType": "bar"}).has_side_channel()
        assert Envelope.from_dict({"query": {"measures": []}}).has_side_channel()
        assert not Envelope.from_dict({"thinking": None}).has_side_channel()
        assert not Envelope.from_dict({"role": "assistant", "content": "x"}).has_side_channel()
