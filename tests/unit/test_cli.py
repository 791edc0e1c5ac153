"""Tests for the cubechat command line."""

import json
from unittest.mock import patch

import pytest
import responses

from cubechat.cli.main import _build_parser, _real_main
from cubechat.cli.util import CANCELLED_EXIT, graceful_main
from tests.utils.factories import sales_scenario
from tests.utils.mocks import FakeUpstream, create_streaming_mock


class TestParser:
    def test_ask_defaults(self):
        args = _build_parser().parse_args(["ask", "Sales?"])
        assert args.user_id == "anonymous"
        assert args.format == "verbose"

    def test_json_flag(self):
        assert _build_parser().parse_args(["ask", "q", "--json"]).format == "json"

    def test_no_command_prints_help(self, capsys):
        assert _real_main([]) == 0
        assert "usage" in capsys.readouterr().out.lower()


class TestAsk:
    def test_json_output(self, cube_env, capsys):
        upstream = FakeUpstream(create_streaming_mock([sales_scenario()]))
        with patch("cubechat.cli.main.CubeClient", return_value=upstream):
            code = _real_main(["ask", "hi", "--json", "--user-id", "u1"])
        assert code == 0
        lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line]
        assert [o["type"] for o in lines] == ["delta", "delta", "done"]
        assert upstream.calls[0]["external_id"] == "u1"

    def test_compact_output(self, cube_env, capsys):
        upstream = FakeUpstream(create_streaming_mock([sales_scenario()]))
        with patch("cubechat.cli.main.CubeClient", return_value=upstream):
            assert _real_main(["ask", "hi", "--format", "compact"]) == 0
        assert "Sales are up." in capsys.readouterr().out

    def test_unconfigured(self, capsys):
        assert _real_main(["ask", "hi"]) == 1
        assert "Cube API not configured" in capsys.readouterr().err


class TestHistory:
    @responses.activate
    def test_prints_messages(self, capsys):
        responses.add(
            responses.GET,
            "http://svc.test/api/conversations/c1/messages",
            json=[
                {"role": "user", "content": "hi", "timestamp": "t0"},
                {"role": "assistant", "content": "Sales are up.", "timestamp": "t1"},
            ],
        )
        assert _real_main(["history", "c1", "--base-url", "http://svc.test"]) == 0
        out = capsys.readouterr().out
        assert "hi" in out
        assert "Sales are up." in out

    @responses.activate
    def test_not_found(self, capsys):
        responses.add(
            responses.GET,
            "http://svc.test/api/conversations/c1/messages",
            json={"error": "Not found"},
            status=404,
        )
        assert _real_main(["history", "c1", "--base-url", "http://svc.test"]) == 1


class TestGracefulMain:
    def test_returns_exit_code(self):
        assert graceful_main(lambda argv: 3, []) == 3

    def test_keyboard_interrupt(self):
        def interrupted(argv):
            raise KeyboardInterrupt

        assert graceful_main(interrupted, []) == CANCELLED_EXIT


def test_version(capsys):
    with pytest.raises(SystemExit):
        _real_main(["--version"])
    assert "cubechat" in capsys.readouterr().out
