"""Unit tests for the bridgectl client and commands."""

import io
import json
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from chatbridge.cli import commands
from chatbridge.cli.client import DEFAULT_API_URL, BridgeClient
from chatbridge.cli.main import build_parser, main


def _make_client() -> BridgeClient:
    return BridgeClient(api_url="http://127.0.0.1:8430")


STATUS = {
    "session": "agent",
    "chat_connected": True,
    "monitor": {
        "current_state": "input_prompt",
        "poll_interval": 3.0,
        "is_paused": False,
        "phase": "scheduled",
        "watching": False,
        "last_sample_at": None,
        "last_result": None,
        "samples_taken": 4,
    },
    "ticks": 4,
    "max_in_flight": 1,
    "processes": {"active": 0, "spawned": 4, "timed_out": 0},
    "buffer_chars": 120,
    "inputs_sent": 1,
}


# ============================================================================
# BridgeClient
# ============================================================================


def test_api_url_from_environment(monkeypatch):
    monkeypatch.setenv("CHATBRIDGE_API_URL", "http://10.0.0.5:9000/")
    assert BridgeClient().api_url == "http://10.0.0.5:9000"


def test_default_api_url(monkeypatch):
    monkeypatch.delenv("CHATBRIDGE_API_URL", raising=False)
    assert BridgeClient().api_url == DEFAULT_API_URL


def test_send_input_posts_text():
    client = _make_client()
    captured = {}

    def fake_request(method, path, data=None, timeout=None):
        captured.update(method=method, path=path, data=data, timeout=timeout)
        return {"session": "agent", "replies": []}, True, False

    with patch.object(client, "_request", side_effect=fake_request):
        data, success, unavailable = client.send_input("yes")

    assert captured == {"method": "POST", "path": "/input", "data": {"text": "yes"}, "timeout": 10}
    assert success is True
    assert unavailable is False


def test_request_parses_json_response():
    client = _make_client()
    response = MagicMock()
    response.read.return_value = json.dumps({"status": "ok"}).encode()
    response.__enter__.return_value = response

    with patch("urllib.request.urlopen", return_value=response) as urlopen:
        data, success, unavailable = client.health()

    request = urlopen.call_args[0][0]
    assert request.full_url == "http://127.0.0.1:8430/health"
    assert request.get_method() == "GET"
    assert (data, success, unavailable) == ({"status": "ok"}, True, False)


def test_request_connection_refused_is_unavailable():
    client = _make_client()

    with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("refused")):
        data, success, unavailable = client.status()

    assert (data, success, unavailable) == (None, False, True)


def test_request_http_error_returns_detail():
    client = _make_client()
    error = urllib.error.HTTPError(
        "http://127.0.0.1:8430/input", 503, "Service Unavailable", {},
        io.BytesIO(b'{"detail": "No active session"}'),
    )

    with patch("urllib.request.urlopen", side_effect=error):
        data, success, unavailable = client.send_input("hi")

    assert data == {"detail": "No active session"}
    assert success is False
    assert unavailable is False


# ============================================================================
# Commands
# ============================================================================


def test_cmd_status_prints_summary(capsys):
    client = MagicMock()
    client.status.return_value = (STATUS, True, False)

    assert commands.cmd_status(client) == 0

    out = capsys.readouterr().out
    assert "Session:   agent" in out
    assert "State:     input_prompt" in out
    assert "scheduled, every 3.0s" in out


def test_cmd_status_unavailable(capsys):
    client = MagicMock()
    client.status.return_value = (None, False, True)

    assert commands.cmd_status(client) == 2
    assert "unavailable" in capsys.readouterr().err


def test_cmd_sessions_marks_current(capsys):
    client = MagicMock()
    client.list_sessions.return_value = (
        {"current": "agent", "sessions": [
            {"name": "agent", "current": True},
            {"name": "other", "current": False},
        ]},
        True,
        False,
    )

    assert commands.cmd_sessions(client) == 0
    assert capsys.readouterr().out.splitlines() == ["* agent", "  other"]


def test_cmd_send_prints_replies(capsys):
    client = MagicMock()
    client.send_input.return_value = ({"session": "agent", "replies": ["$ ls\nREADME.md"]}, True, False)

    assert commands.cmd_send(client, "!ls") == 0
    assert "README.md" in capsys.readouterr().out


def test_cmd_send_api_error(capsys):
    client = MagicMock()
    client.send_input.return_value = ({"detail": "No active session"}, False, False)

    assert commands.cmd_send(client, "hi") == 1
    assert "No active session" in capsys.readouterr().err


def test_cmd_dedupstats(capsys):
    stats = {"size": 1, "max_size": 1000, "ttl_seconds": 3600, "hits": 2, "misses": 3, "evictions": 0}
    client = MagicMock()
    client.dedup_stats.return_value = (
        {
            "inbound": {**stats, "name": "inbound"},
            "outbound": {**stats, "name": "outbound"},
            "duplicates_dropped": 2,
            "notifications": {"sent": 5, "suppressed": 1, "failed": 0},
        },
        True,
        False,
    )

    assert commands.cmd_dedupstats(client) == 0
    out = capsys.readouterr().out
    assert "inbound: 1/1000 keys" in out
    assert "duplicates dropped: 2" in out


# ============================================================================
# Argument parsing
# ============================================================================


def test_send_joins_words():
    args = build_parser().parse_args(["send", "fix", "the", "bug"])
    assert args.command == "send"
    assert args.text == ["fix", "the", "bug"]


def test_api_url_option():
    args = build_parser().parse_args(["--api-url", "http://host:1", "status"])
    assert args.api_url == "http://host:1"


def test_main_without_command_exits_1():
    with pytest.raises(SystemExit) as exc_info:
        main([])
    assert exc_info.value.code == 1


def test_main_exits_with_command_code():
    with patch("chatbridge.cli.main.commands.cmd_send", return_value=2) as cmd_send:
        with pytest.raises(SystemExit) as exc_info:
            main(["send", "yes"])

    assert exc_info.value.code == 2
    assert cmd_send.call_args[0][1] == "yes"
