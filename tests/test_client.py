"""
Tests for shepherd/client.py - AgentClient.

Tests cover:
- Success path (JSON envelope)
- Connection errors/timeouts -> AgentUnavailable (GET retried, POST not)
- HTTP 4xx/5xx -> AgentHttpError carrying the agent's error
- Invalid JSON / missing `success` -> AgentDecodeError
- "sent" detection for read timeouts
- SSE parsing
"""

import json
from unittest.mock import MagicMock, Mock, patch

import pytest
import requests as real_requests

from shepherd.client import (
    AgentClient,
    AgentDecodeError,
    AgentHttpError,
    AgentUnavailable,
    parse_sse_lines,
)


def response(status=200, payload=None, text=None):
    resp = Mock()
    resp.status_code = status
    if payload is not None:
        resp.json.return_value = payload
        resp.text = text if text is not None else json.dumps(payload)
    else:
        resp.json.side_effect = ValueError("No JSON")
        resp.text = text or ""
    return resp


STATUS_ENVELOPE = {
    "success": True,
    "data": {"hostname": "WS-A", "platform": "win32", "arch": "AMD64", "uptime": 5, "status": "online"},
}


class TestRequests:

    @patch('shepherd.client.requests.Session')
    def test_get_status(self, mock_session_class):
        mock_session = MagicMock()
        mock_session_class.return_value = mock_session
        mock_session.request.return_value = response(payload=STATUS_ENVELOPE)

        client = AgentClient("10.0.0.5:3001")
        status = client.get_status(timeout=2)

        assert status.hostname == "WS-A"
        args, kwargs = mock_session.request.call_args
        assert args == ("GET", "http://10.0.0.5:3001/status")
        assert kwargs["timeout"] == 2

    @patch('shepherd.client.requests.Session')
    def test_get_identity(self, mock_session_class):
        mock_session = MagicMock()
        mock_session_class.return_value = mock_session
        mock_session.request.return_value = response(payload={
            "success": True, "data": {"pcName": "WS-A", "agentId": "ws-a-win32-amd64"},
        })
        identity = AgentClient("a:1").get_identity()
        assert identity.pc_name == "WS-A"

    @patch('shepherd.client.requests.Session')
    def test_identity_without_name_is_decode_error(self, mock_session_class):
        mock_session = MagicMock()
        mock_session_class.return_value = mock_session
        mock_session.request.return_value = response(payload={"success": True, "data": {}})
        with pytest.raises(AgentDecodeError):
            AgentClient("a:1").get_identity()

    @patch('shepherd.client.requests.Session')
    def test_post_command_body(self, mock_session_class):
        mock_session = MagicMock()
        mock_session_class.return_value = mock_session
        mock_session.request.return_value = response(payload={"success": True, "data": "stopped"})

        assert AgentClient("a:1").stop_program("notepad") == "stopped"
        _, kwargs = mock_session.request.call_args
        assert kwargs["json"] == {"name": "notepad"}

    @patch('shepherd.client.requests.Session')
    def test_find_program(self, mock_session_class):
        mock_session = MagicMock()
        mock_session_class.return_value = mock_session
        mock_session.request.return_value = response(payload={
            "success": True, "data": {"programName": "winword", "path": None, "found": False},
        })
        assert AgentClient("a:1").find_program("winword")["found"] is False


class TestErrors:

    @patch('shepherd.client.requests.Session')
    def test_get_connection_error_retries(self, mock_session_class):
        mock_session = MagicMock()
        mock_session_class.return_value = mock_session
        mock_session.request.side_effect = real_requests.ConnectionError("Connection refused")

        client = AgentClient("a:1", max_retries=3, backoff_factor=0.0)
        with pytest.raises(AgentUnavailable) as ctx:
            client.get_status()

        assert ctx.value.address == "a:1"
        assert not ctx.value.sent
        assert mock_session.request.call_count == 3

    @patch('shepherd.client.requests.Session')
    def test_post_never_retried(self, mock_session_class):
        mock_session = MagicMock()
        mock_session_class.return_value = mock_session
        mock_session.request.side_effect = real_requests.ConnectionError("Connection refused")

        client = AgentClient("a:1", max_retries=3, backoff_factor=0.0)
        with pytest.raises(AgentUnavailable):
            client.start_program("notepad")
        assert mock_session.request.call_count == 1

    @patch('shepherd.client.requests.Session')
    def test_read_timeout_marks_sent(self, mock_session_class):
        mock_session = MagicMock()
        mock_session_class.return_value = mock_session
        mock_session.request.side_effect = real_requests.ReadTimeout("read timed out")

        with pytest.raises(AgentUnavailable) as ctx:
            AgentClient("a:1").restart()
        assert ctx.value.sent

    @patch('shepherd.client.requests.Session')
    def test_connect_timeout_not_sent(self, mock_session_class):
        mock_session = MagicMock()
        mock_session_class.return_value = mock_session
        mock_session.request.side_effect = real_requests.ConnectTimeout("connect timed out")

        with pytest.raises(AgentUnavailable) as ctx:
            AgentClient("a:1").restart()
        assert not ctx.value.sent

    @patch('shepherd.client.requests.Session')
    def test_http_500_carries_agent_error(self, mock_session_class):
        mock_session = MagicMock()
        mock_session_class.return_value = mock_session
        mock_session.request.return_value = response(500, payload={
            "success": False, "error": "Access is denied.", "errorKind": "PermissionDenied",
        })

        with pytest.raises(AgentHttpError) as ctx:
            AgentClient("a:1").disconnect()

        assert ctx.value.status == 500
        assert ctx.value.error == "Access is denied."
        assert ctx.value.error_kind == "PermissionDenied"
        assert mock_session.request.call_count == 1

    @patch('shepherd.client.requests.Session')
    def test_http_error_non_json_body(self, mock_session_class):
        mock_session = MagicMock()
        mock_session_class.return_value = mock_session
        mock_session.request.return_value = response(502, text="Bad Gateway")

        with pytest.raises(AgentHttpError) as ctx:
            AgentClient("a:1").get_status()
        assert ctx.value.payload is None
        assert "Bad Gateway" in str(ctx.value)

    @patch('shepherd.client.requests.Session')
    def test_invalid_json(self, mock_session_class):
        mock_session = MagicMock()
        mock_session_class.return_value = mock_session
        mock_session.request.return_value = response(200, text="<html>")

        with pytest.raises(AgentDecodeError):
            AgentClient("a:1").get_status()

    @patch('shepherd.client.requests.Session')
    def test_missing_success_field(self, mock_session_class):
        mock_session = MagicMock()
        mock_session_class.return_value = mock_session
        mock_session.request.return_value = response(200, payload={"hostname": "x"})

        with pytest.raises(AgentDecodeError):
            AgentClient("a:1").get_status()

    @patch('shepherd.client.requests.Session')
    def test_health_check_never_raises(self, mock_session_class):
        mock_session = MagicMock()
        mock_session_class.return_value = mock_session
        mock_session.get.side_effect = real_requests.ConnectionError("down")
        assert AgentClient("a:1").health_check() is False


class TestSseParsing:

    def test_events_and_keepalives(self):
        lines = [
            "event: status",
            'data: {"type": "status", "data": {"hostname": "WS-A"}}',
            "",
            ": keepalive",
            "",
            "event: log",
            'data: {"type": "log", "message": "Starting program: notepad"}',
            "",
        ]
        events = list(parse_sse_lines(lines))
        assert [e["type"] for e in events] == ["status", "log"]
        assert events[1]["message"] == "Starting program: notepad"

    def test_non_json_data(self):
        events = list(parse_sse_lines(["event: log", "data: plain text", ""]))
        assert events == [{"type": "log", "message": "plain text"}]

    def test_incomplete_trailing_event_dropped(self):
        assert list(parse_sse_lines(["event: log", 'data: {"type": "log"}'])) == []
