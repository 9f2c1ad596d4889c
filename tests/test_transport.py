from __future__ import annotations

import io
from http.client import IncompleteRead, RemoteDisconnected
from urllib.error import HTTPError

import pytest

from agentcfg_cli import transport
from agentcfg_cli.actions import ActionExecutor, ActionKind, ErrorKind, OutcomeStatus
from agentcfg_cli.cli_shared import OpError
from agentcfg_cli.discovery import SOURCE_DATAVERSE, ResourceRecord
from agentcfg_cli.environments import EnvironmentResolver


class _TruncatedResponse:
    status = 200
    headers: dict[str, str] = {"Content-Type": "application/json"}

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def read(self) -> bytes:
        raise IncompleteRead(b'{"value":[', 40)


def _raising(exc: BaseException):
    def fake_urlopen(req, timeout=None):
        raise exc

    return fake_urlopen


@pytest.mark.parametrize(
    "exc",
    [
        RemoteDisconnected("Remote end closed connection without response"),
        ConnectionResetError(104, "Connection reset by peer"),
        TimeoutError("timed out"),
    ],
)
def test_http_request_wraps_connection_failures(monkeypatch, exc):
    monkeypatch.setattr(transport, "urlopen", _raising(exc))

    with pytest.raises(OpError, match="http request failed"):
        transport._http_request(method="GET", url="https://example.test/x", headers={})


def test_http_request_wraps_truncated_body(monkeypatch):
    monkeypatch.setattr(transport, "urlopen", lambda req, timeout=None: _TruncatedResponse())

    with pytest.raises(OpError, match="http request failed"):
        transport._http_request(method="GET", url="https://example.test/x", headers={})


def test_http_request_returns_error_status_with_body(monkeypatch):
    err = HTTPError("https://example.test/x", 403, "Forbidden", {}, io.BytesIO(b'{"error":"denied"}'))
    monkeypatch.setattr(transport, "urlopen", _raising(err))

    status, _hdrs, raw = transport._http_request(method="GET", url="https://example.test/x", headers={})

    assert status == 403
    assert raw == b'{"error":"denied"}'


def test_dropped_connection_is_recorded_and_next_candidate_tried(monkeypatch, token, contoso_env):
    monkeypatch.setattr(transport, "urlopen", _raising(RemoteDisconnected("Remote end closed connection")))
    bot = ResourceRecord("b1", "HR Helper", SOURCE_DATAVERSE)

    outcome = ActionExecutor(contoso_env, http=transport._http_request, sleep=lambda s: None).execute(
        bot, ActionKind.ENABLE, token
    )

    assert outcome.status is OutcomeStatus.FAILED_MANUAL_REQUIRED
    assert [a.error_kind for a in outcome.attempts] == [ErrorKind.UNKNOWN] * 3
    assert {a.http_status_class for a in outcome.attempts} == {"none"}
    assert outcome.manual_steps


def test_dropped_connection_during_listing_falls_through(monkeypatch, token):
    monkeypatch.setattr(transport, "urlopen", _raising(RemoteDisconnected("Remote end closed connection")))

    assert EnvironmentResolver(http=transport._http_request).list_environments(token) == ("", [])
