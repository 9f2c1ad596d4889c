from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import pytest
from azure.core.credentials import AccessToken

from agentcfg_cli.auth import AuthToken
from agentcfg_cli.auth_inputs import CredentialContext
from agentcfg_cli.environments import EnvironmentRecord, MatchConfidence


class FakeHttp:
    """Route table keyed by (METHOD, url). Unknown routes answer 404.

    A route is a (status, payload) pair, an exception to raise, or a callable
    taking the recorded call and returning (status, payload).
    """

    def __init__(self, routes: dict[tuple[str, str], Any] | None = None):
        self.routes = dict(routes or {})
        self.calls: list[dict[str, Any]] = []

    def __call__(
        self,
        *,
        method: str,
        url: str,
        headers: dict[str, str],
        body: bytes | None = None,
        timeout_seconds: int = 30,
    ) -> tuple[int, dict[str, str], bytes]:
        self.calls.append(
            {
                "method": method.upper(),
                "url": url,
                "headers": dict(headers),
                "body": body,
                "timeout": timeout_seconds,
            }
        )
        resp = self.routes.get((method.upper(), url))
        if resp is None:
            return 404, {}, b'{"error":{"code":"NotFound"}}'
        if isinstance(resp, Exception):
            raise resp
        if callable(resp):
            resp = resp(self.calls[-1])
        status, payload = resp
        raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        return int(status), {}, raw

    def urls(self, method: str | None = None) -> list[str]:
        return [c["url"] for c in self.calls if method is None or c["method"] == method.upper()]


class FakeCredential:
    def __init__(self, *, token: str = "", error: Exception | None = None):
        self.token = token
        self.error = error
        self.scopes: list[str] = []
        self.closed = False

    def get_token(self, *scopes: str) -> AccessToken:
        self.scopes.extend(scopes)
        if self.error is not None:
            raise self.error
        return AccessToken(self.token, 4102444800)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_http():
    return FakeHttp


@pytest.fixture
def fake_credential():
    return FakeCredential


@pytest.fixture
def credentials() -> CredentialContext:
    return CredentialContext(
        tenant_id="tenant-1",
        client_id="client-1",
        client_secret="s3cret-value",
        candidate_scopes=(
            "https://api.bap.microsoft.com/.default",
            "https://api.powerplatform.com/.default",
            "https://contoso.crm.dynamics.com/.default",
        ),
    )


@pytest.fixture
def token() -> AuthToken:
    return AuthToken(
        value="tok-123",
        scope="https://api.bap.microsoft.com/.default",
        acquired_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        strategy="client-library",
    )


@pytest.fixture
def contoso_env() -> EnvironmentRecord:
    return EnvironmentRecord(
        environment_id="env-contoso",
        display_name="Contoso",
        instance_url="https://contoso.crm.dynamics.com",
        match_confidence=MatchConfidence.EXACT,
    )
