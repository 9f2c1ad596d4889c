from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable
from urllib.parse import quote

from azure.core.exceptions import AzureError
from azure.identity import ClientSecretCredential

from .auth_inputs import CredentialContext
from .cli_shared import DEFAULT_HTTP_TIMEOUT_SECONDS, AuthenticationExhausted, OpError, _load_json_value, _silent
from .strategies import StrategiesExhausted, Strategy, StrategyFailed, first_success
from .transport import HttpRequest, _http_request, form_body, is_success


DEFAULT_AUTHORITY = "https://login.microsoftonline.com"

STRATEGY_CLIENT_LIBRARY = "client-library"
STRATEGY_CLIENT_CREDENTIALS = "client-credentials"


@dataclass(frozen=True)
class AuthToken:
    value: str = field(repr=False)
    scope: str
    acquired_at: datetime
    strategy: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _client_secret_credential(ctx: CredentialContext) -> Any:
    return ClientSecretCredential(
        tenant_id=ctx.tenant_id,
        client_id=ctx.client_id,
        client_secret=ctx.client_secret,
    )


def _first_line(text: str) -> str:
    lines = (text or "").strip().splitlines()
    return lines[0].strip() if lines else ""


def _oauth_error_reason(status: int, raw: bytes) -> str:
    try:
        doc = _load_json_value(raw=raw, label="token endpoint")
    except OpError:
        doc = {}
    if isinstance(doc, dict) and doc.get("error"):
        first = _first_line(str(doc.get("error_description") or ""))
        return f"status={status} error={doc.get('error')} {first}".strip()
    return f"status={status}"


class AuthenticationOrchestrator:
    """Exchange a CredentialContext for exactly one access token.

    The client library is tried once against the highest-priority scope. If
    it fails, a raw client-credentials grant is attempted per scope in
    priority order and the first token obtained replaces the failed attempt
    wholesale.
    """

    def __init__(
        self,
        *,
        http: HttpRequest = _http_request,
        credential_factory: Callable[[CredentialContext], Any] = _client_secret_credential,
        clock: Callable[[], datetime] = _utc_now,
        log: Callable[[str], None] = _silent,
        authority: str = DEFAULT_AUTHORITY,
        timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ):
        self._http = http
        self._credential_factory = credential_factory
        self._clock = clock
        self._log = log
        self._authority = authority.rstrip("/")
        self._timeout_seconds = timeout_seconds

    def strategies(self, ctx: CredentialContext) -> list[Strategy[CredentialContext, AuthToken]]:
        out: list[Strategy[CredentialContext, AuthToken]] = [
            Strategy(STRATEGY_CLIENT_LIBRARY, self._client_library_token),
        ]
        for scope in ctx.candidate_scopes:
            out.append(
                Strategy(
                    f"{STRATEGY_CLIENT_CREDENTIALS}[{scope}]",
                    lambda c, s=scope: self._client_credentials_token(c, s),
                )
            )
        return out

    def acquire_token(self, ctx: CredentialContext) -> AuthToken:
        if not ctx.candidate_scopes:
            raise AuthenticationExhausted([])
        try:
            won = first_success(self.strategies(ctx), ctx, log=self._log, label="auth strategy")
        except StrategiesExhausted as e:
            raise AuthenticationExhausted(e.failures) from e
        token = won.value
        self._log(f"authenticated via {token.strategy} (scope {token.scope})")
        return token

    def _client_library_token(self, ctx: CredentialContext) -> AuthToken:
        scope = ctx.candidate_scopes[0]
        credential = None
        try:
            credential = self._credential_factory(ctx)
            access = credential.get_token(scope)
        except (AzureError, ValueError) as e:
            raise StrategyFailed(f"{type(e).__name__}: {_first_line(str(e))}".rstrip(": ")) from e
        finally:
            close = getattr(credential, "close", None)
            if callable(close):
                close()
        value = str(getattr(access, "token", "") or "").strip()
        if not value:
            raise StrategyFailed("client library returned an empty token")
        return AuthToken(value=value, scope=scope, acquired_at=self._clock(), strategy=STRATEGY_CLIENT_LIBRARY)

    def _client_credentials_token(self, ctx: CredentialContext, scope: str) -> AuthToken:
        url = f"{self._authority}/{quote(ctx.tenant_id, safe='')}/oauth2/v2.0/token"
        body = form_body(
            {
                "grant_type": "client_credentials",
                "client_id": ctx.client_id,
                "client_secret": ctx.client_secret,
                "scope": scope,
            }
        )
        status, _hdrs, raw = self._http(
            method="POST",
            url=url,
            headers={
                "content-type": "application/x-www-form-urlencoded",
                "accept": "application/json",
            },
            body=body,
            timeout_seconds=self._timeout_seconds,
        )
        if not is_success(status):
            raise StrategyFailed(_oauth_error_reason(status, raw))
        doc = _load_json_value(raw=raw, label="token endpoint")
        value = str(doc.get("access_token") or "").strip() if isinstance(doc, dict) else ""
        if not value:
            raise StrategyFailed("token response missing access_token")
        return AuthToken(value=value, scope=scope, acquired_at=self._clock(), strategy=STRATEGY_CLIENT_CREDENTIALS)
