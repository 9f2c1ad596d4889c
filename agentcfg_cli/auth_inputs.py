from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Sequence


class AuthInputError(ValueError):
    """Raised when CLI auth inputs are missing or conflicting."""


class InvalidScopeError(AuthInputError):
    """Raised when a candidate scope is not an absolute resource URI."""


DEFAULT_SCOPES: tuple[str, ...] = (
    "https://api.bap.microsoft.com/.default",
    "https://api.powerplatform.com/.default",
)


@dataclass(frozen=True)
class CredentialContext:
    tenant_id: str
    client_id: str
    client_secret: str = field(repr=False)
    candidate_scopes: tuple[str, ...] = DEFAULT_SCOPES


def _require_non_empty(val: str | None, *, name: str, hint: str) -> str:
    out = (val or "").strip()
    if not out:
        raise AuthInputError(f"missing {name} ({hint})")
    return out


def default_scopes(environment_url: str | None = None) -> tuple[str, ...]:
    scopes = list(DEFAULT_SCOPES)
    base = (environment_url or "").strip().rstrip("/")
    if base:
        scopes.append(f"{base}/.default")
    return tuple(scopes)


def _validate_scopes(scopes: Sequence[str]) -> tuple[str, ...]:
    out: list[str] = []
    for s in scopes:
        v = str(s or "").strip()
        if not v:
            continue
        if not v.startswith("https://"):
            raise InvalidScopeError(f"scope must be an https resource URI; got {v!r}")
        if v not in out:
            out.append(v)
    if not out:
        raise AuthInputError("no candidate scopes configured")
    return tuple(out)


def resolve_credential_context(
    *,
    tenant_id: str | None,
    client_id: str | None,
    client_secret: str | None,
    scopes: Sequence[str] | None,
    env_or_none: Callable[..., str | None],
    environment_url: str | None = None,
    tenant_env_names: Sequence[str] = ("AGENTCFG_TENANT_ID",),
    client_env_names: Sequence[str] = ("AGENTCFG_CLIENT_ID",),
    secret_env_names: Sequence[str] = ("AGENTCFG_CLIENT_SECRET",),
) -> CredentialContext:
    """Resolve tenant/client/secret from flags first, then the environment.

    Scopes keep their given priority order; duplicates are dropped. With no
    scopes supplied the platform defaults are used, followed by the
    environment's own ``/.default`` scope when its URL is known.
    """

    tenant_hint = str(tenant_env_names[0]).strip() if tenant_env_names else "AGENTCFG_TENANT_ID"
    client_hint = str(client_env_names[0]).strip() if client_env_names else "AGENTCFG_CLIENT_ID"
    secret_hint = str(secret_env_names[0]).strip() if secret_env_names else "AGENTCFG_CLIENT_SECRET"
    resolved_tenant = _require_non_empty(
        tenant_id or env_or_none(*tenant_env_names),
        name="tenant id",
        hint=f"--tenant-id or env {tenant_hint}",
    )
    resolved_client = _require_non_empty(
        client_id or env_or_none(*client_env_names),
        name="client id",
        hint=f"--client-id or env {client_hint}",
    )
    resolved_secret = _require_non_empty(
        client_secret or env_or_none(*secret_env_names),
        name="client secret",
        hint=f"env {secret_hint}",
    )
    candidate = list(scopes or []) or list(default_scopes(environment_url))
    return CredentialContext(
        tenant_id=resolved_tenant,
        client_id=resolved_client,
        client_secret=resolved_secret,
        candidate_scopes=_validate_scopes(candidate),
    )
