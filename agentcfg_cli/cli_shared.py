from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from typing import Any

from rich.console import Console
from rich.markup import escape


class AgentCfgError(Exception):
    pass


class UsageError(AgentCfgError):
    pass


class OpError(AgentCfgError):
    pass


class AuthenticationExhausted(OpError):
    """No strategy or scope produced an access token. Fatal for the run."""

    def __init__(self, failures: list[tuple[str, str]]):
        self.failures = list(failures)
        detail = "; ".join(f"{name}: {reason}" for name, reason in self.failures) or "no strategies configured"
        super().__init__(f"authentication exhausted ({detail})")


class EnvironmentNotFound(OpError):
    """No directory listing or URL heuristic produced an environment id. Fatal for the run."""

    def __init__(self, supplied_url: str, seen: list[dict[str, str]]):
        self.supplied_url = supplied_url
        self.seen = list(seen)
        if self.seen:
            listing = ", ".join(
                f"{e.get('displayName') or '-'} ({e.get('environmentId') or '-'}, {e.get('instanceUrl') or '-'})"
                for e in self.seen
            )
        else:
            listing = "none visible to this credential"
        super().__init__(f"environment not found for {supplied_url!r}; environments seen: {listing}")


class DiscoveryEmpty(AgentCfgError):
    """Zero agents found. Reported, never fatal."""

    def __init__(self, environment_id: str, name_filter: str = ""):
        self.environment_id = environment_id
        self.name_filter = name_filter
        msg = f"no resources found in environment {environment_id}"
        if name_filter:
            msg += f" matching {name_filter!r}"
        super().__init__(msg)


AGENTCFG_TENANT_ID = "AGENTCFG_TENANT_ID"
AGENTCFG_CLIENT_ID = "AGENTCFG_CLIENT_ID"
AGENTCFG_CLIENT_SECRET = "AGENTCFG_CLIENT_SECRET"
AGENTCFG_ENVIRONMENT_URL = "AGENTCFG_ENVIRONMENT_URL"
AGENTCFG_SCOPES = "AGENTCFG_SCOPES"
AGENTCFG_AGENT_NAME = "AGENTCFG_AGENT_NAME"
AGENTCFG_ACTIONS = "AGENTCFG_ACTIONS"
AGENTCFG_SETTLE_SECONDS = "AGENTCFG_SETTLE_SECONDS"
AGENTCFG_URL_SUFFIXES = "AGENTCFG_URL_SUFFIXES"
AGENTCFG_HTTP_TIMEOUT = "AGENTCFG_HTTP_TIMEOUT"

# Variable names already used by the deployment pipelines.
PIPELINE_TENANT_ID = "POWER_PLATFORM_TENANT_ID"
PIPELINE_CLIENT_ID = "POWER_PLATFORM_SP_APP_ID"
PIPELINE_CLIENT_SECRET = "POWER_PLATFORM_SP_CLIENT_SECRET"
PIPELINE_ENVIRONMENT_URL = "PROD_ENVIRONMENT_URL"

DEFAULT_SETTLE_SECONDS = 15.0
DEFAULT_HTTP_TIMEOUT_SECONDS = 30


_ERROR_CONSOLE = Console(stderr=True)


def _rich_error(msg: str) -> None:
    _ERROR_CONSOLE.print(f"[bold red]error:[/bold red] {escape(msg)}", soft_wrap=True)


def _status(msg: str) -> None:
    _ERROR_CONSOLE.print(f"[dim]{escape(msg)}[/dim]", highlight=False, soft_wrap=True)


def _silent(_msg: str) -> None:
    return None


@dataclass(frozen=True)
class GlobalOpts:
    pretty: bool
    quiet: bool
    http_timeout: int = DEFAULT_HTTP_TIMEOUT_SECONDS

    def log(self, msg: str) -> None:
        if not self.quiet:
            _status(msg)


def _env_or_none(*names: str) -> str | None:
    for n in names:
        v = (os.environ.get(n) or "").strip()
        if v:
            return v
    return None


def _print_json(obj: Any, *, pretty: bool) -> None:
    if pretty:
        sys.stdout.write(json.dumps(obj, indent=2, sort_keys=True) + "\n")
    else:
        sys.stdout.write(json.dumps(obj, separators=(",", ":"), sort_keys=True) + "\n")


def _load_json_value(*, raw: bytes, label: str) -> Any:
    text = raw.decode("utf-8", errors="replace")
    if not text.strip():
        return {}
    try:
        return json.loads(text)
    except Exception as e:
        raise OpError(f"invalid JSON from {label}: {e}") from e


def _parse_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    out: list[str] = []
    for part in raw.split(","):
        v = part.strip()
        if v:
            out.append(v)
    seen: set[str] = set()
    uniq: list[str] = []
    for g in out:
        if g in seen:
            continue
        seen.add(g)
        uniq.append(g)
    return uniq


def _parse_positive_float(raw: str | None, *, name: str, default: float) -> float:
    v = (raw or "").strip()
    if not v:
        return default
    try:
        out = float(v)
    except ValueError as e:
        raise UsageError(f"invalid {name}: {v!r} is not a number") from e
    if out < 0:
        raise UsageError(f"invalid {name}: must be >= 0")
    return out
