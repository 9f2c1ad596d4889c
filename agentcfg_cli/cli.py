from __future__ import annotations

import sys
import time

import click
import typer
from dotenv import load_dotenv
from rich.console import Console

from . import __version__
from . import auth_inputs
from .actions import ActionKind
from .auth import _client_secret_credential
from .cli_shared import (
    AGENTCFG_ACTIONS,
    AGENTCFG_AGENT_NAME,
    AGENTCFG_CLIENT_ID,
    AGENTCFG_CLIENT_SECRET,
    AGENTCFG_ENVIRONMENT_URL,
    AGENTCFG_HTTP_TIMEOUT,
    AGENTCFG_SCOPES,
    AGENTCFG_SETTLE_SECONDS,
    AGENTCFG_TENANT_ID,
    AGENTCFG_URL_SUFFIXES,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_SETTLE_SECONDS,
    PIPELINE_CLIENT_ID,
    PIPELINE_CLIENT_SECRET,
    PIPELINE_ENVIRONMENT_URL,
    PIPELINE_TENANT_ID,
    GlobalOpts,
    OpError,
    UsageError,
    _env_or_none,
    _parse_csv,
    _parse_positive_float,
    _print_json,
    _rich_error,
)
from .environments import EnvironmentReference
from .reporting import render_summary
from .runner import DEFAULT_ACTIONS, ConfigurationRun, RunRequest
from .transport import _http_request


app = typer.Typer(
    name="agentcfg",
    help="Post-deployment agent configuration: resolve the environment, find agents, publish and enable them.",
    no_args_is_help=True,
    add_completion=False,
)


def _bootstrap_env() -> None:
    # Use python-dotenv package defaults: discover and load .env without
    # overriding already-exported process environment values.
    load_dotenv()


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"agentcfg {__version__}")
        raise typer.Exit(code=0)


def _http_timeout_from_env() -> int:
    raw = _env_or_none(AGENTCFG_HTTP_TIMEOUT)
    if not raw:
        return DEFAULT_HTTP_TIMEOUT_SECONDS
    try:
        val = int(raw)
    except ValueError as e:
        raise UsageError(f"invalid {AGENTCFG_HTTP_TIMEOUT}: {raw!r}") from e
    if val <= 0:
        raise UsageError(f"invalid {AGENTCFG_HTTP_TIMEOUT}: must be > 0")
    return val


@app.callback()
def app_callback(
    ctx: typer.Context,
    plain_json: bool = typer.Option(False, "--plain-json", help="Emit compact JSON output"),
    quiet: bool = typer.Option(False, "--quiet", help="Reduce stderr logging"),
    http_timeout: int | None = typer.Option(
        None,
        "--http-timeout",
        help=f"Per-request timeout in seconds (env override: {AGENTCFG_HTTP_TIMEOUT})",
    ),
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True),
) -> None:
    del version
    timeout = http_timeout if http_timeout else _http_timeout_from_env()
    ctx.obj = {"g": GlobalOpts(pretty=not plain_json, quiet=quiet, http_timeout=int(timeout))}


def _ctx_global(ctx: typer.Context) -> GlobalOpts:
    if isinstance(ctx.obj, dict) and isinstance(ctx.obj.get("g"), GlobalOpts):
        return ctx.obj["g"]
    return GlobalOpts(pretty=True, quiet=False, http_timeout=_http_timeout_from_env())


def _reference(environment_url: str | None) -> EnvironmentReference:
    return EnvironmentReference.parse(
        environment_url or _env_or_none(AGENTCFG_ENVIRONMENT_URL, PIPELINE_ENVIRONMENT_URL)
    )


def _credentials(
    *,
    tenant_id: str | None,
    client_id: str | None,
    scopes: str | None,
    ref: EnvironmentReference,
) -> auth_inputs.CredentialContext:
    try:
        return auth_inputs.resolve_credential_context(
            tenant_id=tenant_id,
            client_id=client_id,
            client_secret=None,
            scopes=_parse_csv(scopes or _env_or_none(AGENTCFG_SCOPES)),
            env_or_none=_env_or_none,
            environment_url=ref.base_url,
            tenant_env_names=(AGENTCFG_TENANT_ID, PIPELINE_TENANT_ID),
            client_env_names=(AGENTCFG_CLIENT_ID, PIPELINE_CLIENT_ID),
            secret_env_names=(AGENTCFG_CLIENT_SECRET, PIPELINE_CLIENT_SECRET),
        )
    except auth_inputs.AuthInputError as e:
        raise UsageError(str(e)) from e


def _actions(raw: str | None) -> tuple[ActionKind, ...]:
    names = _parse_csv(raw or _env_or_none(AGENTCFG_ACTIONS))
    if not names:
        return DEFAULT_ACTIONS
    return tuple(ActionKind.parse(n) for n in names)


def _build_run(
    g: GlobalOpts,
    *,
    url_suffixes: str | None = None,
    settle_seconds: float = DEFAULT_SETTLE_SECONDS,
) -> ConfigurationRun:
    return ConfigurationRun(
        http=_http_request,
        credential_factory=_client_secret_credential,
        extra_host_suffixes=_parse_csv(url_suffixes or _env_or_none(AGENTCFG_URL_SUFFIXES)),
        settle_seconds=settle_seconds,
        sleep=time.sleep,
        log=g.log,
        timeout_seconds=g.http_timeout,
    )


_TENANT_HELP = f"Directory (tenant) id (env: {AGENTCFG_TENANT_ID} or {PIPELINE_TENANT_ID})"
_CLIENT_HELP = f"Application (client) id (env: {AGENTCFG_CLIENT_ID} or {PIPELINE_CLIENT_ID})"
_URL_HELP = f"Environment URL (env: {AGENTCFG_ENVIRONMENT_URL} or {PIPELINE_ENVIRONMENT_URL})"
_SCOPES_HELP = f"Comma-separated token scopes in priority order (env: {AGENTCFG_SCOPES})"
_SUFFIX_HELP = f"Extra comma-separated instance host suffixes for URL fallback (env: {AGENTCFG_URL_SUFFIXES})"


@app.command("run", help="Authenticate, resolve the environment, discover agents and apply actions.")
def run(
    ctx: typer.Context,
    environment_url: str | None = typer.Option(None, "--environment-url", help=_URL_HELP),
    tenant_id: str | None = typer.Option(None, "--tenant-id", help=_TENANT_HELP),
    client_id: str | None = typer.Option(None, "--client-id", help=_CLIENT_HELP),
    scopes: str | None = typer.Option(None, "--scopes", help=_SCOPES_HELP),
    agent_name: str | None = typer.Option(
        None,
        "--agent-name",
        help=f"Only agents whose name or id matches this (glob) pattern (env: {AGENTCFG_AGENT_NAME})",
    ),
    actions: str | None = typer.Option(
        None,
        "--actions",
        help=f"Comma-separated actions: publish, enable, share (default: publish,enable; env: {AGENTCFG_ACTIONS})",
    ),
    settle_seconds: str | None = typer.Option(
        None,
        "--settle-seconds",
        help=f"Wait after a successful publish (default {DEFAULT_SETTLE_SECONDS:g}; env: {AGENTCFG_SETTLE_SECONDS})",
    ),
    url_suffixes: str | None = typer.Option(None, "--url-suffixes", help=_SUFFIX_HELP),
    solution_name: str = typer.Option("", "--solution-name", help="Solution label for the summary header"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Resolve and discover only; do not call action endpoints"),
    json_output: bool = typer.Option(False, "--json", help="Emit the run summary as JSON"),
) -> None:
    g = _ctx_global(ctx)
    ref = _reference(environment_url)
    request = RunRequest(
        credentials=_credentials(tenant_id=tenant_id, client_id=client_id, scopes=scopes, ref=ref),
        environment=ref,
        actions=_actions(actions),
        name_filter=(agent_name or _env_or_none(AGENTCFG_AGENT_NAME) or "").strip(),
        dry_run=dry_run,
        solution_name=solution_name.strip(),
    )
    settle = _parse_positive_float(
        settle_seconds or _env_or_none(AGENTCFG_SETTLE_SECONDS),
        name="settle seconds",
        default=DEFAULT_SETTLE_SECONDS,
    )
    summary = _build_run(g, url_suffixes=url_suffixes, settle_seconds=settle).run(request)
    if json_output:
        _print_json(summary.to_dict(), pretty=g.pretty)
    else:
        render_summary(summary, Console(highlight=False, soft_wrap=True))
    if summary.fatal:
        _rich_error(summary.fatal)
    if summary.exit_code:
        raise typer.Exit(code=summary.exit_code)


@app.command("environments", help="List the environments visible to the credential (first responding directory).")
def environments(
    ctx: typer.Context,
    tenant_id: str | None = typer.Option(None, "--tenant-id", help=_TENANT_HELP),
    client_id: str | None = typer.Option(None, "--client-id", help=_CLIENT_HELP),
    environment_url: str | None = typer.Option(None, "--environment-url", help=_URL_HELP),
    scopes: str | None = typer.Option(None, "--scopes", help=_SCOPES_HELP),
) -> None:
    g = _ctx_global(ctx)
    ref = _reference(environment_url)
    runner = _build_run(g)
    token = runner.authenticate(_credentials(tenant_id=tenant_id, client_id=client_id, scopes=scopes, ref=ref))
    source, entries = runner.list_environments(token)
    _print_json(
        {
            "kind": "agentcfg.environments.v1",
            "source": source,
            "environments": [e.to_dict() for e in entries],
        },
        pretty=g.pretty,
    )


@app.command("resolve-env", help="Resolve the environment URL to an environment record.")
def resolve_env(
    ctx: typer.Context,
    environment_url: str | None = typer.Option(None, "--environment-url", help=_URL_HELP),
    tenant_id: str | None = typer.Option(None, "--tenant-id", help=_TENANT_HELP),
    client_id: str | None = typer.Option(None, "--client-id", help=_CLIENT_HELP),
    scopes: str | None = typer.Option(None, "--scopes", help=_SCOPES_HELP),
    url_suffixes: str | None = typer.Option(None, "--url-suffixes", help=_SUFFIX_HELP),
) -> None:
    g = _ctx_global(ctx)
    ref = _reference(environment_url)
    runner = _build_run(g, url_suffixes=url_suffixes)
    token = runner.authenticate(_credentials(tenant_id=tenant_id, client_id=client_id, scopes=scopes, ref=ref))
    env = runner.resolve(ref, token)
    _print_json({"kind": "agentcfg.environment.v1", "environment": env.to_dict()}, pretty=g.pretty)


@app.command("agents", help="List agents discovered in the resolved environment without changing them.")
def agents(
    ctx: typer.Context,
    environment_url: str | None = typer.Option(None, "--environment-url", help=_URL_HELP),
    tenant_id: str | None = typer.Option(None, "--tenant-id", help=_TENANT_HELP),
    client_id: str | None = typer.Option(None, "--client-id", help=_CLIENT_HELP),
    scopes: str | None = typer.Option(None, "--scopes", help=_SCOPES_HELP),
    url_suffixes: str | None = typer.Option(None, "--url-suffixes", help=_SUFFIX_HELP),
    agent_name: str | None = typer.Option(None, "--agent-name", help="Only agents matching this (glob) pattern"),
) -> None:
    g = _ctx_global(ctx)
    ref = _reference(environment_url)
    runner = _build_run(g, url_suffixes=url_suffixes)
    token = runner.authenticate(_credentials(tenant_id=tenant_id, client_id=client_id, scopes=scopes, ref=ref))
    env = runner.resolve(ref, token)
    found = runner.discover(env, token, name_filter=(agent_name or _env_or_none(AGENTCFG_AGENT_NAME) or "").strip())
    _print_json(
        {
            "kind": "agentcfg.agents.v1",
            "environment": env.to_dict(),
            "agents": [a.to_dict() for a in found],
        },
        pretty=g.pretty,
    )


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    try:
        _bootstrap_env()
        result = app(args=argv, prog_name="agentcfg", standalone_mode=False)
        if result is None:
            return 0
        return int(result)
    except typer.Exit as e:
        return int(e.exit_code)
    except click.ClickException as e:
        _rich_error(e.format_message())
        return int(e.exit_code)
    except UsageError as e:
        _rich_error(str(e))
        return 2
    except OpError as e:
        _rich_error(str(e))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
