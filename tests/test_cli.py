from __future__ import annotations

import json
import re
from collections.abc import Iterable

import click
import pytest
import typer
from typer.testing import CliRunner

from agentcfg_cli import __version__
from agentcfg_cli.cli import app, main
from agentcfg_cli.environments import BAP_ADMIN_ENVIRONMENTS_URL


_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")

V92_BOTS = "https://contoso.crm.dynamics.com/api/data/v9.2/bots?$select=botid,name,schemaname"
TOKEN_URL = "https://login.microsoftonline.com/tenant-1/oauth2/v2.0/token"

_ISOLATED_ENV = (
    "AGENTCFG_TENANT_ID",
    "AGENTCFG_CLIENT_ID",
    "AGENTCFG_CLIENT_SECRET",
    "AGENTCFG_ENVIRONMENT_URL",
    "AGENTCFG_SCOPES",
    "AGENTCFG_AGENT_NAME",
    "AGENTCFG_ACTIONS",
    "AGENTCFG_SETTLE_SECONDS",
    "AGENTCFG_URL_SUFFIXES",
    "AGENTCFG_HTTP_TIMEOUT",
    "POWER_PLATFORM_TENANT_ID",
    "POWER_PLATFORM_SP_APP_ID",
    "POWER_PLATFORM_SP_CLIENT_SECRET",
    "PROD_ENVIRONMENT_URL",
)


def _plain(s: str) -> str:
    return _ANSI_RE.sub("", s)


def _walk_click_commands(root: click.Command) -> Iterable[tuple[str, click.Command]]:
    stack: list[tuple[str, click.Command]] = [("", root)]
    while stack:
        base, cmd = stack.pop()
        if isinstance(cmd, click.Group):
            for name, sub in cmd.commands.items():
                path = f"{base} {name}".strip()
                yield path, sub
                stack.append((path, sub))


def _contoso_routes() -> dict:
    routes: dict = {
        ("GET", BAP_ADMIN_ENVIRONMENTS_URL): (
            200,
            {
                "value": [
                    {
                        "name": "env-contoso",
                        "properties": {
                            "displayName": "contoso",
                            "linkedEnvironmentMetadata": {"instanceUrl": "https://contoso.crm.dynamics.com"},
                        },
                    }
                ]
            },
        ),
        ("GET", V92_BOTS): (
            200,
            {"value": [{"botid": "b1", "name": "HR Helper"}, {"botid": "b2", "name": "IT Desk"}]},
        ),
    }
    for bot in ("b1", "b2"):
        base = f"https://contoso.crm.dynamics.com/api/data/v9.2/bots({bot})"
        routes[("POST", base + "/Microsoft.Dynamics.CRM.PvaPublish")] = (200, {})
        routes[("PATCH", base)] = (204, b"")
    return routes


@pytest.fixture
def cli_env(monkeypatch, fake_http, fake_credential):
    """Pipeline-style environment plus fake transport and credential."""
    for name in _ISOLATED_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("POWER_PLATFORM_TENANT_ID", "tenant-1")
    monkeypatch.setenv("POWER_PLATFORM_SP_APP_ID", "client-1")
    monkeypatch.setenv("POWER_PLATFORM_SP_CLIENT_SECRET", "s3cret-value")
    monkeypatch.setenv("PROD_ENVIRONMENT_URL", "https://contoso.crm.dynamics.com")
    monkeypatch.setattr("agentcfg_cli.cli.load_dotenv", lambda *a, **k: True)

    http = fake_http(_contoso_routes())
    monkeypatch.setattr("agentcfg_cli.cli._http_request", http)
    monkeypatch.setattr(
        "agentcfg_cli.cli._client_secret_credential",
        lambda ctx: fake_credential(token="cli-token"),
    )
    return http


def test_all_commands_have_help_text():
    for path, cmd in _walk_click_commands(typer.main.get_command(app)):
        help_text = str(cmd.help or "").strip()
        assert help_text, f"missing help text for command: {path}"


def test_run_help_lists_options():
    result = CliRunner().invoke(app, ["run", "--help"])
    out = _plain(result.output)
    assert result.exit_code == 0
    for opt in ("--environment-url", "--actions", "--settle-seconds", "--dry-run", "--solution-name"):
        assert opt in out


def test_main_loads_dotenv_with_package_defaults(monkeypatch):
    calls: list[tuple[tuple, dict]] = []
    monkeypatch.setattr("agentcfg_cli.cli.load_dotenv", lambda *a, **k: calls.append((a, k)) or True)
    monkeypatch.setattr("agentcfg_cli.cli.app", lambda *a, **k: None)
    assert main([]) == 0
    assert calls == [((), {})]


def test_main_returns_app_exit_code(monkeypatch):
    monkeypatch.setattr("agentcfg_cli.cli.load_dotenv", lambda *a, **k: True)
    monkeypatch.setattr("agentcfg_cli.cli.app", lambda *a, **k: 2)
    assert main(["run"]) == 2


def test_version_flag(monkeypatch, capsys):
    monkeypatch.setattr("agentcfg_cli.cli.load_dotenv", lambda *a, **k: True)
    assert main(["--version"]) == 0
    assert __version__ in capsys.readouterr().out


def test_run_json_summary_from_pipeline_variables(cli_env, capsys):
    code = main(["--quiet", "run", "--settle-seconds", "0", "--solution-name", "HRAgents", "--json"])

    captured = capsys.readouterr()
    assert code == 0
    doc = json.loads(captured.out)
    assert doc["kind"] == "agentcfg.run.summary.v1"
    assert doc["exitCode"] == 0
    assert doc["solutionName"] == "HRAgents"
    assert doc["environment"]["environmentId"] == "env-contoso"
    assert doc["counts"] == {"outcomes": 4, "succeeded": 4, "manualRequired": 0}
    assert "s3cret-value" not in captured.out + captured.err
    assert "cli-token" not in captured.out + captured.err


def test_run_renders_human_summary_and_logs_to_stderr(cli_env, capsys):
    code = main(["run", "--settle-seconds", "0", "--actions", "publish,share", "--agent-name", "HR*"])

    captured = capsys.readouterr()
    out = _plain(captured.out)
    err = _plain(captured.err)
    assert code == 0
    assert "HR Helper [Publish]: Succeeded" in out
    assert "HR Helper [Share]: FailedManualRequired" in out
    assert "IT Desk" not in out
    assert "authenticated via client-library" in err
    assert "s3cret-value" not in out + err


def test_run_quiet_suppresses_progress_logs(cli_env, capsys):
    assert main(["--quiet", "run", "--settle-seconds", "0"]) == 0
    assert _plain(capsys.readouterr().err).strip() == ""


def test_run_missing_secret_is_usage_error(cli_env, monkeypatch, capsys):
    monkeypatch.delenv("POWER_PLATFORM_SP_CLIENT_SECRET")

    code = main(["run"])

    assert code == 2
    assert "missing client secret" in _plain(capsys.readouterr().err)


def test_run_unknown_action_is_usage_error(cli_env, capsys):
    code = main(["run", "--actions", "publish,deploy"])

    assert code == 2
    assert "unknown action 'deploy'" in _plain(capsys.readouterr().err)


def test_run_invalid_settle_seconds_is_usage_error(cli_env, capsys):
    code = main(["run", "--settle-seconds", "soon"])

    assert code == 2
    assert "invalid settle seconds" in _plain(capsys.readouterr().err)


def test_run_authentication_exhausted_exits_one(cli_env, monkeypatch, fake_credential, capsys):
    from azure.core.exceptions import ClientAuthenticationError

    monkeypatch.setattr(
        "agentcfg_cli.cli._client_secret_credential",
        lambda ctx: fake_credential(error=ClientAuthenticationError(message="AADSTS7000215")),
    )
    cli_env.routes[("POST", TOKEN_URL)] = (401, {"error": "invalid_client"})

    code = main(["--quiet", "run"])

    captured = capsys.readouterr()
    assert code == 1
    assert "Run status: failed" in _plain(captured.out)
    assert "authentication exhausted" in _plain(captured.err)
    assert "s3cret-value" not in captured.out + captured.err


def test_environments_command_lists_first_directory(cli_env, capsys):
    assert main(["--plain-json", "--quiet", "environments"]) == 0

    doc = json.loads(capsys.readouterr().out)
    assert doc["kind"] == "agentcfg.environments.v1"
    assert doc["source"] == "bap-admin"
    assert doc["environments"] == [
        {"environmentId": "env-contoso", "displayName": "contoso", "instanceUrl": "https://contoso.crm.dynamics.com"}
    ]


def test_resolve_env_command_with_url_fallback(cli_env, capsys):
    cli_env.routes.clear()

    code = main(
        [
            "--quiet",
            "resolve-env",
            "--environment-url",
            "https://org123.example-platform.net",
            "--url-suffixes",
            "example-platform.net",
        ]
    )

    assert code == 0
    doc = json.loads(capsys.readouterr().out)
    assert doc["kind"] == "agentcfg.environment.v1"
    assert doc["environment"] == {
        "environmentId": "org123",
        "displayName": "",
        "instanceUrl": "https://org123.example-platform.net",
        "matchConfidence": "UrlDerived",
    }


def test_resolve_env_not_found_exits_one(cli_env, capsys):
    cli_env.routes.clear()

    code = main(["--quiet", "resolve-env", "--environment-url", "https://portal.example.org"])

    assert code == 1
    assert "environment not found" in _plain(capsys.readouterr().err)


def test_agents_command_lists_without_actions(cli_env, capsys):
    assert main(["--quiet", "agents"]) == 0

    doc = json.loads(capsys.readouterr().out)
    assert doc["kind"] == "agentcfg.agents.v1"
    assert [a["resourceId"] for a in doc["agents"]] == ["b1", "b2"]
    assert {c["method"] for c in cli_env.calls} == {"GET"}


def test_http_timeout_flag_reaches_transport(cli_env, capsys):
    assert main(["--quiet", "--http-timeout", "5", "agents"]) == 0
    capsys.readouterr()
    assert {c["timeout"] for c in cli_env.calls} == {5}
