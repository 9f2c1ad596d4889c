from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from .actions import ActionExecutor, ActionKind, ordered_actions
from .auth import AuthenticationOrchestrator, AuthToken, _client_secret_credential
from .auth_inputs import CredentialContext
from .cli_shared import (
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_SETTLE_SECONDS,
    AuthenticationExhausted,
    DiscoveryEmpty,
    EnvironmentNotFound,
    _silent,
)
from .discovery import ResourceDiscoveryOrchestrator, ResourceRecord
from .environments import (
    DirectoryEntry,
    EnvironmentRecord,
    EnvironmentReference,
    EnvironmentResolver,
    MatchConfidence,
)
from .reporting import RunSummary, summarize
from .transport import HttpRequest, _http_request


DEFAULT_ACTIONS: tuple[ActionKind, ...] = (ActionKind.PUBLISH, ActionKind.ENABLE)


@dataclass(frozen=True)
class RunRequest:
    credentials: CredentialContext
    environment: EnvironmentReference
    actions: tuple[ActionKind, ...] = DEFAULT_ACTIONS
    name_filter: str = ""
    dry_run: bool = False
    solution_name: str = ""


class ConfigurationRun:
    """Wire the orchestrators together for one strictly sequential run.

    The token and the resolved environment are plain values handed from one
    step to the next; nothing is cached on the instance between runs.
    """

    def __init__(
        self,
        *,
        http: HttpRequest = _http_request,
        credential_factory: Callable[[CredentialContext], Any] = _client_secret_credential,
        extra_host_suffixes: Sequence[str] = (),
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        log: Callable[[str], None] = _silent,
        timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ):
        self._http = http
        self._settle_seconds = settle_seconds
        self._sleep = sleep
        self._log = log
        self._timeout_seconds = timeout_seconds
        self.auth = AuthenticationOrchestrator(
            http=http,
            credential_factory=credential_factory,
            log=log,
            timeout_seconds=timeout_seconds,
        )
        self.resolver = EnvironmentResolver(
            http=http,
            extra_host_suffixes=extra_host_suffixes,
            log=log,
            timeout_seconds=timeout_seconds,
        )
        self.discovery = ResourceDiscoveryOrchestrator(http=http, log=log, timeout_seconds=timeout_seconds)

    def authenticate(self, credentials: CredentialContext) -> AuthToken:
        return self.auth.acquire_token(credentials)

    def list_environments(self, token: AuthToken) -> tuple[str, list[DirectoryEntry]]:
        return self.resolver.list_environments(token)

    def resolve(self, ref: EnvironmentReference, token: AuthToken) -> EnvironmentRecord:
        return self.resolver.resolve(ref, token)

    def discover(self, env: EnvironmentRecord, token: AuthToken, *, name_filter: str = "") -> list[ResourceRecord]:
        return self.discovery.list_resources(env, token, name_filter=name_filter)

    def executor(self, env: EnvironmentRecord) -> ActionExecutor:
        return ActionExecutor(
            env,
            http=self._http,
            settle_seconds=self._settle_seconds,
            sleep=self._sleep,
            log=self._log,
            timeout_seconds=self._timeout_seconds,
        )

    def run(self, request: RunRequest) -> RunSummary:
        try:
            token = self.authenticate(request.credentials)
            env = self.resolve(request.environment, token)
        except (AuthenticationExhausted, EnvironmentNotFound) as e:
            return summarize([], fatal=e, solution_name=request.solution_name)

        notes: list[str] = []
        if env.match_confidence is MatchConfidence.URL_DERIVED:
            notes.append(
                f"environment id {env.environment_id!r} was derived from the URL; no directory API confirmed it"
            )

        agents = self.discover(env, token, name_filter=request.name_filter)
        if not agents:
            notes.append(str(DiscoveryEmpty(env.environment_id, request.name_filter)))

        actions = ordered_actions(request.actions)
        if request.dry_run:
            planned = ", ".join(a.value.lower() for a in actions) or "nothing"
            for agent in agents:
                notes.append(f"dry run: would {planned} {agent.display_name} ({agent.resource_id})")
            return summarize([], notes=notes, environment=env, solution_name=request.solution_name)

        executor = self.executor(env)
        outcomes = [executor.execute(agent, action, token) for agent in agents for action in actions]
        return summarize(outcomes, notes=notes, environment=env, solution_name=request.solution_name)
