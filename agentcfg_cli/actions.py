from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Sequence
from urllib.parse import quote

from .auth import AuthToken
from .cli_shared import DEFAULT_HTTP_TIMEOUT_SECONDS, DEFAULT_SETTLE_SECONDS, OpError, UsageError, _silent
from .discovery import BOT_MANAGEMENT_BASE_URL, ResourceRecord
from .environments import EnvironmentRecord
from .transport import HttpRequest, _http_request, bearer_headers, is_success, json_body


class ActionKind(str, Enum):
    PUBLISH = "Publish"
    ENABLE = "Enable"
    SHARE = "Share"

    @classmethod
    def parse(cls, raw: str) -> "ActionKind":
        v = (raw or "").strip().lower()
        for kind in cls:
            if kind.value.lower() == v:
                return kind
        allowed = ", ".join(k.value.lower() for k in cls)
        raise UsageError(f"unknown action {raw!r} (expected one of: {allowed})")


# Publish must land before Enable; the executor never reorders within a resource.
ACTION_ORDER: tuple[ActionKind, ...] = (ActionKind.PUBLISH, ActionKind.ENABLE, ActionKind.SHARE)


def ordered_actions(actions: Sequence[ActionKind]) -> list[ActionKind]:
    wanted = set(actions)
    return [a for a in ACTION_ORDER if a in wanted]


class OutcomeStatus(str, Enum):
    SUCCEEDED = "Succeeded"
    FAILED_MANUAL_REQUIRED = "FailedManualRequired"


class ErrorKind(str, Enum):
    NONE = "None"
    AUTHENTICATION_STALE = "AuthenticationStale"
    PERMISSION_DENIED = "PermissionDenied"
    ENDPOINT_UNAVAILABLE = "EndpointUnavailable"
    RATE_LIMITED = "RateLimited"
    UNKNOWN = "Unknown"


_STATUS_KINDS = {
    401: ErrorKind.AUTHENTICATION_STALE,
    403: ErrorKind.PERMISSION_DENIED,
    404: ErrorKind.ENDPOINT_UNAVAILABLE,
    429: ErrorKind.RATE_LIMITED,
}

_KIND_HINTS = {
    ErrorKind.AUTHENTICATION_STALE: "token was rejected; tokens are acquired once per run, re-run the step",
    ErrorKind.PERMISSION_DENIED: "the application user lacks a role that allows this change in the environment",
    ErrorKind.RATE_LIMITED: "the platform throttled the request",
}


def classify(status: int) -> ErrorKind:
    if is_success(status):
        return ErrorKind.NONE
    return _STATUS_KINDS.get(status, ErrorKind.UNKNOWN)


def status_class(status: int) -> str:
    if status < 100:
        return "none"
    return f"{status // 100}xx"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ActionAttempt:
    endpoint_candidate: str
    http_status_class: str
    error_kind: ErrorKind
    timestamp: datetime
    status_code: int = 0
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "endpoint": self.endpoint_candidate,
            "statusClass": self.http_status_class,
            "statusCode": self.status_code,
            "errorKind": self.error_kind.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.detail:
            out["detail"] = self.detail
        return out


@dataclass(frozen=True)
class ResourceOutcome:
    resource_id: str
    action: ActionKind
    status: OutcomeStatus
    attempts: tuple[ActionAttempt, ...] = ()
    display_name: str = ""
    reason: str = ""
    manual_steps: tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status is OutcomeStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "resourceId": self.resource_id,
            "displayName": self.display_name,
            "action": self.action.value,
            "status": self.status.value,
            "reason": self.reason,
            "manualSteps": list(self.manual_steps),
            "attempts": [a.to_dict() for a in self.attempts],
        }


@dataclass(frozen=True)
class EndpointCandidate:
    name: str
    method: str
    url_template: str
    body: Mapping[str, Any] | None = None

    def url(self, env: EnvironmentRecord, resource: ResourceRecord) -> str:
        return self.url_template.format(
            instance_url=env.instance_url.rstrip("/"),
            environment_id=quote(env.environment_id, safe=""),
            resource_id=quote(resource.resource_id, safe=""),
        )


_DATAVERSE_V92_BOT = "{instance_url}/api/data/v9.2/bots({resource_id})"
_DATAVERSE_V91_BOT = "{instance_url}/api/data/v9.1/bots({resource_id})"
_BOT_MANAGEMENT_BOT = BOT_MANAGEMENT_BASE_URL + "/environments/{environment_id}/bots/{resource_id}"

PUBLISH_CANDIDATES: tuple[EndpointCandidate, ...] = (
    EndpointCandidate(
        "dataverse-v9.2:PvaPublish",
        "POST",
        _DATAVERSE_V92_BOT + "/Microsoft.Dynamics.CRM.PvaPublish",
        {},
    ),
    EndpointCandidate(
        "dataverse-v9.1:PvaPublish",
        "POST",
        _DATAVERSE_V91_BOT + "/Microsoft.Dynamics.CRM.PvaPublish",
        {},
    ),
    EndpointCandidate("botmanagement:publish", "POST", _BOT_MANAGEMENT_BOT + "/publish", {}),
)

ENABLE_CANDIDATES: tuple[EndpointCandidate, ...] = (
    EndpointCandidate(
        "dataverse-v9.2:activate",
        "PATCH",
        _DATAVERSE_V92_BOT,
        {"statecode": 0, "statuscode": 1},
    ),
    EndpointCandidate(
        "dataverse-v9.1:activate",
        "PATCH",
        _DATAVERSE_V91_BOT,
        {"statecode": 0, "statuscode": 1},
    ),
    EndpointCandidate("botmanagement:enable", "POST", _BOT_MANAGEMENT_BOT + "/enable", {}),
)

DEFAULT_CANDIDATES: Mapping[ActionKind, Sequence[EndpointCandidate]] = {
    ActionKind.PUBLISH: PUBLISH_CANDIDATES,
    ActionKind.ENABLE: ENABLE_CANDIDATES,
}


def _portal_label(env: EnvironmentRecord) -> str:
    name = env.display_name or env.environment_id
    return f"{name} ({env.instance_url})" if env.instance_url else name


def manual_steps(action: ActionKind, env: EnvironmentRecord, resource: ResourceRecord) -> tuple[str, ...]:
    where = f"Copilot Studio, environment {_portal_label(env)}"
    agent = resource.display_name or resource.resource_id
    if action is ActionKind.SHARE:
        return (
            f"Open {where} and select agent '{agent}'.",
            "Choose Share and add the users or security groups that should use the agent.",
            "Grant each principal the viewer or editor role as required.",
            "Review Settings > Security for the authentication mode expected by the audience.",
            "Configure channels (Teams, website) under Channels, then publish again.",
        )
    if action is ActionKind.PUBLISH:
        return (f"Open {where}, select agent '{agent}' and choose Publish.",)
    return (f"Open {where}, select agent '{agent}' and turn it on (Settings > Agent status).",)


def _detail(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").strip().replace("\n", " ")[:200]


def _exhausted_reason(attempts: Sequence[ActionAttempt]) -> str:
    if not attempts:
        return "no endpoint candidates configured for this action"
    tried = ", ".join(
        f"{a.endpoint_candidate}={a.status_code or 'no-response'} {a.error_kind.value}" for a in attempts
    )
    reason = f"all {len(attempts)} endpoint candidates failed ({tried})"
    hints = []
    for a in attempts:
        hint = _KIND_HINTS.get(a.error_kind)
        if hint and hint not in hints:
            hints.append(hint)
    if hints:
        reason += "; " + "; ".join(hints)
    return reason


class ActionExecutor:
    """Run publish / enable / share against agents of one resolved environment.

    Each (agent, action) pair walks its candidate endpoints in fixed order,
    recording every attempt. The first 2xx wins; an exhausted list degrades
    to ``FailedManualRequired`` with manual steps. Outcomes are terminal:
    asking again for a finished pair returns the recorded outcome.
    """

    def __init__(
        self,
        env: EnvironmentRecord,
        *,
        http: HttpRequest = _http_request,
        candidates: Mapping[ActionKind, Sequence[EndpointCandidate]] = DEFAULT_CANDIDATES,
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utc_now,
        log: Callable[[str], None] = _silent,
        timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ):
        self._env = env
        self._http = http
        self._candidates = {k: tuple(v) for k, v in candidates.items()}
        self._settle_seconds = float(settle_seconds)
        self._sleep = sleep
        self._clock = clock
        self._log = log
        self._timeout_seconds = timeout_seconds
        self._ledger: dict[tuple[str, ActionKind], ResourceOutcome] = {}

    def execute(self, resource: ResourceRecord, action: ActionKind, token: AuthToken) -> ResourceOutcome:
        key = (resource.resource_id, action)
        done = self._ledger.get(key)
        if done is not None:
            return done
        if action is ActionKind.SHARE:
            outcome = ResourceOutcome(
                resource_id=resource.resource_id,
                action=action,
                status=OutcomeStatus.FAILED_MANUAL_REQUIRED,
                display_name=resource.display_name,
                reason="sharing requires interactive user/group selection; configure it manually",
                manual_steps=manual_steps(action, self._env, resource),
            )
        else:
            outcome = self._run_candidates(resource, action, token)
        self._ledger[key] = outcome
        return outcome

    def _attempt(self, candidate: EndpointCandidate, resource: ResourceRecord, token: AuthToken) -> ActionAttempt:
        body = None if candidate.body is None else json_body(dict(candidate.body))
        try:
            status, _hdrs, raw = self._http(
                method=candidate.method,
                url=candidate.url(self._env, resource),
                headers=bearer_headers(token.value, json_body=body is not None),
                body=body,
                timeout_seconds=self._timeout_seconds,
            )
        except OpError as e:
            return ActionAttempt(
                endpoint_candidate=candidate.name,
                http_status_class=status_class(0),
                error_kind=ErrorKind.UNKNOWN,
                timestamp=self._clock(),
                detail=str(e),
            )
        kind = classify(status)
        return ActionAttempt(
            endpoint_candidate=candidate.name,
            http_status_class=status_class(status),
            error_kind=kind,
            timestamp=self._clock(),
            status_code=status,
            detail="" if kind is ErrorKind.NONE else _detail(raw),
        )

    def _run_candidates(self, resource: ResourceRecord, action: ActionKind, token: AuthToken) -> ResourceOutcome:
        attempts: list[ActionAttempt] = []
        label = resource.display_name or resource.resource_id
        for candidate in self._candidates.get(action, ()):
            attempt = self._attempt(candidate, resource, token)
            attempts.append(attempt)
            if attempt.error_kind is ErrorKind.NONE:
                if action is ActionKind.PUBLISH and self._settle_seconds > 0:
                    self._log(f"publish of {label} accepted; waiting {self._settle_seconds:g}s to settle")
                    self._sleep(self._settle_seconds)
                self._log(f"{action.value.lower()} {label}: succeeded via {candidate.name}")
                return ResourceOutcome(
                    resource_id=resource.resource_id,
                    action=action,
                    status=OutcomeStatus.SUCCEEDED,
                    attempts=tuple(attempts),
                    display_name=resource.display_name,
                    reason=f"via {candidate.name}",
                )
            self._log(
                f"{action.value.lower()} {label}: {candidate.name} -> "
                f"{attempt.status_code or 'no response'} {attempt.error_kind.value}"
            )
        return ResourceOutcome(
            resource_id=resource.resource_id,
            action=action,
            status=OutcomeStatus.FAILED_MANUAL_REQUIRED,
            attempts=tuple(attempts),
            display_name=resource.display_name,
            reason=_exhausted_reason(attempts),
            manual_steps=manual_steps(action, self._env, resource),
        )
