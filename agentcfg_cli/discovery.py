from __future__ import annotations

import fnmatch
from dataclasses import dataclass
from typing import Any, Callable, Sequence
from urllib.parse import quote

from .auth import AuthToken
from .cli_shared import DEFAULT_HTTP_TIMEOUT_SECONDS, OpError, _silent
from .environments import EnvironmentRecord
from .strategies import StrategiesExhausted, Strategy, StrategyFailed, first_success
from .transport import HttpRequest, _http_request, get_json


SOURCE_DATAVERSE = "dataverse-bots"
SOURCE_BOT_MANAGEMENT = "botmanagement"
SOURCE_APPS_HEURISTIC = "apps-heuristic"

BOT_MANAGEMENT_BASE_URL = "https://powerva.microsoft.com/api/botmanagement/v1"
POWERAPPS_APPS_URL = (
    "https://api.powerapps.com/providers/Microsoft.PowerApps/apps"
    "?api-version=2016-11-01&$filter=environment%20eq%20%27{environment_id}%27"
)

_WRAPPER_FIELDS = ("value", "bots", "items", "data")
_AGENT_NAME_TOKENS = ("bot", "agent", "copilot")


@dataclass(frozen=True)
class ResourceRecord:
    resource_id: str
    display_name: str
    source_shape: str

    def to_dict(self) -> dict[str, str]:
        return {
            "resourceId": self.resource_id,
            "displayName": self.display_name,
            "sourceShape": self.source_shape,
        }


def _unwrap(doc: Any) -> list[dict[str, Any]]:
    if isinstance(doc, list):
        return [r for r in doc if isinstance(r, dict)]
    if isinstance(doc, dict):
        for key in _WRAPPER_FIELDS:
            rows = doc.get(key)
            if isinstance(rows, list):
                return [r for r in rows if isinstance(r, dict)]
        if not doc:
            return []
    raise StrategyFailed("unrecognized response shape")


def _str(row: dict[str, Any], *keys: str) -> str:
    for k in keys:
        v = str(row.get(k) or "").strip()
        if v:
            return v
    return ""


def _dataverse_bot(row: dict[str, Any]) -> ResourceRecord | None:
    bot_id = _str(row, "botid")
    if not bot_id:
        return None
    return ResourceRecord(
        resource_id=bot_id,
        display_name=_str(row, "name", "schemaname") or bot_id,
        source_shape=SOURCE_DATAVERSE,
    )


def _bot_management_bot(row: dict[str, Any]) -> ResourceRecord | None:
    props = row.get("properties") if isinstance(row.get("properties"), dict) else {}
    bot_id = _str(row, "botId", "id", "name")
    if not bot_id:
        return None
    return ResourceRecord(
        resource_id=bot_id,
        display_name=_str(row, "displayName") or _str(props, "displayName") or _str(row, "name") or bot_id,
        source_shape=SOURCE_BOT_MANAGEMENT,
    )


def _app_resource(row: dict[str, Any]) -> ResourceRecord | None:
    props = row.get("properties") if isinstance(row.get("properties"), dict) else {}
    app_id = _str(row, "name", "id")
    if not app_id:
        return None
    return ResourceRecord(
        resource_id=app_id,
        display_name=_str(props, "displayName") or _str(row, "displayName") or app_id,
        source_shape=SOURCE_APPS_HEURISTIC,
    )


def _looks_like_agent(record: ResourceRecord) -> bool:
    hay = f"{record.resource_id} {record.display_name}".lower()
    return any(tok in hay for tok in _AGENT_NAME_TOKENS)


@dataclass(frozen=True)
class DiscoverySurface:
    name: str
    url_template: str
    adapter: Callable[[dict[str, Any]], ResourceRecord | None]

    def url(self, env: EnvironmentRecord) -> str:
        return self.url_template.format(
            instance_url=env.instance_url.rstrip("/"),
            environment_id=quote(env.environment_id, safe=""),
        )


DEFAULT_SURFACES: tuple[DiscoverySurface, ...] = (
    DiscoverySurface(
        "dataverse-v9.2",
        "{instance_url}/api/data/v9.2/bots?$select=botid,name,schemaname",
        _dataverse_bot,
    ),
    DiscoverySurface(
        "dataverse-v9.1",
        "{instance_url}/api/data/v9.1/bots?$select=botid,name,schemaname",
        _dataverse_bot,
    ),
    DiscoverySurface(
        "botmanagement",
        BOT_MANAGEMENT_BASE_URL + "/environments/{environment_id}/bots",
        _bot_management_bot,
    ),
)

APPS_FALLBACK_SURFACE = DiscoverySurface("apps-heuristic", POWERAPPS_APPS_URL, _app_resource)


def _normalize(rows: list[dict[str, Any]], adapter: Callable[[dict[str, Any]], ResourceRecord | None]) -> list[ResourceRecord]:
    out: list[ResourceRecord] = []
    seen: set[str] = set()
    for row in rows:
        rec = adapter(row)
        if rec is None or rec.resource_id in seen:
            continue
        seen.add(rec.resource_id)
        out.append(rec)
    return out


def filter_by_name(records: Sequence[ResourceRecord], name_filter: str) -> list[ResourceRecord]:
    pattern = (name_filter or "").strip().lower()
    if not pattern:
        return list(records)
    return [
        r
        for r in records
        if fnmatch.fnmatchcase(r.display_name.lower(), pattern) or fnmatch.fnmatchcase(r.resource_id.lower(), pattern)
    ]


class ResourceDiscoveryOrchestrator:
    """List agents in an environment across several API surfaces.

    The first surface that answers without error wins, even with an empty
    listing. Only when every surface errors is the app listing scanned for
    agent-like names. An empty result is never an error.
    """

    def __init__(
        self,
        *,
        http: HttpRequest = _http_request,
        surfaces: Sequence[DiscoverySurface] = DEFAULT_SURFACES,
        fallback: DiscoverySurface | None = APPS_FALLBACK_SURFACE,
        log: Callable[[str], None] = _silent,
        timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ):
        self._http = http
        self._surfaces = tuple(surfaces)
        self._fallback = fallback
        self._log = log
        self._timeout_seconds = timeout_seconds

    def _fetch(self, surface: DiscoverySurface, env: EnvironmentRecord, token: AuthToken) -> list[ResourceRecord]:
        doc = get_json(
            http=self._http,
            url=surface.url(env),
            token_value=token.value,
            label=f"{surface.name} agent listing",
            timeout_seconds=self._timeout_seconds,
        )
        return _normalize(_unwrap(doc), surface.adapter)

    def _listing(self, surface: DiscoverySurface, env: EnvironmentRecord) -> Callable[[AuthToken], list[ResourceRecord]]:
        return lambda token: self._fetch(surface, env, token)

    def _heuristic_fallback(self, env: EnvironmentRecord, token: AuthToken) -> list[ResourceRecord]:
        if self._fallback is None:
            return []
        try:
            records = self._fetch(self._fallback, env, token)
        except (OpError, StrategyFailed) as e:
            self._log(f"agent discovery fallback {self._fallback.name} failed: {e}")
            return []
        matched = [r for r in records if _looks_like_agent(r)]
        self._log(
            f"agent discovery fallback {self._fallback.name}: {len(matched)} of {len(records)} apps look like agents"
        )
        return matched

    def list_resources(
        self,
        env: EnvironmentRecord,
        token: AuthToken,
        *,
        name_filter: str = "",
    ) -> list[ResourceRecord]:
        strategies = [Strategy(s.name, self._listing(s, env)) for s in self._surfaces]
        try:
            won = first_success(strategies, token, log=self._log, label="agent discovery")
        except StrategiesExhausted:
            records = self._heuristic_fallback(env, token)
        else:
            records = won.value
            self._log(f"discovered {len(records)} agents via {won.strategy}")
        return filter_by_name(records, name_filter)
