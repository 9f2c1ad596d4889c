from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Sequence
from urllib.parse import urlparse

from .auth import AuthToken
from .cli_shared import DEFAULT_HTTP_TIMEOUT_SECONDS, EnvironmentNotFound, UsageError, _silent
from .strategies import StrategiesExhausted, Strategy, StrategyFailed, first_success
from .transport import HttpRequest, _http_request, get_json


BAP_ADMIN_ENVIRONMENTS_URL = (
    "https://api.bap.microsoft.com/providers/Microsoft.BusinessAppPlatform"
    "/scopes/admin/environments?api-version=2020-10-01"
)
BAP_ENVIRONMENTS_URL = (
    "https://api.bap.microsoft.com/providers/Microsoft.BusinessAppPlatform"
    "/environments?api-version=2021-04-01"
)
POWER_PLATFORM_ENVIRONMENTS_URL = (
    "https://api.powerplatform.com/environmentmanagement/environments"
    "?api-version=2022-03-01-preview"
)

_ORG_LABEL = r"(?P<org>[a-z0-9][a-z0-9-]*)"

# Regional and sovereign instance hosts; the leftmost label is the org name.
_KNOWN_HOST_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"^{_ORG_LABEL}\.(?:api\.)?crm\d*\.dynamics\.com$"),
    re.compile(rf"^{_ORG_LABEL}\.(?:api\.)?crm\d*\.microsoftdynamics\.(?:us|de)$"),
    re.compile(rf"^{_ORG_LABEL}\.(?:api\.)?crm\.appsplatform\.us$"),
    re.compile(rf"^{_ORG_LABEL}\.(?:api\.)?crm\.dynamics\.cn$"),
)

# Any other <org>.<platform>.<tld> host; tried after the known patterns and
# configured suffixes.
_GENERIC_HOST_PATTERN = re.compile(rf"^{_ORG_LABEL}\.[a-z0-9-]+\.[a-z]{{2,}}$")

_RESERVED_LABELS = frozenset({"www", "api", "login", "admin", "make", "portal", "app", "apps"})


class MatchConfidence(str, Enum):
    EXACT = "Exact"
    PARTIAL = "Partial"
    URL_DERIVED = "UrlDerived"


@dataclass(frozen=True)
class EnvironmentReference:
    supplied_url: str

    @classmethod
    def parse(cls, raw: str | None) -> "EnvironmentReference":
        url = (raw or "").strip()
        if not url:
            raise UsageError("missing environment URL (--environment-url or env AGENTCFG_ENVIRONMENT_URL)")
        if "://" not in url:
            url = f"https://{url}"
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"} or not parsed.hostname:
            raise UsageError(f"invalid environment URL: {raw!r}")
        return cls(supplied_url=url)

    @property
    def host(self) -> str:
        return _host(self.supplied_url)

    @property
    def base_url(self) -> str:
        parsed = urlparse(self.supplied_url)
        return f"{parsed.scheme}://{self.host}"

    @property
    def needle(self) -> str:
        return self.host.split(".", 1)[0]


@dataclass(frozen=True)
class DirectoryEntry:
    environment_id: str
    display_name: str
    instance_url: str

    def to_dict(self) -> dict[str, str]:
        return {
            "environmentId": self.environment_id,
            "displayName": self.display_name,
            "instanceUrl": self.instance_url,
        }


@dataclass(frozen=True)
class EnvironmentRecord:
    environment_id: str
    display_name: str
    instance_url: str
    match_confidence: MatchConfidence

    def to_dict(self) -> dict[str, str]:
        return {
            "environmentId": self.environment_id,
            "displayName": self.display_name,
            "instanceUrl": self.instance_url,
            "matchConfidence": self.match_confidence.value,
        }


def _host(url: str) -> str:
    raw = (url or "").strip()
    if raw and "://" not in raw:
        raw = f"https://{raw}"
    return (urlparse(raw).hostname or "").lower().rstrip(".")


def _rows(doc: Any) -> list[dict[str, Any]]:
    if isinstance(doc, list):
        rows = doc
    elif isinstance(doc, dict):
        rows = doc.get("value") or doc.get("environments") or []
    else:
        rows = []
    return [r for r in rows if isinstance(r, dict)] if isinstance(rows, list) else []


def _bap_entries(doc: Any) -> list[DirectoryEntry]:
    out: list[DirectoryEntry] = []
    for row in _rows(doc):
        props = row.get("properties") if isinstance(row.get("properties"), dict) else {}
        linked = props.get("linkedEnvironmentMetadata") if isinstance(props.get("linkedEnvironmentMetadata"), dict) else {}
        env_id = str(row.get("name") or "").strip()
        if not env_id:
            continue
        out.append(
            DirectoryEntry(
                environment_id=env_id,
                display_name=str(props.get("displayName") or "").strip(),
                instance_url=str(linked.get("instanceUrl") or "").strip(),
            )
        )
    return out


def _power_platform_entries(doc: Any) -> list[DirectoryEntry]:
    out: list[DirectoryEntry] = []
    for row in _rows(doc):
        props = row.get("properties") if isinstance(row.get("properties"), dict) else {}
        env_id = str(row.get("id") or row.get("environmentId") or row.get("name") or "").strip()
        if not env_id:
            continue
        # The listing reports ids as resource paths on some api-versions.
        env_id = env_id.rstrip("/").rsplit("/", 1)[-1]
        out.append(
            DirectoryEntry(
                environment_id=env_id,
                display_name=str(row.get("displayName") or props.get("displayName") or "").strip(),
                instance_url=str(
                    row.get("url") or row.get("instanceUrl") or props.get("dataverseOrganizationUrl") or ""
                ).strip(),
            )
        )
    return out


@dataclass(frozen=True)
class DirectorySurface:
    name: str
    url: str
    adapter: Callable[[Any], list[DirectoryEntry]]


DEFAULT_DIRECTORIES: tuple[DirectorySurface, ...] = (
    DirectorySurface("bap-admin", BAP_ADMIN_ENVIRONMENTS_URL, _bap_entries),
    DirectorySurface("bap", BAP_ENVIRONMENTS_URL, _bap_entries),
    DirectorySurface("powerplatform", POWER_PLATFORM_ENVIRONMENTS_URL, _power_platform_entries),
)


def _single(candidates: list[DirectoryEntry], *, what: str) -> DirectoryEntry:
    if len(candidates) == 1:
        return candidates[0]
    if not candidates:
        raise StrategyFailed(f"no {what} match")
    raise StrategyFailed(f"{len(candidates)} {what} matches")


def derive_environment_id(ref: EnvironmentReference, extra_host_suffixes: Sequence[str] = ()) -> str | None:
    """Derive the org name from the instance host, or None.

    Known platform hosts win, then configured suffixes, then any plain
    ``<org>.<platform>.<tld>`` host whose org label is not reserved.
    """
    host = ref.host
    for pattern in _KNOWN_HOST_PATTERNS:
        m = pattern.match(host)
        if m:
            return m.group("org")
    for suffix in extra_host_suffixes:
        s = str(suffix or "").strip().lower().lstrip(".")
        if not s or not host.endswith(f".{s}"):
            continue
        prefix = host[: -len(s) - 1]
        labels = [p for p in prefix.split(".") if p]
        if labels and labels[-1] == "api":
            labels = labels[:-1]
        if len(labels) != 1:
            continue
        org = labels[0]
        if re.fullmatch(_ORG_LABEL, org) and org not in _RESERVED_LABELS:
            return org
    m = _GENERIC_HOST_PATTERN.match(host)
    if m and m.group("org") not in _RESERVED_LABELS:
        return m.group("org")
    return None


class EnvironmentResolver:
    """Resolve an environment URL to one EnvironmentRecord for the run."""

    def __init__(
        self,
        *,
        http: HttpRequest = _http_request,
        directories: Sequence[DirectorySurface] = DEFAULT_DIRECTORIES,
        extra_host_suffixes: Sequence[str] = (),
        log: Callable[[str], None] = _silent,
        timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ):
        self._http = http
        self._directories = tuple(directories)
        self._extra_host_suffixes = tuple(extra_host_suffixes)
        self._log = log
        self._timeout_seconds = timeout_seconds

    def _listing(self, surface: DirectorySurface) -> Callable[[AuthToken], list[DirectoryEntry]]:
        def run(token: AuthToken) -> list[DirectoryEntry]:
            doc = get_json(
                http=self._http,
                url=surface.url,
                token_value=token.value,
                label=f"{surface.name} environment listing",
                timeout_seconds=self._timeout_seconds,
            )
            entries = surface.adapter(doc)
            if not entries:
                raise StrategyFailed("listing returned zero environments")
            return entries

        return run

    def list_environments(self, token: AuthToken) -> tuple[str, list[DirectoryEntry]]:
        """Return (surface name, entries) from the first surface with a non-empty listing."""
        strategies = [Strategy(s.name, self._listing(s)) for s in self._directories]
        try:
            won = first_success(strategies, token, log=self._log, label="environment directory")
        except StrategiesExhausted:
            return "", []
        return won.strategy, won.value

    def match_strategies(
        self, ref: EnvironmentReference
    ) -> list[Strategy[list[DirectoryEntry], tuple[DirectoryEntry, MatchConfidence]]]:
        needle = ref.needle

        def exact(entries: list[DirectoryEntry]) -> tuple[DirectoryEntry, MatchConfidence]:
            hits = [
                e
                for e in entries
                if e.environment_id.lower() == needle or e.display_name.lower() == needle
            ]
            return _single(hits, what="exact"), MatchConfidence.EXACT

        def substring(entries: list[DirectoryEntry]) -> tuple[DirectoryEntry, MatchConfidence]:
            hits = [
                e
                for e in entries
                if needle in e.environment_id.lower() or needle in e.display_name.lower()
            ]
            return _single(hits, what="substring"), MatchConfidence.PARTIAL

        def instance_url(entries: list[DirectoryEntry]) -> tuple[DirectoryEntry, MatchConfidence]:
            hits = [e for e in entries if e.instance_url and _host(e.instance_url) == ref.host]
            return _single(hits, what="instance-url"), MatchConfidence.PARTIAL

        return [
            Strategy("exact", exact),
            Strategy("substring", substring),
            Strategy("instance-url", instance_url),
        ]

    def resolve(self, ref: EnvironmentReference, token: AuthToken) -> EnvironmentRecord:
        source, entries = self.list_environments(token)
        if entries:
            try:
                won = first_success(self.match_strategies(ref), entries, log=self._log, label="environment match")
            except StrategiesExhausted:
                self._log(f"no unique match for {ref.host} among {len(entries)} environments from {source}")
            else:
                entry, confidence = won.value
                record = EnvironmentRecord(
                    environment_id=entry.environment_id,
                    display_name=entry.display_name,
                    instance_url=(entry.instance_url or ref.base_url).rstrip("/"),
                    match_confidence=confidence,
                )
                self._log(
                    f"resolved environment {record.environment_id} via {source} ({won.strategy} match)"
                )
                return record

        org = derive_environment_id(ref, self._extra_host_suffixes)
        if not org:
            raise EnvironmentNotFound(ref.supplied_url, [e.to_dict() for e in entries])
        self._log(f"resolved environment {org} from URL host {ref.host} (unverified)")
        return EnvironmentRecord(
            environment_id=org,
            display_name="",
            instance_url=ref.base_url,
            match_confidence=MatchConfidence.URL_DERIVED,
        )
