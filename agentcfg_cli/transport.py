from __future__ import annotations

import json
from http.client import HTTPException
from typing import Any, Callable
from urllib.error import HTTPError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from .cli_shared import DEFAULT_HTTP_TIMEOUT_SECONDS, OpError, _load_json_value


HttpRequest = Callable[..., tuple[int, dict[str, str], bytes]]


def _http_request(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    body: bytes | None = None,
    timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS,
) -> tuple[int, dict[str, str], bytes]:
    req = Request(url, data=body, method=str(method).upper())
    for k, v in headers.items():
        req.add_header(k, v)
    try:
        with urlopen(req, timeout=timeout_seconds) as resp:
            status = getattr(resp, "status", 200)
            hdrs = {k.lower(): v for k, v in dict(resp.headers).items()}
            data = resp.read()
            return int(status), hdrs, data
    except HTTPError as e:
        hdrs = {k.lower(): v for k, v in dict(e.headers or {}).items()}
        data = e.read() if hasattr(e, "read") else b""
        return int(getattr(e, "code", 0) or 0), hdrs, data
    except (OSError, HTTPException) as e:
        # URLError, timeouts, dropped connections and truncated bodies.
        raise OpError(f"http request failed: {e}") from e


def bearer_headers(token_value: str, *, json_body: bool = False) -> dict[str, str]:
    headers = {
        "authorization": f"Bearer {token_value}",
        "accept": "application/json",
    }
    if json_body:
        headers["content-type"] = "application/json"
    return headers


def json_body(obj: dict[str, Any]) -> bytes:
    return json.dumps(obj, separators=(",", ":")).encode("utf-8")


def form_body(fields: dict[str, str]) -> bytes:
    return urlencode(fields).encode("utf-8")


def is_success(status: int) -> bool:
    return 200 <= status < 300


def get_json(
    *,
    http: HttpRequest,
    url: str,
    token_value: str,
    label: str,
    timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS,
) -> Any:
    """GET a JSON document, raising OpError on any non-2xx status."""
    status, _hdrs, raw = http(
        method="GET",
        url=url,
        headers=bearer_headers(token_value),
        timeout_seconds=timeout_seconds,
    )
    if not is_success(status):
        text = raw.decode("utf-8", errors="replace")[:300]
        raise OpError(f"{label} failed: status={status} body={text}")
    return _load_json_value(raw=raw, label=label)
