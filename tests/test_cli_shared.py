import pytest

from agentcfg_cli.cli_shared import (
    DiscoveryEmpty,
    EnvironmentNotFound,
    OpError,
    UsageError,
    _load_json_value,
    _parse_csv,
    _parse_positive_float,
)
from agentcfg_cli.transport import bearer_headers, get_json


def test_parse_csv_dedupes_and_trims():
    assert _parse_csv(" publish, enable ,,publish ") == ["publish", "enable"]
    assert _parse_csv(None) == []


def test_parse_positive_float():
    assert _parse_positive_float(None, name="settle seconds", default=15.0) == 15.0
    assert _parse_positive_float(" 2.5 ", name="settle seconds", default=15.0) == 2.5
    with pytest.raises(UsageError, match="must be >= 0"):
        _parse_positive_float("-1", name="settle seconds", default=15.0)


def test_load_json_value_empty_and_invalid():
    assert _load_json_value(raw=b"  ", label="x") == {}
    with pytest.raises(OpError, match="invalid JSON from bots listing"):
        _load_json_value(raw=b"<html>", label="bots listing")


def test_get_json_raises_on_non_success(fake_http):
    http = fake_http({("GET", "https://example.test/x"): (403, {"error": "Forbidden"})})
    with pytest.raises(OpError, match="listing failed: status=403"):
        get_json(http=http, url="https://example.test/x", token_value="t", label="listing")


def test_bearer_headers_only_set_content_type_for_bodies():
    assert "content-type" not in bearer_headers("t")
    assert bearer_headers("t", json_body=True)["content-type"] == "application/json"


def test_environment_not_found_message_when_nothing_seen():
    assert "none visible to this credential" in str(EnvironmentNotFound("https://x.example", []))


def test_discovery_empty_message_names_filter():
    assert str(DiscoveryEmpty("env-1", "hr*")) == "no resources found in environment env-1 matching 'hr*'"
