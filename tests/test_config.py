"""Unit tests for YAML document loading and plan building."""

from __future__ import annotations

from pathlib import Path

import pytest

from reqrun.config import apply_overrides, build_plan, build_request, load_document, load_plan, merge_request
from reqrun.exceptions import ConfigError
from reqrun.models import DEFAULT_MAX_REDIRECTS, DEFAULT_TIMEOUT_MS, AuthSpec, ExecutionMode


def test_load_plan_fixture(tmp_request_file: Path) -> None:
    plan = load_plan(tmp_request_file)
    assert plan.global_variables == {"baseUrl": "https://api.example.com"}
    assert len(plan.collections) == 1
    auth = plan.collections[0]
    assert auth.name == "auth"
    assert auth.execution is ExecutionMode.SEQUENTIAL
    login, profile = auth.requests
    assert login.method == "POST"
    assert login.url == "${baseUrl}/login"
    assert login.body == {"user": "alice"}
    assert login.timeout_ms == 5000.0
    assert login.extract == {"TOKEN": "$.token"}
    assert login.expect.status == 200
    assert profile.method == "GET"
    assert profile.headers == {"Authorization": "Bearer ${TOKEN}"}
    assert profile.expect.status == frozenset({200, 304})
    assert profile.expect.has_body
    assert profile.expect.body == {"name": "*"}
    assert plan.request_count == 2


def test_load_document_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_document(tmp_path / "nope.yaml")


def test_load_document_invalid_yaml(tmp_path: Path) -> None:
    p = tmp_path / "bad.yaml"
    p.write_text("requests: [\n  - name: x\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_document(p)


def test_load_document_not_mapping(tmp_path: Path) -> None:
    p = tmp_path / "list.yaml"
    p.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="YAML object"):
        load_document(p)


def test_single_request_and_loose_requests() -> None:
    plan = build_plan({"request": {"url": "http://h/one"}})
    assert plan.collections[0].name == "default"
    assert plan.collections[0].requests[0].name == "Request 1"

    plan = build_plan({"name": "smoke", "requests": [{"url": "http://h/a"}, {"url": "http://h/b"}]})
    assert plan.collections[0].name == "smoke"
    assert [r.url for r in plan.collections[0].requests] == ["http://h/a", "http://h/b"]


def test_single_collection_key() -> None:
    plan = build_plan({"collection": {"name": "users", "requests": [{"url": "http://h"}]}})
    assert plan.collections[0].name == "users"


def test_global_settings() -> None:
    plan = build_plan({
        "global": {
            "execution": "parallel",
            "maxConcurrency": 4,
            "continueOnError": True,
            "collectionExecution": "parallel",
            "maxConcurrentCollections": 2,
            "http2": True,
            "templates": {"maxPasses": 5, "strict": True, "strictUrl": False},
        },
        "collections": [{"name": "a", "requests": [{"url": "http://h"}]}],
    })
    coll = plan.collections[0]
    assert coll.execution is ExecutionMode.PARALLEL
    assert coll.max_concurrent == 4
    assert coll.continue_on_error is True
    assert plan.continue_on_error is True
    assert plan.collection_execution is ExecutionMode.PARALLEL
    assert plan.max_concurrent_collections == 2
    assert plan.http2 is True
    assert plan.policy.max_passes == 5
    assert plan.policy.strict is True
    assert plan.policy.strict_url is False


def test_collection_overrides_global_execution() -> None:
    plan = build_plan({
        "global": {"execution": "parallel", "maxConcurrent": 8},
        "collections": [
            {"name": "a", "execution": "sequential", "requests": [{"url": "http://h"}]},
            {"name": "b", "maxConcurrent": 2, "continueOnError": True, "requests": [{"url": "http://h"}]},
        ],
    })
    a, b = plan.collections
    assert a.execution is ExecutionMode.SEQUENTIAL
    assert b.execution is ExecutionMode.PARALLEL
    assert b.max_concurrent == 2
    assert b.continue_on_error is True
    assert plan.continue_on_error is False


@pytest.mark.parametrize("value", [0, -1, "many"])
def test_invalid_max_concurrent_raises(value) -> None:
    with pytest.raises(ConfigError):
        build_plan({"global": {"maxConcurrent": value}, "requests": [{"url": "http://h"}]})


def test_invalid_execution_mode_raises() -> None:
    with pytest.raises(ConfigError, match="sequential"):
        build_plan({"collections": [{"name": "a", "execution": "random", "requests": []}]})


def test_defaults_merge_global_collection_request() -> None:
    plan = build_plan({
        "global": {
            "defaults": {
                "headers": {"Accept": "application/json", "X-Env": "global"},
                "retry": {"count": 2, "delay": 100},
                "timeout": 1000,
            },
        },
        "collections": [{
            "name": "a",
            "defaults": {"headers": {"X-Env": "collection"}, "expect": {"status": 200}},
            "requests": [
                {"url": "http://h/1", "headers": {"X-Req": "1"}, "retry": {"count": 0}},
                {"url": "http://h/2", "timeout": 250, "expect": {"body": {"ok": True}}},
            ],
        }],
    })
    first, second = plan.collections[0].requests
    assert first.headers == {"Accept": "application/json", "X-Env": "collection", "X-Req": "1"}
    assert first.retry.count == 0
    assert first.retry.delay_ms == 100
    assert first.timeout_ms == 1000
    assert second.timeout_ms == 250
    assert second.retry.count == 2
    assert second.expect.status == 200
    assert second.expect.body == {"ok": True}


def test_merge_request_is_one_level_deep() -> None:
    merged = merge_request({"headers": {"a": "1"}, "url": "x"}, {"headers": {"b": "2"}, "url": "y"})
    assert merged == {"headers": {"a": "1", "b": "2"}, "url": "y"}


def test_variables_file_relative_to_document(tmp_path: Path) -> None:
    doc = tmp_path / "suite.yaml"
    doc.write_text("global:\n  variablesFile: vars.json\nrequest:\n  url: http://h\n", encoding="utf-8")
    plan = load_plan(doc)
    assert plan.variables_file == str(tmp_path / "vars.json")


@pytest.mark.parametrize("raw, fragment", [
    ({"url": "http://h", "retry": {"count": -1}}, "retry.count"),
    ({"url": "http://h", "retry": {"count": 1, "delay": -5}}, "retry.delay"),
    ({"url": "http://h", "timeout": "soon"}, "timeout"),
    ({"url": "http://h", "timeout": 0}, "timeout"),
    ({"name": "no url"}, "url"),
    ({"url": "http://h", "when": "nonsense"}, "condition"),
    ({"url": "http://h", "expect": {"status": "ok"}}, "expect.status"),
    ({"url": "http://h", "auth": {"type": "digest"}}, "auth.type"),
    ({"url": "http://h", "auth": {"type": "bearer"}}, "auth.token"),
    ({"url": "http://h", "auth": {"type": "basic", "password": "p"}}, "auth.username"),
    ({"url": "http://h", "maxRedirects": -1}, "maxRedirects"),
    ({"url": "http://h", "followRedirects": "sometimes"}, "followRedirects"),
])
def test_per_request_config_error(raw, fragment) -> None:
    spec = build_request(raw, 0)
    assert spec.config_error is not None
    assert fragment in spec.config_error


def test_bad_request_does_not_abort_collection() -> None:
    plan = build_plan({"requests": [{"url": "http://h", "retry": {"count": -1}}, {"url": "http://h/ok"}]})
    bad, good = plan.collections[0].requests
    assert bad.config_error
    assert good.config_error is None


def test_request_fields() -> None:
    spec = build_request({
        "name": "create",
        "method": "post",
        "url": "http://h/items",
        "params": {"page": 1},
        "store": {"ID": "$.id"},
        "retry": 3,
        "variables": {"x": 1},
        "when": "TOKEN exists",
        "expect": {"responseTime": 500, "failure": True, "headers": {"X-A": 1}},
    }, 0)
    assert spec.config_error is None
    assert spec.method == "POST"
    assert spec.params == {"page": 1}
    assert spec.extract == {"ID": "$.id"}
    assert spec.retry.count == 3
    assert spec.variables == {"x": 1}
    assert spec.when is not None
    assert spec.expect.response_time == "<= 500"
    assert spec.expect.failure is True
    assert spec.expect.headers == {"X-A": "1"}
    assert spec.timeout_ms == DEFAULT_TIMEOUT_MS


def test_apply_overrides() -> None:
    plan = build_plan({
        "global": {"variables": {"env": "dev", "keep": "yes"}},
        "collections": [{"name": "a", "requests": [{"url": "http://h"}]}],
    })
    out = apply_overrides(
        plan,
        variables={"env": "prod"},
        execution=ExecutionMode.PARALLEL,
        max_concurrent=5,
        continue_on_error=True,
        strict=True,
    )
    assert out.global_variables == {"env": "prod", "keep": "yes"}
    assert out.collections[0].execution is ExecutionMode.PARALLEL
    assert out.collections[0].max_concurrent == 5
    assert out.collections[0].continue_on_error is True
    assert out.continue_on_error is True
    assert out.policy.strict is True
    # the original plan is untouched
    assert plan.global_variables["env"] == "dev"
    assert plan.collections[0].execution is ExecutionMode.SEQUENTIAL


def test_apply_overrides_rejects_bad_max_concurrent() -> None:
    plan = build_plan({"request": {"url": "http://h"}})
    with pytest.raises(ConfigError):
        apply_overrides(plan, max_concurrent=0)


def test_apply_overrides_none_keeps_plan_values() -> None:
    plan = build_plan({"global": {"continueOnError": True}, "request": {"url": "http://h"}})
    out = apply_overrides(plan)
    assert out.continue_on_error is True
    assert out.collections[0].continue_on_error is True


def test_redirect_and_auth_settings() -> None:
    """Test that redirect settings default to following and auth merges from defaults."""
    plan = build_plan({
        "global": {"defaults": {"auth": {"type": "bearer", "token": "${TOKEN}"}, "maxRedirects": 5}},
        "requests": [
            {"url": "http://h/1"},
            {"url": "http://h/2", "followRedirects": False, "auth": {"token": "fixed"}},
            {"url": "http://h/3", "auth": {"type": "Basic", "username": "u", "password": "p"}},
        ],
    })
    first, second, third = plan.collections[0].requests
    assert first.follow_redirects is True
    assert first.max_redirects == 5
    assert first.auth == AuthSpec(type="bearer", token="${TOKEN}")
    assert second.follow_redirects is False
    assert second.auth == AuthSpec(type="bearer", token="fixed")
    assert third.auth == AuthSpec(type="basic", username="u", password="p", token="${TOKEN}")
    assert build_request({"url": "http://h"}, 0).max_redirects == DEFAULT_MAX_REDIRECTS
