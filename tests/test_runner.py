"""Integration tests for run_plan/run_file over httpx.MockTransport (no network)."""

from __future__ import annotations

import asyncio
import base64
from pathlib import Path

import httpx
import orjson
import pytest

from reqrun.config import build_plan, load_plan
from reqrun.exceptions import ConfigError, RunnerError
from reqrun.models import ErrorKind, OutcomeStatus
from reqrun.runner import run_file, run_plan


def _api(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/login":
        return httpx.Response(200, json={"token": "abc.def"})
    if request.url.path == "/me":
        if request.headers.get("authorization") == "Bearer abc.def":
            return httpx.Response(200, json={"name": "alice", "id": 1})
        return httpx.Response(401, json={"error": "unauthorized"})
    return httpx.Response(404)


def test_run_file_chains_token(tmp_request_file: Path) -> None:
    """Test that a token extracted by one request authorizes the next."""
    summary = asyncio.run(run_file(tmp_request_file, live=False, transport=httpx.MockTransport(_api), environ={}))
    assert summary.total == 2
    assert summary.passed == 2
    assert summary.ok


def test_run_plan_streams_outcomes(tmp_request_file: Path) -> None:
    """Test that run_plan hands each outcome to the callback as it completes."""
    seen = []
    summary, outcomes = asyncio.run(run_plan(
        load_plan(tmp_request_file), on_outcome=seen.append, transport=httpx.MockTransport(_api), environ={},
    ))
    assert [o.request_name for o in seen] == ["login", "profile"]
    assert outcomes == seen
    assert outcomes[0].extracted == {"TOKEN": "abc.def"}
    assert outcomes[1].response.body == {"name": "alice", "id": 1}


def test_run_file_overrides(tmp_path: Path) -> None:
    """Test that command-line variables override declared globals."""
    doc = tmp_path / "suite.yaml"
    doc.write_text(
        "global:\n"
        "  variables:\n"
        "    host: wrong.example.com\n"
        "requests:\n"
        "  - name: ping\n"
        "    url: https://${host}/ping\n"
        "    expect:\n"
        "      status: 200\n",
        encoding="utf-8",
    )
    hosts = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        return httpx.Response(200)

    summary = asyncio.run(run_file(
        doc, variables={"host": "right.example.com"}, live=False, transport=httpx.MockTransport(handler), environ={},
    ))
    assert hosts == ["right.example.com"]
    assert summary.ok


def test_run_file_prints_results(tmp_request_file: Path, capsys) -> None:
    """Test that live output lists each request and the final verdict."""
    asyncio.run(run_file(tmp_request_file, live=True, transport=httpx.MockTransport(_api), environ={}))
    out = capsys.readouterr().out
    assert "login" in out
    assert "profile" in out
    assert "All requests passed" in out


def test_failed_run_reports_failures(tmp_path: Path, capsys) -> None:
    """Test that a failing request shows up in the printed report."""
    doc = tmp_path / "suite.yaml"
    doc.write_text(
        "requests:\n"
        "  - name: get user\n"
        "    url: https://api.example.com/me\n"
        "    expect:\n"
        "      status: 200\n"
        "      body:\n"
        "        id: 2\n",
        encoding="utf-8",
    )
    summary = asyncio.run(run_file(doc, live=True, transport=httpx.MockTransport(_api), environ={}))
    assert summary.failed == 1
    out = capsys.readouterr().out
    assert "401" in out
    assert "1 request(s) did not pass" in out


def test_request_body_is_json(tmp_request_file: Path) -> None:
    """Test that a structured body is sent as JSON with a JSON Content-Type."""
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            bodies.append(orjson.loads(request.content))
            assert request.headers["content-type"] == "application/json"
        return _api(request)

    asyncio.run(run_file(tmp_request_file, live=False, transport=httpx.MockTransport(handler), environ={}))
    assert bodies == [{"user": "alice"}]


def test_empty_plan_raises() -> None:
    """Test that a document without requests is rejected before any client is opened."""
    with pytest.raises(RunnerError, match="No requests"):
        asyncio.run(run_plan(build_plan({"collections": []})))


def test_missing_variables_file_raises(tmp_path: Path) -> None:
    """Test that a missing variables file fails the run up front."""
    plan = build_plan({"global": {"variablesFile": str(tmp_path / "missing.json")}, "request": {"url": "http://h"}})
    with pytest.raises(ConfigError):
        asyncio.run(run_plan(plan, transport=httpx.MockTransport(lambda r: httpx.Response(200)), environ={}))


def test_environment_fallback() -> None:
    """Test that unknown names fall back to the process environment."""
    plan = build_plan({"request": {"url": "https://${API_HOST}/health"}})
    urls = []

    def handler(request: httpx.Request) -> httpx.Response:
        urls.append(str(request.url))
        return httpx.Response(200)

    summary, outcomes = asyncio.run(run_plan(
        plan, transport=httpx.MockTransport(handler), environ={"API_HOST": "env.example.com"},
    ))
    assert urls == ["https://env.example.com/health"]
    assert outcomes[0].status is OutcomeStatus.PASSED


def test_bad_header_does_not_abort_run() -> None:
    """Test that a non-ASCII header fails its request while the next request still runs."""
    plan = build_plan({
        "global": {"continueOnError": True},
        "requests": [
            {"name": "accented", "url": "https://api.example.com/login", "headers": {"X-Name": "José"}},
            {"name": "login", "method": "POST", "url": "https://api.example.com/login"},
        ],
    })
    summary, outcomes = asyncio.run(run_plan(plan, transport=httpx.MockTransport(_api), environ={}))
    assert [o.status for o in outcomes] == [OutcomeStatus.ERROR, OutcomeStatus.PASSED]
    assert summary.errors == 1


def _redirecting(request: httpx.Request) -> httpx.Response:
    hops = {"/old": "/older", "/older": "/new"}
    if request.url.path in hops:
        return httpx.Response(302, headers={"Location": hops[request.url.path]})
    if request.url.path == "/loop":
        return httpx.Response(301, headers={"Location": "/loop"})
    return httpx.Response(200, json={"at": request.url.path})


def test_redirects_followed_by_default() -> None:
    """Test that a redirecting endpoint is followed to its final response."""
    plan = build_plan({"request": {"url": "https://h.example.com/old", "expect": {"status": 200, "body": {"at": "/new"}}}})
    _, outcomes = asyncio.run(run_plan(plan, transport=httpx.MockTransport(_redirecting), environ={}))
    assert outcomes[0].status is OutcomeStatus.PASSED


def test_follow_redirects_false_returns_redirect() -> None:
    """Test that followRedirects: false hands the 3xx response to the validator."""
    plan = build_plan({"request": {
        "url": "https://h.example.com/old", "followRedirects": False, "expect": {"status": 302},
    }})
    _, outcomes = asyncio.run(run_plan(plan, transport=httpx.MockTransport(_redirecting), environ={}))
    assert outcomes[0].status is OutcomeStatus.PASSED
    assert outcomes[0].response.header("location") == "/older"


def test_max_redirects_exceeded_is_transport_failure() -> None:
    """Test that a redirect chain longer than maxRedirects fails the request."""
    plan = build_plan({"request": {"url": "https://h.example.com/old", "maxRedirects": 1}})
    _, outcomes = asyncio.run(run_plan(plan, transport=httpx.MockTransport(_redirecting), environ={}))
    assert outcomes[0].status is OutcomeStatus.FAILED
    assert outcomes[0].error_kind is ErrorKind.TRANSPORT
    assert "Exceeded 1 redirect(s)" in outcomes[0].reason


def test_basic_and_bearer_auth_sent() -> None:
    """Test that request-level auth reaches the server with templates expanded."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("authorization"))
        return httpx.Response(200)

    plan = build_plan({
        "global": {"variables": {"user": "alice", "secret": "s3cret", "TOKEN": "abc"}},
        "requests": [
            {"url": "https://h.example.com/a", "auth": {"type": "basic", "username": "${user}", "password": "${secret}"}},
            {"url": "https://h.example.com/b", "auth": {"type": "bearer", "token": "${TOKEN}"}},
        ],
    })
    summary, _ = asyncio.run(run_plan(plan, transport=httpx.MockTransport(handler), environ={}))
    assert summary.ok
    assert seen == ["Basic " + base64.b64encode(b"alice:s3cret").decode("ascii"), "Bearer abc"]
