"""Pytest fixtures for reqrun tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from reqrun.models import CapturedResponse, ConcreteRequest
from reqrun.variables import VariableStore


def make_response(
    status_code: int = 200,
    body: Any = None,
    headers: dict[str, str] | None = None,
    elapsed_ms: float = 5.0,
) -> CapturedResponse:
    return CapturedResponse(
        status_code=status_code,
        headers=headers if headers is not None else {"Content-Type": "application/json"},
        body={} if body is None else body,
        elapsed_ms=elapsed_ms,
    )


class FakeDispatch:
    """Async dispatch double: answers from a handler and records every request it saw."""

    def __init__(self, handler) -> None:
        self.handler = handler
        self.calls: list[ConcreteRequest] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, request: ConcreteRequest) -> CapturedResponse:
        self.calls.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            result = self.handler(request)
            if hasattr(result, "__await__"):
                result = await result
            return result
        finally:
            self.in_flight -= 1


@pytest.fixture
def store() -> VariableStore:
    """Store with process environment lookups disabled."""
    return VariableStore(environ={})


@pytest.fixture
def tmp_request_file(tmp_path: Path) -> Path:
    """Two-request sequential document with extraction and chaining."""
    content = """
global:
  variables:
    baseUrl: https://api.example.com
  timeout: 5000
collections:
  - name: auth
    requests:
      - name: login
        method: POST
        url: ${baseUrl}/login
        body:
          user: alice
        expect:
          status: 200
        extract:
          TOKEN: $.token
      - name: profile
        url: ${baseUrl}/me
        headers:
          Authorization: Bearer ${TOKEN}
        expect:
          status: [200, 304]
          body:
            name: "*"
"""
    path = tmp_path / "requests.yaml"
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture
def tmp_variables_file(tmp_path: Path) -> Path:
    path = tmp_path / "vars.json"
    path.write_text('{"baseUrl": "https://file.example.com", "db": {"host": "db.local", "port": 5432}}', encoding="utf-8")
    return path


@pytest.fixture
def response_factory():
    """Build CapturedResponse objects: ``response_factory(200, {"id": 1})``."""
    return make_response


@pytest.fixture
def dispatch_factory():
    """Build a FakeDispatch around a ``request -> CapturedResponse`` handler."""
    return FakeDispatch


@pytest.fixture
def recorded_sleep():
    """Sleep double that returns immediately; requested delays land in ``.delays``."""
    delays: list[float] = []

    async def sleep(seconds: float) -> None:
        delays.append(seconds)

    sleep.delays = delays
    return sleep
