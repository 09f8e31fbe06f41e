"""HTTP transport on a shared httpx.AsyncClient.

This module provides the dispatch side of the runner:
- create_client: shared async HTTP client factory
- HttpTransport: sends one ConcreteRequest (following redirects), returns a CapturedResponse or raises TransportError
- parse_body: JSON-or-text decoding of response bodies

The per-request timeout is enforced here and surfaces as TransportError, which the
retry controller treats like any other failed attempt.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import orjson

from .exceptions import ConfigError, TransportError
from .logging_config import get_logger
from .models import CapturedResponse, ConcreteRequest

logger = get_logger("transport")

# Connection limits for one run; functional testing needs far less than load testing.
DEFAULT_MAX_CONNECTIONS = 100
DEFAULT_MAX_KEEPALIVE = 20
DEFAULT_KEEPALIVE_EXPIRY = 30.0
# Client-level timeout (seconds); each request overrides it with its own timeout
DEFAULT_TIMEOUT_SEC = 30.0
# Nanoseconds to milliseconds conversion
NS_TO_MS = 1_000_000

Dispatch = Callable[[ConcreteRequest], Awaitable[CapturedResponse]]


async def create_client(
    http2: bool = False,
    timeout: float = DEFAULT_TIMEOUT_SEC,
    limits: httpx.Limits | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create the shared async HTTP client for a run.

    Args:
        http2: Enable HTTP/2 (requires the ``h2`` package, installed by ``httpx[http2]``)
        timeout: Default timeout in seconds
        limits: Custom connection limits
        transport: Custom transport (tests pass ``httpx.MockTransport``)

    Returns:
        Configured AsyncClient ready for use as async context manager
    """
    limits = limits or httpx.Limits(
        max_connections=DEFAULT_MAX_CONNECTIONS,
        max_keepalive_connections=DEFAULT_MAX_KEEPALIVE,
        keepalive_expiry=DEFAULT_KEEPALIVE_EXPIRY,
    )
    return httpx.AsyncClient(
        http2=http2,
        timeout=timeout,
        limits=limits,
        transport=transport,
    )


def parse_body(response: httpx.Response) -> Any:
    """Decode JSON when the content type says so or the text looks like JSON; else return text."""
    content = response.content
    if not content:
        return ""
    content_type = response.headers.get("content-type", "")
    text_start = content.lstrip()[:1]
    if "json" in content_type or text_start in (b"{", b"["):
        try:
            return orjson.loads(content)
        except orjson.JSONDecodeError:
            logger.debug("Response declared/looked like JSON but did not parse; keeping text")
    return response.text


class HttpTransport:
    """Callable dispatcher bound to one client.

    Redirects are followed here rather than by the client, hop by hop through
    ``response.next_request``, so each request can carry its own hop limit.

    Note:
        Never returns an HTTP error status as an exception: 4xx/5xx are valid
        responses for the validator. Only network-level failures raise.
    """

    __slots__ = ("_client",)

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def __call__(self, request: ConcreteRequest) -> CapturedResponse:
        headers, content = request.prepare()
        timeout_sec = request.timeout_ms / 1000.0
        auth = None
        if request.auth is not None and request.auth.type == "basic":
            auth = httpx.BasicAuth(request.auth.username, request.auth.password)
        start_ns = time.perf_counter_ns()
        try:
            r = await self._client.request(
                request.method,
                request.url,
                headers=headers,
                params=request.params or None,
                content=content,
                auth=auth,
                timeout=timeout_sec,
                follow_redirects=False,
            )
            hops = 0
            while request.follow_redirects and r.next_request is not None:
                if hops >= request.max_redirects:
                    raise TransportError(
                        f"Exceeded {request.max_redirects} redirect(s)",
                        url=request.url,
                        context={"location": str(r.next_request.url)},
                    )
                hops += 1
                logger.debug("%s redirected (%d) to %s", request.name, r.status_code, r.next_request.url)
                r = await self._client.send(r.next_request, follow_redirects=False)
        except httpx.TimeoutException as e:
            raise TransportError(
                f"Request timed out after {request.timeout_ms:g}ms",
                url=request.url,
                original_error=e,
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(
                f"{type(e).__name__}: {e}" if str(e) else type(e).__name__,
                url=request.url,
                original_error=e,
            ) from e
        except (httpx.InvalidURL, UnicodeEncodeError) as e:
            raise ConfigError(
                f"Cannot build request: {e}",
                context={"request": request.name, "url": request.url},
                original_error=e,
            ) from e
        elapsed_ms = (time.perf_counter_ns() - start_ns) / NS_TO_MS
        return CapturedResponse(
            status_code=r.status_code,
            headers=dict(r.headers),
            body=parse_body(r),
            elapsed_ms=elapsed_ms,
        )
