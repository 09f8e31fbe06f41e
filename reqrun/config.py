"""YAML document loader: parses a request document into a RunPlan.

Request defaults are merged here, global -> collection -> request, with maps
(headers, params, variables, retry, expect, extract, auth) merged key by key.

Document-level problems (unreadable file, invalid YAML, bad global or
collection settings) raise ConfigError. A malformed value inside one request
only marks that request with ``config_error``, so the rest of the run proceeds.
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from .conditions import parse_when
from .exceptions import ConfigError
from .logging_config import get_logger
from .models import (
    DEFAULT_MAX_PASSES,
    DEFAULT_MAX_REDIRECTS,
    DEFAULT_TIMEOUT_MS,
    AuthSpec,
    CollectionSpec,
    ExecutionMode,
    ExpectationSpec,
    RequestSpec,
    ResolverPolicy,
    RetryPolicy,
    RunPlan,
)

logger = get_logger("config")

DEFAULT_COLLECTION_NAME = "default"
# Request keys whose mapping values merge with defaults instead of replacing them
MERGED_KEYS = ("headers", "params", "variables", "retry", "expect", "extract", "auth")
AUTH_TYPES = ("basic", "bearer")


def load_document(path: str | Path) -> dict[str, Any]:
    """Read and parse a YAML request document.

    Raises:
        ConfigError: If file not found, invalid YAML, or not a mapping
    """
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Request file not found: {path}", context={"path": str(path)})
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.exception("Failed to parse YAML request file")
        raise ConfigError(
            f"Invalid YAML syntax in request file: {e}",
            context={"path": str(path)},
            original_error=e,
        ) from e
    except OSError as e:
        logger.exception("Failed to read request file")
        raise ConfigError(
            f"Cannot read request file: {e}",
            context={"path": str(path)},
            original_error=e,
        ) from e
    if not isinstance(raw, dict):
        raise ConfigError(
            "Request file must be a YAML object/dictionary",
            context={"path": str(path), "actual_type": type(raw).__name__},
        )
    return raw


def load_plan(path: str | Path) -> RunPlan:
    """Load a YAML document and build its RunPlan. Relative file references resolve against its directory."""
    p = Path(path)
    plan = build_plan(load_document(p), base_dir=p.parent)
    logger.debug(
        "Loaded %s: %d collection(s), %d request(s)", p, len(plan.collections), plan.request_count
    )
    return plan


def build_plan(raw: dict[str, Any], base_dir: Path | None = None) -> RunPlan:
    """Build a RunPlan from an already parsed document tree."""
    g = raw.get("global") or {}
    if not isinstance(g, dict):
        raise ConfigError("'global' must be a mapping")

    global_defaults = _mapping(g.get("defaults"), "global.defaults")
    if "timeout" in g and "timeout" not in global_defaults:
        global_defaults = {**global_defaults, "timeout": g["timeout"]}

    execution = _mode(g.get("execution"), "global.execution")
    max_concurrent = _optional_positive_int(_first(g, "maxConcurrent", "maxConcurrency"), "global.maxConcurrent")
    continue_on_error = _bool(g.get("continueOnError", False), "global.continueOnError")

    variables_file = g.get("variablesFile")
    if variables_file is not None:
        vf = Path(str(variables_file))
        if not vf.is_absolute() and base_dir is not None:
            vf = base_dir / vf
        variables_file = str(vf)

    collections: list[CollectionSpec] = []
    for i, raw_coll in enumerate(_collection_sources(raw)):
        collections.append(
            _build_collection(raw_coll, i, global_defaults, execution, max_concurrent, continue_on_error)
        )

    return RunPlan(
        collections=collections,
        global_variables=_mapping(g.get("variables"), "global.variables"),
        variables_file=variables_file,
        collection_execution=_mode(g.get("collectionExecution"), "global.collectionExecution"),
        max_concurrent_collections=_optional_positive_int(
            g.get("maxConcurrentCollections"), "global.maxConcurrentCollections"
        ),
        continue_on_error=continue_on_error,
        http2=_bool(g.get("http2", False), "global.http2"),
        policy=_policy(g.get("templates")),
    )


def apply_overrides(
    plan: RunPlan,
    variables: dict[str, str] | None = None,
    execution: ExecutionMode | None = None,
    max_concurrent: int | None = None,
    continue_on_error: bool | None = None,
    strict: bool | None = None,
) -> RunPlan:
    """Return a copy of ``plan`` with command-line overrides applied on top of the document."""
    if max_concurrent is not None and max_concurrent < 1:
        raise ConfigError("max concurrent must be >= 1")
    collections = []
    for c in plan.collections:
        collections.append(replace(
            c,
            execution=execution if execution is not None else c.execution,
            max_concurrent=max_concurrent if max_concurrent is not None else c.max_concurrent,
            continue_on_error=continue_on_error if continue_on_error is not None else c.continue_on_error,
        ))
    return replace(
        plan,
        collections=collections,
        global_variables={**plan.global_variables, **(variables or {})},
        continue_on_error=continue_on_error if continue_on_error is not None else plan.continue_on_error,
        policy=replace(plan.policy, strict=strict) if strict is not None else plan.policy,
    )


def _collection_sources(raw: dict[str, Any]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    colls = raw.get("collections")
    if colls is not None:
        if not isinstance(colls, list):
            raise ConfigError("'collections' must be a list")
        for c in colls:
            if not isinstance(c, dict):
                raise ConfigError("Each collection must be a mapping")
            out.append(c)
    if raw.get("collection") is not None:
        if not isinstance(raw["collection"], dict):
            raise ConfigError("'collection' must be a mapping")
        out.append(raw["collection"])
    loose: list[Any] = []
    if raw.get("requests") is not None:
        if not isinstance(raw["requests"], list):
            raise ConfigError("'requests' must be a list")
        loose.extend(raw["requests"])
    if raw.get("request") is not None:
        loose.append(raw["request"])
    if loose:
        out.append({"name": raw.get("name") or DEFAULT_COLLECTION_NAME, "requests": loose})
    return out


def _build_collection(
    raw: dict[str, Any],
    index: int,
    global_defaults: dict[str, Any],
    execution: ExecutionMode,
    max_concurrent: int | None,
    continue_on_error: bool,
) -> CollectionSpec:
    name = str(raw.get("name") or f"Collection {index + 1}")
    where = f"collection '{name}'"
    defaults = merge_request(global_defaults, _mapping(raw.get("defaults"), f"{where}.defaults"))
    raw_requests = raw.get("requests") or []
    if not isinstance(raw_requests, list):
        raise ConfigError(f"{where}: 'requests' must be a list")

    requests = [build_request(r, i, defaults) for i, r in enumerate(raw_requests)]
    coll_mode = _mode(raw.get("execution"), f"{where}.execution") if "execution" in raw else execution
    coll_max = _first(raw, "maxConcurrent", "maxConcurrency")
    return CollectionSpec(
        name=name,
        requests=requests,
        variables=_mapping(raw.get("variables"), f"{where}.variables"),
        execution=coll_mode,
        max_concurrent=(
            _optional_positive_int(coll_max, f"{where}.maxConcurrent") if coll_max is not None else max_concurrent
        ),
        continue_on_error=(
            _bool(raw["continueOnError"], f"{where}.continueOnError")
            if "continueOnError" in raw else continue_on_error
        ),
        description=str(raw.get("description") or ""),
    )


def merge_request(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Shallow merge of request dicts; MERGED_KEYS mappings merge one level deeper."""
    merged = {**base, **override}
    for key in MERGED_KEYS:
        b, o = base.get(key), override.get(key)
        if isinstance(b, dict) and isinstance(o, dict):
            merged[key] = {**b, **o}
    return merged


def build_request(raw: Any, index: int, defaults: dict[str, Any] | None = None) -> RequestSpec:
    """Build one RequestSpec. Invalid values are captured in ``config_error`` instead of raised."""
    fallback_name = f"Request {index + 1}"
    if not isinstance(raw, dict):
        return RequestSpec(name=fallback_name, url="", config_error="Request must be a mapping")
    merged = merge_request(defaults or {}, raw)
    name = str(merged.get("name") or fallback_name)
    url = merged.get("url")
    method = str(merged.get("method") or "GET").strip().upper()
    try:
        if not url or not isinstance(url, str):
            raise ConfigError("'url' is required and must be a string")
        return RequestSpec(
            name=name,
            url=url,
            method=method,
            headers=_mapping(merged.get("headers"), "headers"),
            params=_mapping(merged.get("params"), "params"),
            body=merged.get("body"),
            timeout_ms=_timeout(merged.get("timeout")),
            retry=_retry(merged.get("retry")),
            extract={str(k): str(v) for k, v in _mapping(_first(merged, "extract", "store"), "extract").items()},
            expect=_expectation(merged.get("expect")),
            variables=_mapping(merged.get("variables"), "variables"),
            when=parse_when(merged.get("when")),
            auth=_auth(merged.get("auth")),
            follow_redirects=_bool(merged.get("followRedirects", True), "followRedirects"),
            max_redirects=_max_redirects(merged.get("maxRedirects")),
        )
    except ConfigError as e:
        logger.debug("Request %s marked invalid: %s", name, e.message)
        return RequestSpec(name=name, url=str(url or ""), method=method, config_error=e.message)


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _mapping(value: Any, name: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    return {str(k): v for k, v in value.items()}


def _mode(value: Any, name: str) -> ExecutionMode:
    if value is None:
        return ExecutionMode.SEQUENTIAL
    try:
        return ExecutionMode(str(value).strip().lower())
    except ValueError:
        raise ConfigError(f"'{name}' must be 'sequential' or 'parallel', got {value!r}") from None


def _bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ConfigError(f"'{name}' must be true or false, got {value!r}")


def _int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"'{name}' must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{name}' must be an integer, got {value!r}") from None


def _number(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"'{name}' must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{name}' must be a number, got {value!r}") from None


def _optional_positive_int(value: Any, name: str) -> int | None:
    if value is None:
        return None
    n = _int(value, name)
    if n < 1:
        raise ConfigError(f"'{name}' must be >= 1, got {n}")
    return n


def _timeout(value: Any) -> float:
    if value is None:
        return DEFAULT_TIMEOUT_MS
    t = _number(value, "timeout")
    if t <= 0:
        raise ConfigError(f"'timeout' must be > 0 ms, got {value!r}")
    return t


def _retry(value: Any) -> RetryPolicy:
    if value is None:
        return RetryPolicy()
    if not isinstance(value, dict):
        # shorthand: `retry: 3`
        value = {"count": value}
    count = _int(value.get("count", 0), "retry.count")
    delay = _number(value.get("delay", 0), "retry.delay")
    if count < 0:
        raise ConfigError(f"'retry.count' must be >= 0, got {count}")
    if delay < 0:
        raise ConfigError(f"'retry.delay' must be >= 0, got {delay:g}")
    return RetryPolicy(count=count, delay_ms=delay)


def _auth(value: Any) -> AuthSpec | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError("'auth' must be a mapping")
    kind = str(value.get("type") or "").strip().lower()
    if kind not in AUTH_TYPES:
        raise ConfigError(f"'auth.type' must be 'basic' or 'bearer', got {value.get('type')!r}")
    if kind == "basic" and not value.get("username"):
        raise ConfigError("'auth.username' is required for basic auth")
    if kind == "bearer" and not value.get("token"):
        raise ConfigError("'auth.token' is required for bearer auth")
    return AuthSpec(
        type=kind,
        username=str(value.get("username") or ""),
        password=str(value.get("password") or ""),
        token=str(value.get("token") or ""),
    )


def _max_redirects(value: Any) -> int:
    if value is None:
        return DEFAULT_MAX_REDIRECTS
    n = _int(value, "maxRedirects")
    if n < 0:
        raise ConfigError(f"'maxRedirects' must be >= 0, got {n}")
    return n


def _status(value: Any) -> int | frozenset[int] | None:
    if value is None:
        return None
    if isinstance(value, list):
        if not value:
            raise ConfigError("'expect.status' list must not be empty")
        return frozenset(_int(v, "expect.status") for v in value)
    return _int(value, "expect.status")


def _expectation(value: Any) -> ExpectationSpec:
    if value is None:
        return ExpectationSpec()
    if not isinstance(value, dict):
        raise ConfigError("'expect' must be a mapping")
    response_time = value.get("responseTime")
    if isinstance(response_time, (int, float)) and not isinstance(response_time, bool):
        response_time = f"<= {response_time}"
    return ExpectationSpec(
        status=_status(value.get("status")),
        headers={str(k): str(v) for k, v in _mapping(value.get("headers"), "expect.headers").items()},
        body=value.get("body"),
        has_body="body" in value,
        response_time=str(response_time) if response_time is not None else None,
        failure=_bool(value.get("failure", False), "expect.failure"),
    )


def _policy(value: Any) -> ResolverPolicy:
    t = _mapping(value, "global.templates")
    max_passes = _int(t.get("maxPasses", DEFAULT_MAX_PASSES), "global.templates.maxPasses")
    if max_passes < 1:
        raise ConfigError(f"'global.templates.maxPasses' must be >= 1, got {max_passes}")
    return ResolverPolicy(
        max_passes=max_passes,
        strict=_bool(t.get("strict", False), "global.templates.strict"),
        strict_url=_bool(t.get("strictUrl", True), "global.templates.strictUrl"),
    )
