"""Layered variable store with scoped overriding.

Lookup precedence, most specific first:

    request -> session (extracted values) -> collection -> global -> process environment

The store is an explicit object owned by one run; nothing here is process-wide.
Extraction writes go to the session namespace under a lock, and every request
materializes against a point-in-time snapshot (``VariableStore.scope``), so a
concurrent write never shows up half-way through one request's resolution.
"""

from __future__ import annotations

import os
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import orjson
import yaml

from .exceptions import ConfigError
from .extraction import walk_path
from .logging_config import get_logger
from .models import NOT_FOUND

logger = get_logger("variables")


class VariableScope:
    """Read-only, point-in-time view over the layered namespaces."""

    __slots__ = ("_layers", "_session", "_environ")

    def __init__(
        self,
        layers: list[Mapping[str, Any]],
        session: Mapping[str, Any],
        environ: Mapping[str, str],
    ) -> None:
        self._layers = layers
        self._session = session
        self._environ = environ

    def lookup(self, name: str) -> Any:
        """Return the most specific value for ``name``, or NOT_FOUND.

        A dotted name (``db.host``) that no scope defines literally is looked up
        as a path into the structured value of its first segment.
        """
        for layer in self._layers:
            if name in layer:
                return layer[name]
        if name in self._environ:
            return self._environ[name]
        if "." in name:
            root, _, rest = name.partition(".")
            for layer in self._layers:
                if root in layer:
                    return walk_path(layer[root], rest)
        return NOT_FOUND

    def lookup_session(self, name: str) -> Any:
        """Only values written by extraction (``${store.NAME}``)."""
        if name in self._session:
            return self._session[name]
        if "." in name:
            root, _, rest = name.partition(".")
            if root in self._session:
                return walk_path(self._session[root], rest)
        return NOT_FOUND


class VariableStore:
    """Run-wide owner of the global and session namespaces.

    Args:
        environ: Process environment used as the last lookup fallback.
            Defaults to ``os.environ``; pass ``{}`` to disable.
    """

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._global: dict[str, Any] = {}
        self._session: dict[str, Any] = {}
        self._lock = threading.Lock()
        self._environ: Mapping[str, str] = os.environ if environ is None else environ

    def load_file(self, path: str | Path) -> int:
        """Merge a JSON (or YAML) document of variables into the global scope.

        Call before ``define`` so declared globals override file-sourced ones.

        Returns:
            Number of top-level names merged.

        Raises:
            ConfigError: If the file is missing, unreadable, malformed, or not an object.
        """
        p = Path(path)
        if not p.exists():
            raise ConfigError(f"Variables file not found: {path}", context={"path": str(path)})
        try:
            raw_bytes = p.read_bytes()
            if p.suffix.lower() in (".yaml", ".yml"):
                data = yaml.safe_load(raw_bytes)
            else:
                data = orjson.loads(raw_bytes)
        except (orjson.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigError(
                f"Invalid variables file: {e}", context={"path": str(path)}, original_error=e
            ) from e
        except OSError as e:
            raise ConfigError(
                f"Cannot read variables file: {e}", context={"path": str(path)}, original_error=e
            ) from e
        if not isinstance(data, dict):
            raise ConfigError(
                "Variables file must contain an object",
                context={"path": str(path), "actual_type": type(data).__name__},
            )
        with self._lock:
            self._global.update({str(k): v for k, v in data.items()})
        logger.debug("Loaded %d variables from %s", len(data), p)
        return len(data)

    def define(self, values: Mapping[str, Any]) -> None:
        """Apply declared global variables in declaration order (last write wins)."""
        with self._lock:
            for name, value in values.items():
                self._global[str(name)] = value

    def write_many(self, values: Mapping[str, Any]) -> None:
        """Store extracted values in the session namespace, visible to every later request."""
        with self._lock:
            self._session.update(values)

    def session(self) -> dict[str, Any]:
        """Copy of the extracted values."""
        with self._lock:
            return dict(self._session)

    def scope(
        self,
        collection: Mapping[str, Any] | None = None,
        request: Mapping[str, Any] | None = None,
    ) -> VariableScope:
        """Snapshot of all namespaces for one resolution."""
        with self._lock:
            session = dict(self._session)
            global_ = dict(self._global)
        layers: list[Mapping[str, Any]] = [session, dict(collection or {}), global_]
        if request:
            layers.insert(0, dict(request))
        return VariableScope(layers, session, self._environ)
