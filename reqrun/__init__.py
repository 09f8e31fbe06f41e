"""
reqrun - Declarative HTTP request runner.

Describe requests in a YAML document, grouped into collections; reqrun resolves
variables and templates, dispatches sequentially or with bounded concurrency,
retries, validates responses against expectations and reports one outcome per request.
"""

from .exceptions import ConfigError, ReqrunError, RunnerError, TransportError, UnresolvedReferenceError

__all__ = [
    "__version__",
    "ConfigError",
    "ReqrunError",
    "RunnerError",
    "TransportError",
    "UnresolvedReferenceError",
]

__version__ = "1.0.0"
