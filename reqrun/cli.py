"""CLI entry point for the reqrun declarative HTTP request runner."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from . import __version__
from .exceptions import ReqrunError
from .logging_config import get_logger
from .models import ExecutionMode
from .runner import run_file

logger = get_logger("cli")


def _parse_env_args(env_list: list[str] | None) -> dict[str, str]:
    if not env_list:
        return {}
    out: dict[str, str] = {}
    for s in env_list:
        if "=" in s:
            k, _, v = s.partition("=")
            out[k.strip()] = v.strip()
    return out


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reqrun",
        description="Declarative HTTP request runner. Resolves variables, dispatches requests "
        "sequentially or in parallel, retries, validates responses and reports one result per request.",
    )
    parser.add_argument("file", help="Path to the YAML request document")
    parser.add_argument(
        "-e",
        "--env",
        action="append",
        metavar="KEY=VALUE",
        help="Global variable (can be repeated). Overrides variables declared in the file.",
    )
    parser.add_argument(
        "--parallel",
        action="store_true",
        help="Run requests inside every collection in parallel",
    )
    parser.add_argument(
        "--max-concurrent",
        type=int,
        default=None,
        metavar="N",
        dest="max_concurrent",
        help="Override config: maximum in-flight requests per parallel collection",
    )
    parser.add_argument(
        "--continue-on-error",
        action="store_true",
        default=None,
        dest="continue_on_error",
        help="Keep running after a failed request",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        default=None,
        help="Treat every unresolved variable as an error, not only those in URLs",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Print nothing; report through the exit code only",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"reqrun {__version__}",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    def handle_error(e: BaseException) -> int:
        if isinstance(e, ReqrunError):
            print(f"Error: {e.message}", file=sys.stderr)
            return 1
        if isinstance(e, (FileNotFoundError, ValueError)):
            print(f"Error: {e}", file=sys.stderr)
            return 1
        logger.exception("Unexpected error")
        print("Error: An unexpected error occurred. Check logs for details.", file=sys.stderr)
        return 1

    try:
        summary = asyncio.run(
            run_file(
                Path(args.file),
                variables=_parse_env_args(args.env) or None,
                execution=ExecutionMode.PARALLEL if args.parallel else None,
                max_concurrent=args.max_concurrent,
                continue_on_error=args.continue_on_error,
                strict=args.strict,
                live=not args.quiet,
            )
        )
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130
    except Exception as e:
        return handle_error(e)
    return 0 if summary.ok else 1


if __name__ == "__main__":
    sys.exit(main())
