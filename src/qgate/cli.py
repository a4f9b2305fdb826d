"""Command-line entry point.

``qgate`` with no pipeline lists what is available; ``qgate NAME`` runs it.
The exit status is 0 when the pipeline passed, 1 when a required step
failed, 2 when the pipeline definition is broken and 130 when interrupted.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import IO, Sequence

from qgate import (
    EXIT_CONFIG_ERROR,
    EXIT_PASSED,
    ConfigurationError,
    Executor,
    PipelineResult,
    Runner,
    SubprocessExecutor,
    explain_to,
)
from qgate.config import DEFAULT_FILENAME, resolve_registry

log = logging.getLogger("qgate.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qgate",
        description="Run a quality-gate pipeline step by step, stopping at the first failure.",
    )
    parser.add_argument(
        "pipeline",
        nargs="?",
        help="Pipeline to run. Omit to list the available pipelines.",
    )
    parser.add_argument(
        "-f",
        "--file",
        help=f"Pipeline file (default: ./{DEFAULT_FILENAME} if present, else built-in pipelines).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the steps that would run without running them.",
    )
    parser.add_argument(
        "--capture",
        action="store_true",
        help="Capture step output; stderr of failing steps is shown in the report.",
    )
    parser.add_argument(
        "--json",
        metavar="PATH",
        help="Write the result as JSON to PATH ('-' for stdout).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return parser


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _write_json(result: PipelineResult, target: str, out: IO[str]) -> None:
    if target == "-":
        json.dump(result.to_dict(), out, indent=2)
        out.write("\n")
        return
    with open(target, "w", encoding="utf-8") as f:
        json.dump(result.to_dict(), f, indent=2)
    log.debug("wrote result to %s", target)


def main(
    argv: Sequence[str] | None = None,
    *,
    executor: Executor | None = None,
    stdout: IO[str] | None = None,
) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    out = stdout if stdout is not None else sys.stdout

    try:
        registry = resolve_registry(args.file)
        if args.pipeline is None:
            registry.list_to(out)
            return EXIT_PASSED
        pipeline = registry.get(args.pipeline)
        if args.dry_run:
            explain_to(pipeline, out)
            return EXIT_PASSED
        runner = Runner(
            executor if executor is not None else SubprocessExecutor(capture=args.capture),
            writer=out,
        )
        result = runner.run(pipeline)
    except ConfigurationError as e:
        print(f"qgate: error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.json:
        try:
            _write_json(result, args.json, out)
        except OSError as e:
            print(f"qgate: error: cannot write {args.json}: {e.strerror or e}", file=sys.stderr)
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
