"""Pipeline definitions: YAML files and the built-in registry.

A pipeline file looks like::

    pipelines:
      test:
        description: Run the full quality gate
        steps:
          - name: format check
            run: cargo +nightly fmt --check
          - name: lint
            run: [cargo, clippy, --, -D, warnings]
            timeout: 600
            env:
              RUSTFLAGS: -D warnings

``run`` is either a shell-like string (split with :func:`shlex.split`, never
passed to a shell) or a list of arguments. A relative ``workdir`` is
resolved against the directory holding the file.
"""

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Any

import jsonschema
import yaml

from qgate import ConfigurationError, Pipeline, PipelineBuilder, Registry, Step

log = logging.getLogger("qgate.config")

DEFAULT_FILENAME = "qgate.yaml"

_STEP_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["name", "run"],
    "additionalProperties": False,
    "properties": {
        "name": {"type": "string"},
        "run": {
            "oneOf": [
                {"type": "string"},
                {"type": "array", "items": {"type": "string"}},
            ]
        },
        "workdir": {"type": "string", "minLength": 1},
        "required": {"type": "boolean"},
        "timeout": {"type": "number", "exclusiveMinimum": 0},
        "env": {"type": "object", "additionalProperties": {"type": "string"}},
    },
}

SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["pipelines"],
    "additionalProperties": False,
    "properties": {
        "pipelines": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "required": ["steps"],
                "additionalProperties": False,
                "properties": {
                    "description": {"type": "string"},
                    "steps": {"type": "array", "items": _STEP_SCHEMA},
                },
            },
        }
    },
}

# Feature-flag combinations the canonical gate tests under, in order.
FEATURE_SETS: dict[str, list[str]] = {
    "default features": [],
    "all features": ["--all-features"],
    "no default features": ["--no-default-features"],
    "codec only": ["--no-default-features", "--features", "parity-scale-codec"],
}


def load_file(path: str | Path) -> Registry:
    """Load and validate a pipeline file."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(
            code="FILE_NOT_FOUND", message=f"pipeline file not found: {path}"
        ) from None
    except OSError as e:
        raise ConfigurationError(
            code="INVALID_CONFIG", message=f"cannot read pipeline file {path}: {e.strerror or e}"
        ) from e
    except UnicodeDecodeError as e:
        raise ConfigurationError(
            code="INVALID_CONFIG", message=f"{path}: not valid UTF-8: {e.reason}"
        ) from e
    except yaml.YAMLError as e:
        raise ConfigurationError(
            code="INVALID_CONFIG", message=f"{path}: invalid YAML: {e}"
        ) from e
    log.debug("loaded pipeline file %s", path)
    return load_mapping(data, base_dir=path.resolve().parent, source=str(path))


def load_mapping(
    data: Any,
    *,
    base_dir: Path | None = None,
    source: str = "<config>",
) -> Registry:
    """Build a registry from already-parsed configuration data."""
    try:
        jsonschema.validate(instance=data, schema=SCHEMA)
    except jsonschema.ValidationError as e:
        where = " -> ".join(str(p) for p in e.absolute_path) or "root"
        raise ConfigurationError(
            code="INVALID_CONFIG",
            message=f"{source}: schema validation failed at '{where}': {e.message}",
        ) from e

    pipelines = []
    for name, body in data["pipelines"].items():
        steps = [_step_from_mapping(raw, base_dir) for raw in body["steps"]]
        p = Pipeline(name=name, steps=tuple(steps), description=body.get("description", ""))
        try:
            p.validate()
        except ConfigurationError as e:
            raise ConfigurationError(
                code=e.code,
                message=f"{source}: pipeline {name!r}: {e}",
                step=e.step,
            ) from e
        pipelines.append(p)
    return Registry(pipelines)


def _step_from_mapping(raw: dict[str, Any], base_dir: Path | None) -> Step:
    run = raw["run"]
    try:
        argv = shlex.split(run) if isinstance(run, str) else list(run)
    except ValueError as e:
        raise ConfigurationError(
            code="INVALID_CONFIG",
            message=f"step {raw['name']!r}: cannot parse run command: {e}",
            step=raw["name"],
        ) from e
    command, args = (argv[0], argv[1:]) if argv else ("", [])

    workdir = raw.get("workdir")
    if workdir is not None and base_dir is not None and not Path(workdir).is_absolute():
        workdir = str(base_dir / workdir)

    return Step(
        name=raw["name"],
        command=command,
        args=tuple(args),
        workdir=workdir,
        required=raw.get("required", True),
        env=raw.get("env", {}),
        timeout=raw.get("timeout"),
    )


def builtin_registry() -> Registry:
    """Pipelines available when no pipeline file is present."""
    test = PipelineBuilder("test", description="Check formatting and lints, then test every feature set")
    cargo = test.cargo()
    cargo.fmt()
    cargo.clippy()
    cargo.feature_matrix(FEATURE_SETS)

    lint = PipelineBuilder("lint", description="Check formatting and lints only")
    cargo = lint.cargo()
    cargo.fmt()
    cargo.clippy()

    return Registry([test.build(), lint.build()])


def resolve_registry(path: str | Path | None = None, *, cwd: str | Path | None = None) -> Registry:
    """Registry from ``path``, else ``qgate.yaml`` in ``cwd``, else the built-ins."""
    if path is not None:
        return load_file(path)
    candidate = Path(cwd if cwd is not None else Path.cwd()) / DEFAULT_FILENAME
    if candidate.is_file():
        return load_file(candidate)
    log.debug("no %s found, using built-in pipelines", DEFAULT_FILENAME)
    return builtin_registry()
