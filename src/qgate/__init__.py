"""qgate — declarative quality-gate pipelines.

Simple usage::

    from qgate import PipelineBuilder, run

    b = PipelineBuilder("test")
    b.step("format check").run("cargo", "+nightly", "fmt", "--check")
    b.step("lint").run("cargo", "clippy", "--", "-D", "warnings")
    b.step("unit tests").run("cargo", "test")
    result = run(b.build())
    raise SystemExit(result.exit_code)

Feature-flag combinations::

    from qgate import PipelineBuilder

    b = PipelineBuilder("test")
    cargo = b.cargo()
    cargo.fmt()
    cargo.clippy()
    cargo.feature_matrix({
        "default features": [],
        "all features": ["--all-features"],
        "no default features": ["--no-default-features"],
    })
    pipeline = b.build()

Steps run one at a time in declaration order. The first failing required
step stops the pipeline; everything after it is reported as skipped.
"""

from __future__ import annotations

import enum
import logging
import os
import shlex
import signal
import subprocess
import time
import types
from dataclasses import dataclass, field
from typing import (
    IO,
    Any,
    Callable,
    Iterable,
    Iterator,
    Mapping,
    Protocol,
    Self,
    Sequence,
)

__all__ = [
    # Core
    "Step",
    "Pipeline",
    "PipelineBuilder",
    "StepBuilder",
    "Registry",
    # Execution
    "Executor",
    "SubprocessExecutor",
    "ExitOutcome",
    "Runner",
    "run",
    "explain_to",
    # Results
    "StepStatus",
    "PipelineStatus",
    "StepResult",
    "PipelineResult",
    # Errors
    "ConfigurationError",
    # Presets
    "CargoPreset",
    # Exit codes
    "EXIT_PASSED",
    "EXIT_FAILED",
    "EXIT_CONFIG_ERROR",
    "EXIT_CANCELLED",
]

log = logging.getLogger("qgate")

EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_CANCELLED = 130


# =============================================================================
# VALUE OBJECTS
# =============================================================================


class StepStatus(str, enum.Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class PipelineStatus(str, enum.Enum):
    PASSED = "passed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ConfigurationError(Exception):
    """The pipeline definition itself is malformed. Raised before anything runs."""

    def __init__(self, code: str, message: str, step: str = "", suggestion: str = "") -> None:
        self.code = code
        self.step = step
        self.suggestion = suggestion
        super().__init__(message)


@dataclass(frozen=True)
class Step:
    """One verification action: an executable, its arguments and where to run it."""

    name: str
    command: str
    args: tuple[str, ...] = ()
    workdir: str | None = None
    required: bool = True
    env: Mapping[str, str] = field(default_factory=dict, hash=False)
    timeout: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", tuple(self.args))
        object.__setattr__(self, "env", types.MappingProxyType(dict(self.env)))

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]

    @property
    def command_line(self) -> str:
        return shlex.join(self.argv)


@dataclass(frozen=True)
class Pipeline:
    """Ordered, immutable sequence of steps forming a quality gate."""

    name: str
    steps: tuple[Step, ...] = ()
    description: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def validate(self) -> None:
        """Raise ConfigurationError if any step is structurally invalid."""
        _validate_steps(self.steps)


@dataclass(frozen=True)
class ExitOutcome:
    """What an executor observed for one spawned command.

    ``exit_code`` is None when the process never produced one: it could not
    be spawned, was killed by a signal, or was stopped after a timeout.
    """

    exit_code: int | None
    signal: int | None = None
    detail: str = ""
    stdout: str = ""
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


# =============================================================================
# RESULTS
# =============================================================================


@dataclass(frozen=True)
class StepResult:
    name: str
    status: StepStatus
    required: bool = True
    exit_code: int | None = None
    duration: float = 0.0
    detail: str = ""
    stdout: str = ""
    stderr: str = ""

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"name": self.name, "status": self.status.value}
        if not self.required:
            d["required"] = False
        if self.exit_code is not None:
            d["exit_code"] = self.exit_code
        if self.status is not StepStatus.SKIPPED:
            d["duration"] = round(self.duration, 3)
        if self.detail:
            d["detail"] = self.detail
        if self.stdout:
            d["stdout"] = self.stdout
        if self.stderr:
            d["stderr"] = self.stderr
        return d


@dataclass(frozen=True)
class PipelineResult:
    pipeline: str
    steps: tuple[StepResult, ...]
    status: PipelineStatus

    @property
    def passed(self) -> bool:
        return self.status is PipelineStatus.PASSED

    @property
    def exit_code(self) -> int:
        if self.status is PipelineStatus.PASSED:
            return EXIT_PASSED
        if self.status is PipelineStatus.CANCELLED:
            return EXIT_CANCELLED
        return EXIT_FAILED

    @property
    def failed_step(self) -> StepResult | None:
        """First required step that failed, if any."""
        for r in self.steps:
            if r.required and r.status is StepStatus.FAILED:
                return r
        return None

    @property
    def statuses(self) -> list[StepStatus]:
        return [r.status for r in self.steps]

    @property
    def duration(self) -> float:
        return sum(r.duration for r in self.steps)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "pipeline": self.pipeline,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "steps": [r.to_dict() for r in self.steps],
        }
        failed = self.failed_step
        if failed is not None:
            d["failed_step"] = failed.name
        return d


# =============================================================================
# BUILDER
# =============================================================================


class StepBuilder:
    """A step under construction. Created via ``PipelineBuilder.step()``.

    All setter methods return ``self`` for fluent chaining.
    """

    def __init__(self, builder: PipelineBuilder, name: str) -> None:
        self._builder = builder
        self._name = name
        self._command: str = ""
        self._args: list[str] = []
        self._workdir: str | None = builder._workdir
        self._env: dict[str, str] = {}
        self._timeout: float | None = None
        self._required: bool = True

    @property
    def name(self) -> str:
        return self._name

    def run(self, command: str, *args: str) -> Self:
        if not command or not command.strip():
            raise ValueError(f"step {self._name!r}: command cannot be empty")
        self._command = command
        self._args = list(args)
        return self

    def args(self, *args: str) -> Self:
        self._args.extend(args)
        return self

    def workdir(self, path: str) -> Self:
        if not path:
            raise ValueError(f"step {self._name!r}: workdir cannot be empty")
        self._workdir = path
        return self

    def env(self, key: str, val: str) -> Self:
        if not key:
            raise ValueError(f"step {self._name!r}: env key cannot be empty")
        self._env[key] = val
        return self

    def timeout(self, secs: float) -> Self:
        if secs <= 0:
            raise ValueError(f"step {self._name!r}: timeout must be positive, got {secs}")
        self._timeout = secs
        return self

    def optional(self) -> Self:
        """Record failures of this step without aborting the pipeline."""
        self._required = False
        return self

    def _to_step(self) -> Step:
        return Step(
            name=self._name,
            command=self._command,
            args=tuple(self._args),
            workdir=self._workdir,
            required=self._required,
            env=dict(self._env),
            timeout=self._timeout,
        )


class PipelineBuilder:
    """Collects steps and freezes them into a :class:`Pipeline`.

    Example::

        b = PipelineBuilder("lint")
        b.step("format check").run("cargo", "fmt", "--check")
        b.step("clippy").run("cargo", "clippy")
        pipeline = b.build()
    """

    def __init__(self, name: str, *, description: str = "", workdir: str | None = None) -> None:
        if not name:
            raise ValueError("pipeline name cannot be empty")
        self._name = name
        self._description = description
        self._workdir = workdir
        self._steps: list[StepBuilder] = []
        self._step_names: set[str] = set()

    @property
    def name(self) -> str:
        return self._name

    def step(self, name: str) -> StepBuilder:
        if not name:
            raise ValueError("step name cannot be empty")
        if name in self._step_names:
            raise ValueError(f"step {name!r} already exists")
        s = StepBuilder(self, name)
        self._steps.append(s)
        self._step_names.add(name)
        log.debug("registered step %r in pipeline %r", name, self._name)
        return s

    def matrix(
        self,
        variants: Mapping[str, Sequence[str]],
        fn: Callable[[str, Sequence[str]], StepBuilder],
    ) -> list[StepBuilder]:
        """Create one step per named variant, in mapping order."""
        return [fn(label, args) for label, args in variants.items()]

    def cargo(self, *, fmt_toolchain: str = "nightly") -> CargoPreset:
        return CargoPreset(self, fmt_toolchain=fmt_toolchain)

    def validate(self) -> None:
        _validate_steps([s._to_step() for s in self._steps])

    def build(self) -> Pipeline:
        """Validate and return the immutable pipeline."""
        steps = tuple(s._to_step() for s in self._steps)
        _validate_steps(steps)
        return Pipeline(name=self._name, steps=steps, description=self._description)


# =============================================================================
# CARGO PRESET
# =============================================================================


class CargoPreset:
    """Steps for a Rust crate tested under several feature-flag sets."""

    def __init__(self, builder: PipelineBuilder, *, fmt_toolchain: str = "nightly") -> None:
        self._builder = builder
        self._fmt_toolchain = fmt_toolchain

    def fmt(self, name: str = "format check") -> StepBuilder:
        args = ["fmt", "--check"]
        if self._fmt_toolchain:
            args.insert(0, f"+{self._fmt_toolchain}")
        return self._builder.step(name).run("cargo", *args)

    def clippy(self, name: str = "lint") -> StepBuilder:
        return self._builder.step(name).run(
            "cargo", "clippy", "--locked", "--no-deps", "--", "-D", "warnings"
        )

    def test(self, name: str = "test: default features", *flags: str) -> StepBuilder:
        return self._builder.step(name).run("cargo", "t", "-r", *flags)

    def feature_matrix(self, variants: Mapping[str, Sequence[str]]) -> list[StepBuilder]:
        """One release-mode test run per feature-flag combination."""
        return self._builder.matrix(
            variants,
            lambda label, flags: self.test(f"test: {label}", *flags),
        )


# =============================================================================
# REGISTRY
# =============================================================================


class Registry:
    """Immutable set of named pipelines, in declaration order."""

    def __init__(self, pipelines: Iterable[Pipeline] = ()) -> None:
        self._pipelines: dict[str, Pipeline] = {}
        for p in pipelines:
            if p.name in self._pipelines:
                raise ConfigurationError(
                    code="DUPLICATE_PIPELINE",
                    message=f"pipeline {p.name!r} is defined more than once",
                )
            self._pipelines[p.name] = p

    def __contains__(self, name: object) -> bool:
        return name in self._pipelines

    def __iter__(self) -> Iterator[Pipeline]:
        return iter(self._pipelines.values())

    def __len__(self) -> int:
        return len(self._pipelines)

    def names(self) -> list[str]:
        return list(self._pipelines)

    def get(self, name: str) -> Pipeline:
        try:
            return self._pipelines[name]
        except KeyError:
            pass
        suggestion = _best_match(name, set(self._pipelines))
        msg = f"unknown pipeline {name!r}"
        if suggestion:
            msg += f" (did you mean {suggestion!r}?)"
        elif self._pipelines:
            msg += f"; available: {', '.join(self._pipelines)}"
        raise ConfigurationError(code="UNKNOWN_PIPELINE", message=msg, suggestion=suggestion)

    def list_to(self, writer: IO[str]) -> None:
        """Print the available pipelines, one per line, with descriptions."""
        writer.write("Available pipelines:\n")
        width = max((len(n) for n in self._pipelines), default=0)
        for p in self._pipelines.values():
            line = f"    {p.name}"
            if p.description:
                line = f"{line.ljust(width + 4)} # {p.description}"
            writer.write(line + "\n")


# =============================================================================
# EXECUTION
# =============================================================================


class Executor(Protocol):
    """Spawn a command and wait for it to exit.

    Implementations must not raise for ordinary failures; a missing
    executable is reported through the returned outcome. ``KeyboardInterrupt``
    propagates after the child has been stopped.
    """

    def execute(
        self,
        command: str,
        args: Sequence[str],
        workdir: str | None,
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExitOutcome: ...


class SubprocessExecutor:
    """Runs steps as child processes.

    With ``capture=False`` the child inherits stdout/stderr so the operator
    sees tool output live. With ``capture=True`` both streams are collected
    into the outcome.
    """

    def __init__(self, *, capture: bool = False, grace_period: float = 5.0) -> None:
        self._capture = capture
        self._grace_period = grace_period

    def execute(
        self,
        command: str,
        args: Sequence[str],
        workdir: str | None,
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExitOutcome:
        argv = [command, *args]
        child_env = {**os.environ, **env} if env else None
        stream = subprocess.PIPE if self._capture else None
        log.debug("spawning %s (cwd=%s)", shlex.join(argv), workdir or ".")
        try:
            proc = subprocess.Popen(
                argv,
                cwd=workdir,
                env=child_env,
                stdout=stream,
                stderr=stream,
                text=True,
            )
        except OSError as exc:
            log.debug("spawn of %r failed: %s", command, exc)
            return ExitOutcome(exit_code=None, detail=f"could not start {command!r}: {exc}")

        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._stop(proc)
            stdout, stderr = proc.communicate()
            return ExitOutcome(
                exit_code=None,
                detail=f"timed out after {timeout:g}s",
                stdout=stdout or "",
                stderr=stderr or "",
            )
        except KeyboardInterrupt:
            self._stop(proc)
            raise

        log.debug("%r exited with %d", command, proc.returncode)
        return _outcome_from_returncode(proc.returncode, stdout or "", stderr or "")

    def _stop(self, proc: subprocess.Popen[str]) -> None:
        if proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=self._grace_period)
        except subprocess.TimeoutExpired:
            log.warning("pid %d ignored SIGTERM, killing", proc.pid)
            proc.kill()
            proc.wait()


class Runner:
    """Executes a pipeline's steps in order, stopping at the first required failure.

    Each finished (or skipped) step is reported to ``writer`` immediately.
    Step failures are returned in the result, never raised.
    """

    def __init__(
        self,
        executor: Executor | None = None,
        *,
        writer: IO[str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._executor: Executor = executor if executor is not None else SubprocessExecutor()
        self._writer = writer
        self._clock = clock

    def run(self, pipeline: Pipeline) -> PipelineResult:
        pipeline.validate()
        total = len(pipeline.steps)
        results: list[StepResult] = []
        aborted = False
        cancelled = False

        for index, step in enumerate(pipeline.steps, start=1):
            try:
                if aborted or cancelled:
                    result = StepResult(name=step.name, status=StepStatus.SKIPPED, required=step.required)
                else:
                    result = self._run_step(step)
                    if result.status is StepStatus.CANCELLED:
                        cancelled = True
                    elif result.status is StepStatus.FAILED and step.required:
                        log.debug("required step %r failed, skipping the rest", step.name)
                        aborted = True
                results.append(result)
                self._report(index, total, result)
            except KeyboardInterrupt:
                # Interrupted outside the executor: between steps or while reporting.
                log.warning("pipeline %r interrupted by operator", pipeline.name)
                cancelled = True
                if len(results) < index:
                    results.append(
                        StepResult(
                            name=step.name,
                            status=StepStatus.CANCELLED,
                            required=step.required,
                            detail="interrupted by operator",
                        )
                    )

        if cancelled:
            status = PipelineStatus.CANCELLED
        elif all(r.status is StepStatus.PASSED for r in results if r.required):
            status = PipelineStatus.PASSED
        else:
            status = PipelineStatus.FAILED

        outcome = PipelineResult(pipeline=pipeline.name, steps=tuple(results), status=status)
        self._summarize(outcome)
        return outcome

    def _run_step(self, step: Step) -> StepResult:
        started = self._clock()
        try:
            outcome = self._executor.execute(
                step.command,
                step.args,
                step.workdir,
                env=dict(step.env) or None,
                timeout=step.timeout,
            )
        except KeyboardInterrupt:
            log.warning("step %r interrupted by operator", step.name)
            return StepResult(
                name=step.name,
                status=StepStatus.CANCELLED,
                required=step.required,
                duration=self._clock() - started,
                detail="interrupted by operator",
            )
        return StepResult(
            name=step.name,
            status=StepStatus.PASSED if outcome.succeeded else StepStatus.FAILED,
            required=step.required,
            exit_code=outcome.exit_code,
            duration=self._clock() - started,
            detail=outcome.detail,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # REPORTING
    # ─────────────────────────────────────────────────────────────────────────

    def _report(self, index: int, total: int, result: StepResult) -> None:
        if self._writer is None:
            return
        w = self._writer
        prefix = f"[{index}/{total}] {result.name}: "
        if result.status is StepStatus.SKIPPED:
            w.write(f"{prefix}SKIPPED\n")
        elif result.status is StepStatus.PASSED:
            w.write(f"{prefix}PASSED ({result.duration:.2f}s)\n")
        elif result.status is StepStatus.CANCELLED:
            w.write(f"{prefix}CANCELLED ({result.duration:.2f}s)\n")
        else:
            why = f"exit {result.exit_code}" if result.exit_code is not None else "no exit code"
            tag = "FAILED" if result.required else "FAILED (optional)"
            w.write(f"{prefix}{tag} ({why}, {result.duration:.2f}s)\n")
            if result.detail:
                w.write(f"    {result.detail}\n")
            if result.stderr:
                for line in result.stderr.rstrip("\n").splitlines():
                    w.write(f"    | {line}\n")
        w.flush()

    def _summarize(self, result: PipelineResult) -> None:
        if self._writer is None:
            return
        if result.status is PipelineStatus.PASSED:
            line = f"pipeline {result.pipeline!r} PASSED ({len(result.steps)} steps)"
        elif result.status is PipelineStatus.CANCELLED:
            line = f"pipeline {result.pipeline!r} CANCELLED"
        else:
            failed = result.failed_step
            where = f" at step {failed.name!r}" if failed else ""
            line = f"pipeline {result.pipeline!r} FAILED{where}"
        self._writer.write(line + "\n")
        self._writer.flush()


def run(
    pipeline: Pipeline,
    *,
    executor: Executor | None = None,
    writer: IO[str] | None = None,
) -> PipelineResult:
    """Run ``pipeline`` and return its result. See :class:`Runner`."""
    return Runner(executor, writer=writer).run(pipeline)


# =============================================================================
# EXPLAIN
# =============================================================================


def explain_to(pipeline: Pipeline, writer: IO[str]) -> None:
    """Print a human-readable plan of ``pipeline`` without running anything."""
    pipeline.validate()
    header = f"Pipeline {pipeline.name}: {len(pipeline.steps)} steps"
    if pipeline.description:
        header += f" ({pipeline.description})"
    writer.write(header + "\n")
    for s in pipeline.steps:
        extras = []
        if not s.required:
            extras.append("optional")
        if s.workdir:
            extras.append(f"in {s.workdir}")
        if s.timeout:
            extras.append(f"timeout {s.timeout:g}s")
        if s.env:
            extras.append("env: " + ", ".join(sorted(s.env)))
        suffix = f" [{'; '.join(extras)}]" if extras else ""
        writer.write(f"  {s.name}: {s.command_line}{suffix}\n")


# =============================================================================
# HELPERS
# =============================================================================


def _validate_steps(steps: Sequence[Step]) -> None:
    seen: set[str] = set()
    for s in steps:
        if not s.name:
            raise ConfigurationError(code="EMPTY_NAME", message="step name cannot be empty")
        if s.name in seen:
            raise ConfigurationError(
                code="DUPLICATE_STEP",
                message=f"step {s.name!r} is defined more than once",
                step=s.name,
            )
        seen.add(s.name)
        if not s.command or not s.command.strip():
            raise ConfigurationError(
                code="MISSING_COMMAND",
                message=f"step {s.name!r} has no command",
                step=s.name,
            )


def _outcome_from_returncode(returncode: int, stdout: str, stderr: str) -> ExitOutcome:
    # Popen reports death by signal as a negative return code on POSIX.
    if returncode < 0:
        signum = -returncode
        try:
            signame = signal.Signals(signum).name
        except ValueError:
            signame = f"signal {signum}"
        return ExitOutcome(
            exit_code=None,
            signal=signum,
            detail=f"killed by {signame}",
            stdout=stdout,
            stderr=stderr,
        )
    return ExitOutcome(exit_code=returncode, stdout=stdout, stderr=stderr)


# =============================================================================
# JARO-WINKLER SIMILARITY (for "did you mean?" suggestions)
# =============================================================================


def _jaro_similarity(s1: str, s2: str) -> float:
    """Jaro similarity between two strings."""
    if s1 == s2:
        return 1.0
    len1, len2 = len(s1), len(s2)
    if len1 == 0 or len2 == 0:
        return 0.0

    window = max(max(len1, len2) // 2 - 1, 0)
    matched1 = [False] * len1
    matched2 = [False] * len2
    matches = 0

    for i, ch in enumerate(s1):
        for j in range(max(0, i - window), min(i + window + 1, len2)):
            if not matched2[j] and s2[j] == ch:
                matched1[i] = matched2[j] = True
                matches += 1
                break

    if matches == 0:
        return 0.0

    half_transpositions = 0
    j = 0
    for i in range(len1):
        if not matched1[i]:
            continue
        while not matched2[j]:
            j += 1
        if s1[i] != s2[j]:
            half_transpositions += 1
        j += 1

    t = half_transpositions / 2
    return (matches / len1 + matches / len2 + (matches - t) / matches) / 3


def _jaro_winkler(s1: str, s2: str) -> float:
    """Jaro-Winkler similarity (adds a bonus for up to four shared leading chars)."""
    jaro = _jaro_similarity(s1, s2)
    prefix = 0
    for a, b in zip(s1[:4], s2[:4]):
        if a != b:
            break
        prefix += 1
    return jaro + prefix * 0.1 * (1 - jaro)


def _best_match(name: str, candidates: set[str], threshold: float = 0.8) -> str:
    """Closest candidate at or above ``threshold``, or empty string."""
    best, best_score = "", 0.0
    for c in sorted(candidates):
        score = _jaro_winkler(name, c)
        if score >= threshold and score > best_score:
            best, best_score = c, score
    return best
