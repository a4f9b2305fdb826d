#!/usr/bin/env python3
"""Basic gate: format → lint → test, stopping at the first failure."""

import sys

from qgate import PipelineBuilder, run

b = PipelineBuilder("test")

b.step("format check").run("cargo", "fmt", "--check")
b.step("lint").run("cargo", "clippy", "--", "-D", "warnings")
b.step("test").run("cargo", "test")

result = run(b.build(), writer=sys.stdout)
sys.exit(result.exit_code)
