#!/usr/bin/env python3
"""Test a crate under every supported feature-flag combination."""

import sys

from qgate import PipelineBuilder, run

b = PipelineBuilder("test", description="Full quality gate")

cargo = b.cargo()
cargo.fmt()
cargo.clippy()
cargo.feature_matrix({
    "default features": [],
    "all features": ["--all-features"],
    "no default features": ["--no-default-features"],
    "codec only": ["--no-default-features", "--features", "parity-scale-codec"],
})

result = run(b.build(), writer=sys.stdout)
sys.exit(result.exit_code)
