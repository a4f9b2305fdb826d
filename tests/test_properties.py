"""Property-based tests using hypothesis."""

import pytest

pytest.importorskip("hypothesis")

from hypothesis import given, settings
from hypothesis import strategies as st

from qgate import Pipeline, PipelineStatus, Step, StepStatus, run
from qgate import _jaro_winkler

from fakes import FakeExecutor

# (required, exit code) per step; exit codes include the common test-runner ones.
step_specs = st.lists(
    st.tuples(st.booleans(), st.sampled_from([0, 0, 0, 1, 2, 101])),
    min_size=0,
    max_size=12,
)


def build(specs):
    steps = tuple(Step(f"s{i}", f"cmd{i}", required=req) for i, (req, _) in enumerate(specs))
    outcomes = {f"cmd{i}": code for i, (_, code) in enumerate(specs)}
    return Pipeline(name="p", steps=steps), FakeExecutor(outcomes)


@given(step_specs)
@settings(max_examples=200)
def test_nothing_runs_after_a_required_failure(specs):
    pipeline, ex = build(specs)
    result = run(pipeline, executor=ex)

    first_abort = next(
        (i for i, (req, code) in enumerate(specs) if req and code != 0),
        None,
    )
    if first_abort is None:
        assert ex.spawned == [f"cmd{i}" for i in range(len(specs))]
        assert StepStatus.SKIPPED not in result.statuses
    else:
        assert ex.spawned == [f"cmd{i}" for i in range(first_abort + 1)]
        assert result.statuses[first_abort] is StepStatus.FAILED
        assert all(s is StepStatus.SKIPPED for s in result.statuses[first_abort + 1:])


@given(step_specs)
@settings(max_examples=200)
def test_overall_status_depends_only_on_required_steps(specs):
    pipeline, ex = build(specs)
    result = run(pipeline, executor=ex)
    required_ok = all(code == 0 for req, code in specs if req)
    assert (result.status is PipelineStatus.PASSED) == required_ok
    assert (result.exit_code == 0) == required_ok


@given(step_specs)
@settings(max_examples=100)
def test_one_result_per_step_in_declaration_order(specs):
    pipeline, ex = build(specs)
    result = run(pipeline, executor=ex)
    assert [r.name for r in result.steps] == [s.name for s in pipeline.steps]


@given(st.text(min_size=0, max_size=40), st.text(min_size=0, max_size=40))
@settings(max_examples=100)
def test_jaro_winkler_bounded(s1, s2):
    assert 0.0 <= _jaro_winkler(s1, s2) <= 1.0 + 1e-9


@given(st.text(min_size=1, max_size=40))
@settings(max_examples=50)
def test_jaro_winkler_identity(s):
    assert _jaro_winkler(s, s) == 1.0
