"""Tests for the command-line surface and its exit-code contract."""

import io
import json
import textwrap

import pytest

from qgate import EXIT_CANCELLED, EXIT_CONFIG_ERROR, EXIT_FAILED, EXIT_PASSED, ExitOutcome
from qgate.cli import build_parser, main

from fakes import FakeExecutor


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


def invoke(*argv, executor=None):
    out = io.StringIO()
    code = main(list(argv), executor=executor if executor is not None else FakeExecutor(), stdout=out)
    return code, out.getvalue()


class TestParser:
    def test_defaults(self):
        args = build_parser().parse_args([])
        assert args.pipeline is None
        assert args.file is None
        assert not args.dry_run
        assert not args.capture
        assert args.json is None

    def test_options(self):
        args = build_parser().parse_args(["-f", "x.yaml", "--dry-run", "--json", "-", "-v", "test"])
        assert args.pipeline == "test"
        assert args.file == "x.yaml"
        assert args.dry_run
        assert args.json == "-"
        assert args.verbose


class TestListing:
    def test_no_arguments_lists_pipelines(self):
        ex = FakeExecutor()
        code, out = invoke(executor=ex)
        assert code == EXIT_PASSED
        assert "Available pipelines:" in out
        assert "test" in out
        assert "lint" in out
        assert ex.calls == []

    def test_lists_from_local_file(self, isolated_cwd):
        (isolated_cwd / "qgate.yaml").write_text("pipelines:\n  mine: {steps: []}\n")
        _, out = invoke()
        assert "mine" in out
        assert "lint" not in out


class TestRun:
    def test_all_pass(self):
        ex = FakeExecutor()
        code, out = invoke("test", executor=ex)
        assert code == EXIT_PASSED
        assert len(ex.calls) == 6
        assert "pipeline 'test' PASSED (6 steps)" in out

    def test_format_failure(self):
        ex = FakeExecutor({("cargo", "+nightly", "fmt", "--check"): 1})
        code, out = invoke("test", executor=ex)
        assert code == EXIT_FAILED
        assert len(ex.calls) == 1
        assert out.count("SKIPPED") == 5
        assert "FAILED at step 'format check'" in out

    def test_test_default_exits_101(self):
        ex = FakeExecutor({("cargo", "t", "-r"): 101})
        code, out = invoke("test", executor=ex)
        assert code == EXIT_FAILED
        assert "[3/6] test: default features: FAILED (exit 101" in out
        assert len(ex.calls) == 3

    def test_cancelled(self):
        ex = FakeExecutor({"cargo": KeyboardInterrupt()})
        code, out = invoke("lint", executor=ex)
        assert code == EXIT_CANCELLED
        assert "CANCELLED" in out

    def test_runs_from_file(self, isolated_cwd):
        path = isolated_cwd / "custom.yaml"
        path.write_text(
            textwrap.dedent(
                """
                pipelines:
                  quick:
                    steps:
                      - name: one
                        run: tool-one
                      - name: two
                        run: tool-two --flag
                """
            )
        )
        ex = FakeExecutor({"tool-two": ExitOutcome(exit_code=2, stderr="nope")})
        code, out = invoke("-f", str(path), "quick", executor=ex)
        assert code == EXIT_FAILED
        assert ex.calls == [("tool-one",), ("tool-two", "--flag")]
        assert "    | nope" in out


class TestConfigurationErrors:
    def test_unknown_pipeline(self, capsys):
        ex = FakeExecutor()
        code, _ = invoke("tset", executor=ex)
        assert code == EXIT_CONFIG_ERROR
        assert ex.calls == []
        err = capsys.readouterr().err
        assert "unknown pipeline 'tset'" in err
        assert "did you mean 'test'?" in err

    def test_missing_file(self, capsys):
        code, _ = invoke("-f", "missing.yaml", "test")
        assert code == EXIT_CONFIG_ERROR
        assert "pipeline file not found" in capsys.readouterr().err

    def test_malformed_file_spawns_nothing(self, isolated_cwd):
        (isolated_cwd / "qgate.yaml").write_text(
            "pipelines:\n  p:\n    steps:\n      - {name: a, run: ok}\n      - {name: b, run: ''}\n"
        )
        ex = FakeExecutor()
        code, _ = invoke("p", executor=ex)
        assert code == EXIT_CONFIG_ERROR
        assert ex.calls == []

    def test_directory_as_file(self, isolated_cwd, capsys):
        ex = FakeExecutor()
        code, _ = invoke("-f", str(isolated_cwd), "test", executor=ex)
        assert code == EXIT_CONFIG_ERROR
        assert ex.calls == []
        assert "cannot read pipeline file" in capsys.readouterr().err

    def test_undecodable_default_file(self, isolated_cwd):
        (isolated_cwd / "qgate.yaml").write_bytes(b"\xff\xfe")
        code, _ = invoke()
        assert code == EXIT_CONFIG_ERROR

    def test_config_error_distinct_from_failure(self):
        assert EXIT_CONFIG_ERROR not in (EXIT_PASSED, EXIT_FAILED)


class TestDryRun:
    def test_dry_run_spawns_nothing(self):
        ex = FakeExecutor()
        code, out = invoke("--dry-run", "test", executor=ex)
        assert code == EXIT_PASSED
        assert ex.calls == []
        assert "Pipeline test: 6 steps" in out
        assert "cargo +nightly fmt --check" in out


class TestJsonOutput:
    def test_json_to_stdout(self):
        ex = FakeExecutor({("cargo", "t", "-r"): 101})
        code, out = invoke("--json", "-", "test", executor=ex)
        assert code == EXIT_FAILED
        payload = json.loads(out[out.index("{"):])
        assert payload["status"] == "failed"
        assert payload["failed_step"] == "test: default features"
        assert [s["status"] for s in payload["steps"]] == [
            "passed",
            "passed",
            "failed",
            "skipped",
            "skipped",
            "skipped",
        ]

    def test_unwritable_json_target_keeps_exit_code(self, isolated_cwd, capsys):
        ex = FakeExecutor({("cargo", "t", "-r"): 101})
        code, _ = invoke("--json", str(isolated_cwd), "test", executor=ex)
        assert code == EXIT_FAILED
        assert "cannot write" in capsys.readouterr().err

    def test_json_to_file(self, isolated_cwd):
        target = isolated_cwd / "result.json"
        code, _ = invoke("--json", str(target), "lint")
        assert code == EXIT_PASSED
        payload = json.loads(target.read_text())
        assert payload["pipeline"] == "lint"
        assert payload["exit_code"] == 0
