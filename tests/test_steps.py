"""
Tests for the step runner.
"""
import pytest

from ciserver.core.steps import (
    EXIT_NOT_RUNNABLE,
    Step,
    StepFailure,
    StepOutput,
    active_process,
    run_process,
    run_shell,
)


class TestRunShell:
    """Tests for shell command steps."""

    def test_success_returns_output(self, tmp_path):
        result = run_shell("echo hello", cwd=tmp_path)
        assert isinstance(result, StepOutput)
        assert result.output == "hello\n"

    def test_runs_in_working_directory(self, tmp_path):
        (tmp_path / "marker.txt").write_text("x")
        result = run_shell("ls", cwd=tmp_path)
        assert isinstance(result, StepOutput)
        assert "marker.txt" in result.output

    def test_stderr_is_captured(self, tmp_path):
        result = run_shell("echo oops >&2", cwd=tmp_path)
        assert isinstance(result, StepOutput)
        assert "oops" in result.output

    def test_exit_code_passed_through(self, tmp_path):
        result = run_shell("echo partial; exit 3", cwd=tmp_path)
        assert isinstance(result, StepFailure)
        assert result.exit_code == 3
        assert result.output == "partial\n"
        assert "exited with code 3" in result.reason

    def test_missing_working_directory_is_not_runnable(self, tmp_path):
        result = run_shell("echo hi", cwd=tmp_path / "missing")
        assert isinstance(result, StepFailure)
        assert result.exit_code == EXIT_NOT_RUNNABLE
        assert result.reason

    def test_output_is_truncated(self, tmp_path):
        result = run_shell("printf 'abcdefghij'", cwd=tmp_path, max_output=4)
        assert isinstance(result, StepOutput)
        assert result.output.startswith("abcd\n... (truncated, 10 total chars)")

    def test_no_active_process_after_step(self, tmp_path):
        run_shell("true", cwd=tmp_path)
        assert active_process.kill() is False


class TestRunProcess:
    """Tests for argv steps."""

    def test_argv_without_shell(self, tmp_path):
        result = run_process(["echo", "$HOME"], cwd=tmp_path)
        assert isinstance(result, StepOutput)
        assert result.output == "$HOME\n"

    def test_missing_executable(self, tmp_path):
        result = run_process(["definitely-not-a-real-binary-xyz"], cwd=tmp_path)
        assert isinstance(result, StepFailure)
        assert result.exit_code == EXIT_NOT_RUNNABLE


class TestStep:
    def test_step_runs_its_action(self):
        step = Step(label="noop", action=lambda: StepOutput("done"))
        assert step.run() == StepOutput("done")

    def test_results_are_immutable(self):
        failure = StepFailure(output="", exit_code=1, reason="bad")
        with pytest.raises(AttributeError):
            failure.exit_code = 0
