"""Tests for builds/runner.py module.

Commands are real short-lived Python processes so exit codes, timeouts
and cancellation are exercised end to end.
"""

import sys
import threading
from unittest.mock import patch

import pytest

from layerchef.builds.runner import (
    CommandError,
    read_log_tail,
    run_command,
    run_commands,
)
from layerchef.errors import PipelineCancelled


def py(code: str) -> list[str]:
    return [sys.executable, "-c", code]


class TestRunCommand:
    """Tests for run_command function."""

    def test_success_writes_log(self, tmp_path):
        """Output and exit metadata should be appended to the log."""
        log = tmp_path / "logs" / "stage.log"
        result = run_command(py("print('hello from stage')"), cwd=tmp_path, log_path=log)

        assert result.exit_code == 0
        assert result.duration_seconds >= 0
        content = log.read_text()
        assert "hello from stage" in content
        assert "# Exit code: 0" in content

    def test_nonzero_exit_is_returned(self, tmp_path):
        """A failing command should report its exit code, not raise."""
        result = run_command(py("raise SystemExit(7)"), cwd=tmp_path, log_path=tmp_path / "x.log")
        assert result.exit_code == 7

    def test_env_override(self, tmp_path):
        """Environment overrides should reach the command."""
        log = tmp_path / "env.log"
        run_command(
            py("import os; print(os.environ['LAYERCHEF_TEST_VALUE'])"),
            cwd=tmp_path,
            log_path=log,
            env_override={"LAYERCHEF_TEST_VALUE": "marker-42"},
        )
        assert "marker-42" in log.read_text()

    def test_timeout(self, tmp_path):
        """A command over its timeout should be killed."""
        with pytest.raises(CommandError) as exc_info:
            run_command(
                py("import time; time.sleep(30)"),
                cwd=tmp_path,
                log_path=tmp_path / "t.log",
                timeout=0.5,
            )
        assert exc_info.value.code == "command_timeout"
        assert "TIMEOUT" in (tmp_path / "t.log").read_text()

    def test_cancel_terminates(self, tmp_path):
        """Setting the cancel event should terminate the command."""
        cancel = threading.Event()
        timer = threading.Timer(0.3, cancel.set)
        timer.start()
        try:
            with pytest.raises(PipelineCancelled):
                run_command(
                    py("import time; time.sleep(30)"),
                    cwd=tmp_path,
                    log_path=tmp_path / "c.log",
                    cancel=cancel,
                )
        finally:
            timer.cancel()
        assert "CANCELLED" in (tmp_path / "c.log").read_text()

    def test_missing_executable(self, tmp_path):
        """An executable that cannot start should raise execution_error."""
        with pytest.raises(CommandError) as exc_info:
            run_command(
                ["layerchef-no-such-binary-xyz"], cwd=tmp_path, log_path=tmp_path / "m.log"
            )
        assert exc_info.value.code == "execution_error"


class TestRunCommands:
    """Tests for run_commands function."""

    def test_stops_at_first_failure(self, tmp_path):
        """Later commands should not run after a failure."""
        marker = tmp_path / "ran-second"
        with pytest.raises(CommandError) as exc_info:
            run_commands(
                [py("raise SystemExit(2)"), py(f"open({str(marker)!r}, 'w').close()")],
                cwd=tmp_path,
                log_path=tmp_path / "s.log",
            )
        assert exc_info.value.exit_code == 2
        assert not marker.exists()

    def test_all_succeed(self, tmp_path):
        """Every command should run in order."""
        results = run_commands(
            [py("print('one')"), py("print('two')")],
            cwd=tmp_path,
            log_path=tmp_path / "a.log",
        )
        assert [r.exit_code for r in results] == [0, 0]
        content = (tmp_path / "a.log").read_text()
        assert content.index("one") < content.index("two")

    def test_cancelled_before_start(self, tmp_path):
        """A pre-set cancel event should stop before any command runs."""
        cancel = threading.Event()
        cancel.set()
        with patch("layerchef.builds.runner.run_command") as mock_run:
            with pytest.raises(PipelineCancelled):
                run_commands([py("print(1)")], cwd=tmp_path, log_path=tmp_path / "p.log", cancel=cancel)
        mock_run.assert_not_called()


def test_read_log_tail(tmp_path):
    """read_log_tail should return the last lines, or '' for no file."""
    log = tmp_path / "tail.log"
    assert read_log_tail(log) == ""
    log.write_text("".join(f"line {i}\n" for i in range(50)))
    tail = read_log_tail(log, lines=3)
    assert tail == "line 47\nline 48\nline 49\n"
