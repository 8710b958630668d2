"""
Tests for the command runner.

Tests cover:
- Command construction and parsing
- Success, non-zero exit and stderr handling
- Timeouts
- Retries
- Command logging
"""
import logging
from pathlib import Path
from unittest.mock import patch

import pytest

from autoinstaller.core.command import (
    Command,
    CommandError,
    CommandRunner,
    CommandValidationError,
)
from autoinstaller.core.metrics import metrics
from autoinstaller.core.settings import Settings


@pytest.fixture
def runner():
    """A runner with a short timeout and command logging off."""
    return CommandRunner(Settings(retry_delay_s=0.0), log_commands=False, timeout=5)


# =============================================================================
# Command Construction Tests
# =============================================================================

class TestCommand:
    """Tests for the structured Command type."""

    def test_of_stringifies_arguments(self):
        cmd = Command.of("7z", "x", Path("/tmp/a.iso"), "-o/tmp/build")
        assert cmd.argv == ("7z", "x", "/tmp/a.iso", "-o/tmp/build")
        assert cmd.executable == "7z"
        assert cmd.cwd is None

    def test_parse_splits_on_whitespace(self):
        cmd = Command.parse("  apt-get   update -y ")
        assert cmd.argv == ("apt-get", "update", "-y")

    def test_parse_empty_raises(self):
        with pytest.raises(CommandValidationError):
            Command.parse("   ")

    def test_empty_argv_raises(self):
        with pytest.raises(CommandValidationError):
            Command(argv=())

    def test_str_joins_argv(self):
        assert str(Command.of("echo", "hello", "world")) == "echo hello world"

    def test_cwd_is_kept(self, tmp_path):
        cmd = Command.of("ls", cwd=tmp_path)
        assert cmd.cwd == tmp_path


# =============================================================================
# Execution Tests
# =============================================================================

class TestRun:
    """Tests for single command execution."""

    def test_successful_command(self, runner):
        result = runner.run(Command.of("echo", "hello"))
        assert result.ok
        assert result.exit_code == 0
        assert result.stdout.strip() == "hello"
        assert result.error is None
        assert result.attempts == 1

    def test_accepts_command_line(self, runner):
        result = runner.run("echo from a string")
        assert result.ok
        assert result.stdout.strip() == "from a string"
        assert result.command == "echo from a string"

    def test_nonzero_exit_is_error(self, runner):
        result = runner.run(Command.of("false"))
        assert not result.ok
        assert result.exit_code == 1
        assert isinstance(result.error, CommandError)
        assert "exited with status 1" in str(result.error)

    def test_stderr_alone_is_not_failure(self, runner):
        result = runner.run(Command.of("sh", "-c", "echo progress >&2"))
        assert result.ok
        assert result.stderr.strip() == "progress"

    def test_failure_message_includes_stderr(self, runner):
        result = runner.run(Command.of("sh", "-c", "echo bad thing >&2; exit 3"))
        assert not result.ok
        assert result.exit_code == 3
        assert "bad thing" in str(result.error)

    def test_runs_in_cwd(self, runner, tmp_path):
        result = runner.run(Command.of("pwd", cwd=tmp_path))
        assert result.ok
        assert Path(result.stdout.strip()).resolve() == tmp_path.resolve()

    def test_missing_executable(self, runner):
        result = runner.run(Command.of("definitely-not-a-real-tool-xyz"))
        assert not result.ok
        assert "failed to start" in str(result.error)

    def test_timeout(self):
        runner = CommandRunner(Settings(), log_commands=False, timeout=1)
        result = runner.run(Command.of("sleep", "5"))
        assert not result.ok
        assert result.timed_out
        assert "timed out" in str(result.error)

    def test_empty_string_is_validation_error(self, runner):
        result = runner.run("")
        assert not result.ok
        assert isinstance(result.error, CommandValidationError)

    def test_unsupported_type_is_validation_error(self, runner):
        result = runner.run(42)
        assert not result.ok
        assert isinstance(result.error, CommandValidationError)

    def test_nul_byte_argument_is_validation_error(self, runner):
        result = runner.run(Command.of("echo", "a\x00b.iso"))
        assert not result.ok
        assert isinstance(result.error, CommandValidationError)
        assert "invalid argument for echo" in str(result.error)

    def test_nul_byte_argument_not_retried(self, runner):
        result = runner.run_with_retries(Command.of("echo", "a\x00b.iso"), attempts=3, delay=0)
        assert isinstance(result.error, CommandValidationError)
        assert result.attempts == 1

    def test_records_duration(self, runner):
        result = runner.run(Command.of("sleep", "0.1"))
        assert result.ok
        assert result.duration_ms >= 50

    def test_counts_commands(self, runner):
        before_total = metrics.get("commands_total")
        before_failures = metrics.get("command_failures_total")
        runner.run(Command.of("true"))
        runner.run(Command.of("false"))
        assert metrics.get("commands_total") - before_total == 2
        assert metrics.get("command_failures_total") - before_failures == 1


# =============================================================================
# Retry Tests
# =============================================================================

class TestRetries:
    """Tests for run_with_retries."""

    def test_failure_is_attempted_n_times(self, runner):
        with patch.object(runner, "_execute", wraps=runner._execute) as execute:
            result = runner.run_with_retries(Command.of("false"), attempts=3, delay=0)

        assert execute.call_count == 3
        assert not result.ok
        assert result.attempts == 3
        assert "after 3 attempts" in str(result.error)

    def test_success_runs_once(self, runner):
        with patch.object(runner, "_execute", wraps=runner._execute) as execute:
            result = runner.run_with_retries(Command.of("true"), attempts=3, delay=0)

        assert execute.call_count == 1
        assert result.ok
        assert result.attempts == 1

    def test_eventual_success(self, runner, tmp_path):
        # Fails until the marker exists, and creates it on the first attempt
        marker = tmp_path / "marker"
        script = f"if [ -f {marker} ]; then exit 0; fi; touch {marker}; exit 1"
        result = runner.run_with_retries(Command.of("sh", "-c", script), attempts=3, delay=0)
        assert result.ok
        assert result.attempts == 2

    def test_validation_error_not_retried(self, runner):
        with patch.object(runner, "_execute", wraps=runner._execute) as execute:
            result = runner.run_with_retries("", attempts=3, delay=0)

        assert execute.call_count == 0
        assert isinstance(result.error, CommandValidationError)

    def test_zero_attempts_runs_once(self, runner):
        result = runner.run_with_retries(Command.of("true"), attempts=0, delay=0)
        assert result.ok


# =============================================================================
# Logging Tests
# =============================================================================

class TestCommandLogging:
    """Tests for optional command logging."""

    def test_logs_success_at_configured_level(self, caplog):
        runner = CommandRunner(Settings(), log_commands=True, log_level="debug", timeout=5)
        with caplog.at_level(logging.DEBUG, logger="autoinstaller.core.command"):
            runner.run(Command.of("echo", "logged"))

        records = [r for r in caplog.records if r.name == "autoinstaller.core.command"]
        assert len(records) == 1
        assert records[0].levelno == logging.DEBUG
        assert records[0].cmd == "echo logged"
        assert "command_ok" in records[0].getMessage()
        assert "logged" in records[0].getMessage()

    def test_logs_failure_at_error(self, caplog):
        runner = CommandRunner(Settings(), log_commands=True, timeout=5)
        with caplog.at_level(logging.DEBUG, logger="autoinstaller.core.command"):
            runner.run(Command.of("false"))

        records = [r for r in caplog.records if r.name == "autoinstaller.core.command"]
        assert records[0].levelno == logging.ERROR
        assert "command_failed" in records[0].getMessage()

    def test_silent_when_disabled(self, runner, caplog):
        with caplog.at_level(logging.DEBUG, logger="autoinstaller.core.command"):
            runner.run(Command.of("echo", "quiet"))

        assert not [r for r in caplog.records if r.name == "autoinstaller.core.command"]
