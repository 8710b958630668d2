"""
Command Runner - executes external tools and reports their outcome.

Every external tool the build pipeline touches (curl, gpg, 7z, xorriso,
apt-get, apt-cache, aptitude, dpkg-scanpackages, ping) goes through here.

Contract:
- No shell=True anywhere; commands are argv lists
- A failed command is a result with `error` set, never an exception
- Non-empty stderr is not a failure (gpg and 7z write progress to stderr)
- Per-attempt timeout, bounded retries with a fixed delay
"""
import logging
import os
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from autoinstaller.core.metrics import metrics
from autoinstaller.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)

# Output kept in error messages and job logs
MAX_ERROR_OUTPUT = 2000


class CommandValidationError(Exception):
    """A command could not be constructed or started (empty string, unsupported type, NUL byte)."""
    pass


class CommandError(Exception):
    """An external command exited non-zero, timed out or could not start."""

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


@dataclass(frozen=True)
class Command:
    """A structured process invocation: executable plus arguments."""
    argv: tuple[str, ...]
    cwd: Optional[Path] = None

    def __post_init__(self):
        if not self.argv:
            raise CommandValidationError("empty command")
        object.__setattr__(self, "argv", tuple(str(arg) for arg in self.argv))

    @classmethod
    def of(cls, *argv: Union[str, Path], cwd: Optional[Path] = None) -> "Command":
        """Build a command from positional arguments."""
        return cls(argv=tuple(str(arg) for arg in argv), cwd=cwd)

    @classmethod
    def parse(cls, line: str, cwd: Optional[Path] = None) -> "Command":
        """
        Parse a raw command line, splitting on whitespace.

        The first token is the executable. No quoting rules apply, so this
        is only meant for fixed command templates.
        """
        fields = line.split()
        if not fields:
            raise CommandValidationError("empty command string")
        return cls(argv=tuple(fields), cwd=cwd)

    @property
    def executable(self) -> str:
        return self.argv[0]

    def __str__(self) -> str:
        return " ".join(self.argv)


@dataclass
class CommandResult:
    """Result of a command execution."""
    command: str
    stdout: str = ""
    stderr: str = ""
    error: Optional[Exception] = None
    exit_code: Optional[int] = None
    duration_ms: int = 0
    timed_out: bool = False
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.error is None


def _tail(text: str, limit: int = MAX_ERROR_OUTPUT) -> str:
    text = text.strip()
    if len(text) > limit:
        return "..." + text[-limit:]
    return text


def _command_env() -> dict:
    """Inherited environment with a fixed locale so tool output parses the same everywhere."""
    env = dict(os.environ)
    env["LANG"] = "C.UTF-8"
    env["LC_ALL"] = "C.UTF-8"
    env["DEBIAN_FRONTEND"] = "noninteractive"
    return env


class CommandRunner:
    """Runs commands once or with bounded retries."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        log_commands: Optional[bool] = None,
        log_level: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        settings = settings or get_settings()
        self.log_commands = settings.log_commands if log_commands is None else log_commands
        level_name = (log_level or settings.command_log_level).upper()
        self.log_level = getattr(logging, level_name, logging.INFO)
        self.timeout = settings.command_timeout_s if timeout is None else timeout

    def run(self, command: Union[Command, str]) -> CommandResult:
        """
        Execute a command once.

        Accepts a Command or a raw command line. Anything else, or an empty
        line, yields a result carrying a CommandValidationError.
        """
        if isinstance(command, str):
            try:
                command = Command.parse(command)
            except CommandValidationError as e:
                return CommandResult(command="", error=e)
        elif not isinstance(command, Command):
            return CommandResult(
                command=repr(command),
                error=CommandValidationError(f"could not interpret command from {command!r}"),
            )

        return self._execute(command)

    def run_with_retries(
        self,
        command: Union[Command, str],
        attempts: int,
        delay: float,
    ) -> CommandResult:
        """
        Execute a command up to `attempts` times, sleeping `delay` seconds
        between attempts. Returns the first success immediately.
        """
        attempts = max(1, attempts)
        last: Optional[CommandResult] = None

        for attempt in range(1, attempts + 1):
            result = self.run(command)
            result.attempts = attempt
            if result.ok:
                return result
            last = result

            # Malformed commands won't improve with retries
            if isinstance(result.error, CommandValidationError):
                return result

            logger.warning(
                f"command_retry cmd={result.command} attempt={attempt}/{attempts} "
                f"error={result.error}"
            )
            if attempt < attempts:
                time.sleep(delay)

        return CommandResult(
            command=last.command,
            error=CommandError(
                f"failed to execute command after {attempts} attempts: {last.error}",
                exit_code=last.exit_code,
            ),
            exit_code=last.exit_code,
            duration_ms=last.duration_ms,
            timed_out=last.timed_out,
            attempts=attempts,
        )

    def _execute(self, command: Command) -> CommandResult:
        cmd_line = str(command)
        start_time = datetime.now(timezone.utc)
        timed_out = False
        exit_code: Optional[int] = None
        error: Optional[Exception] = None

        try:
            proc = subprocess.run(
                list(command.argv),
                cwd=str(command.cwd) if command.cwd else None,
                env=_command_env(),
                capture_output=True,
                timeout=self.timeout,
                text=True,
                errors="replace",
            )
            stdout = proc.stdout or ""
            stderr = proc.stderr or ""
            exit_code = proc.returncode
            if exit_code != 0:
                detail = _tail(stderr) or _tail(stdout)
                message = f"{command.executable} exited with status {exit_code}"
                if detail:
                    message = f"{message}: {detail}"
                error = CommandError(message, exit_code=exit_code)

        except subprocess.TimeoutExpired as e:
            stdout = e.stdout.decode("utf-8", errors="replace") if isinstance(e.stdout, bytes) else (e.stdout or "")
            stderr = e.stderr.decode("utf-8", errors="replace") if isinstance(e.stderr, bytes) else (e.stderr or "")
            timed_out = True
            error = CommandError(f"{command.executable} timed out after {self.timeout}s")

        except (OSError, subprocess.SubprocessError) as e:
            stdout = ""
            stderr = ""
            error = CommandError(f"failed to start {command.executable}: {e}")

        except ValueError as e:
            # e.g. an argument with an embedded NUL byte
            stdout = ""
            stderr = ""
            error = CommandValidationError(f"invalid argument for {command.executable}: {e}")

        duration_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)

        metrics.inc("commands_total")
        if error is not None:
            metrics.inc("command_failures_total")

        if self.log_commands:
            self._log(cmd_line, duration_ms, stdout, stderr, error)

        return CommandResult(
            command=cmd_line,
            stdout=stdout,
            stderr=stderr,
            error=error,
            exit_code=exit_code,
            duration_ms=duration_ms,
            timed_out=timed_out,
        )

    def _log(
        self,
        cmd_line: str,
        duration_ms: int,
        stdout: str,
        stderr: str,
        error: Optional[Exception],
    ) -> None:
        extra = {"cmd": cmd_line, "duration_ms": duration_ms}

        if error is not None:
            logger.error(
                f"command_failed stdout={_tail(stdout)!r} stderr={_tail(stderr)!r} error={error}",
                extra=extra,
            )
            return

        # Success is decided by the exit status, stderr is just more output
        if stdout or stderr:
            message = f"command_ok stdout={_tail(stdout)!r}"
            if stderr:
                message += f" stderr={_tail(stderr)!r}"
        else:
            message = "command_ok"
        logger.log(self.log_level, message, extra=extra)
