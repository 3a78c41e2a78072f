"""External command execution.

Every call into the package manager, service manager, udev, kernel module
tools or checksum utility goes through :class:`CommandRunner`. A finished
command is always returned as a :class:`CommandResult`, including when the
binary is missing or the call times out, so callers decide whether a failure
is fatal, a warning, or a failed recovery step.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from config_safeguard.logging import LoggerFactory
from config_safeguard.storage.exceptions import ExternalCommandError

log = LoggerFactory.for_commands()

TIMEOUT_RETURNCODE = 124
MISSING_COMMAND_RETURNCODE = 127


def _escape_braces(text: str) -> str:
    """Escape curly braces for loguru formatting."""
    return text.replace("{", "{{").replace("}", "}}")


def validate_command_args(args: Sequence[str]) -> None:
    """Validate command arguments before executing."""
    if not args or not all(isinstance(arg, str) and arg for arg in args):
        raise ValueError("Command args must be a non-empty list of strings.")


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of one external command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def timed_out(self) -> bool:
        return self.returncode == TIMEOUT_RETURNCODE

    @property
    def output(self) -> str:
        """Best single-line explanation of what the command said."""
        return self.stderr.strip() or self.stdout.strip()

    def raise_for_status(self) -> CommandResult:
        """Return self, or raise ExternalCommandError on a non-zero exit."""
        if not self.ok:
            raise ExternalCommandError(list(self.args), self.returncode, self.output)
        return self


class CommandRunner:
    """Runs external commands with captured output and an optional timeout."""

    def __init__(self, *, default_timeout: Optional[float] = None):
        self.default_timeout = default_timeout

    def run(
        self,
        args: Sequence[str],
        *,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
        cwd: Optional[Path] = None,
    ) -> CommandResult:
        """Run a command and capture output."""
        validate_command_args(args)
        argv = tuple(args)
        timeout = timeout if timeout is not None else self.default_timeout
        log.debug(f"Running command: {_escape_braces(' '.join(argv))}")
        try:
            completed = subprocess.run(
                list(argv),
                input=input_text,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError:
            log.debug(f"Command not found: {argv[0]}")
            return CommandResult(
                argv, MISSING_COMMAND_RETURNCODE, "", f"{argv[0]}: command not found"
            )
        except subprocess.TimeoutExpired:
            log.warning(f"Command timed out after {timeout}s: {_escape_braces(' '.join(argv))}")
            return CommandResult(argv, TIMEOUT_RETURNCODE, "", f"timed out after {timeout}s")

        log.debug(f"Command return code: {completed.returncode}")
        log.debug(f"Command stdout: {_escape_braces(repr(completed.stdout.strip()))}")
        log.debug(f"Command stderr: {_escape_braces(repr(completed.stderr.strip()))}")
        return CommandResult(
            argv, completed.returncode, completed.stdout or "", completed.stderr or ""
        )

    def run_checked(self, args: Sequence[str], **kwargs) -> str:
        """Run a command and raise ExternalCommandError if it fails."""
        return self.run(args, **kwargs).raise_for_status().stdout
