"""SHA256 checksums via the sha256sum utility."""

from __future__ import annotations

from pathlib import Path

from config_safeguard.services.commands import CommandRunner

from .exceptions import ExternalCommandError

SHA256SUM = "sha256sum"


def compute_sha256(path: Path, runner: CommandRunner) -> str:
    """Compute SHA256 of a file.

    Raises:
        ExternalCommandError: If sha256sum fails or prints nothing
    """
    argv = [SHA256SUM, str(path)]
    output = runner.run_checked(argv)
    checksum = output.split()[0] if output.strip() else ""
    if not checksum:
        raise ExternalCommandError(argv, 0, "No checksum returned")
    return checksum.lower()
