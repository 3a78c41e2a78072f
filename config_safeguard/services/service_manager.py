"""systemd, udev and journal helpers."""

from __future__ import annotations

from .commands import CommandResult, CommandRunner

SYSTEMCTL = "systemctl"
UDEVADM = "udevadm"
JOURNALCTL = "journalctl"


def _systemctl(runner: CommandRunner, *args: str) -> CommandResult:
    return runner.run([SYSTEMCTL, *args])


def daemon_reload(runner: CommandRunner) -> CommandResult:
    return _systemctl(runner, "daemon-reload")


def start(runner: CommandRunner, unit: str) -> CommandResult:
    return _systemctl(runner, "start", unit)


def stop(runner: CommandRunner, unit: str) -> CommandResult:
    return _systemctl(runner, "stop", unit)


def restart(runner: CommandRunner, unit: str) -> CommandResult:
    return _systemctl(runner, "restart", unit)


def enable(runner: CommandRunner, unit: str) -> CommandResult:
    return _systemctl(runner, "enable", unit)


def disable(runner: CommandRunner, unit: str) -> CommandResult:
    return _systemctl(runner, "disable", unit)


def reset_failed(runner: CommandRunner, unit: str) -> CommandResult:
    return _systemctl(runner, "reset-failed", unit)


def list_dependencies(runner: CommandRunner, unit: str) -> CommandResult:
    return _systemctl(runner, "list-dependencies", unit, "--plain", "--no-pager")


def is_active(runner: CommandRunner, unit: str) -> bool:
    return _systemctl(runner, "is-active", "--quiet", unit).ok


def is_enabled(runner: CommandRunner, unit: str) -> bool:
    return _systemctl(runner, "is-enabled", "--quiet", unit).ok


def unit_exists(runner: CommandRunner, unit: str) -> bool:
    """True when systemd knows a unit file by this name."""
    result = _systemctl(runner, "list-unit-files", unit, "--no-legend", "--no-pager")
    return result.ok and unit in result.stdout


def list_unit_files(runner: CommandRunner, state: str) -> CommandResult:
    return _systemctl(
        runner, "list-unit-files", f"--state={state}", "--no-legend", "--no-pager"
    )


def list_units(runner: CommandRunner, state: str) -> CommandResult:
    return _systemctl(runner, "list-units", f"--state={state}", "--no-legend", "--no-pager")


def parse_unit_names(listing: str) -> list[str]:
    """First column of a ``--no-legend`` unit listing."""
    names = []
    for line in listing.splitlines():
        fields = line.split()
        if fields and not fields[0].startswith("●"):
            names.append(fields[0])
        elif len(fields) > 1:
            names.append(fields[1])
    return names


def udev_reload_rules(runner: CommandRunner) -> CommandResult:
    return runner.run([UDEVADM, "control", "--reload-rules"])


def udev_trigger(runner: CommandRunner) -> CommandResult:
    return runner.run([UDEVADM, "trigger"])


def journal_since(runner: CommandRunner, hours: int) -> CommandResult:
    return runner.run([JOURNALCTL, "--since", f"{hours} hours ago", "--no-pager"])


def journal_disk_usage(runner: CommandRunner) -> CommandResult:
    return runner.run([JOURNALCTL, "--disk-usage"])


def journal_vacuum(runner: CommandRunner, max_age: str = "7d") -> CommandResult:
    return runner.run([JOURNALCTL, f"--vacuum-time={max_age}"])
