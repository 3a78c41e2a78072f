"""Thin wrappers around pacman."""

from __future__ import annotations

from typing import Iterable

from .commands import CommandResult, CommandRunner

PACMAN = "pacman"
KEYRING_PACKAGE = "archlinux-keyring"


def query(runner: CommandRunner, *flags: str) -> CommandResult:
    """Run a pacman query such as ``-Q``, ``-Qe`` or ``-Qm``."""
    return runner.run([PACMAN, *flags])


def count_installed(runner: CommandRunner) -> int | None:
    result = query(runner, "-Q")
    if not result.ok:
        return None
    return len([line for line in result.stdout.splitlines() if line.strip()])


def is_installed(runner: CommandRunner, package: str) -> bool:
    return query(runner, "-Q", package).ok


def sync_databases(runner: CommandRunner) -> CommandResult:
    return runner.run([PACMAN, "-Sy"])


def clean_cache(runner: CommandRunner) -> CommandResult:
    return runner.run([PACMAN, "-Scc", "--noconfirm"])


def refresh_keyring(runner: CommandRunner) -> CommandResult:
    return runner.run([PACMAN, "-S", "--noconfirm", KEYRING_PACKAGE])


def check_database(runner: CommandRunner) -> CommandResult:
    return runner.run([PACMAN, "-Dk"])


def install(runner: CommandRunner, packages: Iterable[str]) -> CommandResult:
    return runner.run([PACMAN, "-S", "--noconfirm", "--needed", *packages])


def list_orphans(runner: CommandRunner) -> list[str]:
    """Packages installed as dependencies that nothing requires any more.

    pacman exits 1 with no output when there are none.
    """
    result = query(runner, "-Qtdq")
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def remove(runner: CommandRunner, packages: Iterable[str]) -> CommandResult:
    return runner.run([PACMAN, "-Rns", "--noconfirm", *packages])


def reinstall(runner: CommandRunner, packages: Iterable[str]) -> CommandResult:
    """Force a reinstall, unlike :func:`install` which skips current packages."""
    return runner.run([PACMAN, "-S", "--noconfirm", *packages])


def broken_packages(runner: CommandRunner, limit: int = 10) -> list[str]:
    """Names of packages whose files fail ``pacman -Qk``."""
    result = query(runner, "-Qkq")
    names: list[str] = []
    for line in result.stdout.splitlines():
        name = line.split(" ", 1)[0].strip()
        if name and name not in names:
            names.append(name)
    return names[:limit]
