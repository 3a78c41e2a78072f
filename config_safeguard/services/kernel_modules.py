"""Kernel module queries and load/unload primitives."""

from __future__ import annotations

from .commands import CommandResult, CommandRunner


def loaded_modules(runner: CommandRunner) -> set[str]:
    """Names of currently loaded modules, parsed from lsmod."""
    result = runner.run(["lsmod"])
    if not result.ok:
        return set()
    names = set()
    for line in result.stdout.splitlines()[1:]:
        fields = line.split()
        if fields:
            names.add(fields[0])
    return names


def is_loaded(runner: CommandRunner, module: str) -> bool:
    return module in loaded_modules(runner)


def load(runner: CommandRunner, module: str) -> CommandResult:
    return runner.run(["modprobe", module])


def unload(runner: CommandRunner, module: str) -> CommandResult:
    return runner.run(["modprobe", "-r", module])
