"""
Pytest configuration and shared fixtures for config-safeguard tests.

This module provides a temporary system root, a fake command runner that
records invocations, and stores wired to temporary directories.
"""

import sys
from contextlib import suppress
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, Union

import pytest
from loguru import logger

from config_safeguard.control import OperationOptions
from config_safeguard.domain.models import FileMapping
from config_safeguard.recovery.context import RecoveryContext
from config_safeguard.services.commands import CommandResult, CommandRunner
from config_safeguard.storage.ledger import RecoveryLedger
from config_safeguard.storage.restore_engine import RestoreEngine
from config_safeguard.storage.rollback_store import RollbackStore
from config_safeguard.storage.snapshot_store import SnapshotStore


# ==============================================================================
# Command Runner Fixtures
# ==============================================================================


Response = Union[CommandResult, Callable[[Tuple[str, ...]], CommandResult]]


class FakeRunner(CommandRunner):
    """
    Command runner that records calls and answers from canned results.

    Commands listed in PASSTHROUGH (the checksum tool) really run, so
    snapshot checksums are genuine. Everything else succeeds with empty
    output unless a response is registered for a matching argv prefix.
    Later registrations win over earlier ones.
    """

    PASSTHROUGH = ("sha256sum",)

    def __init__(self) -> None:
        super().__init__()
        self.calls: List[Tuple[str, ...]] = []
        self._responses: List[Tuple[Tuple[str, ...], Response]] = []
        self.default_returncode = 0

    def respond(
        self, prefix: Sequence[str], returncode: int = 0, stdout: str = "", stderr: str = ""
    ) -> None:
        self._responses.insert(
            0, (tuple(prefix), CommandResult(tuple(prefix), returncode, stdout, stderr))
        )

    def respond_with(
        self, prefix: Sequence[str], handler: Callable[[Tuple[str, ...]], CommandResult]
    ) -> None:
        self._responses.insert(0, (tuple(prefix), handler))

    def run(self, args, *, timeout=None, input_text=None, cwd=None) -> CommandResult:
        argv = tuple(args)
        if argv[0] in self.PASSTHROUGH:
            return super().run(argv, timeout=timeout, input_text=input_text, cwd=cwd)
        self.calls.append(argv)
        for prefix, response in self._responses:
            if argv[: len(prefix)] == prefix:
                result = response(argv) if callable(response) else response
                return CommandResult(argv, result.returncode, result.stdout, result.stderr)
        return CommandResult(argv, self.default_returncode)

    def called(self, *prefix: str) -> bool:
        return any(call[: len(prefix)] == prefix for call in self.calls)

    def count(self, *prefix: str) -> int:
        return sum(1 for call in self.calls if call[: len(prefix)] == prefix)


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Fixture providing a recording command runner."""
    return FakeRunner()


class TickingClock:
    """Clock that advances one second per call."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + timedelta(seconds=1)
        return current


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


# ==============================================================================
# Filesystem Fixtures
# ==============================================================================


@pytest.fixture
def system_root(tmp_path) -> Path:
    """
    Fixture providing an empty system root with an etc directory.

    Args:
        tmp_path: pytest's built-in temporary directory fixture.

    Returns:
        Path standing in for "/".
    """
    root = tmp_path / "root"
    (root / "etc").mkdir(parents=True)
    return root


@pytest.fixture
def backup_root(tmp_path) -> Path:
    return tmp_path / "backups"


@pytest.fixture
def write_system_file(system_root) -> Callable[[str, str], Path]:
    """Fixture providing a helper that creates a file at a logical path."""

    def write(logical: str, content: str) -> Path:
        path = system_root / logical.lstrip("/")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    return write


@pytest.fixture
def sample_mappings() -> Tuple[FileMapping, ...]:
    """Small mapping table: two real files and one that is never created."""
    return (
        FileMapping("/etc/example.conf", "configs/example.conf", "Example configuration"),
        FileMapping("/etc/tlp.conf", "configs/tlp/tlp.conf", "TLP configuration"),
        FileMapping("/etc/missing.conf", "configs/missing.conf", "Never present"),
    )


# ==============================================================================
# Store Fixtures
# ==============================================================================


@pytest.fixture
def forced_options() -> OperationOptions:
    """Options that skip confirmation prompts."""
    return OperationOptions(force=True)


@pytest.fixture
def ledger(tmp_path) -> RecoveryLedger:
    return RecoveryLedger(tmp_path / "logs" / "recovery.log")


@pytest.fixture
def snapshot_store(
    backup_root, system_root, fake_runner, sample_mappings, forced_options
) -> SnapshotStore:
    return SnapshotStore(
        backup_root,
        runner=fake_runner,
        mappings=sample_mappings,
        system_root=system_root,
        options=forced_options,
    )


@pytest.fixture
def rollback_store(
    backup_root, system_root, fake_runner, forced_options, ledger, clock
) -> RollbackStore:
    return RollbackStore(
        backup_root,
        runner=fake_runner,
        engine=RestoreEngine(fake_runner),
        ledger=ledger,
        system_root=system_root,
        max_rollbacks=3,
        options=forced_options,
        clock=clock,
    )


@pytest.fixture
def recovery_context(fake_runner, system_root, ledger, clock) -> RecoveryContext:
    """Recovery context that never sleeps and runs against the temp root."""
    return RecoveryContext(
        runner=fake_runner,
        ledger=ledger,
        system_root=system_root,
        operator="tester",
        power_source="ac",
        sleep=lambda seconds: None,
        clock=clock,
    )


# ==============================================================================
# Logging Fixtures
# ==============================================================================


@pytest.fixture
def log_messages():
    """Capture loguru messages emitted during a test."""
    messages: List[str] = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="TRACE")
    yield messages
    with suppress(ValueError):
        logger.remove(handler_id)


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop sinks added by setup_logging() so they do not leak between tests."""
    yield
    logger.remove()
    logger.add(sys.stderr, level="DEBUG")
