"""Append-only ledgers shared between runs.

Two files are shared by every invocation of the tool: the rollback index
and the recovery log. Writers take an exclusive ``flock`` on a sidecar
``.lock`` file, so concurrent runs serialise instead of interleaving. The
index is rewritten through a temporary file and ``os.replace``; the recovery
log is only ever appended to.
"""

from __future__ import annotations

import fcntl
import json
import os
from collections import deque
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Generator

from config_safeguard.domain.models import RollbackIndexEntry
from config_safeguard.logging import get_logger

from .exceptions import IntegrityMismatchError

log = get_logger(source="ledger", tags=["ledger", "storage"])


@contextmanager
def exclusive_lock(path: Path) -> Generator[None, None, None]:
    """Hold an exclusive advisory lock guarding ``path``."""
    lock_path = path.with_name(path.name + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "a+") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class AppendOnlyLog:
    """A line-oriented file that is only ever appended to."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def append(self, line: str) -> None:
        with exclusive_lock(self.path):
            with open(self.path, "a", encoding="utf-8") as handle:
                handle.write(line.rstrip("\n") + "\n")

    def tail(self, limit: int = 20) -> list[str]:
        if not self.path.exists():
            return []
        with open(self.path, encoding="utf-8", errors="replace") as handle:
            return [line.rstrip("\n") for line in deque(handle, maxlen=limit)]


class RecoveryLedger(AppendOnlyLog):
    """The recovery log, kept apart from the general logs."""

    def __init__(self, path: Path, clock: Callable[[], datetime] = datetime.now):
        super().__init__(path)
        self.clock = clock

    def _stamp(self) -> str:
        return self.clock().astimezone().isoformat(timespec="seconds")

    def record(self, mechanism: str, status: str, details: str = "") -> None:
        self.append(f"[{self._stamp()}] RECOVERY: {mechanism} - {status} - {details}")

    def note(self, message: str) -> None:
        self.append(f"[{self._stamp()}] {message}")


class RollbackIndex:
    """The shared JSON array listing every rollback point."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read(self) -> list[RollbackIndexEntry]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return [RollbackIndexEntry.from_dict(item) for item in data]
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as error:
            raise IntegrityMismatchError(
                "rollback index", [f"{self.path}: {error}"]
            ) from error

    def _write(self, entries: list[RollbackIndexEntry]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(
            json.dumps([entry.to_dict() for entry in entries], indent=2),
            encoding="utf-8",
        )
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, self.path)

    def entries(self) -> list[RollbackIndexEntry]:
        return self._read()

    def append(self, entry: RollbackIndexEntry) -> None:
        with exclusive_lock(self.path):
            entries = self._read()
            entries.append(entry)
            self._write(entries)
        log.debug(f"Indexed rollback point {entry.id}")

    def update(
        self, change: Callable[[list[RollbackIndexEntry]], list[RollbackIndexEntry]]
    ) -> list[RollbackIndexEntry]:
        """Apply ``change`` to the entries under the lock and persist the result."""
        with exclusive_lock(self.path):
            entries = change(self._read())
            self._write(entries)
        return entries

    def remove(self, rollback_id: str) -> None:
        self.update(lambda entries: [e for e in entries if e.id != rollback_id])
