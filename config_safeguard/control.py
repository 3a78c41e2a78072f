"""Run-wide switches shared by the stores: dry run, force, confirmation, cancel.

Usage:
    options = OperationOptions(force=args.force, dry_run=args.dry_run,
                               confirm=prompt_yes_no)
    store = SnapshotStore(backup_root, options=options)

A signal handler sets ``options.cancel``; loops check it between items and
stop before starting the next one.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from config_safeguard.storage.exceptions import ConfirmationRequiredError


class CancellationToken:
    """A one-way flag: once cancelled, stays cancelled."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()


@dataclass
class OperationOptions:
    dry_run: bool = False
    force: bool = False
    confirm: Optional[Callable[[str], bool]] = None
    cancel: CancellationToken = field(default_factory=CancellationToken)

    def confirmed(self, prompt: str, action: str) -> bool:
        """Ask before a destructive step unless forced.

        Raises:
            ConfirmationRequiredError: If not forced and nobody can be asked
        """
        if self.force:
            return True
        if self.confirm is None:
            raise ConfirmationRequiredError(action)
        return bool(self.confirm(prompt))
