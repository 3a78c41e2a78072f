"""Protected-operation sessions and interrupt handling.

A session wraps a risky provisioning step. On entry it takes a rollback
point and routes SIGINT/SIGTERM to the shared cancellation token, so the
current item finishes and no new one starts. On exit after an interrupt
it offers to roll the system back to the session's point.

Usage:
    with ProtectedSession(rollbacks, name="gpu-setup", confirm=ask) as session:
        returncode = session.run_command(["./install-gpu-drivers.sh"])
    sys.exit(session.exit_code(returncode))
"""

from __future__ import annotations

import dataclasses
import signal
import subprocess
from contextlib import ExitStack, contextmanager
from typing import Callable, Generator, Optional, Sequence

from config_safeguard.control import CancellationToken
from config_safeguard.domain.models import RollbackPoint, RollbackRestoreReport
from config_safeguard.logging import LoggerFactory
from config_safeguard.storage.rollback_store import RollbackStore

log = LoggerFactory.for_system()

INTERRUPTED_EXIT_CODE = 130
HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@contextmanager
def cancel_on_signals(token: CancellationToken) -> Generator[CancellationToken, None, None]:
    """Turn SIGINT/SIGTERM into a cancellation request while the block runs."""

    def handle(signum, frame) -> None:
        name = signal.Signals(signum).name
        log.warning(f"Received {name}, stopping after the current step")
        token.cancel(f"received {name}")

    previous = {signum: signal.signal(signum, handle) for signum in HANDLED_SIGNALS}
    try:
        yield token
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


class ProtectedSession:
    """Rollback point plus interrupt handling around one operation."""

    def __init__(
        self,
        rollbacks: RollbackStore,
        *,
        name: str = "session",
        description: str = "",
        confirm: Optional[Callable[[str], bool]] = None,
        create_point: bool = True,
    ):
        self.rollbacks = rollbacks
        self.name = name
        self.description = description or f"Before protected operation: {name}"
        self.confirm = confirm
        self.create_point = create_point
        self.point: Optional[RollbackPoint] = None
        self.rollback_report: Optional[RollbackRestoreReport] = None
        self._keyboard_interrupt = False
        self._stack = ExitStack()

    @property
    def cancel(self) -> CancellationToken:
        return self.rollbacks.options.cancel

    @property
    def interrupted(self) -> bool:
        return self._keyboard_interrupt or self.cancel.is_set()

    def __enter__(self) -> ProtectedSession:
        if self.create_point:
            self.point = self.rollbacks.create(self.name, self.description)
        self._stack.enter_context(cancel_on_signals(self.cancel))
        log.info(f"Protected session started: {self.name}")
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._stack.close()
        if exc_type is KeyboardInterrupt:
            self._keyboard_interrupt = True
        if self.interrupted:
            self.rollback_report = self.offer_rollback()
            # exit_code() reports the interrupt.
            return exc_type is KeyboardInterrupt
        return False

    def rollback_target(self) -> Optional[str]:
        if self.point is not None:
            return self.point.id
        return self.rollbacks.last_rollback_id()

    def offer_rollback(self) -> Optional[RollbackRestoreReport]:
        """Ask whether to roll back and do it when the answer is yes."""
        target = self.rollback_target()
        if target is None:
            log.warning("Operation interrupted and no rollback point is available")
            return None
        log.warning(f"Operation interrupted. Rollback to {target} is available")
        if self.confirm is None or not self.confirm(
            f"Operation interrupted. Roll back to {target}?"
        ):
            log.info(
                f"Rollback declined; restore later with: config-safeguard rollback restore {target}"
            )
            return None

        # The session token is already cancelled; the rollback needs its own.
        previous = self.rollbacks.options
        self.rollbacks.options = dataclasses.replace(
            previous, force=True, dry_run=False, cancel=CancellationToken()
        )
        try:
            return self.rollbacks.restore(target)
        finally:
            self.rollbacks.options = previous

    def run_command(self, args: Sequence[str]) -> int:
        """Run the protected command with the terminal attached."""
        log.info(f"Running protected command: {' '.join(args)}")
        try:
            completed = subprocess.run(list(args), check=False)
        except FileNotFoundError:
            log.error(f"Command not found: {args[0]}")
            return 127
        if completed.returncode != 0 and not self.interrupted:
            target = self.rollback_target()
            log.error(f"Protected command failed with exit code {completed.returncode}")
            if target:
                log.info(f"Rollback available: config-safeguard rollback restore {target}")
        return completed.returncode

    def exit_code(self, returncode: int = 0) -> int:
        return INTERRUPTED_EXIT_CODE if self.interrupted else returncode
