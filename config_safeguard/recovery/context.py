"""Everything a recovery procedure may touch, passed in explicitly.

Procedures never look at environment variables, the real clock or the real
root filesystem on their own; they go through the context so they can be
pointed at a mounted image or exercised in tests.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from config_safeguard.config import settings
from config_safeguard.control import CancellationToken
from config_safeguard.services import system_info
from config_safeguard.services.commands import CommandRunner
from config_safeguard.storage.ledger import RecoveryLedger
from config_safeguard.storage.path_policy import PathPolicy, system_path


@dataclass
class RecoveryContext:
    runner: CommandRunner
    ledger: RecoveryLedger
    system_root: Path = Path("/")
    policy: PathPolicy = field(default_factory=PathPolicy)
    operator: str = "unknown"
    power_source: str = "unknown"
    network_timeout: int = settings.DEFAULT_NETWORK_TIMEOUT_SECONDS
    disk_threshold_percent: int = settings.DEFAULT_DISK_SPACE_THRESHOLD_PERCENT
    sleep: Callable[[float], None] = time.sleep
    cancel: CancellationToken = field(default_factory=CancellationToken)
    clock: Callable[[], datetime] = datetime.now

    def path(self, logical: str) -> Path:
        """Filesystem location of a logical path under the system root."""
        return system_path(self.system_root, logical)

    @classmethod
    def from_settings(
        cls,
        runner: Optional[CommandRunner] = None,
        *,
        system_root: Optional[Path] = None,
        log_dir: Optional[Path] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> RecoveryContext:
        """Build a context from the loaded settings and the running host."""
        log_dir = log_dir or settings.get_path("log_dir", settings.DEFAULT_LOG_ROOT)
        return cls(
            runner=runner or CommandRunner(
                default_timeout=settings.get_int(
                    "command_timeout_seconds", settings.DEFAULT_COMMAND_TIMEOUT_SECONDS
                )
            ),
            ledger=RecoveryLedger(Path(log_dir) / "recovery.log"),
            system_root=Path(system_root or settings.get_path("system_root", "/")),
            operator=system_info.operator_user(),
            power_source=system_info.detect_power_source(),
            network_timeout=settings.get_int(
                "network_timeout_seconds", settings.DEFAULT_NETWORK_TIMEOUT_SECONDS
            ),
            disk_threshold_percent=settings.get_int(
                "disk_space_threshold_percent", settings.DEFAULT_DISK_SPACE_THRESHOLD_PERCENT
            ),
            cancel=cancel or CancellationToken(),
        )
