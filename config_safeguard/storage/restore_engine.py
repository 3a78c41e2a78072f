"""Copy files back onto the live system without losing what was there.

Before a file is overwritten its current contents are kept beside it as
``<name>.pre-restore-<YYYYmmdd_HHMMSS>``. Those safety copies are never
cleaned up automatically. After a batch of restores the service manager
and udev are asked to reload; reload failures are reported, not raised.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from config_safeguard.logging import LoggerFactory
from config_safeguard.services import service_manager
from config_safeguard.services.commands import CommandResult, CommandRunner

from .exceptions import MissingSourceError

log = LoggerFactory.for_restore()

SAFETY_SUFFIX = ".pre-restore-"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


@dataclass(frozen=True)
class PermissionPolicy:
    """Mode and ownership applied to every restored file."""

    mode: int = 0o644
    owner: str = "root"
    group: str = "root"

    def apply(self, path: Path) -> None:
        os.chmod(path, self.mode)
        # Only root can hand files to root.
        if os.geteuid() == 0:
            shutil.chown(path, self.owner, self.group)
        else:
            log.debug(f"Not running as root, keeping ownership of {path}")


class RestoreEngine:
    """Overwrites live files with safety copies and triggers reloads."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        permissions: PermissionPolicy = PermissionPolicy(),
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.runner = runner
        self.permissions = permissions
        self.clock = clock

    def safety_copy_path(self, target: Path) -> Path:
        stamp = self.clock().strftime(TIMESTAMP_FORMAT)
        candidate = target.with_name(f"{target.name}{SAFETY_SUFFIX}{stamp}")
        counter = 1
        while candidate.exists():
            candidate = target.with_name(f"{target.name}{SAFETY_SUFFIX}{stamp}.{counter}")
            counter += 1
        return candidate

    def copy_with_safety_net(self, source: Path, target: Path) -> Optional[Path]:
        """Copy ``source`` over ``target``, keeping the old target first.

        Returns:
            Path of the safety copy, or None when the target did not exist

        Raises:
            MissingSourceError: If the source file is gone
            OSError: If copying or applying permissions fails
        """
        if not source.is_file():
            raise MissingSourceError(str(source))

        safety_copy = None
        if target.exists():
            safety_copy = self.safety_copy_path(target)
            shutil.copy2(target, safety_copy)
            log.debug(f"Created safety copy: {safety_copy}")
        else:
            target.parent.mkdir(parents=True, exist_ok=True)

        shutil.copy2(source, target)
        self.permissions.apply(target)
        return safety_copy

    def _best_effort(self, label: str, result: CommandResult) -> Optional[str]:
        if result.ok:
            log.debug(f"{label} ok")
            return None
        warning = f"{label} failed: {result.output or f'exit code {result.returncode}'}"
        log.warning(warning)
        return warning

    def trigger_reload(self) -> list[str]:
        """Reload systemd units and udev rules; returns warnings."""
        log.info("Reloading systemd and udev")
        steps = (
            ("systemd daemon-reload", service_manager.daemon_reload),
            ("udev rule reload", service_manager.udev_reload_rules),
            ("udev trigger", service_manager.udev_trigger),
        )
        warnings = []
        for label, action in steps:
            warning = self._best_effort(label, action(self.runner))
            if warning:
                warnings.append(warning)
        return warnings

    def regenerate_boot(self, root: Path = Path("/")) -> list[str]:
        """Rebuild the initramfs and GRUB config when their inputs exist."""
        warnings = []
        if (root / "etc/mkinitcpio.conf").exists():
            log.info("Regenerating initramfs")
            warning = self._best_effort("mkinitcpio", self.runner.run(["mkinitcpio", "-P"]))
            if warning:
                warnings.append(warning)
        if (root / "etc/default/grub").exists():
            log.info("Regenerating GRUB configuration")
            warning = self._best_effort(
                "grub-mkconfig",
                self.runner.run(["grub-mkconfig", "-o", str(root / "boot/grub/grub.cfg")]),
            )
            if warning:
                warnings.append(warning)
        return warnings
