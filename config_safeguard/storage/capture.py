"""Capture areas of a rollback point.

Each area (configs, packages, services, logs) is captured by one method
that returns a CaptureResult per item. A failed item is a warning for the
caller to record; nothing here raises for an individual failure.
"""

from __future__ import annotations

import re
import shutil
from pathlib import Path

from config_safeguard.domain.models import CaptureResult
from config_safeguard.logging import LoggerFactory
from config_safeguard.services import package_manager, service_manager
from config_safeguard.services.commands import CommandResult, CommandRunner

from .exceptions import PathRejectedError
from .path_policy import PathPolicy, system_path

log = LoggerFactory.for_rollback()

CONFIG_DIRS: tuple[str, ...] = (
    "/etc/X11",
    "/etc/systemd/system",
    "/etc/udev/rules.d",
    "/etc/modules-load.d",
    "/etc/modprobe.d",
    "/etc/default",
    "/boot/loader",
    "/boot/grub",
)

CONFIG_FILES: tuple[str, ...] = (
    "/etc/pacman.conf",
    "/etc/mkinitcpio.conf",
    "/etc/tlp.conf",
    "/etc/auto-cpufreq.conf",
    "/etc/fstab",
    "/etc/hosts",
    "/etc/hostname",
    "/etc/locale.conf",
    "/etc/vconsole.conf",
)

# Boot directories are regenerated after a rollback instead of copied back.
RESTORE_DIRS: tuple[str, ...] = CONFIG_DIRS[:6]
RESTORE_FILES: tuple[str, ...] = (
    "/etc/pacman.conf",
    "/etc/mkinitcpio.conf",
    "/etc/tlp.conf",
    "/etc/auto-cpufreq.conf",
    "/etc/fstab",
)

PACKAGE_LISTINGS: tuple[tuple[str, str], ...] = (
    ("-Q", "installed_packages.txt"),
    ("-Qe", "explicit_packages.txt"),
    ("-Qm", "foreign_packages.txt"),
)
PACKAGE_DB = "/var/lib/pacman/local"
PACKAGE_CACHE = "/var/cache/pacman/pkg"

UNIT_DIR = "/etc/systemd/system"
UNIT_FILE_SUFFIXES = (".service", ".timer", ".socket")

LOG_FILES: tuple[str, ...] = (
    "/var/log/pacman.log",
    "/var/log/Xorg.0.log",
    "/var/log/boot.log",
)
SUBSYSTEM_FILTERS: dict[str, re.Pattern[str]] = {
    "gpu_logs.log": re.compile(r"nvidia|amdgpu|gpu", re.IGNORECASE),
    "power_logs.log": re.compile(r"tlp|auto-cpufreq|power", re.IGNORECASE),
}


class Capturer:
    """Copies live system state into a rollback point's area directories."""

    def __init__(
        self,
        runner: CommandRunner,
        policy: PathPolicy,
        system_root: Path,
        journal_window_hours: int = 24,
    ):
        self.runner = runner
        self.policy = policy
        self.system_root = Path(system_root)
        self.journal_window_hours = journal_window_hours

    def _gate(self, logical: str) -> CaptureResult | None:
        try:
            self.policy.validate(logical)
        except PathRejectedError as error:
            return CaptureResult(logical, False, str(error))
        return None

    def _copy_tree(self, logical: str, dest_root: Path) -> CaptureResult:
        rejected = self._gate(logical)
        if rejected:
            return rejected
        source = system_path(self.system_root, logical)
        if not source.is_dir():
            log.debug(f"Not present, skipping: {logical}")
            return CaptureResult(logical, True, "absent")
        target = system_path(dest_root, logical)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(source, target, symlinks=True, dirs_exist_ok=True)
        except (OSError, shutil.Error) as error:
            return CaptureResult(logical, False, str(error))
        return CaptureResult(logical, True)

    def _copy_file(self, logical: str, dest: Path) -> CaptureResult:
        rejected = self._gate(logical)
        if rejected:
            return rejected
        source = system_path(self.system_root, logical)
        if not source.is_file():
            log.debug(f"Not present, skipping: {logical}")
            return CaptureResult(logical, True, "absent")
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
        except OSError as error:
            return CaptureResult(logical, False, str(error))
        return CaptureResult(logical, True)

    def _dump(self, name: str, result: CommandResult, dest: Path) -> CaptureResult:
        if not result.ok:
            return CaptureResult(name, False, result.output or f"exit code {result.returncode}")
        dest.write_text(result.stdout, encoding="utf-8")
        return CaptureResult(name, True)

    def capture_configs(self, dest: Path) -> list[CaptureResult]:
        results = [self._copy_tree(logical, dest) for logical in CONFIG_DIRS]
        results += [
            self._copy_file(logical, system_path(dest, logical)) for logical in CONFIG_FILES
        ]
        return results

    def capture_packages(self, dest: Path) -> list[CaptureResult]:
        results = [
            self._dump(
                f"pacman {flag}", self.runner.run([package_manager.PACMAN, flag]), dest / filename
            )
            for flag, filename in PACKAGE_LISTINGS
        ]

        rejected = self._gate(PACKAGE_DB)
        source_db = system_path(self.system_root, PACKAGE_DB)
        if rejected:
            results.append(rejected)
        elif source_db.is_dir():
            try:
                shutil.copytree(source_db, dest / "pacman" / "local", dirs_exist_ok=True)
                results.append(CaptureResult(PACKAGE_DB, True))
            except (OSError, shutil.Error) as error:
                results.append(CaptureResult(PACKAGE_DB, False, str(error)))
        else:
            results.append(CaptureResult(PACKAGE_DB, False, "package database not found"))

        cache = system_path(self.system_root, PACKAGE_CACHE)
        if cache.is_dir():
            listing = sorted(entry.name for entry in cache.iterdir())
            (dest / "package_cache.txt").write_text("\n".join(listing) + "\n", encoding="utf-8")
            results.append(CaptureResult(PACKAGE_CACHE, True))
        return results

    def capture_services(self, dest: Path) -> list[CaptureResult]:
        results = [
            self._dump(
                "enabled units",
                service_manager.list_unit_files(self.runner, "enabled"),
                dest / "enabled_services.txt",
            ),
            self._dump(
                "active units",
                service_manager.list_units(self.runner, "active"),
                dest / "active_services.txt",
            ),
            self._dump(
                "failed units",
                service_manager.list_units(self.runner, "failed"),
                dest / "failed_services.txt",
            ),
        ]

        unit_dir = system_path(self.system_root, UNIT_DIR)
        if unit_dir.is_dir():
            overrides = dest / "overrides"
            overrides.mkdir(parents=True, exist_ok=True)
            for unit in sorted(unit_dir.iterdir()):
                if unit.suffix in UNIT_FILE_SUFFIXES and unit.is_file():
                    results.append(self._copy_file(f"{UNIT_DIR}/{unit.name}", overrides / unit.name))

        usage = service_manager.journal_disk_usage(self.runner)
        if usage.ok:
            (dest / "journal_usage.txt").write_text(usage.stdout, encoding="utf-8")
        results.append(CaptureResult("journal usage", usage.ok, usage.output if not usage.ok else ""))
        return results

    def capture_logs(self, dest: Path) -> list[CaptureResult]:
        results = []
        for logical in LOG_FILES:
            results.append(self._copy_file(logical, dest / Path(logical).name))

        journal = service_manager.journal_since(self.runner, self.journal_window_hours)
        if not journal.ok:
            results.append(CaptureResult("journal", False, journal.output))
            return results

        (dest / "recent_journal.log").write_text(journal.stdout, encoding="utf-8")
        results.append(CaptureResult("journal", True))
        lines = journal.stdout.splitlines()
        for filename, pattern in SUBSYSTEM_FILTERS.items():
            matched = [line for line in lines if pattern.search(line)]
            (dest / filename).write_text("\n".join(matched) + ("\n" if matched else ""), encoding="utf-8")
        return results
