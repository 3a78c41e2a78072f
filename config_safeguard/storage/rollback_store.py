"""System-wide rollback points.

A rollback point is broader than a snapshot: it holds whole configuration
directories, package listings and the package database, service state and
recent logs. Layout under ``<backup_root>/rollbacks/``:

    index.json            shared ledger of all points (see storage.ledger)
    .last_rollback        id of the most recent standard point
    <rollback_id>/
        configs/ packages/ services/ logs/
        metadata.json

Restoring a point first takes an emergency point of the current configs and
services, so the rollback can itself be rolled back.
"""

from __future__ import annotations

import json
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional

from config_safeguard.config import settings
from config_safeguard.control import OperationOptions
from config_safeguard.domain.models import (
    RollbackContents,
    RollbackIndexEntry,
    RollbackKind,
    RollbackPoint,
    RollbackRestoreReport,
)
from config_safeguard.logging import LoggerFactory, operation_context
from config_safeguard.services import service_manager, system_info
from config_safeguard.services.commands import CommandRunner

from .capture import RESTORE_DIRS, RESTORE_FILES, Capturer
from .exceptions import IntegrityMismatchError, PathRejectedError, RollbackNotFoundError
from .ledger import RecoveryLedger, RollbackIndex
from .path_policy import PathPolicy, system_path
from .restore_engine import RestoreEngine

log = LoggerFactory.for_rollback()

ROLLBACK_FORMAT_VERSION = "1.0.0"
AREAS: tuple[str, ...] = ("configs", "packages", "services", "logs")
EMERGENCY_AREAS: tuple[str, ...] = ("configs", "services")
METADATA_FILE = "metadata.json"
LAST_POINTER_FILE = ".last_rollback"
ID_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S_%f"

# Services whose enablement is put back the way the rollback point saw it.
MANAGED_SERVICES: tuple[str, ...] = (
    "tlp.service",
    "auto-cpufreq.service",
    "power-profiles-daemon.service",
    "nvidia-suspend.service",
    "nvidia-resume.service",
    "power-management.service",
    "asus-hardware.service",
    "asusd.service",
    "supergfxd.service",
)


class RollbackStore:
    """Creates, lists, restores and prunes rollback points."""

    def __init__(
        self,
        backup_root: Path,
        *,
        runner: Optional[CommandRunner] = None,
        policy: Optional[PathPolicy] = None,
        engine: Optional[RestoreEngine] = None,
        ledger: Optional[RecoveryLedger] = None,
        system_root: Path = Path("/"),
        max_rollbacks: int = settings.DEFAULT_MAX_ROLLBACKS,
        journal_window_hours: int = settings.DEFAULT_JOURNAL_WINDOW_HOURS,
        options: Optional[OperationOptions] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        # restoring pins the restored point and its emergency point
        if max_rollbacks < 2:
            raise ValueError("max_rollbacks must be at least 2")
        self.backup_root = Path(backup_root)
        self.rollbacks_dir = self.backup_root / "rollbacks"
        self.index = RollbackIndex(self.rollbacks_dir / "index.json")
        self.runner = runner or CommandRunner()
        self.policy = policy or PathPolicy()
        self.engine = engine or RestoreEngine(self.runner)
        self.ledger = ledger or RecoveryLedger(
            settings.get_path("log_dir", settings.DEFAULT_LOG_ROOT) / "recovery.log"
        )
        self.system_root = Path(system_root)
        self.max_rollbacks = max_rollbacks
        self.options = options or OperationOptions()
        self.clock = clock
        self.capturer = Capturer(self.runner, self.policy, self.system_root, journal_window_hours)

    def path_for(self, rollback_id: str) -> Path:
        return self.rollbacks_dir / rollback_id

    def _new_id(self, name: str) -> tuple[str, str]:
        stamp = self.clock().strftime(ID_TIMESTAMP_FORMAT)
        rollback_id, counter = f"{name}_{stamp}", 1
        while self.path_for(rollback_id).exists():
            rollback_id = f"{name}_{stamp}-{counter}"
            counter += 1
        return rollback_id, stamp

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(self, name: str, description: str = "") -> RollbackPoint:
        """Capture a new rollback point, index it and apply retention.

        Capture failures are recorded as warnings on the point, never raised.
        """
        if not name or "/" in name:
            raise ValueError(f"Invalid rollback point name: {name!r}")
        description = description or f"Rollback point: {name}"
        rollback_id, stamp = self._new_id(name)

        if self.options.dry_run:
            log.info(f"[DRY RUN] Would create rollback point: {rollback_id}")
            return RollbackPoint(
                id=rollback_id,
                name=name,
                description=description,
                created_at=self.clock().astimezone().isoformat(timespec="microseconds"),
                path=self.path_for(rollback_id),
                created_by=system_info.operator_user(),
            )

        with operation_context("rollback", rollback_id=rollback_id):
            point = self._capture(rollback_id, stamp, name, description, RollbackKind.STANDARD, AREAS)
            self._write_last_pointer(rollback_id)
            self.enforce_retention()
        return point

    def _capture(
        self,
        rollback_id: str,
        stamp: str,
        name: str,
        description: str,
        kind: RollbackKind,
        areas: Iterable[str],
    ) -> RollbackPoint:
        point_dir = self.path_for(rollback_id)
        for area in AREAS:
            (point_dir / area).mkdir(parents=True, exist_ok=True)

        wanted = set(areas)
        capture = {
            "configs": self.capturer.capture_configs,
            "packages": self.capturer.capture_packages,
            "services": self.capturer.capture_services,
            "logs": self.capturer.capture_logs,
        }
        flags: dict[str, bool] = {}
        warnings: list[str] = []
        for area in AREAS:
            if area not in wanted:
                flags[area] = False
                continue
            if self.options.cancel.is_set():
                warnings.append(f"{area}: not captured, operation cancelled")
                flags[area] = False
                continue
            log.info(f"Capturing {area}")
            results = capture[area](point_dir / area)
            for result in results:
                if not result.ok:
                    warnings.append(f"{area}: {result.name}: {result.detail}")
                    log.warning(f"Failed to capture {area} item {result.name}: {result.detail}")
            flags[area] = any(result.ok for result in results)

        host_facts: dict = {}
        hardware_facts: dict = {}
        if kind is RollbackKind.STANDARD:
            try:
                host_facts = system_info.collect_system_info(self.runner, self.system_root)
                hardware_facts = system_info.collect_hardware_info(self.runner)
            except OSError as error:
                warnings.append(f"system info: {error}")
                log.warning(f"Could not collect system information: {error}")

        point = RollbackPoint(
            id=rollback_id,
            name=name,
            description=description,
            created_at=self.clock().astimezone().isoformat(timespec="microseconds"),
            path=point_dir,
            kind=kind,
            created_by=system_info.operator_user(),
            contents=RollbackContents(**flags),
            system_info=host_facts,
            hardware_info=hardware_facts,
            capture_warnings=warnings,
        )
        (point_dir / METADATA_FILE).write_text(
            json.dumps(point.to_metadata(ROLLBACK_FORMAT_VERSION), indent=4), encoding="utf-8"
        )
        self.index.append(
            RollbackIndexEntry(
                id=rollback_id,
                name=name,
                description=description,
                timestamp=stamp,
                path=str(point_dir),
                created=point.created_at,
                kind=kind.value,
            )
        )
        if warnings:
            log.warning(f"Rollback point {rollback_id} created with {len(warnings)} capture warning(s)")
        else:
            log.success(f"Rollback point created: {rollback_id}")
        return point

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list(self) -> list[RollbackIndexEntry]:
        """Index entries, oldest first. Reads only the index."""
        return sorted(self.index.entries(), key=lambda entry: (entry.created, entry.timestamp))

    def get(self, rollback_id: str) -> RollbackPoint:
        """Load a point's metadata.

        Raises:
            RollbackNotFoundError: If the point directory does not exist
            IntegrityMismatchError: If its metadata is unreadable
        """
        point_dir = self.path_for(rollback_id)
        if not point_dir.is_dir():
            raise RollbackNotFoundError(rollback_id)
        try:
            data = json.loads((point_dir / METADATA_FILE).read_text(encoding="utf-8"))
            return RollbackPoint.from_metadata(data, point_dir)
        except (OSError, ValueError, KeyError, TypeError) as error:
            raise IntegrityMismatchError(rollback_id, [f"Invalid rollback metadata: {error}"]) from error

    def last_rollback_id(self) -> Optional[str]:
        pointer = self.rollbacks_dir / LAST_POINTER_FILE
        if not pointer.is_file():
            return None
        value = pointer.read_text(encoding="utf-8").strip()
        return value or None

    def _write_last_pointer(self, rollback_id: Optional[str]) -> None:
        pointer = self.rollbacks_dir / LAST_POINTER_FILE
        if rollback_id is None:
            pointer.unlink(missing_ok=True)
            return
        pointer.write_text(rollback_id + "\n", encoding="utf-8")

    def verify_integrity(self, rollback_id: str) -> list[str]:
        """Problems that make a point unsafe to restore (empty when fine)."""
        point_dir = self.path_for(rollback_id)
        if not point_dir.is_dir():
            raise RollbackNotFoundError(rollback_id)
        errors = [
            f"Missing rollback directory: {area}"
            for area in AREAS
            if not (point_dir / area).is_dir()
        ]
        metadata = point_dir / METADATA_FILE
        if not metadata.is_file():
            errors.append("Missing rollback metadata")
        else:
            try:
                json.loads(metadata.read_text(encoding="utf-8"))
            except (OSError, ValueError) as error:
                errors.append(f"Invalid rollback metadata format: {error}")
        return errors

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(self, rollback_id: str) -> RollbackRestoreReport:
        """Put the system back to a rollback point.

        Raises:
            RollbackNotFoundError: If the point does not exist
            IntegrityMismatchError: If the point is incomplete; nothing is changed
            ConfirmationRequiredError: If not forced and no confirm callback is set
        """
        errors = self.verify_integrity(rollback_id)
        if errors:
            for error in errors:
                log.error(error)
            raise IntegrityMismatchError(rollback_id, errors)

        point_dir = self.path_for(rollback_id)
        report = RollbackRestoreReport(rollback_id, dry_run=self.options.dry_run)

        if self.options.dry_run:
            report.replaced = self._planned_replacements(point_dir)
            for logical in report.replaced:
                log.info(f"[DRY RUN] Would replace: {logical}")
            return report

        if not self.options.confirmed(
            f"Roll the system back to {rollback_id}?", f"restore rollback point {rollback_id}"
        ):
            log.info(f"Rollback to {rollback_id} declined")
            report.declined = True
            return report

        with operation_context("rollback", rollback_id=rollback_id) as oplog:
            report.emergency_id = self._create_emergency_point(rollback_id)

            self._restore_configs(point_dir / "configs", report)
            self._restore_services(point_dir / "services", report)

            report.warnings.extend(self.engine.trigger_reload())
            report.warnings.extend(self.engine.regenerate_boot(self.system_root))

            self.ledger.note(f"Rollback completed - {rollback_id}")
            if report.failed:
                oplog.warning(
                    f"Rollback finished with {len(report.failed)} failure(s): "
                    f"{', '.join(report.failed)}"
                )
            oplog.info("System may require a reboot for all changes to take effect")
        return report

    def _planned_replacements(self, point_dir: Path) -> list[str]:
        configs = point_dir / "configs"
        planned = [d for d in RESTORE_DIRS if system_path(configs, d).is_dir()]
        planned += [f for f in RESTORE_FILES if system_path(configs, f).is_file()]
        return planned

    def _create_emergency_point(self, restoring_id: str) -> str:
        emergency_id, stamp = self._new_id("emergency")
        log.info("Creating emergency backup before rollback...")
        self._capture(
            emergency_id,
            stamp,
            "emergency",
            f"Pre-rollback emergency backup before {restoring_id}",
            RollbackKind.EMERGENCY,
            EMERGENCY_AREAS,
        )
        self.enforce_retention(exempt=(restoring_id, emergency_id))
        return emergency_id

    def _restore_configs(self, configs: Path, report: RollbackRestoreReport) -> None:
        for logical in RESTORE_DIRS:
            captured = system_path(configs, logical)
            if not captured.is_dir():
                continue
            try:
                self.policy.validate(logical)
                self._replace_tree(captured, system_path(self.system_root, logical))
            except (PathRejectedError, OSError, shutil.Error) as error:
                log.error(f"Failed to restore directory {logical}: {error}")
                report.failed.append(logical)
                continue
            log.debug(f"Restored directory: {logical}")
            report.replaced.append(logical)

        for logical in RESTORE_FILES:
            captured = system_path(configs, logical)
            if not captured.is_file():
                continue
            live = system_path(self.system_root, logical)
            try:
                self.policy.validate(logical)
                live.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(captured, live)
            except (PathRejectedError, OSError) as error:
                log.error(f"Failed to restore file {logical}: {error}")
                report.failed.append(logical)
                continue
            log.debug(f"Restored file: {logical}")
            report.replaced.append(logical)

    @staticmethod
    def _replace_tree(captured: Path, live: Path) -> None:
        """Delete ``live`` and put a copy of ``captured`` in its place.

        The copy is staged beside the live directory first so a failed copy
        leaves the live directory untouched.
        """
        staging = live.with_name(live.name + ".rollback-staging")
        if staging.exists():
            shutil.rmtree(staging)
        live.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(captured, staging, symlinks=True)
        if live.is_symlink() or live.is_file():
            live.unlink()
        elif live.exists():
            shutil.rmtree(live)
        os.replace(staging, live)

    def _restore_services(self, services: Path, report: RollbackRestoreReport) -> None:
        enabled_file = services / "enabled_services.txt"
        if not enabled_file.is_file():
            report.warnings.append("No enabled service list captured; service states left as-is")
            log.warning(report.warnings[-1])
            return
        captured_enabled = set(
            service_manager.parse_unit_names(enabled_file.read_text(encoding="utf-8"))
        )
        for unit in MANAGED_SERVICES:
            if not service_manager.unit_exists(self.runner, unit):
                continue
            enabled_now = service_manager.is_enabled(self.runner, unit)
            wanted = unit in captured_enabled
            if wanted == enabled_now:
                continue
            action = service_manager.enable if wanted else service_manager.disable
            result = action(self.runner, unit)
            verb = "enable" if wanted else "disable"
            if result.ok:
                log.info(f"Service {unit}: {verb}d to match rollback point")
            else:
                report.warnings.append(f"Failed to {verb} {unit}: {result.output}")
                log.warning(report.warnings[-1])

    # ------------------------------------------------------------------
    # Retention and deletion
    # ------------------------------------------------------------------

    def enforce_retention(self, exempt: Iterable[str] = ()) -> list[str]:
        """Evict the oldest points beyond ``max_rollbacks``.

        Exempt ids are never evicted. The last-rollback pointer target is
        kept while an older point can go in its place; when it cannot, the
        pointer moves to the newest remaining standard point.
        """
        pinned = set(exempt)
        last = self.last_rollback_id()
        evicted: list[str] = []

        def prune(entries: list[RollbackIndexEntry]) -> list[RollbackIndexEntry]:
            ordered = sorted(entries, key=lambda entry: (entry.created, entry.timestamp))
            excess = len(ordered) - self.max_rollbacks
            if excess > 0:
                candidates = [e.id for e in ordered if e.id not in pinned and e.id != last]
                if len(candidates) < excess:
                    candidates = [e.id for e in ordered if e.id not in pinned]
                evicted.extend(candidates[:excess])
            return [entry for entry in ordered if entry.id not in evicted]

        survivors = self.index.update(prune)
        if last and last in evicted:
            standard = [e.id for e in survivors if e.kind == RollbackKind.STANDARD.value]
            self._write_last_pointer(standard[-1] if standard else None)
        for rollback_id in evicted:
            point_dir = self.path_for(rollback_id)
            if point_dir.exists():
                shutil.rmtree(point_dir)
            log.debug(f"Removed old rollback: {rollback_id}")
        if evicted:
            log.info(
                f"Cleaned up {len(evicted)} old rollback point(s) "
                f"(keeping {self.max_rollbacks} most recent)"
            )
        return evicted

    def cleanup(self) -> list[str]:
        if self.options.dry_run:
            entries = self.list()
            excess = max(0, len(entries) - self.max_rollbacks)
            doomed = [entry.id for entry in entries[:excess]]
            for rollback_id in doomed:
                log.info(f"[DRY RUN] Would remove old rollback: {rollback_id}")
            return doomed
        return self.enforce_retention()

    def delete(self, rollback_id: str) -> bool:
        """Remove one rollback point and its index entry.

        Raises:
            RollbackNotFoundError: If the point does not exist
            ConfirmationRequiredError: If not forced and no confirm callback is set
        """
        point_dir = self.path_for(rollback_id)
        if not point_dir.is_dir():
            raise RollbackNotFoundError(rollback_id)
        if self.options.dry_run:
            log.info(f"[DRY RUN] Would delete rollback point: {rollback_id}")
            return False
        if not self.options.confirmed(
            f"Delete rollback point {rollback_id}? This cannot be undone.",
            f"delete rollback point {rollback_id}",
        ):
            return False
        shutil.rmtree(point_dir)
        self.index.remove(rollback_id)
        if self.last_rollback_id() == rollback_id:
            self._write_last_pointer(None)
        log.success(f"Rollback point deleted: {rollback_id}")
        return True
