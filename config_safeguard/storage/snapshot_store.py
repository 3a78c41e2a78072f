"""Point-in-time copies of the managed configuration files.

A snapshot is a directory under ``<backup_root>/snapshots/`` holding:

    <snapshot_id>/
        etc/...            mirrored copies of each captured file
        metadata.json      FileEntry list with sha256 checksums
        config_version     format version marker
        summary.txt        human-readable counts

Snapshots are never modified after capture; they are only validated,
restored from, or deleted.
"""

from __future__ import annotations

import json
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from config_safeguard.__version__ import __version__
from config_safeguard.config.mappings import DEFAULT_FILE_MAPPINGS
from config_safeguard.control import OperationOptions
from config_safeguard.domain.models import (
    FileEntry,
    FileMapping,
    RestoreReport,
    SnapshotInfo,
    SnapshotMetadata,
    SnapshotResult,
    ValidationReport,
)
from config_safeguard.logging import EventLogger, LoggerFactory, operation_context
from config_safeguard.services import system_info
from config_safeguard.services.commands import CommandRunner

from .checksum import compute_sha256
from .exceptions import (
    ExternalCommandError,
    IntegrityMismatchError,
    MissingSourceError,
    PathRejectedError,
    SnapshotNotFoundError,
    UnknownFormatVersionError,
)
from .path_policy import PathPolicy, system_path
from .restore_engine import RestoreEngine

log = LoggerFactory.for_snapshot()

CURRENT_FORMAT_VERSION = "1.1"
METADATA_FILE = "metadata.json"
VERSION_FILE = "config_version"
SUMMARY_FILE = "summary.txt"
REQUIRED_ARTIFACTS = (METADATA_FILE, VERSION_FILE, SUMMARY_FILE)
ID_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S_%f"
DEFAULT_DESCRIPTION = "Full system configuration backup"


def _migrate_from_1_0(data: dict[str, Any], snapshot_dir: Path) -> dict[str, Any]:
    """1.0 stored absolute backup paths; 1.1 stores them relative to the snapshot."""
    files = []
    for item in data.get("files", []):
        item = dict(item)
        backup = Path(item.get("backup", ""))
        if backup.is_absolute():
            try:
                item["backup"] = str(backup.relative_to(snapshot_dir))
            except ValueError:
                item["backup"] = item["source"].lstrip("/")
        files.append(item)
    return {**data, "files": files, "version": "1.1"}


MIGRATIONS: dict[str, Callable[[dict[str, Any], Path], dict[str, Any]]] = {
    "1.0": _migrate_from_1_0,
}


def migrate_metadata(
    data: dict[str, Any], snapshot_id: str, snapshot_dir: Path
) -> dict[str, Any]:
    """Bring parsed metadata up to CURRENT_FORMAT_VERSION, in memory only.

    Raises:
        UnknownFormatVersionError: If a version on the way has no migration
    """
    version = str(data.get("version", ""))
    while version != CURRENT_FORMAT_VERSION:
        step = MIGRATIONS.get(version)
        if step is None:
            raise UnknownFormatVersionError(snapshot_id, version)
        log.info(f"Migrating snapshot {snapshot_id} metadata from format {version}")
        data = step(data, snapshot_dir)
        version = str(data.get("version", ""))
    return data


def slugify(text: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9._-]+", "_", text.strip()).strip("_")
    return slug or "snapshot"


def resolve_backup_path(snapshot_dir: Path, backup_path: str) -> Path:
    path = Path(backup_path)
    return path if path.is_absolute() else snapshot_dir / path


class SnapshotStore:
    """Creates, validates, restores and deletes configuration snapshots."""

    def __init__(
        self,
        backup_root: Path,
        *,
        runner: Optional[CommandRunner] = None,
        mappings: Iterable[FileMapping] = DEFAULT_FILE_MAPPINGS,
        policy: Optional[PathPolicy] = None,
        engine: Optional[RestoreEngine] = None,
        system_root: Path = Path("/"),
        options: Optional[OperationOptions] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.backup_root = Path(backup_root)
        self.snapshots_dir = self.backup_root / "snapshots"
        self.runner = runner or CommandRunner()
        self.mappings = tuple(mappings)
        self.policy = policy or PathPolicy()
        self.engine = engine or RestoreEngine(self.runner)
        self.system_root = Path(system_root)
        self.options = options or OperationOptions()
        self.clock = clock

    def path_for(self, snapshot_id: str) -> Path:
        return self.snapshots_dir / snapshot_id

    def _require(self, snapshot_id: str) -> Path:
        snapshot_dir = self.path_for(snapshot_id)
        if not snapshot_dir.is_dir():
            raise SnapshotNotFoundError(snapshot_id)
        return snapshot_dir

    def _new_snapshot_id(self, description: str) -> str:
        base = f"{slugify(description)}_{self.clock().strftime(ID_TIMESTAMP_FORMAT)}"
        snapshot_id, counter = base, 1
        while self.path_for(snapshot_id).exists():
            snapshot_id = f"{base}-{counter}"
            counter += 1
        return snapshot_id

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def create(self, description: str = DEFAULT_DESCRIPTION) -> SnapshotResult:
        """Capture every mapped file that exists into a new snapshot.

        Rejected, missing and failed files are counted, never fatal.
        """
        snapshot_id = self._new_snapshot_id(description)
        snapshot_dir = self.path_for(snapshot_id)
        counts = {"backed_up": 0, "failed": 0, "skipped": 0, "rejected": 0}
        for violation in self.policy.audit_mappings(self.mappings):
            log.warning(f"Mapping protection violation: {violation}")

        if self.options.dry_run:
            planned = []
            for mapping in self.mappings:
                outcome = self._plan_file(mapping)
                if outcome == "planned":
                    planned.append(mapping.source_path)
                    log.info(f"[DRY RUN] Would backup: {mapping.source_path}")
                else:
                    counts[outcome] += 1
            return SnapshotResult(
                snapshot_id, snapshot_dir, dry_run=True, planned=tuple(planned), **counts
            )

        with operation_context("snapshot", snapshot_id=snapshot_id) as oplog:
            snapshot_dir.mkdir(parents=True)
            metadata = SnapshotMetadata(
                format_version=CURRENT_FORMAT_VERSION,
                created_at=self.clock().astimezone().isoformat(timespec="seconds"),
                description=description,
                host=system_info.hostname(),
                kernel_version=system_info.kernel_version(),
                operator_user=system_info.operator_user(),
                tool_version=__version__,
            )
            self._write_metadata(snapshot_dir, metadata)

            for mapping in self.mappings:
                if self.options.cancel.is_set():
                    oplog.warning("Snapshot capture cancelled before all files were copied")
                    break
                outcome = self._capture_file(mapping, snapshot_dir, metadata)
                counts[outcome] += 1

            (snapshot_dir / VERSION_FILE).write_text(
                CURRENT_FORMAT_VERSION + "\n", encoding="utf-8"
            )
            self._write_summary(snapshot_dir, snapshot_id, metadata, counts)
            EventLogger.log_operation_summary(
                oplog,
                "Snapshot",
                counts["backed_up"],
                counts["failed"] + counts["rejected"],
                counts["skipped"],
                snapshot_id=snapshot_id,
            )
            if counts["failed"] or counts["rejected"]:
                oplog.warning(
                    f"Snapshot completed with {counts['failed'] + counts['rejected']} "
                    f"failures: {snapshot_dir / SUMMARY_FILE}"
                )

        return SnapshotResult(snapshot_id, snapshot_dir, **counts)

    def _plan_file(self, mapping: FileMapping) -> str:
        try:
            self.policy.validate(mapping.source_path)
        except PathRejectedError:
            return "rejected"
        if not system_path(self.system_root, mapping.source_path).is_file():
            return "skipped"
        return "planned"

    def _capture_file(
        self, mapping: FileMapping, snapshot_dir: Path, metadata: SnapshotMetadata
    ) -> str:
        try:
            self.policy.validate(mapping.source_path)
        except PathRejectedError as error:
            log.error(f"Refusing to back up {mapping.source_path}: {error}")
            return "rejected"

        source = system_path(self.system_root, mapping.source_path)
        if not source.is_file():
            log.debug(f"Source file does not exist, skipping: {mapping.source_path}")
            return "skipped"

        backup_rel = mapping.source_path.lstrip("/")
        backup = snapshot_dir / backup_rel
        try:
            backup.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, backup)
            checksum = compute_sha256(backup, self.runner)
        except (OSError, ExternalCommandError) as error:
            log.error(f"Failed to backup file {mapping.source_path}: {error}")
            return "failed"

        entry = FileEntry(
            source_path=mapping.source_path,
            backup_path=backup_rel,
            checksum=checksum,
            size_bytes=backup.stat().st_size,
            captured_at=self.clock().astimezone().isoformat(timespec="seconds"),
        )
        metadata.add_file(entry)
        self._write_metadata(snapshot_dir, metadata)
        EventLogger.log_file_captured(log, entry.source_path, checksum, entry.size_bytes)
        return "backed_up"

    def _write_metadata(self, snapshot_dir: Path, metadata: SnapshotMetadata) -> None:
        (snapshot_dir / METADATA_FILE).write_text(
            json.dumps(metadata.to_dict(), indent=4), encoding="utf-8"
        )

    def _write_summary(
        self,
        snapshot_dir: Path,
        snapshot_id: str,
        metadata: SnapshotMetadata,
        counts: dict[str, int],
    ) -> None:
        lines = [
            "Backup Summary",
            "==============",
            f"Backup Name: {snapshot_id}",
            f"Description: {metadata.description}",
            f"Timestamp: {metadata.created_at}",
            f"Hostname: {metadata.host}",
            f"Kernel: {metadata.kernel_version}",
            f"User: {metadata.operator_user}",
            "",
            f"Files backed up: {counts['backed_up']}",
            f"Failed backups: {counts['failed']}",
            f"Skipped (missing): {counts['skipped']}",
            f"Rejected (protected): {counts['rejected']}",
            f"Total configurations: {len(self.mappings)}",
            "",
            f"Backup location: {snapshot_dir}",
        ]
        (snapshot_dir / SUMMARY_FILE).write_text("\n".join(lines) + "\n", encoding="utf-8")

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _read_metadata(self, snapshot_dir: Path) -> dict[str, Any]:
        data = json.loads((snapshot_dir / METADATA_FILE).read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("metadata.json is not an object")
        return data

    def validate(self, snapshot_id: str) -> ValidationReport:
        """Check artifacts and recompute every checksum.

        Errors accumulate; a single bad file does not stop the scan.

        Raises:
            SnapshotNotFoundError: If the snapshot directory does not exist
        """
        snapshot_dir = self._require(snapshot_id)
        report = ValidationReport(snapshot_id)
        log.info(f"Validating snapshot: {snapshot_id}")

        for name in REQUIRED_ARTIFACTS:
            if not (snapshot_dir / name).is_file():
                report.errors.append(f"Required backup file missing: {name}")
        if not (snapshot_dir / METADATA_FILE).is_file():
            log.error(f"Snapshot {snapshot_id} has no metadata")
            return report

        try:
            metadata = SnapshotMetadata.from_dict(self._read_metadata(snapshot_dir))
        except (OSError, ValueError, KeyError, TypeError) as error:
            report.errors.append(f"Invalid metadata format: {error}")
            log.error(f"Invalid metadata format in snapshot {snapshot_id}: {error}")
            return report

        version_file = snapshot_dir / VERSION_FILE
        if version_file.is_file():
            marker = version_file.read_text(encoding="utf-8").strip()
            if marker != metadata.format_version:
                report.errors.append(
                    f"Version marker ({marker}) does not match metadata version "
                    f"({metadata.format_version})"
                )
                log.error(report.errors[-1])
            elif marker != CURRENT_FORMAT_VERSION:
                report.warnings.append(
                    f"Snapshot version ({marker}) differs from current version "
                    f"({CURRENT_FORMAT_VERSION}); migration may be required"
                )
                log.warning(report.warnings[-1])

        for entry in metadata.files:
            report.files_checked += 1
            backup = resolve_backup_path(snapshot_dir, entry.backup_path)
            if not backup.is_file():
                report.errors.append(f"Backup file missing: {backup}")
                log.error(report.errors[-1])
                continue
            try:
                actual = compute_sha256(backup, self.runner)
            except ExternalCommandError as error:
                report.errors.append(f"Could not checksum {backup}: {error}")
                log.error(report.errors[-1])
                continue
            if actual != entry.checksum:
                report.errors.append(f"Checksum mismatch for: {entry.source_path}")
                log.error(report.errors[-1])
            else:
                log.trace(f"Checksum OK: {entry.source_path}")

        if report.valid:
            log.success(f"Snapshot validation passed: {snapshot_id}")
        else:
            log.error(
                f"Snapshot validation failed with {len(report.errors)} errors: {snapshot_id}"
            )
        return report

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(self, snapshot_id: str) -> RestoreReport:
        """Write every captured file back to its source path.

        The snapshot must validate first; nothing is touched otherwise. In a
        dry run, ``restored`` lists the files that would have been written.

        Raises:
            SnapshotNotFoundError: If the snapshot does not exist
            IntegrityMismatchError: If validation fails
            UnknownFormatVersionError: If the metadata cannot be migrated
            ConfirmationRequiredError: If not forced and no confirm callback is set
        """
        snapshot_dir = self._require(snapshot_id)
        validation = self.validate(snapshot_id)
        if not validation.valid:
            raise IntegrityMismatchError(snapshot_id, validation.errors)

        data = migrate_metadata(self._read_metadata(snapshot_dir), snapshot_id, snapshot_dir)
        metadata = SnapshotMetadata.from_dict(data)
        report = RestoreReport(snapshot_id, dry_run=self.options.dry_run)
        report.warnings.extend(validation.warnings)

        if self.options.dry_run:
            for entry in metadata.files:
                if self.policy.is_protected(entry.source_path):
                    report.rejected.append(entry.source_path)
                else:
                    report.restored.append(entry.source_path)
                    log.info(f"[DRY RUN] Would restore: {entry.source_path}")
            return report

        if not self.options.confirmed(
            f"Restore {len(metadata.files)} file(s) from snapshot {snapshot_id}?",
            f"restore snapshot {snapshot_id}",
        ):
            log.info(f"Restore of {snapshot_id} declined")
            report.declined = True
            return report

        with operation_context("restore", snapshot_id=snapshot_id) as oplog:
            for entry in metadata.files:
                if self.options.cancel.is_set():
                    oplog.warning("Restore cancelled before all files were written")
                    report.cancelled = True
                    break
                self._restore_entry(snapshot_dir, entry, report)

            if report.restored:
                report.warnings.extend(self.engine.trigger_reload())

            EventLogger.log_operation_summary(
                oplog,
                "Restore",
                len(report.restored),
                len(report.failed) + len(report.rejected),
                len(report.skipped),
                snapshot_id=snapshot_id,
            )
        return report

    def _restore_entry(self, snapshot_dir: Path, entry: FileEntry, report: RestoreReport) -> None:
        try:
            self.policy.validate(entry.source_path)
        except PathRejectedError as error:
            log.error(f"Refusing to restore {entry.source_path}: {error}")
            report.rejected.append(entry.source_path)
            return

        source = resolve_backup_path(snapshot_dir, entry.backup_path)
        target = system_path(self.system_root, entry.source_path)
        try:
            safety_copy = self.engine.copy_with_safety_net(source, target)
        except MissingSourceError:
            log.warning(f"Backup file does not exist, skipping: {source}")
            report.skipped.append(entry.source_path)
            return
        except OSError as error:
            log.error(f"Failed to restore {entry.source_path}: {error}")
            report.failed.append(entry.source_path)
            return

        report.restored.append(entry.source_path)
        if safety_copy is not None:
            report.safety_copies.append(str(safety_copy))
        EventLogger.log_file_restored(
            log, entry.source_path, str(safety_copy) if safety_copy else None
        )

    # ------------------------------------------------------------------
    # Listing and deletion
    # ------------------------------------------------------------------

    def list(self, *, verify: bool = True) -> list[SnapshotInfo]:
        """All snapshots, oldest first, optionally with a validity check."""
        if not self.snapshots_dir.is_dir():
            return []
        infos = []
        for snapshot_dir in self.snapshots_dir.iterdir():
            if not snapshot_dir.is_dir():
                continue
            try:
                metadata = SnapshotMetadata.from_dict(self._read_metadata(snapshot_dir))
                description, created_at = metadata.description, metadata.created_at
                file_count = len(metadata.files)
            except (OSError, ValueError, KeyError, TypeError):
                description, created_at, file_count = "", "", 0
            valid = self.validate(snapshot_dir.name).valid if verify else True
            infos.append(
                SnapshotInfo(
                    snapshot_id=snapshot_dir.name,
                    description=description,
                    created_at=created_at,
                    file_count=file_count,
                    valid=valid,
                    path=snapshot_dir,
                )
            )
        return sorted(infos, key=lambda info: (info.created_at, info.snapshot_id))

    def delete(self, snapshot_id: str) -> bool:
        """Remove a snapshot directory. Returns False when nothing was deleted.

        Raises:
            SnapshotNotFoundError: If the snapshot does not exist
            ConfirmationRequiredError: If not forced and no confirm callback is set
        """
        snapshot_dir = self._require(snapshot_id)
        if self.options.dry_run:
            log.info(f"[DRY RUN] Would delete snapshot: {snapshot_dir}")
            return False
        if not self.options.confirmed(
            f"Delete snapshot {snapshot_id}? This cannot be undone.",
            f"delete snapshot {snapshot_id}",
        ):
            log.info(f"Deletion of {snapshot_id} cancelled")
            return False
        shutil.rmtree(snapshot_dir)
        log.success(f"Snapshot deleted: {snapshot_id}")
        return True
