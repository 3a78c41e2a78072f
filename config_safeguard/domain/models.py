"""Domain model for configuration snapshots, rollback points and recovery.

These objects replace the loose JSON dicts written to disk. Each persisted
type knows how to turn itself into (and back from) the dict stored in its
metadata file, so the on-disk keys live in exactly one place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


# ==============================================================================
# File mapping / snapshot domain
# ==============================================================================


@dataclass(frozen=True)
class FileMapping:
    """A live system file paired with the toolset's managed copy of it."""

    source_path: str  # e.g., "/etc/tlp.conf"
    target_path: str  # e.g., "configs/tlp/tlp.conf"
    description: str


@dataclass(frozen=True)
class FileEntry:
    """One file captured into a snapshot."""

    source_path: str
    backup_path: str  # relative to the snapshot directory
    checksum: str  # sha256 hex digest
    size_bytes: int
    captured_at: str  # ISO-8601

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source_path,
            "backup": self.backup_path,
            "checksum": self.checksum,
            "size": self.size_bytes,
            "timestamp": self.captured_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileEntry:
        """Build an entry from its metadata dict.

        Raises:
            KeyError: If source, backup or checksum is missing
        """
        return cls(
            source_path=data["source"],
            backup_path=data["backup"],
            checksum=data["checksum"],
            size_bytes=int(data.get("size", 0)),
            captured_at=data.get("timestamp", ""),
        )


@dataclass
class SnapshotMetadata:
    """Contents of a snapshot's metadata.json.

    Files are only ever appended while the snapshot is being captured.
    """

    format_version: str
    created_at: str
    description: str
    host: str
    kernel_version: str
    operator_user: str
    tool_version: str
    files: list[FileEntry] = field(default_factory=list)

    def add_file(self, entry: FileEntry) -> None:
        self.files.append(entry)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.format_version,
            "timestamp": self.created_at,
            "description": self.description,
            "hostname": self.host,
            "kernel": self.kernel_version,
            "user": self.operator_user,
            "script_version": self.tool_version,
            "files": [entry.to_dict() for entry in self.files],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SnapshotMetadata:
        """Build metadata from a parsed metadata.json.

        Raises:
            KeyError: If a required key is missing
            TypeError: If the files list is malformed
        """
        return cls(
            format_version=str(data["version"]),
            created_at=data["timestamp"],
            description=data.get("description", ""),
            host=data.get("hostname", ""),
            kernel_version=data.get("kernel", ""),
            operator_user=data.get("user", ""),
            tool_version=data.get("script_version", ""),
            files=[FileEntry.from_dict(item) for item in data.get("files", [])],
        )


@dataclass(frozen=True)
class SnapshotResult:
    """Outcome of SnapshotStore.create()."""

    snapshot_id: str
    path: Path
    backed_up: int
    failed: int
    skipped: int
    rejected: int
    dry_run: bool = False
    planned: tuple[str, ...] = ()

    @property
    def total(self) -> int:
        return self.backed_up + self.failed + self.skipped + self.rejected

    @property
    def status(self) -> str:
        if self.failed == 0 and self.rejected == 0:
            return "success"
        return "partial"


@dataclass(frozen=True)
class SnapshotInfo:
    """One row of SnapshotStore.list()."""

    snapshot_id: str
    description: str
    created_at: str
    file_count: int
    valid: bool
    path: Path


@dataclass
class ValidationReport:
    """Result of checking a snapshot's artifacts and checksums."""

    snapshot_id: str
    files_checked: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


@dataclass
class RestoreReport:
    """Per-file accounting for a snapshot restore.

    A restore with any failed or rejected file is partial, never success.
    """

    source_id: str
    restored: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    safety_copies: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    dry_run: bool = False
    cancelled: bool = False
    declined: bool = False

    @property
    def status(self) -> str:
        if self.declined:
            return "declined"
        if self.cancelled:
            return "cancelled"
        if not self.failed and not self.rejected:
            return "success"
        if self.restored:
            return "partial"
        return "failed"


# ==============================================================================
# Rollback domain
# ==============================================================================


class RollbackKind(Enum):
    """Why a rollback point was captured."""

    STANDARD = "standard"
    EMERGENCY = "emergency"  # taken automatically right before a rollback restore


@dataclass(frozen=True)
class RollbackContents:
    """Which capture areas of a rollback point hold data."""

    configs: bool = False
    packages: bool = False
    services: bool = False
    logs: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {
            "configs": self.configs,
            "packages": self.packages,
            "services": self.services,
            "logs": self.logs,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollbackContents:
        return cls(
            configs=bool(data.get("configs")),
            packages=bool(data.get("packages")),
            services=bool(data.get("services")),
            logs=bool(data.get("logs")),
        )


@dataclass
class RollbackPoint:
    """A system-wide capture that can be restored as one unit."""

    id: str
    name: str
    description: str
    created_at: str
    path: Path
    kind: RollbackKind = RollbackKind.STANDARD
    created_by: str = ""
    contents: RollbackContents = field(default_factory=RollbackContents)
    system_info: dict[str, Any] = field(default_factory=dict)
    hardware_info: dict[str, Any] = field(default_factory=dict)
    capture_warnings: list[str] = field(default_factory=list)

    def to_metadata(self, format_version: str) -> dict[str, Any]:
        return {
            "rollback_info": {
                "id": self.id,
                "name": self.name,
                "description": self.description,
                "timestamp": self.created_at,
                "created_by": self.created_by,
                "kind": self.kind.value,
                "rollback_version": format_version,
            },
            "system_info": self.system_info,
            "hardware_info": self.hardware_info,
            "backup_contents": self.contents.to_dict(),
            "capture_warnings": list(self.capture_warnings),
        }

    @classmethod
    def from_metadata(cls, data: dict[str, Any], path: Path) -> RollbackPoint:
        """Build a rollback point from its metadata.json.

        Raises:
            KeyError: If rollback_info or its id/name are missing
        """
        info = data["rollback_info"]
        return cls(
            id=info["id"],
            name=info["name"],
            description=info.get("description", ""),
            created_at=info.get("timestamp", ""),
            path=path,
            kind=RollbackKind(info.get("kind", RollbackKind.STANDARD.value)),
            created_by=info.get("created_by", ""),
            contents=RollbackContents.from_dict(data.get("backup_contents", {})),
            system_info=dict(data.get("system_info", {})),
            hardware_info=dict(data.get("hardware_info", {})),
            capture_warnings=list(data.get("capture_warnings", [])),
        )


@dataclass(frozen=True)
class RollbackIndexEntry:
    """Compact entry kept in the shared rollback index."""

    id: str
    name: str
    description: str
    timestamp: str  # compact id timestamp, e.g. 20240101_120000_000000
    path: str
    created: str  # ISO-8601, used for retention ordering
    kind: str = RollbackKind.STANDARD.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "timestamp": self.timestamp,
            "path": self.path,
            "created": self.created,
            "kind": self.kind,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollbackIndexEntry:
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            description=data.get("description", ""),
            timestamp=data.get("timestamp", ""),
            path=data.get("path", ""),
            created=data.get("created", ""),
            kind=data.get("kind", RollbackKind.STANDARD.value),
        )


@dataclass(frozen=True)
class CaptureResult:
    """Outcome of one capture area (or one item inside it)."""

    name: str
    ok: bool
    detail: str = ""


@dataclass
class RollbackRestoreReport:
    """Outcome of RollbackStore.restore()."""

    rollback_id: str
    emergency_id: str | None = None
    replaced: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    dry_run: bool = False
    declined: bool = False

    @property
    def status(self) -> str:
        if self.declined:
            return "declined"
        if not self.failed:
            return "success"
        return "partial" if self.replaced else "failed"


# ==============================================================================
# Recovery domain
# ==============================================================================


class FailureClass(Enum):
    """Failure classes with an automated recovery procedure."""

    PACKAGE_INSTALL = "package_install_failure"
    SERVICE_START = "service_start_failure"
    GPU_DRIVER = "gpu_driver_failure"
    DISPLAY_CONFIG = "xorg_config_failure"
    POWER_MANAGEMENT = "power_management_failure"
    VENDOR_TOOLS = "asus_tools_failure"
    NETWORK = "network_failure"
    DISK_SPACE = "disk_space_failure"
    PERMISSION = "permission_failure"
    CONFIG_CORRUPTION = "config_corruption"


class Verdict(Enum):
    """How a recovery run is judged against its threshold."""

    SUCCESS = "success"
    PARTIAL = "partial"  # some steps worked, not enough to clear the threshold
    FAILED = "failed"  # no step succeeded


def success_rate(steps_succeeded: int, steps_total: int) -> int:
    """Integer success percentage (2 of 3 steps scores 66)."""
    if steps_total <= 0:
        return 0
    return steps_succeeded * 100 // steps_total


def judge(steps_succeeded: int, steps_total: int, threshold_percent: int) -> Verdict:
    if steps_succeeded <= 0:
        return Verdict.FAILED
    if success_rate(steps_succeeded, steps_total) >= threshold_percent:
        return Verdict.SUCCESS
    return Verdict.PARTIAL


@dataclass(frozen=True)
class StepResult:
    name: str
    succeeded: bool
    detail: str = ""


@dataclass(frozen=True)
class RecoveryOutcome:
    """Scored result of running one recovery procedure."""

    mechanism: str
    failure_class: str
    steps_total: int
    steps_succeeded: int
    threshold_percent: int
    step_results: tuple[StepResult, ...] = ()
    cancelled: bool = False

    @property
    def success_rate_percent(self) -> int:
        return success_rate(self.steps_succeeded, self.steps_total)

    @property
    def verdict(self) -> Verdict:
        return judge(self.steps_succeeded, self.steps_total, self.threshold_percent)

    def summary(self) -> str:
        text = (
            f"{self.steps_succeeded}/{self.steps_total} steps successful "
            f"({self.success_rate_percent}%, threshold {self.threshold_percent}%)"
        )
        if self.cancelled:
            text += ", cancelled"
        return text
