"""Domain models for configuration snapshots, rollbacks and recovery.

This package contains type-safe domain objects that replace the raw JSON
dicts written to metadata files and indexes.
"""

from __future__ import annotations

from .models import (
    CaptureResult,
    FailureClass,
    FileEntry,
    FileMapping,
    RecoveryOutcome,
    RestoreReport,
    RollbackContents,
    RollbackIndexEntry,
    RollbackKind,
    RollbackPoint,
    RollbackRestoreReport,
    SnapshotInfo,
    SnapshotMetadata,
    SnapshotResult,
    StepResult,
    ValidationReport,
    Verdict,
)


__all__ = [
    "CaptureResult",
    "FailureClass",
    "FileEntry",
    "FileMapping",
    "RecoveryOutcome",
    "RestoreReport",
    "RollbackContents",
    "RollbackIndexEntry",
    "RollbackKind",
    "RollbackPoint",
    "RollbackRestoreReport",
    "SnapshotInfo",
    "SnapshotMetadata",
    "SnapshotResult",
    "StepResult",
    "ValidationReport",
    "Verdict",
]
