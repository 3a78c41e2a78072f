"""Custom exceptions for snapshot, rollback and recovery operations.

This module defines a hierarchy of exceptions so callers can tell a single
rejected file apart from a corrupted snapshot or a failed external tool.

Exception Hierarchy:
    SafeguardError (base)
        ├── PathRejectedError
        ├── MissingSourceError
        ├── IntegrityMismatchError
        ├── ExternalCommandError
        ├── UnknownFormatVersionError
        ├── SnapshotNotFoundError
        ├── RollbackNotFoundError
        ├── ConfirmationRequiredError
        └── UnknownRecoveryTagError

Partial success is not an exception: it is reported through the ``status``
of RestoreReport and the PARTIAL recovery verdict.

Usage:
    from config_safeguard.storage.exceptions import PathRejectedError

    if policy.is_protected(path):
        raise PathRejectedError(path, matched_pattern)
"""

from __future__ import annotations


class SafeguardError(Exception):
    """Base exception for all safeguard operations."""


class PathRejectedError(SafeguardError):
    """Path matches a protected user-data pattern."""

    def __init__(self, path: str, pattern: str):
        self.path = path
        self.pattern = pattern
        super().__init__(f"Path contains protected user data: {path} (matches {pattern})")


class MissingSourceError(SafeguardError):
    """A file that should be copied does not exist."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Source file does not exist: {path}")


class IntegrityMismatchError(SafeguardError):
    """A snapshot or rollback point failed its integrity check."""

    def __init__(self, item_id: str, errors: list[str]):
        self.item_id = item_id
        self.errors = list(errors)
        detail = "; ".join(self.errors[:3])
        if len(self.errors) > 3:
            detail += f" (+{len(self.errors) - 3} more)"
        super().__init__(f"Integrity check failed for {item_id}: {detail}")


class ExternalCommandError(SafeguardError):
    """An external tool exited with a non-zero status."""

    def __init__(self, command: list[str], returncode: int, output: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        message = f"Command failed ({' '.join(self.command)}) with exit code {returncode}"
        if output:
            message += f": {output}"
        super().__init__(message)


class UnknownFormatVersionError(SafeguardError):
    """Stored data uses a format version with no known migration."""

    def __init__(self, item_id: str, version: str):
        self.item_id = item_id
        self.version = version
        super().__init__(f"No migration available for {item_id} from format version {version}")


class SnapshotNotFoundError(SafeguardError):
    """Snapshot directory does not exist."""

    def __init__(self, snapshot_id: str):
        self.snapshot_id = snapshot_id
        super().__init__(f"Snapshot not found: {snapshot_id}")


class RollbackNotFoundError(SafeguardError):
    """Rollback point does not exist."""

    def __init__(self, rollback_id: str):
        self.rollback_id = rollback_id
        super().__init__(f"Rollback point not found: {rollback_id}")


class ConfirmationRequiredError(SafeguardError):
    """A destructive operation ran without force and without a way to confirm."""

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Confirmation required to {action} (use force to skip)")


class UnknownRecoveryTagError(SafeguardError, ValueError):
    """No recovery procedure is registered for the failure class."""

    def __init__(self, tag: str, known: list[str] | None = None):
        self.tag = tag
        self.known = list(known or [])
        msg = f"Unknown recovery type: {tag}"
        if self.known:
            msg += f" (available: {', '.join(self.known)})"
        super().__init__(msg)
