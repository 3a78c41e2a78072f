"""Path policy: keep user data out of snapshots and restores.

Every copy into a snapshot or rollback point and every copy back onto the
live system asks the policy first. Protected paths are refused outright;
paths outside the usual configuration roots are allowed with a warning.

Paths are logical (as they appear on the target system, e.g. ``/etc/tlp.conf``).
:func:`system_path` maps a logical path onto the filesystem under a system
root, so the same policy applies when operating on a mounted image.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Iterable, Optional

from config_safeguard.domain.models import FileMapping
from config_safeguard.logging import get_logger

from .exceptions import PathRejectedError

log = get_logger(source="policy", tags=["policy", "storage"])

PROTECTED_PATTERNS: tuple[str, ...] = (
    "*/home/*",
    "*/root/*",
    "*/.ssh/*",
    "*/.gnupg/*",
    "*/passwd",
    "*/shadow",
    "*/group",
    "*/gshadow",
)

SYSTEM_CONFIG_ROOTS: tuple[str, ...] = (
    "/etc/",
    "/usr/lib/systemd/",
    "/usr/share/",
    "/boot/",
    "/var/lib/pacman/",
    "/var/log/",
)


def system_path(root: Path, logical_path: str) -> Path:
    """Where a logical path lives on disk under ``root``."""
    return Path(root) / logical_path.lstrip("/")


@dataclass(frozen=True)
class PathCheck:
    path: str
    in_config_root: bool


class PathPolicy:
    """Decides whether a path may be copied in or out."""

    def __init__(
        self,
        patterns: Iterable[str] = PROTECTED_PATTERNS,
        config_roots: Iterable[str] = SYSTEM_CONFIG_ROOTS,
    ):
        self._patterns = tuple(patterns)
        self._config_roots = tuple(config_roots)

    @property
    def patterns(self) -> tuple[str, ...]:
        return self._patterns

    def matching_pattern(self, path: str) -> Optional[str]:
        """First protected pattern matching the raw or normalised path."""
        candidates = {path, posixpath.normpath(path)}
        for pattern in self._patterns:
            if any(fnmatchcase(candidate, pattern) for candidate in candidates):
                return pattern
        return None

    def is_protected(self, path: str) -> bool:
        return self.matching_pattern(path) is not None

    def validate(self, path: str) -> PathCheck:
        """Check a path before copying it.

        Raises:
            PathRejectedError: If the path matches a protected pattern
        """
        pattern = self.matching_pattern(path)
        if pattern is not None:
            log.error(f"Path contains protected user data: {path}")
            raise PathRejectedError(path, pattern)
        normalised = posixpath.normpath(path)
        in_root = any(normalised.startswith(root) for root in self._config_roots)
        if not in_root:
            log.warning(f"Path is outside typical system configuration directories: {path}")
        return PathCheck(path=path, in_config_root=in_root)

    def audit_mappings(self, mappings: Iterable[FileMapping]) -> list[str]:
        """List every mapping whose source or target touches user data."""
        violations = []
        for mapping in mappings:
            for label, path in (("source", mapping.source_path), ("target", mapping.target_path)):
                pattern = self.matching_pattern(path)
                if pattern is not None:
                    violations.append(
                        f"{mapping.description}: {label} {path} matches {pattern}"
                    )
        if violations:
            log.error(f"User data protection check failed: {len(violations)} violation(s)")
        else:
            log.debug("User data protection check passed")
        return violations
