"""Automated recovery procedures for known failure classes."""

from .context import RecoveryContext
from .registry import RecoveryRegistry

__all__ = ["RecoveryContext", "RecoveryRegistry"]
