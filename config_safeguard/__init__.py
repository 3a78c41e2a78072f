"""Configuration snapshot, rollback and recovery for laptop provisioning."""

from .__version__ import __version__


__all__ = ["__version__"]
