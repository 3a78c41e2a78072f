"""Snapshot, rollback and restore storage layers."""
