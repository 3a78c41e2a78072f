"""Wrappers around the external system tools this package delegates to."""
