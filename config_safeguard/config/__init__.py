"""Settings and the managed file mapping table."""
