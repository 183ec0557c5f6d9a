"""Internal helpers shared across admin-usage-ingest packages."""
