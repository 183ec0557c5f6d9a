"""Admin usage ingestion engine."""
