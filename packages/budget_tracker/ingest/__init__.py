"""CSV ingest: row adapters and file loading."""
