"""Photo library layout, ingest with content-hash deduplication, and rate-limited share serving."""

__version__ = "0.1.0"