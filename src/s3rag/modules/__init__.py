"""Feature modules for :mod:`s3rag`: vector index, remote store and sync."""
