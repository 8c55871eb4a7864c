"""Remote document stores feeding the index."""

from __future__ import annotations

from .models import (
    DocumentNotFoundError,
    RemoteDocument,
    RemoteDocumentStore,
    RemoteListError,
    RemoteStoreError,
)
from .s3 import S3DocumentStore, build_s3_client

__all__ = [
    "DocumentNotFoundError",
    "RemoteDocument",
    "RemoteDocumentStore",
    "RemoteListError",
    "RemoteStoreError",
    "S3DocumentStore",
    "build_s3_client",
]
