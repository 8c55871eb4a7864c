"""S3-backed document store (AWS S3 and S3-compatible services)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from s3rag.core.config import S3Settings
from s3rag.core.logging import Logger

from .models import (
    DocumentNotFoundError,
    RemoteDocument,
    RemoteListError,
    RemoteStoreError,
)

__all__ = ["S3DocumentStore", "build_s3_client"]

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


def build_s3_client(settings: S3Settings) -> Any:
    """Create a boto3 S3 client honoring custom endpoints and path style."""

    kwargs: dict[str, Any] = {"region_name": settings.region}
    if settings.endpoint:
        kwargs["endpoint_url"] = settings.endpoint
    if settings.force_path_style:
        kwargs["config"] = BotoConfig(s3={"addressing_style": "path"})
    if settings.access_key_id and settings.secret_access_key is not None:
        kwargs["aws_access_key_id"] = settings.access_key_id
        kwargs["aws_secret_access_key"] = (
            settings.secret_access_key.get_secret_value()
        )
    return boto3.client("s3", **kwargs)


def _strip_etag(raw: str | None) -> str:
    return (raw or "").strip().strip('"')


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3DocumentStore:
    """List and fetch documents under one bucket prefix."""

    def __init__(
        self,
        *,
        settings: S3Settings,
        logger: Logger,
        client: Any | None = None,
    ) -> None:
        if not settings.bucket:
            raise RemoteStoreError("S3 bucket name is not configured")
        self._settings = settings
        self._bucket = settings.bucket
        self._logger = logger
        self._client = client or build_s3_client(settings)
        if settings.endpoint:
            self._logger.info("s3-custom-endpoint", endpoint=settings.endpoint)

    @property
    def bucket(self) -> str:
        return self._bucket

    def _is_document(self, key: str) -> bool:
        lowered = key.lower()
        return any(lowered.endswith(suffix) for suffix in self._settings.suffixes)

    def source_uri(self, key: str) -> str:
        return f"s3://{self._bucket}/{key}"

    def list_documents(self) -> list[RemoteDocument]:
        documents: list[RemoteDocument] = []
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(
                Bucket=self._bucket,
                Prefix=self._settings.prefix,
            ):
                for item in page.get("Contents", ()):
                    key = item.get("Key", "")
                    if not key or not self._is_document(key):
                        continue
                    documents.append(
                        RemoteDocument(
                            key=key,
                            etag=_strip_etag(item.get("ETag")),
                            last_modified=item.get("LastModified")
                            or datetime.now(timezone.utc),
                            size=int(item.get("Size", 0)),
                        )
                    )
        except (ClientError, BotoCoreError) as exc:
            self._logger.error(
                "s3-list-failed",
                bucket=self._bucket,
                prefix=self._settings.prefix,
                error=str(exc),
            )
            raise RemoteListError(
                f"Unable to list s3://{self._bucket}/{self._settings.prefix}: {exc}"
            ) from exc

        self._logger.info(
            "s3-list-complete",
            bucket=self._bucket,
            prefix=self._settings.prefix,
            documents=len(documents),
        )
        return documents

    def fetch_content(self, key: str) -> str:
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
            body = response["Body"].read()
        except ClientError as exc:
            raise self._translate(exc, key=key, action="download") from exc
        except BotoCoreError as exc:
            raise RemoteStoreError(
                f"Unable to download {key}: {exc}", key=key
            ) from exc

        try:
            content = body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise RemoteStoreError(
                f"{key} is not valid UTF-8 text", key=key
            ) from exc
        self._logger.debug("s3-fetch", key=key, characters=len(content))
        return content

    def get_metadata(self, key: str) -> RemoteDocument:
        try:
            response = self._client.head_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            raise self._translate(exc, key=key, action="stat") from exc
        except BotoCoreError as exc:
            raise RemoteStoreError(
                f"Unable to stat {key}: {exc}", key=key
            ) from exc
        return RemoteDocument(
            key=key,
            etag=_strip_etag(response.get("ETag")),
            last_modified=response.get("LastModified")
            or datetime.now(timezone.utc),
            size=int(response.get("ContentLength", 0)),
        )

    def _translate(
        self,
        exc: ClientError,
        *,
        key: str,
        action: str,
    ) -> RemoteStoreError:
        code = _error_code(exc)
        if code in _NOT_FOUND_CODES:
            return DocumentNotFoundError(
                f"s3://{self._bucket}/{key} does not exist", key=key
            )
        self._logger.error(f"s3-{action}-failed", key=key, code=code)
        return RemoteStoreError(f"Unable to {action} {key}: {exc}", key=key)
