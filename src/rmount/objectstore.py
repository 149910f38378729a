"""
Object-store client -- connectivity tests and remote listings.

The core only needs two capabilities from an S3-compatible endpoint:
"can I reach it with these credentials?" and "what is under this
path?". :class:`S3ObjectStore` answers both with boto3. Any failure is
reported as :class:`rmount.errors.TransportError` with the underlying
exception chained.
"""

from __future__ import annotations

import logging
import mimetypes
from abc import ABC, abstractmethod
from typing import Any

from .errors import TransportError
from .models import DataSourceConfig, RemoteEntry

logger = logging.getLogger("rmount.objectstore")

CONNECT_TIMEOUT = 10
READ_TIMEOUT = 30


class ObjectStoreClient(ABC):
    """Abstract object-store capability."""

    @abstractmethod
    def test_connection(self, config: DataSourceConfig) -> None:
        """Raise TransportError unless ``config`` can reach its store."""

    @abstractmethod
    def list_entries(self, config: DataSourceConfig, path: str = "") -> list[RemoteEntry]:
        """List files and directories directly under ``path``."""


def _guess_mime(name: str) -> str:
    mime, _ = mimetypes.guess_type(name)
    return mime or "application/octet-stream"


def split_remote_path(config: DataSourceConfig, path: str) -> tuple[str, str]:
    """Resolve (bucket, prefix) for a listing request.

    With a configured bucket the whole path is a key prefix. Without
    one, the first path component names the bucket.
    """
    clean = path.strip("/")
    if config.bucket:
        return config.bucket, clean
    if not clean:
        return "", ""
    bucket, _, prefix = clean.partition("/")
    return bucket, prefix


class S3ObjectStore(ObjectStoreClient):
    """boto3-backed client for AWS S3 and compatible stores (MinIO, R2, ...)."""

    def _client(self, config: DataSourceConfig) -> Any:
        """Create a boto3 S3 client for ``config``.

        Raises:
            TransportError: If boto3 is not installed.
        """
        try:
            import boto3
            from botocore.config import Config
        except ImportError:
            raise TransportError("S3 access requires boto3: pip install boto3")

        kwargs: dict[str, Any] = {
            "aws_access_key_id": config.access_key,
            "aws_secret_access_key": config.secret_key.get_secret_value(),
            "region_name": config.region,
            "config": Config(
                connect_timeout=CONNECT_TIMEOUT,
                read_timeout=READ_TIMEOUT,
                retries={"max_attempts": 2},
                s3={"addressing_style": "path" if config.endpoint else "auto"},
            ),
        }
        if config.endpoint:
            kwargs["endpoint_url"] = config.endpoint
        return boto3.client("s3", **kwargs)

    def test_connection(self, config: DataSourceConfig) -> None:
        client = self._client(config)
        try:
            if config.bucket:
                client.list_objects_v2(Bucket=config.bucket, MaxKeys=1)
            else:
                client.list_buckets()
        except Exception as exc:
            logger.info("Connection test failed for %s: %s", config.name, exc)
            raise TransportError(f"Connection test failed for '{config.name}': {exc}") from exc
        logger.info("Connection test succeeded for %s", config.name)

    def list_entries(self, config: DataSourceConfig, path: str = "") -> list[RemoteEntry]:
        client = self._client(config)
        bucket, prefix = split_remote_path(config, path)

        try:
            if not bucket:
                return self._list_buckets(client)
            return self._list_prefix(client, bucket, prefix, show_bucket=not config.bucket)
        except TransportError:
            raise
        except Exception as exc:
            raise TransportError(f"Listing '{config.name}:{path}' failed: {exc}") from exc

    def _list_buckets(self, client: Any) -> list[RemoteEntry]:
        response = client.list_buckets()
        return [
            RemoteEntry(
                name=b["Name"],
                path=b["Name"],
                is_dir=True,
                mod_time=b.get("CreationDate"),
                mime_type="inode/directory",
            )
            for b in response.get("Buckets", [])
        ]

    def _list_prefix(
        self, client: Any, bucket: str, prefix: str, show_bucket: bool
    ) -> list[RemoteEntry]:
        key_prefix = f"{prefix}/" if prefix else ""
        path_root = f"{bucket}/" if show_bucket else ""
        entries: list[RemoteEntry] = []

        paginator = client.get_paginator("list_objects_v2")
        pages = paginator.paginate(Bucket=bucket, Prefix=key_prefix, Delimiter="/")
        for page in pages:
            for cp in page.get("CommonPrefixes", []):
                full = cp["Prefix"].rstrip("/")
                entries.append(
                    RemoteEntry(
                        name=full[len(key_prefix):],
                        path=path_root + full,
                        is_dir=True,
                        mime_type="inode/directory",
                    )
                )
            for obj in page.get("Contents", []):
                key = obj["Key"]
                if key.endswith("/"):
                    continue
                name = key[len(key_prefix):]
                entries.append(
                    RemoteEntry(
                        name=name,
                        path=path_root + key,
                        size=obj.get("Size", 0),
                        mod_time=obj.get("LastModified"),
                        is_dir=False,
                        mime_type=_guess_mime(name),
                    )
                )
        return entries
