"""Object store backends for capture images and thumbnails."""
from __future__ import annotations
import logging
import pathlib
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import (
    AWS_ACCESS_KEY_ID,
    AWS_REGION,
    AWS_SECRET_ACCESS_KEY,
    PUBLIC_BASE_URL,
    S3_BUCKET,
    S3_ENDPOINT,
    STORAGE_BACKEND,
    UPLOAD_DIR,
)

log = logging.getLogger("capture-analysis")


class StorageError(Exception):
    """Base exception for object store operations."""


class KeyExtractionError(StorageError):
    """Stored image URL does not contain an object key."""


class DownloadError(StorageError):
    pass


class UploadError(StorageError):
    pass


def extract_object_key(url: str) -> str:
    """
    Object key from a stored image URL, everything after the host:

      https://bucket.s3.amazonaws.com/captures/123/uuid.jpg -> captures/123/uuid.jpg
    """
    parts = (url or "").split("/")
    if len(parts) < 4:
        raise KeyExtractionError(f"Invalid image URL format: {url!r}")
    key = "/".join(parts[3:])
    if not key:
        raise KeyExtractionError(f"Image URL has an empty object key: {url!r}")
    return key


class ObjectStore:
    def download(self, key: str) -> bytes:
        raise NotImplementedError

    def upload(self, key: str, data: bytes, content_type: str) -> str:
        """Store `data` under `key` and return its public URL."""
        raise NotImplementedError

    def public_url(self, key: str) -> str:
        raise NotImplementedError


class S3ObjectStore(ObjectStore):
    def __init__(
        self,
        bucket: str = S3_BUCKET,
        region: str = AWS_REGION,
        access_key: Optional[str] = AWS_ACCESS_KEY_ID,
        secret_key: Optional[str] = AWS_SECRET_ACCESS_KEY,
        endpoint_url: Optional[str] = S3_ENDPOINT,
        client=None,
    ):
        if not bucket:
            raise RuntimeError("S3_BUCKET is empty.")
        self.bucket = bucket
        if client is None:
            kwargs = {"region_name": region}
            if access_key and secret_key:
                kwargs["aws_access_key_id"] = access_key
                kwargs["aws_secret_access_key"] = secret_key
            if endpoint_url:
                kwargs["endpoint_url"] = endpoint_url
                kwargs["config"] = Config(s3={"addressing_style": "path"})
            client = boto3.client("s3", **kwargs)
        self.client = client
        log.info("S3 object store initialized with bucket: %s", bucket)

    def download(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            data = response["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise DownloadError(f"S3 download failed for {key}: {e}") from e
        log.info("Downloaded %s (%d bytes)", key, len(data))
        return data

    def upload(self, key: str, data: bytes, content_type: str) -> str:
        try:
            self.client.put_object(
                Bucket=self.bucket, Key=key, Body=data, ContentType=content_type
            )
        except (BotoCoreError, ClientError) as e:
            raise UploadError(f"S3 upload failed for {key}: {e}") from e
        log.info("Uploaded %s (%d bytes)", key, len(data))
        return self.public_url(key)

    def public_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"


class LocalObjectStore(ObjectStore):
    """Objects as files under `root`, served from `public_base_url`."""

    def __init__(self, root: pathlib.Path | str = UPLOAD_DIR, public_base_url: str = PUBLIC_BASE_URL):
        self.root = pathlib.Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.base = public_base_url.rstrip("/")

    def _path(self, key: str) -> pathlib.Path:
        p = (self.root / key).resolve()
        if self.root not in p.parents:
            raise StorageError(f"Object key escapes storage root: {key!r}")
        return p

    def download(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except OSError as e:
            raise DownloadError(f"Local download failed for {key}: {e}") from e

    def upload(self, key: str, data: bytes, content_type: str) -> str:
        p = self._path(key)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)
        except OSError as e:
            raise UploadError(f"Local upload failed for {key}: {e}") from e
        return self.public_url(key)

    def public_url(self, key: str) -> str:
        return f"{self.base}/{key}"


def create_object_store(backend: str = STORAGE_BACKEND) -> ObjectStore:
    if backend == "s3":
        return S3ObjectStore()
    if backend == "local":
        return LocalObjectStore()
    raise ValueError(f"Unknown storage backend: {backend!r}")
