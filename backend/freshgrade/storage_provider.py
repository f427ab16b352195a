"""Pluggable object storage providers for assignment images."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol

from freshgrade.errors import NotFoundError
from freshgrade.settings import settings
from freshgrade.storage import ensure_dir, image_key


class StorageProvider(Protocol):
    async def put_image(self, assignment_id: int, filename: str, data: bytes, content_type: str) -> str:
        """Persist image bytes and return the object key."""

    async def read_image(self, assignment_id: int, filename: str) -> bytes:
        """Return stored image bytes, raising NotFoundError when absent."""


class LocalDiskProvider:
    """Stores objects under data_path/uploads for local development."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = ensure_dir(base_dir)

    def _resolve(self, key: str) -> Path:
        clean_key = key.strip("/")
        destination = (self.base_dir / clean_key).resolve()
        if self.base_dir.resolve() not in destination.parents:
            raise ValueError("Invalid storage key")
        return destination

    async def put_image(self, assignment_id: int, filename: str, data: bytes, content_type: str) -> str:
        del content_type
        key = image_key(assignment_id, filename)
        destination = self._resolve(key)
        destination.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(destination.write_bytes, data)
        return key

    async def read_image(self, assignment_id: int, filename: str) -> bytes:
        key = image_key(assignment_id, filename)
        try:
            return await asyncio.to_thread(self._resolve(key).read_bytes)
        except FileNotFoundError as exc:
            raise NotFoundError(f"Image not found: {key}") from exc


class S3Provider:
    """S3-compatible object storage provider."""

    def __init__(
        self,
        bucket: str,
        access_key_id: str,
        secret_access_key: str,
        endpoint_url: str | None = None,
        region: str | None = None,
        prefix: str = "uploads",
    ) -> None:
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        import boto3

        self._client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )

    def _key(self, assignment_id: int, filename: str) -> str:
        key = image_key(assignment_id, filename)
        return f"{self.prefix}/{key}" if self.prefix else key

    async def put_image(self, assignment_id: int, filename: str, data: bytes, content_type: str) -> str:
        key = self._key(assignment_id, filename)
        await asyncio.to_thread(
            self._client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        return key

    async def read_image(self, assignment_id: int, filename: str) -> bytes:
        key = self._key(assignment_id, filename)
        try:
            response = await asyncio.to_thread(self._client.get_object, Bucket=self.bucket, Key=key)
        except self._client.exceptions.NoSuchKey as exc:
            raise NotFoundError(f"Image not found: {key}") from exc
        body = response["Body"]
        return await asyncio.to_thread(body.read)


_provider: StorageProvider | None = None


def _create_provider() -> StorageProvider:
    backend = settings.storage_backend.lower().strip()
    if backend == "s3":
        if not settings.s3_bucket or not settings.s3_access_key_id or not settings.s3_secret_access_key:
            raise RuntimeError("S3 storage backend requires S3_BUCKET, S3_ACCESS_KEY_ID, and S3_SECRET_ACCESS_KEY")
        return S3Provider(
            bucket=settings.s3_bucket,
            access_key_id=settings.s3_access_key_id,
            secret_access_key=settings.s3_secret_access_key,
            endpoint_url=settings.s3_endpoint_url,
            region=settings.s3_region,
        )
    return LocalDiskProvider(settings.data_path / "uploads")


def get_storage_provider() -> StorageProvider:
    global _provider
    if _provider is None:
        _provider = _create_provider()
    return _provider


def reset_storage_provider() -> None:
    global _provider
    _provider = None
