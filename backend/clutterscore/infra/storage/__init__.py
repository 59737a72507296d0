from pathlib import Path

from clutterscore.infra.storage.backends import (
    InMemoryStorageBackend,
    LocalStorageBackend,
    S3StorageBackend,
    StorageBackend,
    StoredObject,
)
from clutterscore.settings import settings

__all__ = [
    "InMemoryStorageBackend",
    "LocalStorageBackend",
    "S3StorageBackend",
    "StorageBackend",
    "StoredObject",
    "new_storage_backend",
    "configured_storage_backends",
]


def new_storage_backend(provider: str | None = None) -> StorageBackend:
    backend = (provider or settings.archive_storage_backend).lower()
    if backend == "local":
        return LocalStorageBackend(
            Path(settings.archive_local_root),
            signing_secret=settings.archive_signing_secret,
            public_base_url=settings.archive_public_base_url,
        )
    if backend == "s3":
        if not settings.s3_bucket:
            raise RuntimeError("S3_BUCKET is required when ARCHIVE_STORAGE_BACKEND=s3")
        if not settings.s3_access_key or not settings.s3_secret_key:
            raise RuntimeError("S3_ACCESS_KEY and S3_SECRET_KEY are required for S3 storage")
        return S3StorageBackend(
            bucket=settings.s3_bucket,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            region=settings.s3_region,
            endpoint=settings.s3_endpoint,
            connect_timeout=settings.s3_connect_timeout_seconds,
            read_timeout=settings.s3_read_timeout_seconds,
            max_attempts=settings.s3_max_attempts,
        )
    if backend == "memory":
        return InMemoryStorageBackend()
    raise RuntimeError(f"Unsupported storage backend: {backend}")


def configured_storage_backends() -> dict[str, StorageBackend]:
    """Backends keyed by provider name; S3 joins only when its bucket is configured."""

    backends: dict[str, StorageBackend] = {"local": new_storage_backend("local")}
    if settings.s3_bucket and settings.s3_access_key and settings.s3_secret_key:
        backends["s3"] = new_storage_backend("s3")
    primary = settings.archive_storage_backend
    if primary not in backends:
        backends[primary] = new_storage_backend(primary)
    return backends
