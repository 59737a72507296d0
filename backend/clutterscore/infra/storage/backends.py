import asyncio
import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator
from urllib.parse import parse_qsl, urlparse

import boto3
from botocore.client import Config
from botocore.exceptions import ClientError

from clutterscore.settings import settings
from clutterscore.shared.circuit_breaker import CircuitBreaker


@dataclass
class StoredObject:
    key: str
    size: int
    content_type: str


class StorageBackend(ABC):
    """Abstract interface for archive blob storage."""

    provider: str = "unknown"

    @abstractmethod
    async def put(
        self, *, key: str, body: AsyncIterator[bytes], content_type: str
    ) -> StoredObject:
        """Persist an object and return its metadata."""

    async def put_bytes(self, *, key: str, data: bytes, content_type: str) -> StoredObject:
        async def _body() -> AsyncIterator[bytes]:
            yield data

        return await self.put(key=key, body=_body(), content_type=content_type)

    @abstractmethod
    async def read(self, *, key: str) -> bytes:
        """Return the object payload as bytes."""

    @abstractmethod
    async def delete(self, *, key: str) -> None:
        """Delete an object if it exists."""

    @abstractmethod
    async def exists(self, *, key: str) -> bool:
        """Whether an object is stored under `key`."""

    @abstractmethod
    async def list(self, *, prefix: str = "") -> list[str]:
        """List object keys under an optional prefix."""

    @abstractmethod
    async def generate_signed_get_url(self, *, key: str, expires_in: int) -> str:
        """Generate a signed URL to fetch an object."""


class LocalStorageBackend(StorageBackend):
    provider = "local"

    def __init__(self, root: Path, signing_secret: str, public_base_url: str) -> None:
        self.root = root
        self.signing_secret = signing_secret
        self.public_base_url = public_base_url.rstrip("/")

    def _resolve(self, key: str, *, create_parents: bool) -> Path:
        cleaned = key.lstrip("/")
        root_resolved = self.root.resolve()
        path = (self.root / cleaned).resolve()
        if not path.is_relative_to(root_resolved):
            raise ValueError("Invalid storage key")
        if create_parents:
            path.parent.mkdir(parents=True, exist_ok=True)
        return path

    async def put(
        self, *, key: str, body: AsyncIterator[bytes], content_type: str
    ) -> StoredObject:
        path = self._resolve(key, create_parents=True)
        size = 0
        with path.open("wb") as f:
            async for chunk in body:
                size += len(chunk)
                f.write(chunk)
        return StoredObject(key=key, size=size, content_type=content_type)

    async def read(self, *, key: str) -> bytes:
        path = self._resolve(key, create_parents=False)
        return await asyncio.to_thread(path.read_bytes)

    async def delete(self, *, key: str) -> None:
        path = self._resolve(key, create_parents=False)
        path.unlink(missing_ok=True)

    async def exists(self, *, key: str) -> bool:
        return self._resolve(key, create_parents=False).is_file()

    async def list(self, *, prefix: str = "") -> list[str]:
        base = self._resolve(prefix, create_parents=False) if prefix else self.root
        if not base.exists():
            return []
        keys: list[str] = []
        for file in base.rglob("*"):
            if file.is_file():
                keys.append(str(file.relative_to(self.root).as_posix()))
        return keys

    async def generate_signed_get_url(self, *, key: str, expires_in: int) -> str:
        expires_at = int(time.time()) + expires_in
        payload = f"{key}:{expires_at}".encode()
        signature = hmac.new(self.signing_secret.encode(), payload, hashlib.sha256).hexdigest()
        return f"{self.public_base_url}/{key.lstrip('/')}?exp={expires_at}&sig={signature}"

    def validate_signed_get_url(self, *, key: str, url: str) -> bool:
        params = dict(parse_qsl(urlparse(url).query))
        sig = params.get("sig")
        exp_raw = params.get("exp")
        if not sig or not exp_raw:
            return False
        try:
            expires_at = int(exp_raw)
        except ValueError:
            return False
        if expires_at < int(time.time()):
            return False
        expected = hmac.new(
            self.signing_secret.encode(), f"{key}:{expires_at}".encode(), hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected, sig)


class S3StorageBackend(StorageBackend):
    provider = "s3"

    def __init__(
        self,
        *,
        bucket: str,
        access_key: str,
        secret_key: str,
        region: str | None = None,
        endpoint: str | None = None,
        connect_timeout: float = 3.0,
        read_timeout: float = 10.0,
        max_attempts: int = 4,
        enable_circuit_breaker: bool = True,
        client: Any | None = None,
    ) -> None:
        if client:
            self.client = client
        else:
            session = boto3.session.Session()
            self.client = session.client(
                "s3",
                endpoint_url=endpoint,
                region_name=region,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                config=Config(
                    signature_version="s3v4",
                    connect_timeout=connect_timeout,
                    read_timeout=read_timeout,
                    retries={"mode": "standard", "max_attempts": max(1, max_attempts)},
                ),
            )
        self.bucket = bucket
        self._breaker: CircuitBreaker | None = None
        if enable_circuit_breaker:
            self._breaker = CircuitBreaker(
                name="s3",
                failure_threshold=settings.s3_circuit_failure_threshold,
                recovery_time=settings.s3_circuit_recovery_seconds,
                window_seconds=settings.s3_circuit_window_seconds,
            )

    async def put(
        self, *, key: str, body: AsyncIterator[bytes], content_type: str
    ) -> StoredObject:
        buffer = bytearray()
        async for chunk in body:
            buffer.extend(chunk)
        data = bytes(buffer)

        def _upload() -> None:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)

        await self._run_with_circuit(lambda: asyncio.to_thread(_upload))
        return StoredObject(key=key, size=len(data), content_type=content_type)

    async def read(self, *, key: str) -> bytes:
        def _download() -> bytes:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()

        return await self._run_with_circuit(lambda: asyncio.to_thread(_download))

    async def delete(self, *, key: str) -> None:
        def _delete() -> None:
            self.client.delete_object(Bucket=self.bucket, Key=key)

        await self._run_with_circuit(lambda: asyncio.to_thread(_delete))

    async def exists(self, *, key: str) -> bool:
        def _head() -> bool:
            try:
                self.client.head_object(Bucket=self.bucket, Key=key)
            except ClientError as exc:
                code = str(exc.response.get("Error", {}).get("Code", ""))
                if code in {"404", "NoSuchKey", "NotFound"}:
                    return False
                raise
            return True

        return await self._run_with_circuit(lambda: asyncio.to_thread(_head))

    async def list(self, *, prefix: str = "") -> list[str]:
        keys: list[str] = []

        def _list() -> None:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    keys.append(item["Key"])

        await self._run_with_circuit(lambda: asyncio.to_thread(_list))
        return keys

    async def generate_signed_get_url(self, *, key: str, expires_in: int) -> str:
        def _sign() -> str:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )

        return await self._run_with_circuit(lambda: asyncio.to_thread(_sign))

    async def _run_with_circuit(self, fn):
        if self._breaker is None:
            return await fn()
        return await self._breaker.call(fn)


class InMemoryStorageBackend(StorageBackend):
    provider = "memory"

    def __init__(self) -> None:
        self._objects: dict[str, tuple[bytes, str]] = {}

    async def put(
        self, *, key: str, body: AsyncIterator[bytes], content_type: str
    ) -> StoredObject:
        data = bytearray()
        async for chunk in body:
            data.extend(chunk)
        payload = bytes(data)
        self._objects[key] = (payload, content_type)
        return StoredObject(key=key, size=len(payload), content_type=content_type)

    async def read(self, *, key: str) -> bytes:
        payload, _ = self._objects[key]
        return payload

    async def delete(self, *, key: str) -> None:
        self._objects.pop(key, None)

    async def exists(self, *, key: str) -> bool:
        return key in self._objects

    async def list(self, *, prefix: str = "") -> list[str]:
        return [k for k in self._objects if k.startswith(prefix)]

    async def generate_signed_get_url(self, *, key: str, expires_in: int) -> str:
        expires_at = int(time.time()) + expires_in
        return f"https://example.invalid/{key}?exp={expires_at}"
