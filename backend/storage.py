# storage.py — File storage backends (local filesystem / S3-compatible)
import os
import hmac
import time
import hashlib
import logging
import secrets
import functools as ft
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

logger = logging.getLogger("teamspace.storage")

CHUNK_SIZE = 64 * 1024


class StorageError(Exception):
    pass


@dataclass(frozen=True)
class UploadResult:
    key: str
    size: int
    mime_type: str


class StorageProvider(ABC):
    @abstractmethod
    def upload(self, key: str, data: bytes, mime_type: str) -> UploadResult:
        """Store bytes under key"""

    @abstractmethod
    def download(self, key: str) -> bytes:
        """Read the whole object"""

    @abstractmethod
    def stream(self, key: str) -> Iterator[bytes]:
        """Read the object in chunks"""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the object; missing objects are ignored"""

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def get_signed_url(self, key: str, expires_in: int = 3600) -> str:
        """Time-limited URL for direct download"""


# ============================================================
# LOCAL FILESYSTEM
# ============================================================

class LocalStorageProvider(StorageProvider):
    def __init__(self, root: str, signing_key: str, base_url: str = "/api/v1/files/local"):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._signing_key = signing_key.encode("utf-8")
        self.base_url = base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def upload(self, key: str, data: bytes, mime_type: str) -> UploadResult:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as err:
            logger.error(f"[LocalStorageProvider.upload] Write failed | {{'key': '{key}'}}", exc_info=True)
            raise StorageError(str(err)) from err
        return UploadResult(key=key, size=len(data), mime_type=mime_type)

    def download(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as err:
            raise StorageError(f"File not found: {key}") from err

    def stream(self, key: str) -> Iterator[bytes]:
        path = self._path(key)
        if not path.is_file():
            raise StorageError(f"File not found: {key}")

        def _chunks():
            with path.open("rb") as fh:
                while True:
                    chunk = fh.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    yield chunk

        return _chunks()

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def _signature(self, key: str, expires: int) -> str:
        return hmac.new(self._signing_key, f"{key}:{expires}".encode("utf-8"), hashlib.sha256).hexdigest()

    def get_signed_url(self, key: str, expires_in: int = 3600) -> str:
        expires = int(time.time()) + expires_in
        return f"{self.base_url}/{quote(key)}?expires={expires}&signature={self._signature(key, expires)}"

    def verify_signature(self, key: str, expires: int, signature: str) -> bool:
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._signature(key, expires), signature)


# ============================================================
# S3-COMPATIBLE OBJECT STORE
# ============================================================

class S3StorageProvider(StorageProvider):
    def __init__(
        self,
        bucket: str,
        endpoint_url: str = None,
        region: str = None,
        access_key_id: str = None,
        secret_access_key: str = None,
        force_path_style: bool = False,
    ):
        self.bucket = bucket
        self._client_kwargs = {
            "endpoint_url": endpoint_url or None,
            "region_name": region or None,
            "aws_access_key_id": access_key_id or None,
            "aws_secret_access_key": secret_access_key or None,
            "config": Config(s3={"addressing_style": "path" if force_path_style else "auto"}),
        }

    @ft.cached_property
    def client(self):
        return boto3.client("s3", **self._client_kwargs)

    def upload(self, key: str, data: bytes, mime_type: str) -> UploadResult:
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=mime_type)
        except ClientError as err:
            logger.error(
                f"[S3StorageProvider.upload] AWS upload error | "
                f"{{'bucket': '{self.bucket}', 'key': '{key}', 'error': '{err}'}}",
                exc_info=True,
            )
            raise StorageError(f'AWS Error: "{err}"') from err
        return UploadResult(key=key, size=len(data), mime_type=mime_type)

    def _get_body(self, key: str):
        try:
            return self.client.get_object(Bucket=self.bucket, Key=key)["Body"]
        except ClientError as err:
            logger.error(
                f"[S3StorageProvider.get_object] AWS read error | "
                f"{{'bucket': '{self.bucket}', 'key': '{key}', 'error': '{err}'}}",
                exc_info=True,
            )
            raise StorageError(f'AWS Error: "{err}" ({key})') from err

    def download(self, key: str) -> bytes:
        return self._get_body(key).read()

    def stream(self, key: str) -> Iterator[bytes]:
        body = self._get_body(key)

        def _chunks():
            try:
                yield from body.iter_chunks(chunk_size=CHUNK_SIZE)
            finally:
                body.close()

        return _chunks()

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as err:
            logger.error(
                f"[S3StorageProvider.delete] AWS delete error | "
                f"{{'bucket': '{self.bucket}', 'key': '{key}', 'error': '{err}'}}",
                exc_info=True,
            )
            raise StorageError(f'AWS Error: "{err}"') from err

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as err:
            if err.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f'AWS Error: "{err}"') from err

    def get_signed_url(self, key: str, expires_in: int = 3600) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except ClientError as err:
            raise StorageError(f'AWS Error: "{err}"') from err


# ============================================================
# PROVIDER SELECTION
# ============================================================

def build_storage() -> StorageProvider:
    """Construct the backend named by STORAGE_TYPE (local | s3)"""
    storage_type = os.getenv("STORAGE_TYPE", "local").lower()
    if storage_type == "s3":
        bucket = os.getenv("S3_BUCKET", "")
        if not bucket:
            raise StorageError("STORAGE_TYPE=s3 requires S3_BUCKET")
        logger.info(f"Using S3 storage provider (bucket={bucket})")
        return S3StorageProvider(
            bucket=bucket,
            endpoint_url=os.getenv("S3_ENDPOINT"),
            region=os.getenv("S3_REGION", "us-east-1"),
            access_key_id=os.getenv("S3_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("S3_SECRET_ACCESS_KEY"),
            force_path_style=os.getenv("S3_FORCE_PATH_STYLE", "false").lower() == "true",
        )
    if storage_type != "local":
        raise StorageError(f"Unknown STORAGE_TYPE: {storage_type}")

    root = os.getenv("LOCAL_STORAGE_PATH", "./uploads")
    signing_key = os.getenv("STORAGE_SIGNING_KEY") or secrets.token_urlsafe(32)
    logger.info(f"Using local storage provider (root={root})")
    return LocalStorageProvider(root, signing_key)


@ft.lru_cache(maxsize=1)
def get_storage() -> StorageProvider:
    """FastAPI dependency: one provider per process, built on first use"""
    return build_storage()
