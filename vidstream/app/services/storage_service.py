"""
Object storage for renditions, manifests and auxiliary outputs.

Two backends share one interface:
- S3 (and S3-compatible endpoints) through boto3
- Local filesystem, used for single-host deployments and tests
"""
import asyncio
import logging
import mimetypes
import os
import shutil
from pathlib import Path
from typing import List, Optional

import boto3
from boto3.exceptions import Boto3Error
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from vidstream.app.config import Settings
from vidstream.app.errors import StorageError
from vidstream.app.services.base_service import BaseService

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".mpd": "application/dash+xml",
    ".ts": "video/mp2t",
    ".m4s": "video/iso.segment",
    ".mp4": "video/mp4",
    ".vtt": "text/vtt",
    ".jpg": "image/jpeg",
}
STORAGE_SCHEME = "storage://"


def guess_content_type(path: str) -> str:
    ext = os.path.splitext(path)[1].lower()
    return CONTENT_TYPES.get(ext) or mimetypes.guess_type(path)[0] or "application/octet-stream"


def storage_key_for(location: str) -> Optional[str]:
    """
    Storage key named by an input location, or None for a local path or URL.

    ``storage://uploads/a.mp4`` names the key ``uploads/a.mp4``.
    """
    if location.startswith(STORAGE_SCHEME):
        return location[len(STORAGE_SCHEME):].lstrip("/") or None
    return None


class StorageBackend(BaseService):
    """Upload/download interface with per-operation retry."""

    def __init__(self, max_retries: int = 3, public_base_url: str = ""):
        self.max_retries = max_retries
        self.public_base_url = public_base_url.rstrip("/")

    async def _put_file(self, local_path: str, key: str, content_type: str) -> None:
        raise NotImplementedError

    async def _put_bytes(self, data: bytes, key: str, content_type: str) -> None:
        raise NotImplementedError

    async def _get_file(self, key: str, local_path: str) -> None:
        raise NotImplementedError

    async def exists(self, key: str) -> bool:
        raise NotImplementedError

    async def delete_prefix(self, prefix: str) -> int:
        raise NotImplementedError

    async def readable_url(self, key: str, expires_in: int = 3600) -> str:
        """Location ffprobe can read the object from without downloading it."""
        raise NotImplementedError

    def url_for(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return key

    async def _with_retries(self, description: str, operation):
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                return await operation()
            except (OSError, ClientError, BotoCoreError, Boto3Error) as e:
                last_error = e
                logger.warning(f"{description} failed (attempt {attempt + 1}/{self.max_retries}): {e}")
                if attempt < self.max_retries - 1:
                    # Wait before retry with exponential backoff
                    await asyncio.sleep(2 ** attempt)
        raise StorageError(f"{description} failed after {self.max_retries} attempts: {last_error}")

    async def upload_file(self, local_path: str, key: str, content_type: Optional[str] = None) -> str:
        ctype = content_type or guess_content_type(local_path)
        await self._with_retries(f"Upload of {key}", lambda: self._put_file(local_path, key, ctype))
        return key

    async def upload_bytes(self, data: bytes, key: str, content_type: Optional[str] = None) -> str:
        ctype = content_type or guess_content_type(key)
        await self._with_retries(f"Upload of {key}", lambda: self._put_bytes(data, key, ctype))
        return key

    async def upload_files(self, local_paths: List[str], local_root: str, key_prefix: str) -> List[str]:
        """Upload files keeping their layout relative to ``local_root``."""
        keys = []
        for path in local_paths:
            rel = os.path.relpath(path, local_root).replace(os.sep, "/")
            keys.append(await self.upload_file(path, f"{key_prefix.rstrip('/')}/{rel}"))
        return keys

    async def download_file(self, key: str, local_path: str) -> str:
        os.makedirs(os.path.dirname(local_path) or ".", exist_ok=True)
        await self._with_retries(f"Download of {key}", lambda: self._get_file(key, local_path))
        return local_path


class S3StorageBackend(StorageBackend):
    """boto3-backed storage"""

    def __init__(self, bucket_name: str, region: str = "us-east-1", access_key_id: str = "",
                 secret_access_key: str = "", endpoint_url: str = "", max_retries: int = 3,
                 public_base_url: str = "", s3_client=None):
        super().__init__(max_retries, public_base_url)
        self.bucket_name = bucket_name
        self.region = region
        self.s3_client = s3_client or self._init_s3_client(access_key_id, secret_access_key, endpoint_url)

    def _init_s3_client(self, access_key_id: str, secret_access_key: str, endpoint_url: str):
        config = Config(
            region_name=self.region,
            retries={
                'max_attempts': 3,
                'mode': 'adaptive'
            },
            max_pool_connections=50
        )
        kwargs = {"config": config}
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        if access_key_id and secret_access_key:
            kwargs["aws_access_key_id"] = access_key_id
            kwargs["aws_secret_access_key"] = secret_access_key
        # Otherwise the default credential chain applies (IAM roles, environment, etc.)
        return boto3.client("s3", **kwargs)

    async def _put_file(self, local_path: str, key: str, content_type: str) -> None:
        await asyncio.to_thread(
            self.s3_client.upload_file,
            local_path,
            self.bucket_name,
            key,
            ExtraArgs={"ContentType": content_type},
        )

    async def _put_bytes(self, data: bytes, key: str, content_type: str) -> None:
        await asyncio.to_thread(
            self.s3_client.put_object,
            Bucket=self.bucket_name,
            Key=key,
            Body=data,
            ContentType=content_type,
        )

    async def _get_file(self, key: str, local_path: str) -> None:
        await asyncio.to_thread(self.s3_client.download_file, self.bucket_name, key, local_path)

    async def exists(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self.s3_client.head_object, Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"Failed to check {key}: {e}")

    async def readable_url(self, key: str, expires_in: int = 3600) -> str:
        try:
            return await asyncio.to_thread(
                self.s3_client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": key},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to sign {key}: {e}")

    async def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        try:
            paginator = self.s3_client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                objects = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
                if not objects:
                    continue
                await asyncio.to_thread(
                    self.s3_client.delete_objects,
                    Bucket=self.bucket_name,
                    Delete={"Objects": objects},
                )
                deleted += len(objects)
        except ClientError as e:
            raise StorageError(f"Failed to delete prefix {prefix}: {e}")
        return deleted


class LocalStorageBackend(StorageBackend):
    """Stores objects as files under a root directory"""

    def __init__(self, root: str, max_retries: int = 3, public_base_url: str = ""):
        super().__init__(max_retries, public_base_url)
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents and path != self.root.resolve():
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    async def _put_file(self, local_path: str, key: str, content_type: str) -> None:
        target = self._path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copyfile, local_path, target)

    async def _put_bytes(self, data: bytes, key: str, content_type: str) -> None:
        target = self._path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_bytes, data)

    async def _get_file(self, key: str, local_path: str) -> None:
        await asyncio.to_thread(shutil.copyfile, self._path(key), local_path)

    async def exists(self, key: str) -> bool:
        return self._path(key).exists()

    async def readable_url(self, key: str, expires_in: int = 3600) -> str:
        return str(self._path(key))

    async def delete_prefix(self, prefix: str) -> int:
        target = self._path(prefix)
        if target.is_file():
            target.unlink()
            return 1
        if not target.exists():
            return 0
        count = sum(1 for p in target.rglob("*") if p.is_file())
        await asyncio.to_thread(shutil.rmtree, target)
        return count


def create_storage_backend(settings: Settings) -> StorageBackend:
    if settings.STORAGE_BACKEND == "local":
        return LocalStorageBackend(
            settings.LOCAL_STORAGE_ROOT,
            max_retries=settings.STORAGE_UPLOAD_RETRIES,
            public_base_url=settings.PUBLIC_BASE_URL,
        )
    return S3StorageBackend(
        bucket_name=settings.S3_BUCKET_NAME,
        region=settings.S3_REGION,
        access_key_id=settings.S3_ACCESS_KEY_ID,
        secret_access_key=settings.S3_SECRET_ACCESS_KEY,
        endpoint_url=settings.S3_ENDPOINT_URL,
        max_retries=settings.STORAGE_UPLOAD_RETRIES,
        public_base_url=settings.PUBLIC_BASE_URL,
    )
