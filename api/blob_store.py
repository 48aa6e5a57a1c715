"""
Blob storage for job inputs and outputs.

LocalBlobStore keeps objects on a filesystem (local disk or a mounted share)
under STORAGE_PATH and hands out HMAC-signed, time-limited URLs served by
GET /blobs/{key}. Filesystem calls run in a thread so the event loop stays free.
"""

import asyncio
import hashlib
import hmac
import logging
import secrets
import shutil
import time
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import quote

from api.enums import ASSET_EXTENSIONS, AssetType, content_type_for
from config import PRESIGN_EXPIRY, PRESIGN_SECRET, PUBLIC_BASE_URL, STORAGE_PATH

logger = logging.getLogger(__name__)


class BlobStoreError(Exception):
    pass


class BlobStore(Protocol):
    async def put(self, local_path: Path, key: str, content_type: str) -> int: ...

    async def get_local(self, key: str, dest: Path) -> Path: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    def presign(self, key: str, expires_in: int = PRESIGN_EXPIRY) -> str: ...


def asset_storage_key(job_id: int, asset_type: AssetType) -> str:
    """jobs/{job_id}/{asset_type}{ext}, e.g. jobs/7/transcode_720.mp4"""
    asset_type = AssetType(asset_type)
    return f"jobs/{job_id}/{asset_type.value.lower()}{ASSET_EXTENSIONS[content_type_for(asset_type)]}"


def validate_key(key: str) -> str:
    """Reject keys that could escape the storage root."""
    if not key or key.startswith("/") or "\\" in key or "\x00" in key:
        raise BlobStoreError(f"Invalid storage key: {key!r}")
    if any(part in ("", ".", "..") for part in key.split("/")):
        raise BlobStoreError(f"Invalid storage key: {key!r}")
    return key


class LocalBlobStore:
    """Filesystem-backed BlobStore."""

    def __init__(
        self,
        root: Path = STORAGE_PATH,
        secret: str = PRESIGN_SECRET,
        base_url: str = PUBLIC_BASE_URL,
    ):
        self.root = Path(root)
        if not secret:
            # Signed URLs stop validating across restarts; fine for development
            logger.warning("VFORGE_PRESIGN_SECRET not set, using a random per-process secret")
            secret = secrets.token_hex(32)
        self._secret = secret.encode("utf-8")
        self._base_url = base_url

    def path_for(self, key: str) -> Path:
        path = (self.root / validate_key(key)).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise BlobStoreError(f"Invalid storage key: {key!r}")
        return path

    async def put(self, local_path: Path, key: str, content_type: str) -> int:
        """Copy a local file into the store. Returns the stored size in bytes."""
        target = self.path_for(key)

        def _put() -> int:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(f".{target.name}.part")
            shutil.copyfile(local_path, tmp)
            tmp.replace(target)
            return target.stat().st_size

        size = await asyncio.to_thread(_put)
        logger.debug(f"Stored {key} ({size} bytes, {content_type})")
        return size

    async def get_local(self, key: str, dest: Path) -> Path:
        source = self.path_for(key)

        def _get() -> Path:
            if not source.is_file():
                raise FileNotFoundError(f"Blob not found: {key}")
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, dest)
            return dest

        return await asyncio.to_thread(_get)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self.path_for(key).unlink, missing_ok=True)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self.path_for(key).is_file)

    def _sign(self, key: str, expires: int) -> str:
        return hmac.new(self._secret, f"{key}:{expires}".encode("utf-8"), hashlib.sha256).hexdigest()

    def presign(self, key: str, expires_in: int = PRESIGN_EXPIRY, now: Optional[float] = None) -> str:
        validate_key(key)
        expires = int(now if now is not None else time.time()) + int(expires_in)
        signature = self._sign(key, expires)
        return f"{self._base_url}/blobs/{quote(key)}?expires={expires}&signature={signature}"

    def verify_signature(self, key: str, expires: int, signature: str, now: Optional[float] = None) -> bool:
        if int(expires) < int(now if now is not None else time.time()):
            return False
        return hmac.compare_digest(self._sign(key, int(expires)), signature or "")
