# storage.py
# ------------------------------------------------------------------------------------
#  Persistence for generated images. Ideogram result URLs expire, so tools can
#  copy the bytes somewhere durable:
#    * local  -> files under LOCAL_SAVE_DIR, served back via /files/local/...
#    * r2     -> Cloudflare R2 objects with public or presigned URLs
# ------------------------------------------------------------------------------------

import asyncio
import base64
import binascii
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

import httpx
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, Field

from constants import IMAGE_DOWNLOAD_TIMEOUT, MAX_IMAGE_BYTES
from errors import download_failed_error, storage_error
from ideogram_client import detect_image_type, extension_for
from r2_client import R2Client

logger = logging.getLogger(__name__)

LOCAL_PREFIX = "local"
R2_PREFIX = "images"


class SavedImage(BaseModel):
    key: str
    filename: str
    url: str
    original_url: str
    size_bytes: int
    mime_type: str
    file_path: Optional[str] = None


class BatchSaveResult(BaseModel):
    saved: List[SavedImage] = Field(default_factory=list)
    failed: List[Dict[str, str]] = Field(default_factory=list)
    total: int = 0
    success_count: int = 0
    failure_count: int = 0


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-").replace("+", "_")


class StorageService:
    def __init__(
        self,
        backend: str = "local",
        storage_dir: str = "./ideogram_images",
        enabled: bool = True,
        public_base_url: str = "http://localhost:8000",
        r2: Optional[R2Client] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        download_timeout: float = IMAGE_DOWNLOAD_TIMEOUT,
    ):
        if backend == "r2" and r2 is None:
            raise ValueError("the r2 backend needs an R2Client")
        self.backend = backend
        self.storage_dir = os.path.abspath(storage_dir)
        self.enabled = enabled
        self.public_base_url = public_base_url.rstrip("/")
        self.r2 = r2
        self._transport = transport
        self._download_timeout = download_timeout
        logger.debug(
            "StorageService initialized backend=%s dir=%s enabled=%s",
            backend, self.storage_dir, enabled,
        )

    @classmethod
    def from_settings(cls, settings) -> "StorageService":
        r2 = R2Client.from_settings(settings) if settings.storage == "r2" else None
        return cls(
            backend=settings.storage,
            storage_dir=settings.local_save_dir,
            enabled=settings.enable_local_save,
            public_base_url=settings.public_base_url,
            r2=r2,
        )

    # ---------- Saving ----------

    async def download_image(
        self,
        url: str,
        prefix: Optional[str] = None,
        filename: Optional[str] = None,
        subdir: Optional[str] = None,
    ) -> SavedImage:
        if not self.enabled:
            raise storage_error("download", "Local storage is disabled")

        logger.debug("Downloading image url=%s", url)
        try:
            async with httpx.AsyncClient(
                timeout=self._download_timeout, transport=self._transport, follow_redirects=True
            ) as client:
                r = await client.get(url)
        except httpx.HTTPError as e:
            raise download_failed_error(url, str(e) or type(e).__name__)
        if r.status_code >= 300:
            raise download_failed_error(url, f"HTTP {r.status_code}")

        return await self._store(r.content, url, prefix, filename, subdir, operation="download")

    async def download_images(
        self, urls: List[str], prefix: Optional[str] = None, subdir: Optional[str] = None
    ) -> BatchSaveResult:
        """Download every url concurrently; failures are collected, not raised."""
        result = BatchSaveResult(total=len(urls))
        if not self.enabled:
            result.failed = [{"url": u, "error": "Local storage is disabled"} for u in urls]
            result.failure_count = len(urls)
            return result

        async def one(index: int, url: str):
            name = f"{prefix}_{index + 1}" if prefix else f"image_{index + 1}"
            try:
                return url, await self.download_image(url, prefix=name, subdir=subdir), None
            except Exception as e:
                return url, None, str(e) or "Unknown error"

        for url, saved, error in await asyncio.gather(*(one(i, u) for i, u in enumerate(urls))):
            if saved is not None:
                result.saved.append(saved)
            else:
                result.failed.append({"url": url, "error": error})
        result.success_count = len(result.saved)
        result.failure_count = len(result.failed)

        logger.info(
            "Batch download completed total=%d success=%d failed=%d",
            result.total, result.success_count, result.failure_count,
        )
        return result

    async def save_image(
        self,
        data: Union[bytes, str],
        prefix: Optional[str] = None,
        filename: Optional[str] = None,
        subdir: Optional[str] = None,
    ) -> SavedImage:
        """Persist raw bytes (or a base64 string)."""
        if not self.enabled:
            raise storage_error("save", "Local storage is disabled")
        if isinstance(data, str):
            try:
                data = base64.b64decode(data)
            except (binascii.Error, ValueError):
                raise storage_error("save", "Data is not valid base64")
        return await self._store(data, "local", prefix, filename, subdir, operation="save")

    async def _store(
        self,
        data: bytes,
        original_url: str,
        prefix: Optional[str],
        filename: Optional[str],
        subdir: Optional[str],
        operation: str,
    ) -> SavedImage:
        if len(data) > MAX_IMAGE_BYTES:
            raise storage_error(
                operation,
                f"Image size {len(data) / (1024 * 1024):.2f}MB exceeds maximum 10MB",
            )

        mime_type = detect_image_type(data)
        name = self._filename(prefix, filename, extension_for(mime_type))

        try:
            if self.backend == "r2":
                key = "/".join(p for p in (R2_PREFIX, subdir, name) if p)
                url = await asyncio.to_thread(self.r2.upload, data, key, mime_type)
                file_path = None
            else:
                target_dir = os.path.join(self.storage_dir, subdir) if subdir else self.storage_dir
                os.makedirs(target_dir, exist_ok=True)
                file_path = os.path.join(target_dir, name)
                with open(file_path, "wb") as f:
                    f.write(data)
                key = "/".join(p for p in (LOCAL_PREFIX, subdir, name) if p)
                url = f"{self.public_base_url}/files/{key}"
        except (OSError, BotoCoreError, ClientError) as e:
            raise storage_error("write", f"Failed to write file: {e}")

        logger.info("Image saved key=%s size=%d", key, len(data))
        return SavedImage(
            key=key,
            filename=name,
            url=url,
            original_url=original_url,
            size_bytes=len(data),
            mime_type=mime_type,
            file_path=file_path,
        )

    @staticmethod
    def _filename(prefix: Optional[str], filename: Optional[str], extension: str) -> str:
        if filename:
            return f"{filename}.{extension}"
        return f"{prefix or 'ideogram'}_{_timestamp()}_{uuid.uuid4().hex[:8]}.{extension}"

    # ---------- Lookup ----------

    def local_path(self, key: str) -> Optional[str]:
        """Filesystem path for a `local/...` key, or None if it escapes the storage dir."""
        if not key.startswith(f"{LOCAL_PREFIX}/"):
            return None
        relative = key.split("/", 1)[1]
        path = os.path.realpath(os.path.join(self.storage_dir, relative))
        root = os.path.realpath(self.storage_dir)
        if os.path.commonpath([path, root]) != root:
            return None
        return path

    def _dir(self, subdir: Optional[str]) -> str:
        return os.path.join(self.storage_dir, subdir) if subdir else self.storage_dir

    def _r2_prefix(self, subdir: Optional[str]) -> str:
        return "/".join(p for p in (R2_PREFIX, subdir) if p) + "/"

    def file_exists(self, filename: str, subdir: Optional[str] = None) -> bool:
        if self.backend == "r2":
            return self.r2.exists(self._r2_prefix(subdir) + filename)
        return os.path.isfile(os.path.join(self._dir(subdir), filename))

    def delete_file(self, filename: str, subdir: Optional[str] = None) -> bool:
        if self.backend == "r2":
            return self.r2.delete(self._r2_prefix(subdir) + filename)
        try:
            os.remove(os.path.join(self._dir(subdir), filename))
        except FileNotFoundError:
            return False
        except OSError as e:
            raise storage_error("delete", f"Failed to delete file: {filename} ({e})")
        logger.debug("File deleted filename=%s", filename)
        return True

    def list_files(self, subdir: Optional[str] = None) -> List[str]:
        if self.backend == "r2":
            prefix = self._r2_prefix(subdir)
            return [
                key[len(prefix):]
                for key, _ in self.r2.list_objects(prefix)
                if "/" not in key[len(prefix):]
            ]
        try:
            with os.scandir(self._dir(subdir)) as entries:
                return sorted(e.name for e in entries if e.is_file())
        except FileNotFoundError:
            return []
        except OSError as e:
            raise storage_error("list", f"Failed to list storage directory ({e})")

    def storage_size(self, subdir: Optional[str] = None) -> int:
        """Total bytes of the files directly under the storage dir (or subdir)."""
        if self.backend == "r2":
            prefix = self._r2_prefix(subdir)
            return sum(
                size for key, size in self.r2.list_objects(prefix)
                if "/" not in key[len(prefix):]
            )
        try:
            with os.scandir(self._dir(subdir)) as entries:
                return sum(e.stat().st_size for e in entries if e.is_file())
        except FileNotFoundError:
            return 0
        except OSError as e:
            raise storage_error("size", f"Failed to calculate storage size ({e})")
