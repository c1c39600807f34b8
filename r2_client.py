# r2_client.py
import logging
from typing import Iterator, List, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


def normalize_endpoint(endpoint: Optional[str], bucket: Optional[str]) -> Optional[str]:
    """
    endpoint_url MUST be the S3 API endpoint (the cloudflarestorage.com host),
    not the public/dev domain. Strip trailing slashes and an accidental
    bucket suffix.
    """
    if not endpoint:
        return endpoint
    endpoint = endpoint.rstrip("/")
    if bucket and endpoint.endswith(f"/{bucket}"):
        endpoint = endpoint[: -(len(bucket) + 1)]
    return endpoint


class R2Client:
    """Cloudflare R2 bucket access through the S3 API (region "auto", path-style)."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        public_base: Optional[str] = None,
        s3=None,
    ):
        self.bucket = bucket
        self.public_base = (public_base or "").rstrip("/")
        self._s3 = s3 or boto3.client(
            "s3",
            endpoint_url=normalize_endpoint(endpoint_url, bucket),
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
            region_name="auto",
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )

    @classmethod
    def from_settings(cls, settings) -> "R2Client":
        return cls(
            bucket=settings.r2_bucket,
            endpoint_url=settings.r2_endpoint_url,
            access_key_id=settings.r2_access_key_id,
            secret_access_key=settings.r2_secret_access_key,
            public_base=settings.r2_public_base,
        )

    def url_for(self, key: str, expires: int = 3600) -> str:
        """
        Prefer the configured public base (custom domain / r2.dev) for read
        URLs; fall back to a presigned GET URL.
        """
        if self.public_base:
            return f"{self.public_base}/{key.lstrip('/')}"
        return self._s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires,
        )

    def upload(self, data: bytes, key: str, content_type: str = "image/png") -> str:
        """PUT the object and return the URL clients should fetch it from."""
        self._s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        logger.debug("Uploaded to R2 key=%s size=%d", key, len(data))
        return self.url_for(key)

    def get_object_stream(self, key: str) -> Tuple[Iterator[bytes], str]:
        """(chunk iterator, content type) for the /files/{key} streaming route."""
        obj = self._s3.get_object(Bucket=self.bucket, Key=key)
        body = obj["Body"]
        chunks = iter(lambda: body.read(1024 * 1024), b"")
        return chunks, obj.get("ContentType", "application/octet-stream")

    def exists(self, key: str) -> bool:
        try:
            self._s3.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        return True

    def delete(self, key: str) -> bool:
        if not self.exists(key):
            return False
        self._s3.delete_object(Bucket=self.bucket, Key=key)
        return True

    def list_objects(self, prefix: str = "") -> List[Tuple[str, int]]:
        """(key, size) for every object under `prefix`."""
        out: List[Tuple[str, int]] = []
        paginator = self._s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for item in page.get("Contents", []):
                out.append((item["Key"], item.get("Size", 0)))
        return out
