# ideogram_client.py
import base64
import binascii
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import httpx

from constants import (
    API_BASE_URL,
    API_KEY_HEADER,
    DEFAULT_EDIT_MODEL,
    DEFAULT_MAGIC_PROMPT,
    DEFAULT_NUM_IMAGES,
    DEFAULT_RENDERING_SPEED,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_STYLE_TYPE,
    EDIT_ENDPOINT,
    GENERATE_ENDPOINT,
    IMAGE_DOWNLOAD_TIMEOUT,
    LONG_REQUEST_TIMEOUT,
    MAX_IMAGE_BYTES,
)
from errors import (
    IdeogramError,
    from_response,
    from_transport_error,
    image_too_large_error,
    invalid_image_error,
    missing_api_key_error,
    network_error,
    wrap_error,
)
from retry import with_retry

logger = logging.getLogger(__name__)

ImageInput = Union[bytes, str]

_DATA_URI = re.compile(r"^data:([^;,]+);base64,(.+)$", re.DOTALL)

_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp"}


@dataclass
class PreparedImage:
    data: bytes
    content_type: str
    filename: str


def detect_image_type(data: bytes) -> str:
    """Sniff png/jpeg/webp from magic bytes; anything else is treated as png."""
    if data[:4] == b"\x89PNG":
        return "image/png"
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"


def extension_for(content_type: str) -> str:
    return _EXTENSIONS.get(content_type, "png")


def normalize_aspect_ratio(ratio: Optional[str]) -> Optional[str]:
    # "16:9" -> "16x9"
    if not ratio:
        return None
    return ratio.replace(":", "x")


def _check_size(data: bytes) -> None:
    if len(data) > MAX_IMAGE_BYTES:
        raise image_too_large_error(len(data), MAX_IMAGE_BYTES)


class IdeogramClient:
    """
    Thin async wrapper over the Ideogram HTTP API.

    Every call is retried on transient failures (rate limits, 5xx, network
    errors); non-2xx responses come back as IdeogramError.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = API_BASE_URL,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        long_timeout: float = LONG_REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_options: Optional[Dict[str, Any]] = None,
    ):
        if not api_key:
            raise missing_api_key_error()
        self._api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.long_timeout = long_timeout
        self._transport = transport
        self._retry_options = retry_options or {}
        logger.debug("IdeogramClient initialized base_url=%s timeout=%ss", self.base_url, timeout)

    def masked_api_key(self) -> str:
        key = self._api_key
        if len(key) <= 8:
            return "****"
        return f"{key[:4]}...{key[-4:]}"

    def _headers(self) -> Dict[str, str]:
        return {API_KEY_HEADER: self._api_key}

    def _http(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=timeout,
            transport=self._transport,
        )

    # ---------- Public API ----------

    async def generate(
        self,
        prompt: str,
        negative_prompt: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
        num_images: int = DEFAULT_NUM_IMAGES,
        seed: Optional[int] = None,
        rendering_speed: str = DEFAULT_RENDERING_SPEED,
        magic_prompt: str = DEFAULT_MAGIC_PROMPT,
        style_type: str = DEFAULT_STYLE_TYPE,
    ) -> Dict[str, Any]:
        """
        Text-to-image via the V3 endpoint. Returns the raw response body:
        {"created": ..., "data": [{"url", "seed", "is_image_safe", ...}]}
        """
        payload: Dict[str, Any] = {
            "prompt": prompt,
            "num_images": num_images,
            "rendering_speed": rendering_speed,
            "magic_prompt": magic_prompt,
            "style_type": style_type,
        }
        ratio = normalize_aspect_ratio(aspect_ratio)
        if ratio is not None:
            payload["aspect_ratio"] = ratio
        if negative_prompt is not None:
            payload["negative_prompt"] = negative_prompt
        if seed is not None:
            payload["seed"] = seed

        timeout = self.long_timeout if rendering_speed == "QUALITY" else self.timeout
        return await self._post(GENERATE_ENDPOINT, timeout, "generate", json=payload)

    async def edit(
        self,
        prompt: str,
        image: ImageInput,
        mask: ImageInput,
        model: str = DEFAULT_EDIT_MODEL,
        num_images: int = DEFAULT_NUM_IMAGES,
        seed: Optional[int] = None,
        magic_prompt: str = DEFAULT_MAGIC_PROMPT,
        style_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Inpaint `image` where `mask` is black, keeping white areas."""
        source = await self.prepare_image(image, "image")
        mask_image = await self.prepare_image(mask, "mask")

        data: Dict[str, str] = {
            "prompt": prompt,
            "model": model,
            "magic_prompt_option": magic_prompt,
            "num_images": str(num_images),
        }
        if seed is not None:
            data["seed"] = str(seed)
        if style_type is not None:
            data["style_type"] = style_type

        files = {
            "image_file": (source.filename, source.data, source.content_type),
            "mask": (mask_image.filename, mask_image.data, mask_image.content_type),
        }
        return await self._post(
            EDIT_ENDPOINT, self.long_timeout, "edit", data=data, files=files
        )

    async def prepare_image(self, value: ImageInput, field: str = "image") -> PreparedImage:
        """Turn bytes, a base64 data URI or an http(s) URL into upload-ready bytes."""
        if isinstance(value, (bytes, bytearray)):
            data = bytes(value)
            _check_size(data)
            content_type = detect_image_type(data)
        elif isinstance(value, str) and value.startswith("data:"):
            match = _DATA_URI.match(value)
            if not match:
                raise invalid_image_error(f"Invalid base64 data URL format for {field}", field)
            content_type = match.group(1)
            try:
                data = base64.b64decode(match.group(2), validate=False)
            except (binascii.Error, ValueError):
                raise invalid_image_error(f"Invalid base64 data for {field}", field)
            _check_size(data)
        elif isinstance(value, str) and value.startswith(("http://", "https://")):
            data, content_type = await self._download(value)
        else:
            raise invalid_image_error(
                f"Unsupported image input format for {field}. "
                "Provide a URL, base64 data URL, or raw bytes.",
                field,
            )
        return PreparedImage(data, content_type, f"{field}.{extension_for(content_type)}")

    # ---------- Internals ----------

    async def _download(self, url: str):
        try:
            async with httpx.AsyncClient(
                timeout=IMAGE_DOWNLOAD_TIMEOUT, transport=self._transport
            ) as client:
                r = await client.get(url)
        except httpx.HTTPError as e:
            raise network_error(f"Failed to download image from URL: {e}", e)
        if r.status_code >= 300:
            raise network_error(f"Failed to download image from URL: HTTP {r.status_code}")

        data = r.content
        _check_size(data)
        content_type = (r.headers.get("content-type") or "").split(";")[0].strip()
        if not content_type.startswith("image/"):
            content_type = detect_image_type(data)
        return data, content_type

    async def _post(self, endpoint: str, timeout: float, operation: str, **kwargs) -> Dict[str, Any]:
        async def attempt() -> Dict[str, Any]:
            try:
                async with self._http(timeout) as client:
                    r = await client.post(endpoint, **kwargs)
            except httpx.TransportError as e:
                raise from_transport_error(e, timeout)
            if r.status_code >= 300:
                raise from_response(r)
            try:
                return r.json()
            except ValueError as e:
                raise wrap_error(e)

        started = time.monotonic()
        logger.info("Ideogram request endpoint=%s operation=%s", endpoint, operation)
        try:
            body = await with_retry(attempt, operation_name=operation, **self._retry_options)
        except IdeogramError as e:
            logger.warning(
                "Ideogram request failed endpoint=%s code=%s duration_ms=%d",
                endpoint, e.code, (time.monotonic() - started) * 1000,
            )
            raise
        logger.info(
            "Ideogram response endpoint=%s images=%d duration_ms=%d",
            endpoint, len(body.get("data") or []), (time.monotonic() - started) * 1000,
        )
        return body
