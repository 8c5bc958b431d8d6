"""
Image attachment validation and downscaling.

Attachments arrive base64-encoded with a declared MIME type. They are
checked before any generation call so a bad upload never costs a model
request.
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

from .errors import ImageValidationError

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
}
MAX_IMAGE_BYTES = 5 * 1024 * 1024
MAX_IMAGE_DIMENSION = 1024
JPEG_QUALITY = 85


@dataclass(frozen=True)
class ImageAttachment:
    data: bytes
    mime_type: str
    width: int
    height: int

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


def _decode(data_b64: str) -> bytes:
    payload = data_b64.strip()
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise ImageValidationError("image data is not valid base64") from None


def _fit(width: int, height: int, limit: int) -> tuple[int, int]:
    if width >= height:
        return limit, max(1, round(height * limit / width))
    return max(1, round(width * limit / height)), limit


def validate_image(
    data_b64: str,
    mime_type: str,
    max_bytes: int = MAX_IMAGE_BYTES,
    max_dimension: int = MAX_IMAGE_DIMENSION,
) -> ImageAttachment:
    """Decode, verify and (if needed) downscale an attachment.

    Images whose longest edge exceeds ``max_dimension`` are resized to fit
    and re-encoded as JPEG; smaller images are passed through untouched.
    """
    mime = (mime_type or "").lower().strip()
    expected_format = ALLOWED_MIME_TYPES.get(mime)
    if expected_format is None:
        raise ImageValidationError(
            f"unsupported image type '{mime_type}', expected one of: {', '.join(ALLOWED_MIME_TYPES)}"
        )

    raw = _decode(data_b64)
    if not raw:
        raise ImageValidationError("image data is empty")
    if len(raw) > max_bytes:
        raise ImageValidationError(
            f"image is {len(raw) / (1024 * 1024):.1f} MB, the limit is {max_bytes / (1024 * 1024):.0f} MB"
        )

    try:
        with Image.open(io.BytesIO(raw)) as candidate:
            candidate.verify()
        image = Image.open(io.BytesIO(raw))
        image.load()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ImageValidationError(f"image could not be decoded: {exc}") from None

    if image.format != expected_format:
        raise ImageValidationError(f"image content is {image.format}, but was declared as {mime}")

    width, height = image.size
    if max(width, height) <= max_dimension:
        return ImageAttachment(data=raw, mime_type=mime, width=width, height=height)

    new_size = _fit(width, height, max_dimension)
    resized = image.convert("RGB").resize(new_size, Image.Resampling.LANCZOS)
    out = io.BytesIO()
    resized.save(out, format="JPEG", quality=JPEG_QUALITY)
    logger.info("Image downscaled %dx%d -> %dx%d", width, height, *new_size)
    return ImageAttachment(data=out.getvalue(), mime_type="image/jpeg", width=new_size[0], height=new_size[1])
