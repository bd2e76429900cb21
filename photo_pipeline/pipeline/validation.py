"""
Intake Validation Gate

Runs before anything touches storage. Cheap checks go first, decoding last.
"""

import io
from typing import Iterable, Optional

from PIL import Image, UnidentifiedImageError

from photo_pipeline.core.config import settings
from photo_pipeline.core.exceptions import ValidationError, ValidationReason
from photo_pipeline.core.logging import get_logger
from photo_pipeline.modules.uploads.schemas import SourceMeta

logger = get_logger(__name__)

# Pillow format name -> canonical MIME type
FORMAT_MIME_TYPES = {
    "JPEG": "image/jpeg",
    "MPO": "image/jpeg",  # multi-picture JPEG from phone cameras
    "PNG": "image/png",
    "WEBP": "image/webp",
    "HEIF": "image/heic",
    "GIF": "image/gif",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}


def _normalize_mime(mime_type: Optional[str]) -> str:
    return (mime_type or "").split(";")[0].strip().lower()


def validate(
    file_bytes: bytes,
    declared_mime: Optional[str],
    declared_size: Optional[int] = None,
    name: Optional[str] = None,
    allowed_mime_types: Optional[Iterable[str]] = None,
    max_bytes: int = settings.MAX_IMAGE_SIZE_BYTES,
    min_bytes: int = settings.MIN_IMAGE_SIZE_BYTES,
    min_width: int = settings.MIN_IMAGE_WIDTH,
    min_height: int = settings.MIN_IMAGE_HEIGHT
) -> SourceMeta:
    """
    Check an incoming file against the intake rules.

    Order: declared type, maximum size, minimum size, decode, decoded type,
    pixel dimensions. The first failing rule wins.

    Returns:
        SourceMeta with the detected MIME type and pixel dimensions

    Raises:
        ValidationError: with the reason of the first failing rule
    """
    allowed = {_normalize_mime(m) for m in (allowed_mime_types or settings.ALLOWED_MIME_TYPES)}
    mime = _normalize_mime(declared_mime)
    actual_size = len(file_bytes)

    if mime not in allowed:
        raise ValidationError(
            f"Unsupported file type '{mime or 'unknown'}'. Allowed: {', '.join(sorted(allowed))}",
            ValidationReason.UNSUPPORTED_TYPE
        )

    size = max(actual_size, declared_size or 0)
    if size > max_bytes:
        raise ValidationError(
            f"File is {size} bytes; the maximum is {max_bytes} bytes",
            ValidationReason.TOO_LARGE
        )

    if actual_size < min_bytes:
        raise ValidationError(
            f"File is {actual_size} bytes; the minimum is {min_bytes} bytes",
            ValidationReason.TOO_SMALL
        )

    try:
        with Image.open(io.BytesIO(file_bytes)) as img:
            img.verify()
        # verify() leaves the image unusable and skips pixel data for some
        # formats; a full decode catches truncated files
        with Image.open(io.BytesIO(file_bytes)) as img:
            image_format = img.format
            width, height = img.size
            img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, SyntaxError) as e:
        raise ValidationError(f"File could not be decoded as an image: {e}", ValidationReason.CORRUPT_IMAGE)

    detected_mime = FORMAT_MIME_TYPES.get(image_format or "", f"image/{(image_format or 'unknown').lower()}")
    if detected_mime not in allowed:
        raise ValidationError(
            f"Decoded image format {image_format} is not allowed",
            ValidationReason.UNSUPPORTED_TYPE
        )

    if detected_mime != mime and not (mime == "image/jpg" and detected_mime == "image/jpeg"):
        logger.warning("declared_mime_mismatch", declared=mime, detected=detected_mime, file_name=name)

    if width < min_width or height < min_height:
        raise ValidationError(
            f"Image is {width}x{height}; the minimum is {min_width}x{min_height}",
            ValidationReason.DIMENSIONS_TOO_SMALL
        )

    return SourceMeta(
        name=name or "upload",
        byte_size=actual_size,
        mime_type=detected_mime,
        pixel_width=width,
        pixel_height=height,
    )
