"""
Thumbnail Derivation

CPU-bound; callers on the event loop run it with asyncio.to_thread.
Each size class is derived independently so one failure never costs the others.
"""

import io
from dataclasses import dataclass, field
from typing import Dict, Mapping

from PIL import Image, ImageOps

from photo_pipeline.core.config import settings
from photo_pipeline.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ThumbnailSet:
    images: Dict[str, bytes] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)


def _flatten(img: Image.Image) -> Image.Image:
    """RGB copy with any transparency composited onto white."""
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return img.convert("RGB")


def render_thumbnail(source: Image.Image, longer_edge: int, quality: int) -> bytes:
    """Downscale so the longer edge is at most longer_edge, then encode JPEG."""
    if longer_edge <= 0:
        raise ValueError(f"Invalid target edge {longer_edge}")

    img = _flatten(source)
    width, height = img.size
    scale = min(1.0, longer_edge / max(width, height))
    if scale < 1.0:
        target = (max(1, round(width * scale)), max(1, round(height * scale)))
        img = img.resize(target, Image.Resampling.LANCZOS)

    output = io.BytesIO()
    img.save(output, format="JPEG", quality=quality, optimize=True)
    return output.getvalue()


def derive_thumbnails(
    original_bytes: bytes,
    size_classes: Mapping[str, int] = settings.THUMBNAIL_SIZES,
    quality: int = settings.THUMBNAIL_JPEG_QUALITY
) -> ThumbnailSet:
    """
    Derive one JPEG per size class from the original image.

    Never raises: a source that cannot be decoded fails every size class.
    """
    result = ThumbnailSet()

    try:
        with Image.open(io.BytesIO(original_bytes)) as img:
            # Honour camera orientation so thumbnails are upright
            source = ImageOps.exif_transpose(img)
            source.load()
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        for size_class in size_classes:
            result.failures[size_class] = f"Could not decode original: {e}"
        logger.warning("thumbnail_source_unreadable", error=str(e))
        return result

    for size_class, longer_edge in size_classes.items():
        try:
            result.images[size_class] = render_thumbnail(source, longer_edge, quality)
        except (OSError, ValueError, MemoryError) as e:
            result.failures[size_class] = str(e)
            logger.warning("thumbnail_derivation_failed", size_class=size_class, error=str(e))

    return result
