"""
Pre-upload photo compression.
Field photos are shrunk before they enter the offline queue so that a day of
site work fits on the device and uploads quickly on a weak connection.
"""
import io
import logging
from dataclasses import dataclass
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from ..core.config import settings

logger = logging.getLogger(__name__)

MB = 1024 * 1024

# Formats Pillow can decode and that benefit from lossy re-encoding
RASTER_MIME_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
    "image/bmp",
    "image/tiff",
}

MIN_QUALITY = 0.4
QUALITY_STEP = 0.1


class CompressionError(Exception):
    pass


@dataclass
class PhotoFile:
    file_name: str
    mime_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class CompressionOptions:
    max_size_mb: float
    max_dimension: int
    quality: float  # 0.0-1.0


@dataclass
class CompressionResult:
    compressed: bytes
    original: bytes
    original_size: int
    compressed_size: int
    compression_ratio: int  # Percentage reduction
    width: int
    height: int
    mime_type: str = "image/jpeg"


@dataclass
class PreparedPhoto:
    """What actually goes into the queue."""
    blob: bytes
    original: bytes
    mime_type: str
    compression: Optional[CompressionResult] = None
    warning: Optional[str] = None


def should_compress(photo: PhotoFile) -> bool:
    """Skip vector/animated formats and files that are already small."""
    if (photo.mime_type or "").lower() not in RASTER_MIME_TYPES:
        return False
    return photo.size > settings.COMPRESSION_MIN_BYTES


def get_optimal_compression_options(file_size_bytes: int) -> CompressionOptions:
    """Larger originals get more aggressive targets."""
    if file_size_bytes > 5 * MB:
        return CompressionOptions(max_size_mb=1.5, max_dimension=1920, quality=0.7)
    if file_size_bytes > 2 * MB:
        return CompressionOptions(max_size_mb=1.0, max_dimension=2048, quality=0.8)
    if file_size_bytes > 1 * MB:
        return CompressionOptions(max_size_mb=0.8, max_dimension=2560, quality=0.85)
    return CompressionOptions(max_size_mb=0.5, max_dimension=2560, quality=0.9)


def _encode_jpeg(image: Image.Image, quality: float) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=int(round(quality * 100)), optimize=True)
    return buffer.getvalue()


def compress_photo(photo: PhotoFile, options: CompressionOptions) -> CompressionResult:
    """
    Re-encode ``photo`` as JPEG within ``options``.

    Quality is stepped down until the output fits ``max_size_mb`` or the
    quality floor is reached. The original bytes are returned untouched
    alongside the compressed ones.
    """
    try:
        with Image.open(io.BytesIO(photo.data)) as source:
            image = ImageOps.exif_transpose(source)
            if image.mode not in ("RGB", "L"):
                image = image.convert("RGB")
            image.thumbnail((options.max_dimension, options.max_dimension), Image.LANCZOS)

            target = options.max_size_mb * MB
            quality = options.quality
            compressed = _encode_jpeg(image, quality)
            while len(compressed) > target and round(quality - QUALITY_STEP, 2) >= MIN_QUALITY:
                quality = round(quality - QUALITY_STEP, 2)
                compressed = _encode_jpeg(image, quality)
            width, height = image.size
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise CompressionError(f"Could not compress {photo.file_name}: {exc}") from exc

    ratio = round((1 - len(compressed) / photo.size) * 100) if photo.size else 0
    logger.debug(
        "Compressed %s from %d to %d bytes (%d%%)",
        photo.file_name, photo.size, len(compressed), ratio,
    )
    return CompressionResult(
        compressed=compressed,
        original=photo.data,
        original_size=photo.size,
        compressed_size=len(compressed),
        compression_ratio=ratio,
        width=width,
        height=height,
    )


def prepare_photo(photo: PhotoFile, auto_compress: bool = True) -> PreparedPhoto:
    """
    Decide on and apply compression. A compression failure never blocks the
    upload: the original is queued and a warning is returned instead.
    """
    if not auto_compress or not should_compress(photo):
        return PreparedPhoto(blob=photo.data, original=photo.data, mime_type=photo.mime_type)

    try:
        result = compress_photo(photo, get_optimal_compression_options(photo.size))
    except CompressionError as exc:
        logger.warning("Photo compression failed, queueing original: %s", exc)
        return PreparedPhoto(
            blob=photo.data,
            original=photo.data,
            mime_type=photo.mime_type,
            warning="Photo could not be compressed; the original will be uploaded.",
        )

    if result.compressed_size >= result.original_size:
        # Re-encoding made it bigger; keep the original.
        return PreparedPhoto(blob=photo.data, original=photo.data, mime_type=photo.mime_type)

    return PreparedPhoto(
        blob=result.compressed,
        original=photo.data,
        mime_type=result.mime_type,
        compression=result,
    )
