"""Pillow helpers shared by the store and the AI clients."""
import io
import logging

from PIL import Image, UnidentifiedImageError

from app.utils.exceptions import InvalidImage

logger = logging.getLogger(__name__)

_MIME_BY_FORMAT = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "HEIF": "image/heic",
}


def _open(data: bytes) -> Image.Image:
    if not data:
        raise InvalidImage("Empty image data")
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise InvalidImage(f"Invalid image format: {e}") from e
    return image


def read_dimensions(data: bytes) -> tuple[int, int]:
    image = _open(data)
    return image.width, image.height


def detect_mime_type(data: bytes) -> str:
    try:
        image = _open(data)
    except InvalidImage:
        return "image/jpeg"
    return _MIME_BY_FORMAT.get(image.format or "", "image/jpeg")


def encode_jpeg(data: bytes, quality: float, max_side: int | None = None) -> bytes:
    """Re-encode image bytes as JPEG. ``quality`` is in [0, 1]."""
    image = _open(data)
    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    if max_side and max(image.size) > max_side:
        image.thumbnail((max_side, max_side))
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=max(1, min(95, int(round(quality * 100)))))
    return buffer.getvalue()


def compress_progressively(
    data: bytes,
    quality_levels: list[float],
    target_bytes: int,
    max_side: int | None = None,
) -> bytes:
    """Walk down the quality ladder until the encoding fits ``target_bytes``.

    Returns the first encoding under the target, otherwise the smallest one
    produced. Never raises for an oversize result; only for undecodable input.
    """
    best = data
    for quality in quality_levels:
        candidate = encode_jpeg(data, quality, max_side=max_side)
        logger.debug("Compression at quality %.2f: %d bytes", quality, len(candidate))
        if len(candidate) < target_bytes:
            logger.info("Compressed image %d -> %d bytes at quality %.2f", len(data), len(candidate), quality)
            return candidate
        if len(candidate) < len(best):
            best = candidate
    logger.warning("Image still %d bytes after compression (target %d)", len(best), target_bytes)
    return best


def make_thumbnail(data: bytes, max_side: int = 256) -> bytes | None:
    """JPEG thumbnail, or None when the bytes are not a still image (e.g. video)."""
    try:
        return encode_jpeg(data, 0.7, max_side=max_side)
    except InvalidImage:
        return None
