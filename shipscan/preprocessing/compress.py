"""Upload checks and payload compression for label images.

Images are downscaled and re-encoded before they are sent to the vision
model. Compression is best effort: any failure hands back the original bytes.
"""

import io
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

from shipscan.utils.logger import get_logger

logger = get_logger(__name__)

_PIL_FORMATS: dict[str, str] = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
}


class UnsupportedImageError(ValueError):
    """Raised when an upload is not an accepted image or is too large."""


@dataclass
class PreparedImage:
    """Image payload ready for transmission."""

    data: bytes
    mime_type: str
    compressed: bool
    original_size: int

    @property
    def size(self) -> int:
        """Size of the prepared payload in bytes."""
        return len(self.data)


def check_upload(
    file_name: str,
    data: bytes,
    mime_type: str,
    allowed_mime_types: list[str],
    max_bytes: int,
) -> None:
    """Reject uploads with a disallowed type or above the size ceiling.

    Raises:
        UnsupportedImageError: With a user-facing message.
    """
    if mime_type not in allowed_mime_types:
        raise UnsupportedImageError(
            f"Invalid file type for {file_name}. Please select JPEG or PNG images."
        )
    if len(data) > max_bytes:
        limit_mb = max_bytes // (1024 * 1024)
        raise UnsupportedImageError(f"File {file_name} exceeds {limit_mb}MB limit.")


def compress_image(
    data: bytes,
    mime_type: str,
    max_dimension: int = 1600,
    quality: int = 80,
) -> PreparedImage:
    """Downscale and re-encode an image.

    The longest side is reduced to ``max_dimension`` while keeping the aspect
    ratio. JPEG output uses ``quality``; PNG output is optimized. The input
    bytes are never modified.

    Args:
        data: Encoded JPEG or PNG bytes.
        mime_type: Declared MIME type of ``data``.
        max_dimension: Longest allowed side in pixels.
        quality: JPEG quality (1-95).

    Returns:
        The compressed payload, or the original bytes with
        ``compressed=False`` when compression fails or does not help.
    """
    original = PreparedImage(
        data=data, mime_type=mime_type, compressed=False, original_size=len(data)
    )
    pil_format = _PIL_FORMATS.get(mime_type)
    if pil_format is None:
        return original

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            work = img.copy()
        work.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

        buf = io.BytesIO()
        if pil_format == "JPEG":
            if work.mode not in ("RGB", "L"):
                work = work.convert("RGB")
            work.save(buf, format="JPEG", quality=quality, optimize=True)
        else:
            work.save(buf, format="PNG", optimize=True)
        encoded = buf.getvalue()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logger.warning("Compression failed, sending original image: %s", exc)
        return original

    if len(encoded) >= len(data):
        logger.debug("Compressed payload not smaller (%d >= %d)", len(encoded), len(data))
        return original

    logger.info("Compressed image %d -> %d bytes", len(data), len(encoded))
    return PreparedImage(
        data=encoded, mime_type=mime_type, compressed=True, original_size=len(data)
    )
