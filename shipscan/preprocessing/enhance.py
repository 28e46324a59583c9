"""Image cleanup for the Tesseract fallback path.

Decodes a label image and applies grayscale conversion, bilateral
denoising and adaptive binarization so that printed label text separates
cleanly from the background.
"""

import cv2
import numpy as np

from shipscan.utils.config import PreprocessingConfig
from shipscan.utils.logger import get_logger

logger = get_logger(__name__)


def decode_image(data: bytes) -> np.ndarray:
    """Decode encoded image bytes into a BGR array.

    Raises:
        ValueError: If the bytes are not a decodable image.
    """
    buffer = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if image is None:
        raise ValueError("Could not decode image bytes")
    return image


def to_gray(image: np.ndarray) -> np.ndarray:
    if len(image.shape) == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    return image


def denoise_bilateral(
    image: np.ndarray, d: int = 9, sigma_color: int = 75, sigma_space: int = 75
) -> np.ndarray:
    """Smooth noise while keeping character edges sharp."""
    return cv2.bilateralFilter(image, d, sigma_color, sigma_space)


def binarize_adaptive(image: np.ndarray, block_size: int = 31, c: int = 10) -> np.ndarray:
    """Threshold against the local neighborhood mean.

    Label photos have uneven lighting, so a global threshold tends to wipe
    out one side of the sticker.
    """
    return cv2.adaptiveThreshold(
        to_gray(image),
        255,
        cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
        cv2.THRESH_BINARY,
        block_size,
        c,
    )


def enhance_for_ocr(data: bytes, config: PreprocessingConfig) -> np.ndarray:
    """Decode and clean up a label image for Tesseract.

    Args:
        data: Encoded JPEG or PNG bytes.
        config: Preprocessing configuration.

    Returns:
        Grayscale (or binary) image array.
    """
    result = to_gray(decode_image(data))
    if not config.enhance_enabled:
        return result

    if config.denoise_enabled:
        result = denoise_bilateral(result)
    if config.binarize_enabled:
        result = binarize_adaptive(result)

    logger.debug("Enhanced image for OCR: shape=%s", result.shape)
    return result
