"""Local Tesseract OCR used when the vision model is unavailable.

Produces unstructured text only; fields are recovered from it by the
fallback text parser.
"""

from dataclasses import dataclass

import numpy as np
import pytesseract
from PIL import Image

from shipscan.ocr.errors import OCRError
from shipscan.utils.config import OCRConfig
from shipscan.utils.logger import get_logger

logger = get_logger(__name__)

CHAR_WHITELIST = (
    "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz .,+-/:()[]@#*"
)


@dataclass
class OCRText:
    """Raw text of one page with the mean word confidence in [0, 1]."""

    text: str
    confidence: float
    language: str


class TesseractEngine:
    """Wrapper around pytesseract for shipping-label text.

    Args:
        config: OCR settings (executable path, language, page segmentation).
    """

    def __init__(self, config: OCRConfig) -> None:
        if config.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = config.tesseract_cmd
        self.lang = config.tesseract_lang
        self.psm = config.tesseract_psm

    @property
    def tesseract_config(self) -> str:
        return f"--psm {self.psm} -c tessedit_char_whitelist={CHAR_WHITELIST}"

    def extract_text(self, image: np.ndarray) -> OCRText:
        """Run OCR on a prepared image.

        Args:
            image: Grayscale or binarized image array.

        Returns:
            Full text and average word confidence.

        Raises:
            OCRError: If Tesseract is missing or fails on the image.
        """
        pil_image = Image.fromarray(image)
        try:
            text = pytesseract.image_to_string(
                pil_image, lang=self.lang, config=self.tesseract_config
            )
            data = pytesseract.image_to_data(
                pil_image,
                lang=self.lang,
                config=self.tesseract_config,
                output_type=pytesseract.Output.DICT,
            )
        except (pytesseract.TesseractNotFoundError, pytesseract.TesseractError) as exc:
            raise OCRError(f"Tesseract failed: {exc}") from exc

        confidences = [
            float(conf)
            for conf, word in zip(data["conf"], data["text"])
            if float(conf) > 0 and str(word).strip()
        ]
        avg_conf = sum(confidences) / len(confidences) / 100.0 if confidences else 0.0

        logger.info(
            "Tesseract extracted %d words with average confidence %.2f",
            len(confidences),
            avg_conf,
        )
        return OCRText(text=text, confidence=avg_conf, language=self.lang)
