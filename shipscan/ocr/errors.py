"""Exceptions raised by the OCR clients."""


class OCRError(Exception):
    """Base class for OCR failures on a single image."""


class OCRTransportError(OCRError):
    """The vision API call failed at the HTTP or network level."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class OCRStructureError(OCRError):
    """The response body did not contain the expected content path."""


class OCRParseError(OCRError):
    """The returned text could not be parsed as JSON after repair.

    The model's raw text is kept so callers can run a fallback parse.
    """

    def __init__(self, message: str, raw_text: str = "") -> None:
        super().__init__(message)
        self.raw_text = raw_text
