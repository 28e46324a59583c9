"""Vision-model client for structured shipping-label extraction.

Sends one image and the fixed extraction prompt to Gemini
``generateContent`` and turns the reply into a complete field set. Retries
are an explicit bounded loop: rate limits, network errors, malformed bodies,
unparseable JSON and low-confidence results each consume one retry.
"""

import asyncio
import base64
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import httpx

from shipscan.extraction.fields import ExtractedFields
from shipscan.ocr.errors import OCRParseError, OCRStructureError, OCRTransportError
from shipscan.ocr.prompt import build_request
from shipscan.ocr.response_parser import (
    AttemptResult,
    MalformedResponse,
    ParsedResponse,
    TransportFailure,
    UnparseableResponse,
    interpret_body,
    normalize_shipping_date,
    overall_confidence,
)
from shipscan.utils.config import ExtractionConfig, OCRConfig
from shipscan.utils.logger import get_logger

logger = get_logger(__name__)

RATE_LIMIT_STATUS = 429


@dataclass
class OCRExtraction:
    """Field set extracted from one image plus provenance."""

    fields: ExtractedFields
    overall_confidence: float
    source: str = "gemini"
    file_name: str = ""
    attempts: int = 1
    low_confidence: bool = False
    structured: bool = True
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = self.fields.to_dict()
        data.update(
            {
                "source": self.source,
                "fileName": self.file_name,
                "overallConfidence": round(self.overall_confidence, 4),
                "attempts": self.attempts,
                "lowConfidence": self.low_confidence,
                "warnings": list(self.warnings),
            }
        )
        return data


def _low_confidence_warning(confidence: float) -> str:
    return (
        f"OCR results may be less accurate (confidence: {confidence * 100:.2f}%). "
        "Please verify the data."
    )


class GeminiClient:
    """Async client for the Gemini ``generateContent`` endpoint.

    Holds no state between calls. An ``httpx.AsyncClient`` may be injected
    (and is then left open); otherwise one is created per ``extract`` call.

    Args:
        config: Model, endpoint and generation settings.
        extraction: Retry budget, backoff and confidence policy.
        http_client: Optional shared HTTP client.
        sleep: Awaitable used for backoff waits.
    """

    def __init__(
        self,
        config: OCRConfig,
        extraction: ExtractionConfig,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.extraction = extraction
        self._http_client = http_client
        self._sleep = sleep

    @property
    def endpoint(self) -> str:
        base = self.config.api_base_url.rstrip("/")
        return f"{base}/models/{self.config.model}:generateContent"

    @property
    def available(self) -> bool:
        """Whether an API key is configured."""
        return self.config.resolve_api_key() is not None

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self.config.timeout_s) as client:
            yield client

    async def _attempt(
        self, client: httpx.AsyncClient, payload: dict, api_key: str
    ) -> AttemptResult:
        """Make one call and resolve it into a result variant."""
        try:
            response = await client.post(self.endpoint, params={"key": api_key}, json=payload)
        except httpx.RequestError as exc:
            return TransportFailure(message=f"Request failed: {exc}", retryable=True)

        if response.status_code == RATE_LIMIT_STATUS:
            return TransportFailure(
                message="Rate limit exceeded", status_code=RATE_LIMIT_STATUS, retryable=True
            )
        if response.is_error:
            return TransportFailure(
                message=f"Gemini API error: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError:
            return MalformedResponse(body=response.text)
        return interpret_body(body)

    def _finish(self, parsed: ParsedResponse, file_name: str, attempts: int) -> OCRExtraction:
        fields = parsed.fields
        if fields.is_known("shippingDate"):
            fields.values["shippingDate"] = normalize_shipping_date(fields.get("shippingDate"))
        confidence = overall_confidence(
            fields.confidence_scores, default=self.extraction.default_confidence
        )
        return OCRExtraction(
            fields=fields,
            overall_confidence=confidence,
            file_name=file_name,
            attempts=attempts,
            structured=parsed.structured,
        )

    def _degrade(self, best: OCRExtraction, reason: str) -> OCRExtraction:
        best.low_confidence = True
        best.warnings.append(_low_confidence_warning(best.overall_confidence))
        logger.warning(
            "Using best result for %s (confidence %.2f): %s",
            best.file_name,
            best.overall_confidence,
            reason,
        )
        return best

    async def extract(
        self,
        image: bytes,
        mime_type: str,
        file_name: str = "",
        retries: int | None = None,
    ) -> OCRExtraction:
        """Extract label fields from one image.

        Args:
            image: Encoded image bytes.
            mime_type: MIME type of ``image``.
            file_name: Original file name, carried into the result.
            retries: Retry budget; defaults to ``extraction.max_retries``.

        Returns:
            The first result meeting the confidence threshold, or the best
            result seen once the budget is spent (flagged low confidence).

        Raises:
            OCRTransportError: Non-retryable HTTP failure, missing API key,
                or rate limiting/network failure after the budget is spent.
            OCRStructureError: Response shape unusable after all retries.
            OCRParseError: JSON unparseable after all retries.
        """
        api_key = self.config.resolve_api_key()
        if not api_key:
            raise OCRTransportError(
                f"No API key configured (set {self.config.api_key_env})"
            )

        budget = self.extraction.max_retries if retries is None else max(retries, 0)
        threshold = self.extraction.confidence_threshold
        payload = build_request(
            base64.b64encode(image).decode("ascii"), mime_type, self.config
        )

        best: OCRExtraction | None = None
        attempts = 0

        async with self._session() as client:
            while True:
                attempts += 1
                retries_left = budget - (attempts - 1)
                result = await self._attempt(client, payload, api_key)

                if isinstance(result, ParsedResponse):
                    current = self._finish(result, file_name, attempts)
                    if best is None or current.overall_confidence > best.overall_confidence:
                        best = current
                    if current.overall_confidence >= threshold:
                        logger.info(
                            "Extracted %s on attempt %d (confidence %.2f)",
                            file_name,
                            attempts,
                            current.overall_confidence,
                        )
                        return current
                    reason = (
                        f"Confidence {current.overall_confidence:.2f} "
                        f"below threshold {threshold:.2f}"
                    )
                    retryable = True
                else:
                    reason = _failure_reason(result)
                    retryable = not isinstance(result, TransportFailure) or result.retryable

                if not retryable or retries_left <= 0:
                    if best is not None:
                        best.attempts = attempts
                        return self._degrade(best, reason)
                    raise _as_error(result)

                logger.warning("%s for %s, retrying (%d left)", reason, file_name, retries_left)
                await self._sleep(self.extraction.retry_backoff_s)


def _failure_reason(
    result: MalformedResponse | UnparseableResponse | TransportFailure,
) -> str:
    if isinstance(result, TransportFailure):
        return result.message
    if isinstance(result, MalformedResponse):
        return "Invalid response structure"
    return f"JSON parse error ({result.error})"


def _as_error(result: AttemptResult) -> Exception:
    """Map a terminal failed attempt onto the matching exception."""
    if isinstance(result, TransportFailure):
        return OCRTransportError(result.message, status_code=result.status_code)
    if isinstance(result, UnparseableResponse):
        return OCRParseError(
            f"Could not parse model response: {result.error}", raw_text=result.raw_text
        )
    return OCRStructureError("Invalid Gemini API response structure")
