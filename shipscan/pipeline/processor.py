"""Batch scan pipeline: extract, aggregate, store and save.

Each image of a batch is processed as its own task. Failures stay local to
the image that produced them; a batch can move on to saving as long as one
image produced a usable result.
"""

import asyncio
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from shipscan.extraction.aggregator import ContentItem, aggregate_contents
from shipscan.extraction.fallback_parser import FallbackTextParser
from shipscan.extraction.fields import ExtractedFields
from shipscan.ocr.errors import OCRError, OCRParseError, OCRTransportError
from shipscan.ocr.gemini_client import GeminiClient, OCRExtraction
from shipscan.ocr.response_parser import overall_confidence
from shipscan.ocr.tesseract_engine import TesseractEngine
from shipscan.pipeline.session import ScanSession
from shipscan.preprocessing.compress import (
    PreparedImage,
    UnsupportedImageError,
    check_upload,
    compress_image,
)
from shipscan.preprocessing.enhance import enhance_for_ocr
from shipscan.records.assembler import RecordAssembler
from shipscan.records.models import DEFAULT_CLIENT_NAME, InvoiceType, ShippingRecord
from shipscan.records.service import RecordService
from shipscan.storage.files import LocalFileStore, StorageError
from shipscan.utils.config import AppConfig
from shipscan.utils.logger import get_logger
from shipscan.validation.rules_engine import RecordValidationError

logger = get_logger(__name__)


@dataclass
class ImageUpload:
    file_name: str
    data: bytes
    mime_type: str


@dataclass
class ImageOutcome:
    """Result of processing one image of a batch."""

    file_name: str
    extraction: OCRExtraction | None = None
    error: str | None = None
    message: str = ""
    elapsed_s: float = 0.0

    @property
    def usable(self) -> bool:
        return self.extraction is not None

    def to_dict(self) -> dict:
        return {
            "fileName": self.file_name,
            "usable": self.usable,
            "message": self.message,
            "error": self.error,
            "elapsedSeconds": round(self.elapsed_s, 2),
            "result": self.extraction.to_dict() if self.extraction else None,
        }


@dataclass
class BatchResult:
    """Outcomes keyed by file name, plus names skipped as duplicates."""

    outcomes: dict[str, ImageOutcome] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    @property
    def usable(self) -> list[ImageOutcome]:
        return [o for o in self.outcomes.values() if o.usable]

    @property
    def usable_count(self) -> int:
        return len(self.usable)

    @property
    def next_step_allowed(self) -> bool:
        return self.usable_count > 0


@dataclass
class SaveOutcome:
    file_name: str
    record: ShippingRecord | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def saved(self) -> bool:
        return self.record is not None

    def to_dict(self) -> dict:
        return {
            "fileName": self.file_name,
            "saved": self.saved,
            "error": self.error,
            "warnings": list(self.warnings),
            "record": self.record.to_payload() if self.record else None,
        }


@dataclass
class SaveBatchResult:
    outcomes: list[SaveOutcome] = field(default_factory=list)
    image_urls: list[str] = field(default_factory=list)
    aggregated: list[ContentItem] = field(default_factory=list)

    @property
    def all_saved(self) -> bool:
        return bool(self.outcomes) and all(o.saved for o in self.outcomes)


class ShipmentProcessor:
    """Runs label images through extraction and record creation.

    Args:
        config: Application configuration.
        gemini: Vision-model client.
        fallback_parser: Label-anchored text parser.
        tesseract: Local OCR engine, or None to disable that fallback.
        assembler: Record assembler.
        record_service: Validated record persistence; needed for saving.
        file_store: Image storage; needed for saving.
    """

    def __init__(
        self,
        config: AppConfig,
        gemini: GeminiClient,
        fallback_parser: FallbackTextParser | None = None,
        tesseract: TesseractEngine | None = None,
        assembler: RecordAssembler | None = None,
        record_service: RecordService | None = None,
        file_store: LocalFileStore | None = None,
    ) -> None:
        self.config = config
        self.gemini = gemini
        self.fallback_parser = fallback_parser or FallbackTextParser()
        self.tesseract = tesseract
        self.unit_price = Decimal(config.extraction.default_unit_price)
        self.assembler = assembler or RecordAssembler(self.unit_price)
        self.record_service = record_service
        self.file_store = file_store

    def _prepare(self, upload: ImageUpload) -> PreparedImage:
        check_upload(
            upload.file_name,
            upload.data,
            upload.mime_type,
            self.config.upload.allowed_mime_types,
            self.config.upload.max_upload_bytes,
        )
        if not self.config.preprocessing.compress_enabled:
            return PreparedImage(
                data=upload.data,
                mime_type=upload.mime_type,
                compressed=False,
                original_size=len(upload.data),
            )
        return compress_image(
            upload.data,
            upload.mime_type,
            max_dimension=self.config.preprocessing.max_dimension,
            quality=self.config.preprocessing.jpeg_quality,
        )

    def _from_text(self, raw_text: str, file_name: str, source: str) -> OCRExtraction:
        fields = self.fallback_parser.parse(raw_text)
        confidence = overall_confidence(
            fields.confidence_scores, default=self.config.extraction.default_confidence
        )
        return OCRExtraction(
            fields=fields,
            overall_confidence=confidence,
            source=source,
            file_name=file_name,
            low_confidence=True,
            structured=False,
        )

    def _recover_plain_text(self, extraction: OCRExtraction, file_name: str) -> OCRExtraction:
        """Parse a model reply that held no JSON block with the label rules."""
        logger.warning("Model reply for %s held no JSON, parsing it as plain text", file_name)
        recovered = self._from_text(extraction.fields.raw_text, file_name, source="gemini-text")
        recovered.attempts = extraction.attempts
        recovered.warnings = [
            *extraction.warnings,
            "Model returned plain text; fields recovered from label text",
        ]
        return recovered

    def _run_tesseract(self, data: bytes, file_name: str) -> OCRExtraction:
        if self.tesseract is None:
            raise OCRError("Tesseract fallback is not configured")
        try:
            image = enhance_for_ocr(data, self.config.preprocessing)
        except ValueError as exc:
            raise OCRError(f"Could not prepare image for Tesseract: {exc}") from exc
        text = self.tesseract.extract_text(image)
        return self._from_text(text.text, file_name, source="tesseract")

    async def _extract(self, data: bytes, upload: ImageUpload) -> OCRExtraction:
        fallback_enabled = self.config.ocr.fallback_enabled

        if self.gemini.available:
            try:
                extraction = await self.gemini.extract(data, upload.mime_type, upload.file_name)
            except OCRParseError as exc:
                logger.warning(
                    "Model text for %s was not valid JSON, parsing it as plain text",
                    upload.file_name,
                )
                extraction = self._from_text(exc.raw_text, upload.file_name, source="gemini-text")
                extraction.warnings.append(f"Structured extraction failed: {exc}")
                return extraction
            except OCRError as exc:
                if not fallback_enabled:
                    raise
                logger.warning(
                    "Gemini failed for %s, falling back to Tesseract: %s", upload.file_name, exc
                )
                reason = str(exc)
            else:
                if extraction.structured:
                    return extraction
                return self._recover_plain_text(extraction, upload.file_name)
        else:
            if not fallback_enabled:
                raise OCRTransportError("No vision API key configured and fallback disabled")
            reason = "no vision API key configured"

        try:
            extraction = await asyncio.to_thread(self._run_tesseract, data, upload.file_name)
        except OCRError as exc:
            raise OCRError(
                f"Both OCR methods failed ({reason}; {exc}). Please try a clearer image."
            ) from exc
        extraction.warnings.append(f"Fields recovered with Tesseract: {reason}")
        return extraction

    async def process_image(self, upload: ImageUpload) -> OCRExtraction:
        """Extract fields from one uploaded image.

        The compressed payload is tried first; if every extraction path
        fails on it, the original bytes are tried once more.

        Raises:
            UnsupportedImageError: Disallowed type or oversized upload.
            OCRError: When no extraction path produced a result.
        """
        prepared = await asyncio.to_thread(self._prepare, upload)
        try:
            return await self._extract(prepared.data, upload)
        except OCRError as exc:
            if not prepared.compressed:
                raise
            logger.warning(
                "Extraction failed on compressed %s, retrying with original: %s",
                upload.file_name,
                exc,
            )
            return await self._extract(upload.data, upload)

    async def _process_one(self, upload: ImageUpload) -> ImageOutcome:
        started = time.perf_counter()
        try:
            extraction = await self.process_image(upload)
        except (UnsupportedImageError, OCRError) as exc:
            reason = str(exc)
        except Exception as exc:
            logger.exception("Unexpected failure processing %s", upload.file_name)
            reason = str(exc) or exc.__class__.__name__
        else:
            elapsed = time.perf_counter() - started
            message = f"Processed {upload.file_name} in {elapsed:.2f} seconds"
            logger.info(message)
            return ImageOutcome(
                file_name=upload.file_name,
                extraction=extraction,
                message=message,
                elapsed_s=elapsed,
            )

        elapsed = time.perf_counter() - started
        message = f"Failed to process {upload.file_name}: {reason}"
        logger.warning(message)
        return ImageOutcome(
            file_name=upload.file_name, error=reason, message=message, elapsed_s=elapsed
        )

    async def process_batch(
        self,
        uploads: Sequence[ImageUpload],
        session: ScanSession | None = None,
    ) -> BatchResult:
        """Process every image concurrently, skipping names seen in ``session``."""
        session = session or ScanSession()
        result = BatchResult()

        accepted: list[ImageUpload] = []
        for upload in uploads:
            if session.claim(upload.file_name):
                accepted.append(upload)
            else:
                logger.info("Skipping duplicate file %s", upload.file_name)
                result.skipped.append(upload.file_name)

        outcomes = await asyncio.gather(*(self._process_one(u) for u in accepted))
        for outcome in outcomes:
            result.outcomes[outcome.file_name] = outcome
            if not outcome.usable:
                session.release(outcome.file_name)

        logger.info(
            "Batch finished: %d usable, %d failed, %d skipped",
            result.usable_count,
            len(result.outcomes) - result.usable_count,
            len(result.skipped),
        )
        return result

    def aggregate(self, outcomes: Iterable[ImageOutcome]) -> list[ContentItem]:
        """Merge the contents of all usable outcomes."""
        return aggregate_contents(
            (o.extraction.fields.get("contents") for o in outcomes if o.extraction),
            unit_price=self.unit_price,
        )

    async def _store(self, upload: ImageUpload) -> tuple[str, str | None, str | None]:
        try:
            stored = await asyncio.to_thread(
                self.file_store.save, upload.data, upload.file_name
            )
        except StorageError as exc:
            logger.warning("Upload failed for %s: %s", upload.file_name, exc)
            return upload.file_name, None, str(exc)
        return upload.file_name, stored.url, None

    async def _save_one(
        self,
        file_name: str,
        fields: ExtractedFields,
        image_url: str,
        image_urls: list[str],
        client_name: str,
        invoice_type: InvoiceType,
        contents: list[ContentItem] | None = None,
        tracking_lists: tuple[list[str], list[str]] | None = None,
    ) -> SaveOutcome:
        assembled = self.assembler.assemble(
            fields,
            image_url=image_url,
            image_urls=image_urls,
            client_name=client_name,
            invoice_type=invoice_type,
            contents=contents,
        )
        record = assembled.record
        if tracking_lists is not None:
            record.tracking.barcode_numbers, record.tracking.internal_numbers = tracking_lists

        try:
            saved = await asyncio.to_thread(self.record_service.save, record)
        except RecordValidationError as exc:
            logger.warning("Failed to save record for %s: %s", file_name, exc)
            return SaveOutcome(file_name=file_name, error=str(exc))
        return SaveOutcome(file_name=file_name, record=saved.record, warnings=saved.warnings)

    async def save_batch(
        self,
        batch: BatchResult,
        uploads: Sequence[ImageUpload],
        client_name: str = DEFAULT_CLIENT_NAME,
        invoice_type: InvoiceType = InvoiceType.INDIVIDUAL,
    ) -> SaveBatchResult:
        """Store the images of usable outcomes and save their records.

        Individual invoices get one record per image. A business invoice is
        one record combining every usable image: aggregated contents, all
        barcode and internal numbers, and the latest image's other fields.
        Failures are reported per image and never undo sibling saves.

        Raises:
            RuntimeError: If the processor has no record service or file store.
        """
        if self.record_service is None or self.file_store is None:
            raise RuntimeError("Saving requires a record service and a file store")

        result = SaveBatchResult()
        usable = batch.usable
        if not usable:
            return result

        by_name = {u.file_name: u for u in uploads}
        stored = await asyncio.gather(
            *(self._store(by_name[o.file_name]) for o in usable if o.file_name in by_name)
        )
        urls = {name: url for name, url, _ in stored if url}
        errors = {name: error for name, _, error in stored if error}
        result.image_urls = list(urls.values())

        for outcome in usable:
            if outcome.file_name not in by_name:
                errors[outcome.file_name] = "No uploaded image found"
            elif outcome.file_name not in urls:
                errors.setdefault(outcome.file_name, "Image upload failed")

        if invoice_type == InvoiceType.BUSINESS:
            result.aggregated = self.aggregate(usable)
            stored_outcomes = [o for o in usable if o.file_name in urls]
            result.outcomes.extend(
                SaveOutcome(file_name=name, error=f"Cannot save without image: {error}")
                for name, error in errors.items()
            )
            if stored_outcomes:
                latest = stored_outcomes[-1]
                result.outcomes.append(
                    await self._save_one(
                        latest.file_name,
                        latest.extraction.fields,
                        urls[latest.file_name],
                        result.image_urls,
                        client_name,
                        invoice_type,
                        contents=result.aggregated,
                        tracking_lists=_tracking_lists(stored_outcomes),
                    )
                )
            return result

        tasks = []
        for outcome in usable:
            if outcome.file_name in errors:
                result.outcomes.append(
                    SaveOutcome(
                        file_name=outcome.file_name,
                        error=f"Cannot save without image: {errors[outcome.file_name]}",
                    )
                )
                continue
            tasks.append(
                self._save_one(
                    outcome.file_name,
                    outcome.extraction.fields,
                    urls[outcome.file_name],
                    result.image_urls,
                    client_name,
                    invoice_type,
                )
            )
        result.outcomes.extend(await asyncio.gather(*tasks))

        logger.info(
            "Saved %d of %d records",
            sum(1 for o in result.outcomes if o.saved),
            len(result.outcomes),
        )
        return result


def _tracking_lists(outcomes: Iterable[ImageOutcome]) -> tuple[list[str], list[str]]:
    """Distinct known barcode and internal numbers, in first-seen order."""
    barcodes: dict[str, None] = {}
    internals: dict[str, None] = {}
    for outcome in outcomes:
        fields = outcome.extraction.fields
        if fields.is_known("barcodeNumber"):
            barcodes[fields.get("barcodeNumber").strip()] = None
        if fields.is_known("internalNumber"):
            internals[fields.get("internalNumber").strip()] = None
    return list(barcodes), list(internals)
