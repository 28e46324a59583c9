"""Tests for the batch scan pipeline."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import respx

from shipscan.extraction.fields import ExtractedFields
from shipscan.ocr.errors import OCRError, OCRParseError, OCRTransportError
from shipscan.ocr.gemini_client import GeminiClient, OCRExtraction
from shipscan.ocr.tesseract_engine import OCRText
from shipscan.pipeline.processor import ImageUpload, ShipmentProcessor
from shipscan.pipeline.session import ScanSession
from shipscan.preprocessing.compress import PreparedImage
from shipscan.records.models import InvoiceType
from shipscan.records.service import RecordService
from shipscan.storage.database import Database
from shipscan.storage.files import LocalFileStore
from shipscan.storage.repositories import RecordRepository
from shipscan.utils.config import AppConfig, ExtractionConfig
from shipscan.validation.rules_engine import RulesEngine

GEMINI_ENDPOINT = (
    "https://generativelanguage.googleapis.com/v1beta/models/"
    "gemini-2.5-flash:generateContent"
)


def _extraction(fields: dict, file_name: str = "a.png") -> OCRExtraction:
    return OCRExtraction(
        fields=ExtractedFields.from_mapping(fields),
        overall_confidence=0.95,
        file_name=file_name,
    )


def _config(**ocr) -> AppConfig:
    return AppConfig.model_validate(
        {"ocr": {"fallback_enabled": True, **ocr}, "preprocessing": {"compress_enabled": False}}
    )


def _gemini(available: bool = True) -> MagicMock:
    gemini = MagicMock()
    gemini.available = available
    gemini.extract = AsyncMock()
    return gemini


class TestScanSession:
    def test_claim_release(self) -> None:
        session = ScanSession()
        assert session.claim("a.png") is True
        assert session.claim("a.png") is False
        session.release("a.png")
        assert session.claim("a.png") is True
        session.clear()
        assert session.submitted == set()


class TestProcessImage:
    """Tests for the extraction fallback chain of one image."""

    def setup_method(self) -> None:
        self.gemini = _gemini()
        self.tesseract = MagicMock()
        self.processor = ShipmentProcessor(_config(), self.gemini, tesseract=self.tesseract)

    def test_gemini_result_returned(self, png_bytes: bytes, label_fields: dict) -> None:
        self.gemini.extract.return_value = _extraction(label_fields)

        result = asyncio.run(
            self.processor.process_image(ImageUpload("a.png", png_bytes, "image/png"))
        )

        assert result.source == "gemini"
        self.tesseract.extract_text.assert_not_called()

    def test_unparseable_model_text_parsed_as_plain_text(self, png_bytes: bytes) -> None:
        self.gemini.extract.side_effect = OCRParseError(
            "bad json", raw_text='{"x": \nTotal Quantity: 4'
        )

        result = asyncio.run(
            self.processor.process_image(ImageUpload("a.png", png_bytes, "image/png"))
        )

        assert result.source == "gemini-text"
        assert result.low_confidence is True
        assert result.fields.get("quantity") == "4"
        self.tesseract.extract_text.assert_not_called()

    def test_plain_text_reply_parsed_with_label_rules(self, png_bytes: bytes) -> None:
        self.gemini.extract.return_value = OCRExtraction(
            fields=ExtractedFields.unknown(
                raw_text=(
                    "Tracking Number: 123456789012\n"
                    "Email: ops@acme.example\n"
                    "Items: Shirt 2, Hat"
                )
            ),
            overall_confidence=0.85,
            file_name="a.png",
            attempts=4,
            low_confidence=True,
            structured=False,
            warnings=[
                "OCR results may be less accurate (confidence: 85.00%). Please verify the data."
            ],
        )

        result = asyncio.run(
            self.processor.process_image(ImageUpload("a.png", png_bytes, "image/png"))
        )

        assert result.source == "gemini-text"
        assert result.attempts == 4
        assert result.low_confidence is True
        assert result.fields.get("barcodeNumber") == "123456789012"
        assert result.fields.get("senderEmail") == "ops@acme.example"
        assert result.fields.get("contents") == "Shirt*2,Hat*1"
        assert result.warnings[0].startswith("OCR results may be less accurate")
        self.tesseract.extract_text.assert_not_called()

    def test_transport_failure_falls_back_to_tesseract(self, png_bytes: bytes) -> None:
        self.gemini.extract.side_effect = OCRTransportError("Gemini API error: 500", 500)
        self.tesseract.extract_text.return_value = OCRText(
            text="Tracking Number: 123456789012\nItems: Hat 2", confidence=0.7, language="eng"
        )

        result = asyncio.run(
            self.processor.process_image(ImageUpload("a.png", png_bytes, "image/png"))
        )

        assert result.source == "tesseract"
        assert result.low_confidence is True
        assert result.fields.get("barcodeNumber") == "123456789012"
        assert result.fields.get("contents") == "Hat*2"
        assert "Gemini API error: 500" in result.warnings[0]

    def test_no_api_key_uses_tesseract(self, png_bytes: bytes) -> None:
        self.gemini.available = False
        self.tesseract.extract_text.return_value = OCRText("Total Quantity: 1", 0.5, "eng")

        result = asyncio.run(
            self.processor.process_image(ImageUpload("a.png", png_bytes, "image/png"))
        )

        assert result.source == "tesseract"
        self.gemini.extract.assert_not_called()

    def test_both_paths_fail(self, png_bytes: bytes) -> None:
        self.gemini.extract.side_effect = OCRTransportError("down")
        self.tesseract.extract_text.side_effect = OCRError("Tesseract failed: missing")

        with pytest.raises(OCRError, match="Both OCR methods failed"):
            asyncio.run(
                self.processor.process_image(ImageUpload("a.png", png_bytes, "image/png"))
            )

    def test_fallback_disabled_propagates(self, png_bytes: bytes) -> None:
        processor = ShipmentProcessor(_config(fallback_enabled=False), self.gemini)
        self.gemini.extract.side_effect = OCRTransportError("down")

        with pytest.raises(OCRTransportError):
            asyncio.run(processor.process_image(ImageUpload("a.png", png_bytes, "image/png")))

    def test_retries_original_after_compressed_failure(self, label_fields: dict) -> None:
        config = AppConfig.model_validate({"ocr": {"fallback_enabled": False}})
        processor = ShipmentProcessor(config, self.gemini)
        self.gemini.extract.side_effect = [
            OCRTransportError("down"),
            _extraction(label_fields),
        ]
        prepared = PreparedImage(
            data=b"small", mime_type="image/png", compressed=True, original_size=8
        )

        with patch("shipscan.pipeline.processor.compress_image", return_value=prepared):
            result = asyncio.run(
                processor.process_image(ImageUpload("a.png", b"original", "image/png"))
            )

        assert result.source == "gemini"
        sent = [call.args[0] for call in self.gemini.extract.call_args_list]
        assert sent == [b"small", b"original"]


class TestProcessBatch:
    """Tests for concurrent batch processing."""

    def setup_method(self) -> None:
        self.gemini = _gemini()
        self.processor = ShipmentProcessor(_config(fallback_enabled=False), self.gemini)

    def test_failures_stay_local(self, png_bytes: bytes, label_fields: dict) -> None:
        async def extract(data, mime_type, file_name):
            if file_name == "bad.png":
                raise OCRTransportError("Gemini API error: 400")
            return _extraction(label_fields, file_name)

        self.gemini.extract.side_effect = extract
        uploads = [
            ImageUpload("a.png", png_bytes, "image/png"),
            ImageUpload("bad.png", png_bytes, "image/png"),
            ImageUpload("c.gif", b"gif", "image/gif"),
        ]

        batch = asyncio.run(self.processor.process_batch(uploads))

        assert batch.usable_count == 1
        assert batch.next_step_allowed is True
        assert batch.outcomes["bad.png"].error == "Gemini API error: 400"
        assert batch.outcomes["bad.png"].message.startswith("Failed to process bad.png")
        assert "Invalid file type" in batch.outcomes["c.gif"].error
        assert batch.outcomes["a.png"].message.startswith("Processed a.png in")

    def test_duplicates_skipped_and_failures_released(
        self, png_bytes: bytes, label_fields: dict
    ) -> None:
        self.gemini.extract.side_effect = OCRTransportError("down")
        session = ScanSession()
        uploads = [
            ImageUpload("a.png", png_bytes, "image/png"),
            ImageUpload("a.png", png_bytes, "image/png"),
        ]

        batch = asyncio.run(self.processor.process_batch(uploads, session))

        assert batch.skipped == ["a.png"]
        assert batch.next_step_allowed is False
        assert "a.png" not in session.submitted

        self.gemini.extract.side_effect = None
        self.gemini.extract.return_value = _extraction(label_fields)
        retry = asyncio.run(self.processor.process_batch(uploads[:1], session))
        assert retry.usable_count == 1
        assert "a.png" in session.submitted

    def test_aggregate(self, png_bytes: bytes, label_fields: dict) -> None:
        second = dict(label_fields, contents="shirt*1, Sock*2")

        async def extract(data, mime_type, file_name):
            return _extraction(label_fields if file_name == "a.png" else second, file_name)

        self.gemini.extract.side_effect = extract
        uploads = [
            ImageUpload("a.png", png_bytes, "image/png"),
            ImageUpload("b.png", png_bytes, "image/png"),
        ]
        batch = asyncio.run(self.processor.process_batch(uploads))

        items = self.processor.aggregate(batch.usable)
        assert [(i.name, i.qty) for i in items] == [("shirt", 3), ("hat", 1), ("sock", 2)]


class TestSaveBatch:
    """Tests for storing images and saving records."""

    @pytest.fixture(autouse=True)
    def _setup(self, tmp_path: Path):
        self.db = Database(":memory:").connect()
        self.repo = RecordRepository(self.db)
        self.gemini = _gemini()
        self.processor = ShipmentProcessor(
            _config(fallback_enabled=False),
            self.gemini,
            record_service=RecordService(self.repo, RulesEngine(tmp_path / "none.yaml")),
            file_store=LocalFileStore(tmp_path / "files"),
        )
        yield
        self.db.close()

    def _batch(self, png_bytes: bytes, outcomes: dict[str, dict]):
        async def extract(data, mime_type, file_name):
            return _extraction(outcomes[file_name], file_name)

        self.gemini.extract.side_effect = extract
        uploads = [ImageUpload(name, png_bytes, "image/png") for name in outcomes]
        return uploads, asyncio.run(self.processor.process_batch(uploads))

    def test_individual_invoice_one_record_per_image(
        self, png_bytes: bytes, label_fields: dict
    ) -> None:
        second = dict(label_fields, barcodeNumber="222", contents="Sock*2")
        uploads, batch = self._batch(png_bytes, {"a.png": label_fields, "b.png": second})

        result = asyncio.run(self.processor.save_batch(batch, uploads, "acme"))

        assert result.all_saved is True
        assert len(result.outcomes) == 2
        assert len(result.image_urls) == 2
        assert len(self.repo.all()) == 2
        for outcome in result.outcomes:
            assert outcome.record.client_name == "acme"
            assert outcome.record.image_url in result.image_urls

    def test_business_invoice_one_combined_record(
        self, png_bytes: bytes, label_fields: dict
    ) -> None:
        second = dict(label_fields, barcodeNumber="222", contents="shirt*1, Sock*2")
        uploads, batch = self._batch(png_bytes, {"a.png": label_fields, "b.png": second})

        result = asyncio.run(
            self.processor.save_batch(batch, uploads, "acme", InvoiceType.BUSINESS)
        )

        assert len(result.outcomes) == 1
        record = result.outcomes[0].record
        assert record.invoice_type == InvoiceType.BUSINESS
        assert [(i.name, i.qty) for i in record.contents] == [
            ("shirt", 3),
            ("hat", 1),
            ("sock", 2),
        ]
        assert record.tracking.barcode_numbers == ["JD014600003286790341", "222"]
        assert sorted(record.image_urls) == sorted(result.image_urls)
        assert len(self.repo.all()) == 1

    def test_invalid_record_reported_without_undoing_others(
        self, png_bytes: bytes, label_fields: dict
    ) -> None:
        empty = dict(label_fields, contents="UNKNOWN")
        uploads, batch = self._batch(png_bytes, {"a.png": label_fields, "b.png": empty})

        result = asyncio.run(self.processor.save_batch(batch, uploads))

        saved = {o.file_name: o.saved for o in result.outcomes}
        assert saved == {"a.png": True, "b.png": False}
        assert result.all_saved is False
        assert len(self.repo.all()) == 1

    def test_requires_service_and_store(self) -> None:
        processor = ShipmentProcessor(_config(), _gemini())
        with pytest.raises(RuntimeError):
            asyncio.run(processor.save_batch(MagicMock(), []))


class TestPlainTextModelReply:
    """A model reply without JSON goes through the label rules end to end."""

    @respx.mock
    def test_fields_recovered_from_reply_text(self, png_bytes: bytes) -> None:
        reply = "Tracking Number: 123456789012\nItems: Shirt 2, Hat"
        respx.post(GEMINI_ENDPOINT).mock(
            return_value=httpx.Response(
                200, json={"candidates": [{"content": {"parts": [{"text": reply}]}}]}
            )
        )

        async def no_sleep(seconds: float) -> None:
            return None

        config = _config(api_key="test-key", fallback_enabled=False)
        gemini = GeminiClient(
            config.ocr, ExtractionConfig(max_retries=0, retry_backoff_s=0), sleep=no_sleep
        )
        processor = ShipmentProcessor(config, gemini)

        batch = asyncio.run(
            processor.process_batch([ImageUpload("a.png", png_bytes, "image/png")])
        )

        extraction = batch.outcomes["a.png"].extraction
        assert extraction.source == "gemini-text"
        assert extraction.attempts == 1
        assert extraction.fields.get("barcodeNumber") == "123456789012"
        assert extraction.fields.get("contents") == "Shirt*2,Hat*1"
        assert batch.next_step_allowed is True
