"""Construction of the shared processing and storage components."""

from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path

from shipscan.extraction.fallback_parser import FallbackTextParser
from shipscan.ocr.gemini_client import GeminiClient
from shipscan.ocr.tesseract_engine import TesseractEngine
from shipscan.pipeline.processor import ShipmentProcessor
from shipscan.records.assembler import RecordAssembler
from shipscan.records.service import RecordService
from shipscan.storage.database import Database
from shipscan.storage.files import LocalFileStore
from shipscan.storage.repositories import (
    ClientRepository,
    RecordRepository,
    RegistrationRepository,
)
from shipscan.utils.config import AppConfig
from shipscan.validation.rules_engine import RulesEngine


@dataclass
class Services:
    """Everything a request or command needs, built from one config."""

    config: AppConfig
    db: Database
    records: RecordRepository
    clients: ClientRepository
    registrations: RegistrationRepository
    rules: RulesEngine
    assembler: RecordAssembler
    record_service: RecordService
    file_store: LocalFileStore
    processor: ShipmentProcessor

    def close(self) -> None:
        self.db.close()


def build_services(config: AppConfig, db: Database | None = None) -> Services:
    """Open the database and wire up all components.

    Args:
        config: Application configuration.
        db: Optional database to use instead of ``storage.database_path``.

    Returns:
        Connected services; call ``close()`` when done.
    """
    db = (db or Database(config.storage.database_path)).connect()
    rules = RulesEngine(Path(config.validation.rules_path))
    records = RecordRepository(db)
    assembler = RecordAssembler(Decimal(config.extraction.default_unit_price))
    record_service = RecordService(records, rules)
    file_store = LocalFileStore(config.storage.files_dir, config.storage.public_base_url)
    tesseract = TesseractEngine(config.ocr) if config.ocr.fallback_enabled else None

    processor = ShipmentProcessor(
        config,
        GeminiClient(config.ocr, config.extraction),
        fallback_parser=FallbackTextParser(),
        tesseract=tesseract,
        assembler=assembler,
        record_service=record_service,
        file_store=file_store,
    )
    return Services(
        config=config,
        db=db,
        records=records,
        clients=ClientRepository(db),
        registrations=RegistrationRepository(db),
        rules=rules,
        assembler=assembler,
        record_service=record_service,
        file_store=file_store,
        processor=processor,
    )
