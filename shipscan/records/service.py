"""Validated persistence of shipping records."""

from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from shipscan.records.models import ShippingRecord
from shipscan.storage.repositories import RecordRepository
from shipscan.utils.logger import get_logger
from shipscan.validation.rules_engine import (
    RecordValidationError,
    RulesEngine,
    ValidationReport,
    ValidationResult,
)

logger = get_logger(__name__)

_READ_ONLY_KEYS = ("id", "createdAt", "updatedAt")


@dataclass
class SaveResult:
    record: ShippingRecord
    report: ValidationReport

    @property
    def warnings(self) -> list[str]:
        return self.report.warnings


def report_from_schema_error(exc: ValidationError) -> ValidationReport:
    """Express pydantic schema errors as a failed validation report."""
    results = [
        ValidationResult(
            field_name=".".join(str(part) for part in error["loc"]),
            is_valid=False,
            message=error["msg"],
            rule_name="schema",
        )
        for error in exc.errors()
    ]
    return ValidationReport(all_valid=False, results=results)


def _merge(base: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class RecordService:
    """Validates records and hands them to the repository.

    Args:
        repository: Record persistence.
        rules: Validation rules engine.
    """

    def __init__(self, repository: RecordRepository, rules: RulesEngine) -> None:
        self.repository = repository
        self.rules = rules

    def parse(self, payload: dict[str, Any]) -> ShippingRecord:
        """Build a record from a camelCase payload.

        Raises:
            RecordValidationError: If the payload does not fit the schema.
        """
        try:
            return ShippingRecord.model_validate(payload)
        except ValidationError as exc:
            raise RecordValidationError(report_from_schema_error(exc)) from exc

    def save(self, record: ShippingRecord) -> SaveResult:
        """Validate and persist a new record.

        Raises:
            RecordValidationError: If any error-level check fails; nothing
                is written in that case.
        """
        report = self.rules.validate_record(record)
        if not report.all_valid:
            logger.warning(
                "Rejected record %s: %s",
                record.tracking.barcode_number,
                "; ".join(r.message for r in report.errors),
            )
            raise RecordValidationError(report)

        for warning in report.warnings:
            logger.warning("Record %s: %s", record.tracking.barcode_number, warning)
        stored = self.repository.create(record)
        return SaveResult(record=stored, report=report)

    def update(self, record_id: str, changes: dict[str, Any]) -> SaveResult | None:
        """Merge a partial camelCase payload into a stored record.

        Returns:
            The updated record, or None if ``record_id`` does not exist.

        Raises:
            RecordValidationError: If the merged record is invalid.
        """
        existing = self.repository.get(record_id)
        if existing is None:
            return None

        changes = {k: v for k, v in changes.items() if k not in _READ_ONLY_KEYS}
        record = self.parse(_merge(existing.to_payload(), changes))
        record = record.model_copy(
            update={"id": existing.id, "created_at": existing.created_at}
        )

        report = self.rules.validate_record(record)
        if not report.all_valid:
            raise RecordValidationError(report)

        stored = self.repository.update(record)
        if stored is None:
            return None
        return SaveResult(record=stored, report=report)
