"""Configurable validation rules for shipping records and registrations.

Rules are grouped per document type and keyed by field path (dotted for
nested record fields). Each rule yields a ``ValidationResult`` with a
confidence adjustment and a severity; only ``error`` results make a report
invalid. Shipping records additionally get content-item checks and
cross-field consistency checks, which surface mismatches as warnings.
"""

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from shipscan.extraction.fields import UNKNOWN
from shipscan.records.models import (
    ACCOUNT_TYPES,
    INTERESTED_FEATURES,
    MONTHLY_SHIPMENTS,
    InvoiceType,
    ShippingRecord,
)
from shipscan.utils.logger import get_logger

logger = get_logger(__name__)

ERROR = "error"
WARNING = "warning"

DATE_FORMATS: list[str] = [
    "%Y-%m-%d",
    "%d-%m-%Y",
    "%d-%m-%y",
    "%d/%m/%Y",
    "%m/%d/%Y",
]

# Record paths whose results adjust the per-field OCR confidence.
RECORD_CONFIDENCE_KEYS: dict[str, str] = {
    "tracking.barcodeNumber": "barcodeNumber",
    "sender.email": "senderEmail",
    "sender.phone": "senderPhone",
    "additional.shippingDate": "shippingDate",
    "additional.totalWeight": "totalWeight",
    "additional.price": "price",
    "contents": "contents",
}


@dataclass
class ValidationResult:
    """Result of a single field validation check."""

    field_name: str
    is_valid: bool
    message: str
    rule_name: str
    confidence_adjustment: float = 0.0
    severity: str = ERROR


@dataclass
class ValidationReport:
    """Aggregated validation report for one document."""

    all_valid: bool
    results: list[ValidationResult]
    warnings: list[str] = field(default_factory=list)
    field_confidences: dict[str, float] = field(default_factory=dict)

    @property
    def errors(self) -> list[ValidationResult]:
        return [r for r in self.results if not r.is_valid and r.severity == ERROR]

    @property
    def missing_fields(self) -> list[str]:
        """Fields that failed a ``required`` or ``min_items`` check."""
        return [
            r.field_name
            for r in self.errors
            if r.rule_name in ("required", "min_items")
        ]

    def error_details(self) -> list[dict[str, str]]:
        return [{"field": r.field_name, "message": r.message} for r in self.errors]


class RecordValidationError(Exception):
    """Raised when a document fails validation and must not be persisted."""

    def __init__(self, report: ValidationReport, message: str = "Validation failed") -> None:
        details = "; ".join(r.message for r in report.errors)
        super().__init__(f"{message}: {details}" if details else message)
        self.report = report


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip() or value.strip() == UNKNOWN
    return False


def _to_decimal(value: Any) -> Decimal:
    return Decimal(str(value).replace(",", "").strip())


def flatten(data: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested mappings into dotted keys; lists are kept as values."""
    flat: dict[str, Any] = {}
    for key, value in data.items():
        path = f"{prefix}{key}"
        if isinstance(value, Mapping) and value and key != "confidenceScores":
            flat.update(flatten(value, prefix=f"{path}."))
        else:
            flat[path] = value
    return flat


class RulesEngine:
    """Configurable validation rules engine.

    Applies field-level rules loaded from a YAML file (falling back to
    built-in defaults) with confidence score adjustments.

    Args:
        rules_path: Path to the validation rules YAML file.
    """

    def __init__(
        self, rules_path: Path = Path("configs/validation_rules.yaml")
    ) -> None:
        self.rules = self._load_rules(rules_path)
        self._validators: dict[str, Callable[[str, Any, dict], ValidationResult]] = {
            "required": self._validate_required,
            "email": self._validate_email,
            "phone": self._validate_phone,
            "regex": self._validate_regex,
            "date_format": self._validate_date,
            "positive_amount": self._validate_positive_amount,
            "max_length": self._validate_max_length,
            "one_of": self._validate_one_of,
            "min_items": self._validate_min_items,
        }

    def _load_rules(self, path: Path) -> dict:
        """Load validation rules from YAML, merged over the defaults.

        Args:
            path: Path to the rules file.

        Returns:
            Dictionary of document-type-specific rules.
        """
        rules = self._default_rules()
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f)
            if data:
                logger.info("Loaded validation rules from %s", path)
                rules.update(data)
                return rules
        logger.debug("Using default validation rules")
        return rules

    def _default_rules(self) -> dict:
        return {
            "shipping_record": {
                "clientName": [{"type": "required"}],
                "invoiceType": [
                    {"type": "one_of", "values": [t.value for t in InvoiceType]}
                ],
                "contents": [
                    {
                        "type": "min_items",
                        "min": 1,
                        "message": "Record must contain at least one content item",
                    }
                ],
                "sender.email": [{"type": "email", "severity": WARNING}],
                "sender.phone": [{"type": "phone", "severity": WARNING}],
                "additional.shippingDate": [{"type": "date_format", "severity": WARNING}],
                "additional.totalWeight": [{"type": "positive_amount", "severity": WARNING}],
                "additional.price": [{"type": "positive_amount", "severity": WARNING}],
            },
            "registration": {
                "companyName": [{"type": "required"}, {"type": "max_length", "max": 200}],
                "contactPerson": [{"type": "required"}, {"type": "max_length", "max": 120}],
                "email": [{"type": "required"}, {"type": "email"}],
                "phone": [{"type": "regex", "pattern": r"^\+?\d{7,15}$"}],
                "address": [{"type": "max_length", "max": 1000}],
                "accountType": [
                    {"type": "required"},
                    {"type": "one_of", "values": list(ACCOUNT_TYPES)},
                ],
                "estimatedMonthlyShipments": [
                    {"type": "required"},
                    {"type": "one_of", "values": list(MONTHLY_SHIPMENTS)},
                ],
                "interestedFeatures": [
                    {"type": "min_items", "min": 1},
                    {"type": "one_of", "values": list(INTERESTED_FEATURES)},
                ],
                "comments": [{"type": "max_length", "max": 2000}],
            },
        }

    def validate(
        self,
        fields: Mapping[str, Any],
        document_type: str = "shipping_record",
        field_confidences: dict[str, float] | None = None,
        confidence_keys: Mapping[str, str] | None = None,
    ) -> ValidationReport:
        """Validate field values against document-type rules.

        Args:
            fields: Field path to value mapping.
            document_type: Rule set to apply.
            field_confidences: Initial confidence scores per field.
            confidence_keys: Maps a rule's field path to its confidence key;
                the field path itself is used when absent.

        Returns:
            Validation report with results and adjusted confidences.
        """
        results: list[ValidationResult] = []
        warnings: list[str] = []
        adjusted = dict(field_confidences or {})
        self._apply_rules(
            fields, document_type, results, warnings, adjusted, confidence_keys or {}
        )
        return self._report(document_type, results, warnings, adjusted)

    def validate_record(self, record: ShippingRecord) -> ValidationReport:
        """Validate a shipping record before it is persisted.

        Runs the ``shipping_record`` rules, per-item content checks and the
        pieces/quantity consistency checks.
        """
        payload = record.to_payload()
        results: list[ValidationResult] = []
        warnings: list[str] = []
        adjusted = dict(record.confidence_scores)

        self._apply_rules(
            flatten(payload),
            "shipping_record",
            results,
            warnings,
            adjusted,
            RECORD_CONFIDENCE_KEYS,
        )
        results.extend(self._validate_items(payload.get("contents") or []))
        results.extend(self._cross_validate(payload))
        return self._report("shipping_record", results, warnings, adjusted)

    def _apply_rules(
        self,
        fields: Mapping[str, Any],
        document_type: str,
        results: list[ValidationResult],
        warnings: list[str],
        adjusted: dict[str, float],
        confidence_keys: Mapping[str, str],
    ) -> None:
        doc_rules = self.rules.get(document_type, {})

        for field_name, rules in doc_rules.items():
            value = fields.get(field_name)

            for rule in rules:
                rule_type = rule.get("type")
                validator = self._validators.get(rule_type)

                if not validator:
                    warnings.append(f"Unknown rule type: {rule_type}")
                    continue

                result = validator(field_name, value, rule)
                result.severity = rule.get("severity", ERROR)
                if not result.is_valid and rule.get("message"):
                    result.message = rule["message"]
                results.append(result)

                key = confidence_keys.get(field_name, field_name)
                if key in adjusted:
                    adjusted[key] += result.confidence_adjustment
                    adjusted[key] = max(0.0, min(1.0, adjusted[key]))

    def _report(
        self,
        document_type: str,
        results: list[ValidationResult],
        warnings: list[str],
        adjusted: dict[str, float],
    ) -> ValidationReport:
        warnings = warnings + [
            r.message for r in results if not r.is_valid and r.severity == WARNING
        ]
        all_valid = not any(not r.is_valid and r.severity == ERROR for r in results)
        logger.info(
            "Validation for %s: %s (%d checks, %d warnings)",
            document_type,
            "PASSED" if all_valid else "FAILED",
            len(results),
            len(warnings),
        )
        return ValidationReport(
            all_valid=all_valid,
            results=results,
            warnings=warnings,
            field_confidences=adjusted,
        )

    def _validate_required(
        self, field_name: str, value: Any, rule: dict
    ) -> ValidationResult:
        """Check if a required field is present and non-empty."""
        if value is not None and str(value).strip():
            return ValidationResult(
                field_name, True, "Required field present", "required", 0.0
            )
        return ValidationResult(
            field_name,
            False,
            f"Required field missing: {field_name}",
            "required",
            -0.5,
        )

    def _validate_email(
        self, field_name: str, value: Any, rule: dict
    ) -> ValidationResult:
        if _is_blank(value):
            return ValidationResult(field_name, True, "No value to validate", "email")

        pattern = r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$"
        if re.match(pattern, str(value).strip()):
            return ValidationResult(
                field_name, True, "Valid email format", "email", 0.1
            )
        return ValidationResult(
            field_name, False, f"Invalid email: {value}", "email", -0.2
        )

    def _validate_phone(
        self, field_name: str, value: Any, rule: dict
    ) -> ValidationResult:
        """Accept international numbers of 7 to 15 digits."""
        if _is_blank(value):
            return ValidationResult(field_name, True, "No value to validate", "phone")

        cleaned = re.sub(r"[\s\-\(\)\.]", "", str(value))
        if re.match(r"^\+?\d{7,15}$", cleaned):
            return ValidationResult(
                field_name, True, "Valid phone format", "phone", 0.1
            )
        return ValidationResult(
            field_name, False, f"Invalid phone: {value}", "phone", -0.2
        )

    def _validate_regex(
        self, field_name: str, value: Any, rule: dict
    ) -> ValidationResult:
        """Validate a field value against a custom regex pattern."""
        if _is_blank(value):
            return ValidationResult(field_name, True, "No value to validate", "regex")

        pattern = rule.get("pattern", "")
        if re.match(pattern, str(value)):
            return ValidationResult(field_name, True, "Matches pattern", "regex", 0.05)
        return ValidationResult(
            field_name,
            False,
            f"Invalid value for {field_name}: {value}",
            "regex",
            -0.1,
        )

    def _validate_date(
        self, field_name: str, value: Any, rule: dict
    ) -> ValidationResult:
        """Check if a value matches any supported date format."""
        if _is_blank(value):
            return ValidationResult(
                field_name, True, "No value to validate", "date_format"
            )

        for fmt in DATE_FORMATS:
            try:
                datetime.strptime(str(value), fmt)
                return ValidationResult(
                    field_name, True, f"Valid date format: {fmt}", "date_format", 0.1
                )
            except ValueError:
                continue

        return ValidationResult(
            field_name, False, f"Invalid date format: {value}", "date_format", -0.2
        )

    def _validate_positive_amount(
        self, field_name: str, value: Any, rule: dict
    ) -> ValidationResult:
        if _is_blank(value):
            return ValidationResult(
                field_name, True, "No value to validate", "positive_amount"
            )

        try:
            amount = _to_decimal(value)
        except InvalidOperation:
            return ValidationResult(
                field_name,
                False,
                f"Invalid amount format: {value}",
                "positive_amount",
                -0.3,
            )
        if amount > 0:
            return ValidationResult(
                field_name,
                True,
                f"Valid positive amount: {amount}",
                "positive_amount",
                0.1,
            )
        return ValidationResult(
            field_name,
            False,
            f"Amount must be positive: {amount}",
            "positive_amount",
            -0.2,
        )

    def _validate_max_length(
        self, field_name: str, value: Any, rule: dict
    ) -> ValidationResult:
        limit = int(rule.get("max", 255))
        if value is None or len(str(value)) <= limit:
            return ValidationResult(field_name, True, "Length within limit", "max_length")
        return ValidationResult(
            field_name,
            False,
            f"{field_name} must be at most {limit} characters",
            "max_length",
        )

    def _validate_one_of(
        self, field_name: str, value: Any, rule: dict
    ) -> ValidationResult:
        """Check a value, or every element of a list, against allowed values."""
        if value is None or value == []:
            return ValidationResult(field_name, True, "No value to validate", "one_of")

        allowed = list(rule.get("values", []))
        candidates = value if isinstance(value, list) else [value]
        invalid = [v for v in candidates if v not in allowed]
        if not invalid:
            return ValidationResult(field_name, True, "Allowed value", "one_of")
        return ValidationResult(
            field_name,
            False,
            f"Invalid value for {field_name}: {', '.join(map(str, invalid))}",
            "one_of",
        )

    def _validate_min_items(
        self, field_name: str, value: Any, rule: dict
    ) -> ValidationResult:
        minimum = int(rule.get("min", 1))
        count = len(value) if isinstance(value, list) else 0
        if count >= minimum:
            return ValidationResult(field_name, True, f"{count} items", "min_items")
        return ValidationResult(
            field_name,
            False,
            f"{field_name} requires at least {minimum} item(s)",
            "min_items",
            -0.5,
        )

    def _validate_items(self, items: list[dict[str, Any]]) -> list[ValidationResult]:
        """Per-item name, quantity and price checks."""
        results: list[ValidationResult] = []
        for index, item in enumerate(items):
            prefix = f"contents[{index}]"
            if not str(item.get("name") or "").strip():
                results.append(
                    ValidationResult(
                        f"{prefix}.name", False, "Item name is required", "item_name"
                    )
                )

            try:
                qty = int(item.get("qty"))
            except (TypeError, ValueError):
                qty = 0
            if qty < 1:
                results.append(
                    ValidationResult(
                        f"{prefix}.qty", False, "Quantity must be at least 1", "item_qty"
                    )
                )

            try:
                price = _to_decimal(item.get("price"))
            except InvalidOperation:
                price = Decimal("0")
            if price < Decimal("0.01"):
                results.append(
                    ValidationResult(
                        f"{prefix}.price",
                        False,
                        "Price must be at least 0.01",
                        "item_price",
                    )
                )
        return results

    def _cross_validate(self, payload: dict[str, Any]) -> list[ValidationResult]:
        """Compare printed totals against the contents list.

        Mismatches are reported as warnings; the record is not changed.

        Args:
            payload: camelCase record payload.

        Returns:
            List of cross-field validation results.
        """
        results: list[ValidationResult] = []
        items = payload.get("contents") or []
        if not items:
            return results

        additional = payload.get("additional") or {}
        try:
            items_qty = sum(int(item.get("qty", 0)) for item in items)
        except (TypeError, ValueError):
            return results

        checks = (
            ("totalPieces", additional.get("totalPieces"), items_qty, "sum of item quantities"),
            ("quantity", additional.get("quantity"), len(items), "number of content items"),
        )
        for name, declared, derived, label in checks:
            if declared is None:
                continue
            if int(declared) == derived:
                results.append(
                    ValidationResult(
                        f"additional.{name}",
                        True,
                        f"{name} matches {label}",
                        "cross_field",
                        0.1,
                        severity=WARNING,
                    )
                )
            else:
                results.append(
                    ValidationResult(
                        f"additional.{name}",
                        False,
                        f"{name} ({declared}) does not match {label} ({derived})",
                        "cross_field",
                        -0.15,
                        severity=WARNING,
                    )
                )
        return results
