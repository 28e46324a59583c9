"""Tests for the validation rules engine."""

from decimal import Decimal
from pathlib import Path

import pytest
import yaml

from shipscan.extraction.aggregator import ContentItem
from shipscan.records.models import Additional, Sender, ShippingRecord
from shipscan.validation.rules_engine import (
    ERROR,
    WARNING,
    RecordValidationError,
    RulesEngine,
    ValidationReport,
    ValidationResult,
    flatten,
)


def _record(**kwargs) -> ShippingRecord:
    kwargs.setdefault("contents", [ContentItem(name="Shirt", qty=2), ContentItem(name="Hat", qty=1)])
    return ShippingRecord(**kwargs)


class TestValidationResult:
    def test_defaults_to_error_severity(self) -> None:
        result = ValidationResult("date", True, "Valid", "date_format", 0.1)
        assert result.severity == ERROR
        assert result.confidence_adjustment == 0.1


class TestValidationReport:
    def test_missing_fields_and_details(self) -> None:
        report = ValidationReport(
            all_valid=False,
            results=[
                ValidationResult("email", False, "Required field missing: email", "required"),
                ValidationResult("phone", False, "Invalid phone", "regex"),
                ValidationResult("weight", False, "odd", "positive_amount", severity=WARNING),
            ],
        )
        assert report.missing_fields == ["email"]
        assert report.error_details() == [
            {"field": "email", "message": "Required field missing: email"},
            {"field": "phone", "message": "Invalid phone"},
        ]

    def test_error_message_lists_failures(self) -> None:
        report = ValidationReport(
            all_valid=False,
            results=[ValidationResult("a", False, "a is bad", "required")],
        )
        assert str(RecordValidationError(report)) == "Validation failed: a is bad"


class TestFlatten:
    def test_dotted_keys(self) -> None:
        flat = flatten({"sender": {"email": "x"}, "contents": [1], "confidenceScores": {"a": 1}})
        assert flat == {"sender.email": "x", "contents": [1], "confidenceScores": {"a": 1}}


class TestFieldValidators:
    """Tests for the individual rule validators."""

    def setup_method(self) -> None:
        self.engine = RulesEngine(Path("/nonexistent/rules.yaml"))

    def test_validate_date_formats(self) -> None:
        for value in ("2024-01-15", "15-01-2024", "15-01-24", "15/01/2024"):
            assert self.engine._validate_date("d", value, {}).is_valid, value

    def test_validate_date_invalid(self) -> None:
        result = self.engine._validate_date("d", "not-a-date", {})
        assert result.is_valid is False
        assert result.confidence_adjustment < 0

    def test_unknown_counts_as_blank(self) -> None:
        assert self.engine._validate_date("d", "UNKNOWN", {}).is_valid
        assert self.engine._validate_email("e", "UNKNOWN", {}).is_valid
        assert self.engine._validate_phone("p", "UNKNOWN", {}).is_valid

    def test_validate_positive_amount(self) -> None:
        assert self.engine._validate_positive_amount("p", "1,234.56", {}).is_valid
        assert not self.engine._validate_positive_amount("p", "0", {}).is_valid
        assert not self.engine._validate_positive_amount("p", "abc", {}).is_valid

    def test_validate_email(self) -> None:
        assert self.engine._validate_email("e", "user@example.com", {}).is_valid
        assert not self.engine._validate_email("e", "not-an-email", {}).is_valid

    def test_validate_phone(self) -> None:
        assert self.engine._validate_phone("p", "+965 2225 2186", {}).is_valid
        assert not self.engine._validate_phone("p", "12345", {}).is_valid

    def test_validate_required(self) -> None:
        assert self.engine._validate_required("f", "x", {}).is_valid
        assert not self.engine._validate_required("f", "  ", {}).is_valid
        assert not self.engine._validate_required("f", None, {}).is_valid

    def test_validate_max_length(self) -> None:
        assert self.engine._validate_max_length("f", "abc", {"max": 3}).is_valid
        assert not self.engine._validate_max_length("f", "abcd", {"max": 3}).is_valid

    def test_validate_one_of_list(self) -> None:
        rule = {"values": ["a", "b"]}
        assert self.engine._validate_one_of("f", ["a", "b"], rule).is_valid
        result = self.engine._validate_one_of("f", ["a", "z"], rule)
        assert result.is_valid is False
        assert "z" in result.message

    def test_validate_min_items(self) -> None:
        assert self.engine._validate_min_items("f", [1], {"min": 1}).is_valid
        assert not self.engine._validate_min_items("f", [], {"min": 1}).is_valid
        assert not self.engine._validate_min_items("f", None, {"min": 1}).is_valid


class TestValidateRecord:
    """Tests for whole-record validation before saving."""

    def setup_method(self) -> None:
        self.engine = RulesEngine(Path("/nonexistent/rules.yaml"))

    def test_valid_record(self) -> None:
        report = self.engine.validate_record(_record())
        assert report.all_valid is True
        assert report.warnings == []

    def test_empty_contents_rejected(self) -> None:
        report = self.engine.validate_record(_record(contents=[]))
        assert report.all_valid is False
        assert report.missing_fields == ["contents"]
        assert report.errors[0].message == "Record must contain at least one content item"

    def test_blank_client_rejected(self) -> None:
        report = self.engine.validate_record(_record(client_name=" "))
        assert "clientName" in report.missing_fields

    def test_bad_item_rejected(self) -> None:
        record = _record()
        record.contents.append(ContentItem.model_construct(name=" ", qty=0, price=Decimal("0")))
        report = self.engine.validate_record(record)

        fields = {r.field_name for r in report.errors}
        assert {"contents[2].name", "contents[2].qty", "contents[2].price"} <= fields

    def test_format_problems_are_warnings(self) -> None:
        record = _record(
            sender=Sender(email="broken", phone="12"),
            additional=Additional(shipping_date="08/25"),
        )
        report = self.engine.validate_record(record)

        assert report.all_valid is True
        assert "Invalid email: broken" in report.warnings
        assert "Invalid phone: 12" in report.warnings
        assert "Invalid date format: 08/25" in report.warnings

    def test_mismatched_totals_are_warnings(self) -> None:
        record = _record(additional=Additional(total_pieces=5, quantity=2))
        report = self.engine.validate_record(record)

        assert report.all_valid is True
        assert report.warnings == [
            "totalPieces (5) does not match sum of item quantities (3)"
        ]
        assert record.additional.total_pieces == 5

    def test_confidence_adjusted_by_rules(self) -> None:
        record = _record(
            sender=Sender(email="user@example.com"),
            confidence_scores={"senderEmail": 0.8},
        )
        report = self.engine.validate_record(record)
        assert report.field_confidences["senderEmail"] == pytest.approx(0.9)


class TestRegistrationRules:
    def setup_method(self) -> None:
        self.engine = RulesEngine(Path("/nonexistent/rules.yaml"))

    def test_missing_fields(self) -> None:
        report = self.engine.validate({"email": "a@b.example"}, "registration")
        assert set(report.missing_fields) == {
            "companyName",
            "contactPerson",
            "accountType",
            "estimatedMonthlyShipments",
            "interestedFeatures",
        }


class TestLoadRules:
    def test_yaml_overrides_document_type(self, tmp_path: Path) -> None:
        rules_file = tmp_path / "rules.yaml"
        rules_file.write_text(
            yaml.dump({"shipping_record": {"clientName": [{"type": "required"}]}})
        )
        engine = RulesEngine(rules_file)

        assert list(engine.rules["shipping_record"]) == ["clientName"]
        assert "registration" in engine.rules

    def test_unknown_rule_type_warns(self, tmp_path: Path) -> None:
        rules_file = tmp_path / "rules.yaml"
        rules_file.write_text(yaml.dump({"custom": {"x": [{"type": "telepathy"}]}}))
        report = RulesEngine(rules_file).validate({"x": "1"}, "custom")
        assert report.warnings == ["Unknown rule type: telepathy"]
