"""Label-anchored line parser for raw OCR text.

Used when structured extraction from the vision model is unavailable: the
raw text (from the model or from Tesseract) is scanned line by line and each
line is tested against an ordered table of rules. A rule fires when its
trigger matches the line and one of its value patterns captures something;
the field then gets the captured value and the rule's fixed confidence.
Later lines overwrite earlier matches for the same field.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass

from shipscan.extraction.fields import ExtractedFields
from shipscan.extraction.normalize import normalize_shipping_date
from shipscan.utils.logger import get_logger

logger = get_logger(__name__)

_ARABIC = "ء-ي"
_ARABIC_CHAR = re.compile(f"[{_ARABIC}]")
_ARABIC_RUN = re.compile(f"[{_ARABIC}](?:[{_ARABIC}\\s]*[{_ARABIC}])?")
_INTL_PHONE = re.compile(r"\+\d+")

_ITEM_TRAILING_NUMBER = re.compile(r"^(.*?)\s+(\d+)$")
_ITEM_PARENTHESIZED = re.compile(r"^(.*)\((\d+)\)$")


def _normalize_items(text: str) -> str:
    """Rewrite an ``Items:`` list into ``Name*Qty`` entries."""
    entries: list[str] = []
    for item in (part.strip() for part in text.split(",")):
        if not item:
            continue
        if "*" in item:
            entries.append(item)
            continue
        match = _ITEM_TRAILING_NUMBER.match(item) or _ITEM_PARENTHESIZED.match(item)
        if match:
            entries.append(f"{match.group(1).strip()}*{match.group(2)}")
        else:
            entries.append(f"{item}*1")
    return ",".join(entries)


@dataclass(frozen=True)
class LabelRule:
    """One line rule: trigger, ordered value patterns and a fixed confidence."""

    field_name: str
    trigger: re.Pattern[str]
    patterns: tuple[re.Pattern[str], ...]
    confidence: float
    transform: Callable[[str], str] | None = None
    exclude: re.Pattern[str] | None = None

    def apply(self, line: str) -> str | None:
        if not self.trigger.search(line):
            return None
        if self.exclude is not None and self.exclude.search(line):
            return None
        for pattern in self.patterns:
            match = pattern.search(line)
            if not match:
                continue
            value = (match.group(1) if match.groups() else match.group(0)).strip()
            if value:
                return self.transform(value) if self.transform else value
        return None


def _rule(
    field_name: str,
    trigger: str,
    patterns: list[str],
    confidence: float,
    transform: Callable[[str], str] | None = None,
    exclude: str | None = None,
) -> LabelRule:
    return LabelRule(
        field_name=field_name,
        trigger=re.compile(trigger),
        patterns=tuple(re.compile(p) for p in patterns),
        confidence=confidence,
        transform=transform,
        exclude=re.compile(exclude) if exclude else None,
    )


LABEL_RULES: tuple[LabelRule, ...] = (
    _rule(
        "barcodeNumber",
        r"Tracking Number:|\d{12,}",
        [r"Tracking Number:\s*(\d+)", r"(\d{12,})"],
        0.95,
    ),
    _rule(
        "internalNumber",
        r"Reference Number:|Ref No",
        [r"Reference Number:\s*(\w+)", r"Ref No\.?\s*:?\s*(\w+)"],
        0.9,
    ),
    _rule(
        "distributionCode",
        r"Order Number:|KWT",
        [r"Order Number:\s*(\w+)", r"(KWT\s*\w+\s*\w+)"],
        0.85,
    ),
    _rule(
        "shippingDate",
        r"Ship ?Date:",
        [r"Ship ?Date:\s*(\d{4}-\d{2}-\d{2})", r"Ship ?Date:\s*(\d{1,2}-\d{1,2}-\d{2,4})"],
        0.8,
        transform=normalize_shipping_date,
    ),
    _rule(
        "senderName",
        r"Shipper:|SHEIN",
        [r"Shipper:\s*([^,]+)", r"(SHEIN-\w+)"],
        0.9,
    ),
    _rule(
        "senderAddress",
        r"Shipper Address:|Prologis",
        [r"Shipper Address:\s*(.+)", r"(Prologis.*?(?:CHN|Kuwait))"],
        0.85,
    ),
    _rule(
        "senderPhone",
        r"Phone:|Call:\s*\+\d+",
        [r"Phone:\s*(\+?\d+)", r"Call:\s*(\+\d+)"],
        0.95,
    ),
    _rule(
        "senderEmail",
        r"Email:",
        [r"Email:\s*(\S+@\S+)"],
        0.95,
    ),
    _rule(
        "recipientName",
        f"Recipient:|[{_ARABIC}]",
        [r"Recipient:\s*([^(]+)", _ARABIC_RUN.pattern],
        0.9,
    ),
    _rule(
        "recipientAddress",
        r"Recipient Address:|Al Farwaniyah",
        [r"Recipient Address:\s*(.+)", r"(Al Farwaniyah.*?(?:Kuwait|منزل \d+))"],
        0.85,
    ),
    _rule(
        "totalWeight",
        r"Gross Weight|G\.W",
        [r"Gross Weight.*?:\s*([\d.]+)", r"G\.W\.?\s*:?\s*([\d.]+)"],
        0.9,
    ),
    _rule(
        "quantity",
        r"Total Quantity:|Qty",
        [r"Total Quantity:\s*(\d+)", r"Qty\s*:?\s*(\d+)"],
        0.85,
    ),
    _rule(
        "price",
        r"Price Paid|PPD",
        [r"Price Paid.*?:\s*([\d.]+)", r"PPD\s*([\d.]+)"],
        0.9,
    ),
    _rule(
        "contents",
        r"Items:|Women's.*?\*\d+",
        [r"Items:\s*(.+)", r"(Women's.*?\*\d+(?:,\s*Women's.*?\*\d+)*)"],
        0.8,
        transform=_normalize_items,
    ),
    _rule(
        "additionalInfo",
        r"Order Type:|Dropship\s*(?:Normal|Kuwait)",
        [r"Order Type:\s*(.+)", r"(Dropship\s*(?:Normal|Kuwait))"],
        0.85,
        exclude=r"Email\s*:|Call\s*:",
    ),
)

RECIPIENT_PHONE_CONFIDENCE = 0.95


class FallbackTextParser:
    """Best-effort extractor for unstructured label text.

    Ambiguous or mixed-language text yields a partial field set; fields that
    no rule matched stay ``UNKNOWN`` with no confidence entry.

    Args:
        rules: Ordered rule table. Defaults to ``LABEL_RULES``.
    """

    def __init__(self, rules: tuple[LabelRule, ...] = LABEL_RULES) -> None:
        self.rules = rules

    def parse(self, raw_text: str) -> ExtractedFields:
        """Populate the field schema from raw OCR text.

        Args:
            raw_text: Unstructured OCR output.

        Returns:
            Complete field set with ``raw_text`` preserved.
        """
        fields = ExtractedFields.unknown(raw_text=raw_text)

        for line in raw_text.splitlines():
            line = line.strip()
            if not line:
                continue
            for rule in self.rules:
                value = rule.apply(line)
                if value is not None:
                    fields.set(rule.field_name, value, rule.confidence)

            if "Recipient:" in line or _ARABIC_CHAR.search(line):
                phones = _INTL_PHONE.findall(line)
                if phones:
                    fields.set("recipientPhone", ",".join(phones), RECIPIENT_PHONE_CONFIDENCE)

        logger.info(
            "Fallback parser matched %d of %d fields",
            len(fields.confidence_scores),
            len(fields.values),
        )
        return fields
