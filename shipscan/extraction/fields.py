"""Fixed field schema extracted from a single shipping-label image."""

import math
from dataclasses import dataclass, field
from typing import Any

UNKNOWN = "UNKNOWN"

FIELD_NAMES: tuple[str, ...] = (
    "barcodeNumber",
    "internalNumber",
    "distributionCode",
    "shippingDate",
    "senderName",
    "senderAddress",
    "senderPhone",
    "senderEmail",
    "recipientName",
    "recipientAddress",
    "recipientPhone",
    "totalWeight",
    "totalPieces",
    "quantity",
    "price",
    "contents",
    "additionalInfo",
)


def _as_text(value: Any) -> str:
    """Coerce a model-returned value into the string-or-UNKNOWN form."""
    if value is None:
        return UNKNOWN
    if isinstance(value, list):
        parts = [_as_text(v) for v in value]
        text = ", ".join(p for p in parts if p != UNKNOWN)
        return text or UNKNOWN
    if isinstance(value, dict):
        return UNKNOWN
    text = str(value).strip()
    return text or UNKNOWN


@dataclass
class ExtractedFields:
    """Field values, per-field confidence and the raw OCR text of one image.

    ``values`` always holds every name in ``FIELD_NAMES``; fields that could
    not be determined carry the ``UNKNOWN`` sentinel.
    """

    values: dict[str, str] = field(
        default_factory=lambda: {name: UNKNOWN for name in FIELD_NAMES}
    )
    confidence_scores: dict[str, float] = field(default_factory=dict)
    raw_text: str = ""

    @classmethod
    def unknown(cls, raw_text: str = "") -> "ExtractedFields":
        return cls(raw_text=raw_text)

    @classmethod
    def from_mapping(cls, data: dict[str, Any], raw_text: str = "") -> "ExtractedFields":
        """Build a complete field set from a loosely shaped mapping.

        Missing or null fields become ``UNKNOWN``. Confidence entries that
        are non-numeric, NaN or infinite are dropped; the rest are clamped to
        [0, 1]. A ``rawText`` entry in ``data`` wins over the ``raw_text``
        argument.
        """
        values = {name: _as_text(data.get(name)) for name in FIELD_NAMES}

        scores: dict[str, float] = {}
        raw_scores = data.get("confidenceScores")
        if isinstance(raw_scores, dict):
            for name, score in raw_scores.items():
                if isinstance(score, bool):
                    continue
                try:
                    number = float(score)
                except (TypeError, ValueError):
                    continue
                if math.isfinite(number):
                    scores[str(name)] = min(max(number, 0.0), 1.0)

        text = data.get("rawText")
        return cls(
            values=values,
            confidence_scores=scores,
            raw_text=text if isinstance(text, str) and text else raw_text,
        )

    def get(self, name: str) -> str:
        return self.values.get(name, UNKNOWN)

    def set(self, name: str, value: str, confidence: float | None = None) -> None:
        if name not in FIELD_NAMES:
            raise KeyError(f"Unknown field: {name}")
        self.values[name] = value
        if confidence is not None:
            self.confidence_scores[name] = confidence

    def is_known(self, name: str) -> bool:
        value = self.get(name)
        return bool(value.strip()) and value != UNKNOWN

    def to_dict(self) -> dict[str, Any]:
        """Flat camelCase mapping as returned by the vision model."""
        data: dict[str, Any] = dict(self.values)
        data["confidenceScores"] = dict(self.confidence_scores)
        data["rawText"] = self.raw_text
        return data
