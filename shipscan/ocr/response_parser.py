"""Interpretation of ``generateContent`` responses.

Every attempt against the vision API is resolved exactly once into one of
the result variants below; the client's retry loop only dispatches on the
variant type.
"""

import json
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from shipscan.extraction.fields import ExtractedFields
from shipscan.extraction.normalize import normalize_shipping_date
from shipscan.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIDENCE = 0.85

_FENCE = re.compile(r"```(?:json)?")

__all__ = [
    "AttemptResult",
    "MalformedResponse",
    "ParsedResponse",
    "TransportFailure",
    "UnparseableResponse",
    "extract_json_block",
    "extract_text",
    "interpret_body",
    "normalize_shipping_date",
    "overall_confidence",
    "parse_response_text",
]


@dataclass(frozen=True)
class ParsedResponse:
    """A complete field set was recovered from the model text.

    ``structured`` is False when the text held no JSON block and the field
    set was synthesized as all ``UNKNOWN``.
    """

    fields: ExtractedFields
    structured: bool = True


@dataclass(frozen=True)
class MalformedResponse:
    """The body lacked the expected candidate/content path."""

    body: Any


@dataclass(frozen=True)
class UnparseableResponse:
    """A JSON block was found but could not be decoded."""

    raw_text: str
    error: str = ""


@dataclass(frozen=True)
class TransportFailure:
    """The HTTP call failed; ``retryable`` marks rate limits and network errors."""

    message: str
    status_code: int | None = None
    retryable: bool = False


AttemptResult = ParsedResponse | MalformedResponse | UnparseableResponse | TransportFailure


def extract_text(body: Any) -> str | None:
    """Pull the generated text out of a response body.

    Looks at ``candidates[0].content.parts[0].text`` first, then
    ``candidates[0].text``. A first part that exists but carries no text is
    read as an empty object ``"{}"``.

    Returns:
        The text, or None when neither path exists.
    """
    if not isinstance(body, Mapping):
        return None
    candidates = body.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    first = candidates[0]
    if not isinstance(first, Mapping):
        return None

    content = first.get("content")
    parts = content.get("parts") if isinstance(content, Mapping) else None
    part = parts[0] if isinstance(parts, list) and parts else None
    if isinstance(part, Mapping) and isinstance(part.get("text"), str) and part["text"]:
        return part["text"]

    if isinstance(first.get("text"), str) and first["text"]:
        return first["text"]

    if isinstance(part, Mapping):
        logger.warning("Empty text in first content part, treating as empty object")
        return "{}"
    return None


def extract_json_block(text: str) -> str | None:
    """Cut the first top-level JSON object out of ``text``.

    The block runs from the first ``{`` to the last ``}``; when no closing
    brace follows, it runs to the end of the text. Code-fence markers are
    removed. A block that does not end in ``}`` is treated as truncated and
    closed with a ``rawText`` entry holding the whole original text.

    Returns:
        The (possibly repaired) block, or None if ``text`` has no ``{``.
    """
    start = text.find("{")
    if start == -1:
        return None

    end = text.rfind("}")
    block = text[start : end + 1] if end > start else text[start:]
    block = _FENCE.sub("", block).strip()

    if not block.endswith("}"):
        logger.warning("Truncated JSON block detected, appending rawText and closing brace")
        block += f',"rawText": {json.dumps(text)} }}'
    return block


def parse_response_text(text: str) -> ParsedResponse | UnparseableResponse:
    """Turn model text into a field set.

    Text without any JSON block yields an all-``UNKNOWN`` field set that
    preserves the text; that is not a failure.
    """
    block = extract_json_block(text)
    if block is None:
        logger.warning("No JSON block in model response, synthesizing UNKNOWN field set")
        return ParsedResponse(fields=ExtractedFields.unknown(raw_text=text), structured=False)

    try:
        data = json.loads(block)
    except json.JSONDecodeError as exc:
        return UnparseableResponse(raw_text=text, error=str(exc))
    if not isinstance(data, dict):
        return UnparseableResponse(raw_text=text, error="top-level JSON value is not an object")

    return ParsedResponse(fields=ExtractedFields.from_mapping(data, raw_text=text))


def interpret_body(body: Any) -> ParsedResponse | MalformedResponse | UnparseableResponse:
    """Resolve a successful HTTP response body into a result variant."""
    text = extract_text(body)
    if text is None:
        return MalformedResponse(body=body)
    return parse_response_text(text)


def overall_confidence(
    scores: Mapping[str, Any],
    default: float = DEFAULT_CONFIDENCE,
) -> float:
    """Arithmetic mean of the strictly positive numeric scores.

    Args:
        scores: Per-field confidence values.
        default: Returned when no score is positive.
    """
    positive = [
        float(s)
        for s in scores.values()
        if isinstance(s, (int, float)) and not isinstance(s, bool) and math.isfinite(s) and s > 0
    ]
    if not positive:
        return default
    return sum(positive) / len(positive)
