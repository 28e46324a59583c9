"""Extraction prompt and request body for the Gemini ``generateContent`` API."""

import json
from typing import Any

from shipscan.extraction.fields import FIELD_NAMES
from shipscan.utils.config import OCRConfig

_FIELD_HINTS: dict[str, str] = {
    "shippingDate": "YYYY-MM-DD or UNKNOWN",
    "price": "numeric value without unit or UNKNOWN",
    "contents": "comma-separated list in format 'Item Name*Quantity' or UNKNOWN",
}


def _schema_block() -> str:
    schema: dict[str, Any] = {
        name: _FIELD_HINTS.get(name, "string or UNKNOWN") for name in FIELD_NAMES
    }
    schema["confidenceScores"] = {name: "number between 0 and 1" for name in FIELD_NAMES}
    schema["rawText"] = "full extracted text"
    return json.dumps(schema, indent=2)


EXTRACTION_PROMPT = f"""
Extract key information from the provided shipping label image and return a valid JSON object. \
Return ONLY the JSON object, with no markdown, code fences or additional text. \
Ensure all strings are properly escaped, especially for Arabic text or special characters. \
Use "UNKNOWN" for unclear or missing values. Do not include reasoning or intermediate steps. \
Return the following fields:

{_schema_block()}

Special instructions:
- The senderEmail is the email labeled "Email:" at the bottom of the label, e.g. "Email:name@example.com".
- The senderPhone is the phone labeled "Call:" at the bottom of the label, e.g. "Call:+96522252186".
- Do not include the email or phone in additionalInfo; additionalInfo should only include order type \
information like "Dropship Order, Normal, KWT ST8".
- The gross weight is labeled "G.W"; return it in totalWeight without the unit.
- The shipping date is printed in DD-MM-YY format; convert it to YYYY-MM-DD, e.g. 25-08-08 becomes 2008-08-25.
- The contents list may be truncated; extract as much as possible and use *1 if quantity is not specified.
""".strip()


def build_request(image_b64: str, mime_type: str, config: OCRConfig) -> dict[str, Any]:
    """Build the ``generateContent`` payload for one image.

    Args:
        image_b64: Base64-encoded image bytes.
        mime_type: MIME type of the encoded image.
        config: OCR settings supplying generation parameters.

    Returns:
        JSON-serializable request body.
    """
    return {
        "contents": [
            {
                "parts": [
                    {"text": EXTRACTION_PROMPT},
                    {"inline_data": {"mime_type": mime_type, "data": image_b64}},
                ]
            }
        ],
        "generationConfig": {
            "temperature": config.temperature,
            "maxOutputTokens": config.max_output_tokens,
            "responseMimeType": "application/json",
        },
    }
