"""Shared test fixtures for the shipping-label intake test suite."""

import io
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from shipscan.utils.config import AppConfig


@pytest.fixture
def sample_image() -> np.ndarray:
    """Create a simple synthetic grayscale test image."""
    image = np.zeros((200, 300), dtype=np.uint8)
    image[50:150, 50:250] = 255
    return image


@pytest.fixture
def png_bytes() -> bytes:
    """Encode a small RGB image as PNG."""
    img = Image.fromarray(np.full((120, 200, 3), 200, dtype=np.uint8))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration pointing all storage at a temporary directory."""
    return AppConfig.model_validate(
        {
            "ocr": {"api_key": "test-key", "fallback_enabled": False},
            "extraction": {"retry_backoff_s": 0},
            "storage": {
                "database_path": str(tmp_path / "shipscan.db"),
                "files_dir": str(tmp_path / "files"),
            },
            "validation": {"rules_path": str(tmp_path / "missing_rules.yaml")},
        }
    )


@pytest.fixture
def label_fields() -> dict:
    """Model-style field mapping for a typical label."""
    return {
        "barcodeNumber": "JD014600003286790341",
        "internalNumber": "INT-77",
        "distributionCode": "RUH-02",
        "shippingDate": "25-08-08",
        "senderName": "Acme Trading",
        "senderAddress": "12 Port Road, Jeddah",
        "senderPhone": "+966501234567",
        "senderEmail": "Shipping@Acme.example",
        "recipientName": "Sara Ali",
        "recipientAddress": "7 King Fahd Rd, Riyadh",
        "recipientPhone": "+966559876543",
        "totalWeight": "2.5 KG",
        "totalPieces": "UNKNOWN",
        "quantity": "UNKNOWN",
        "price": "UNKNOWN",
        "contents": "Shirt*2, Hat*1",
        "additionalInfo": "UNKNOWN",
        "confidenceScores": {"barcodeNumber": 0.97, "senderName": 0.95},
    }
