"""Configuration management for the shipping-label intake service.

Loads a YAML file into nested pydantic models. Every section has defaults so
an absent or empty file yields a working configuration.
"""

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("configs/config.yaml")


class PreprocessingConfig(BaseModel):
    """Image preparation before OCR."""

    compress_enabled: bool = True
    max_dimension: int = 1600
    jpeg_quality: int = 80
    # Only used on the Tesseract fallback path.
    enhance_enabled: bool = True
    denoise_enabled: bool = True
    binarize_enabled: bool = True


class OCRConfig(BaseModel):
    """Vision-model client and Tesseract fallback settings."""

    model: str = "gemini-2.5-flash"
    api_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    api_key: str | None = None
    api_key_env: str = "GEMINI_API_KEY"
    timeout_s: float = 60.0
    temperature: float = 0.0
    max_output_tokens: int = 8192
    fallback_enabled: bool = True
    tesseract_cmd: str | None = None
    tesseract_lang: str = "eng"
    tesseract_psm: int = 6

    def resolve_api_key(self) -> str | None:
        """Return the configured key, falling back to the environment."""
        return self.api_key or os.environ.get(self.api_key_env) or None


class ExtractionConfig(BaseModel):
    """Retry and confidence policy for label extraction."""

    max_retries: int = 3
    retry_backoff_s: float = 2.0
    confidence_threshold: float = 0.9
    default_confidence: float = 0.85
    default_unit_price: str = "0.01"


class UploadConfig(BaseModel):
    """Limits applied to incoming label images."""

    allowed_mime_types: list[str] = Field(
        default_factory=lambda: ["image/jpeg", "image/png"]
    )
    max_upload_bytes: int = 50 * 1024 * 1024


class StorageConfig(BaseModel):
    """Record database and image file storage."""

    database_path: str = "shipscan.db"
    files_dir: str = "public"
    public_base_url: str = "/files"


class ApiConfig(BaseModel):
    """HTTP surface settings."""

    auth_tokens: list[str] = Field(default_factory=list)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class ValidationConfig(BaseModel):
    """Configuration for the validation rules engine."""

    rules_path: str = "configs/validation_rules.yaml"


class AppConfig(BaseModel):
    """Top-level application configuration."""

    preprocessing: PreprocessingConfig = Field(default_factory=PreprocessingConfig)
    ocr: OCRConfig = Field(default_factory=OCRConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    upload: UploadConfig = Field(default_factory=UploadConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    log_level: str = "INFO"


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.
            Defaults to configs/config.yaml.

    Returns:
        Validated application configuration.
    """
    if path is None:
        path = DEFAULT_CONFIG_PATH

    if path.exists():
        logger.info("Loading configuration from %s", path)
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        return AppConfig(**raw)

    logger.info("No config file found at %s, using defaults", path)
    return AppConfig()
