"""Persisted record shapes: shipping records, clients and registrations.

Models use snake_case attributes with camelCase aliases so the same classes
serve the HTTP payloads and the stored JSON.
"""

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from shipscan.extraction.aggregator import ContentItem
from shipscan.extraction.fields import UNKNOWN

__all__ = [
    "ACCOUNT_TYPES",
    "Additional",
    "CamelModel",
    "Client",
    "ContentItem",
    "INTERESTED_FEATURES",
    "InvoiceType",
    "MONTHLY_SHIPMENTS",
    "Recipient",
    "Registration",
    "RegistrationStatus",
    "Sender",
    "ShippingRecord",
    "Tracking",
]

DEFAULT_CLIENT_NAME = "default-client"

ConfidenceScore = Annotated[float, Field(ge=0, le=1, allow_inf_nan=False)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InvoiceType(StrEnum):
    INDIVIDUAL = "individual-invoice"
    BUSINESS = "business-invoice"


class Sender(CamelModel):
    name: str = UNKNOWN
    address: str = UNKNOWN
    phone: str = UNKNOWN
    email: str = UNKNOWN


class Recipient(CamelModel):
    name: str = UNKNOWN
    address: str = UNKNOWN
    phone: str = UNKNOWN


class Tracking(CamelModel):
    barcode_number: str = UNKNOWN
    internal_number: str = UNKNOWN
    distribution_code: str = UNKNOWN
    barcode_numbers: list[str] = Field(default_factory=list)
    internal_numbers: list[str] = Field(default_factory=list)


class Additional(CamelModel):
    """Numeric totals and dates; absent when unparseable."""

    shipping_date: str | None = None
    total_weight: float | None = Field(default=None, allow_inf_nan=False)
    total_pieces: int | None = None
    quantity: int | None = None
    price: Decimal | None = None


class ShippingRecord(CamelModel):
    """One shipping label as stored.

    Empty ``contents`` is representable here but rejected before saving.
    """

    id: str | None = None
    client_name: str = DEFAULT_CLIENT_NAME
    sender: Sender = Field(default_factory=Sender)
    recipient: Recipient = Field(default_factory=Recipient)
    tracking: Tracking = Field(default_factory=Tracking)
    additional: Additional = Field(default_factory=Additional)
    contents: list[ContentItem] = Field(default_factory=list)
    additional_info: str = UNKNOWN
    image_url: str = UNKNOWN
    image_urls: list[str] = Field(default_factory=list)
    invoice_type: InvoiceType = InvoiceType.INDIVIDUAL
    confidence_scores: dict[str, ConfidenceScore] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_payload(self) -> dict:
        """JSON-compatible camelCase mapping."""
        return self.model_dump(mode="json", by_alias=True)


class Client(CamelModel):
    id: str | None = None
    name: str = Field(min_length=1, max_length=200)
    records_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


ACCOUNT_TYPES: tuple[str, ...] = (
    "Starter / Trial",
    "Small Business",
    "Enterprise",
    "Logistics Partner",
)

MONTHLY_SHIPMENTS: tuple[str, ...] = ("0–50", "51–200", "201–1000", "1000+")

INTERESTED_FEATURES: tuple[str, ...] = (
    "Smart OCR Sticker Scanning",
    "Automated Data Extraction",
    "Real-time Analytics Dashboard",
    "Multi-user Team Access",
    "API Integration",
    "Custom Reporting",
)


class RegistrationStatus(StrEnum):
    SUBMITTED = "submitted"
    PENDING = "pending"
    CONTACTED = "contacted"
    APPROVED = "approved"
    REJECTED = "rejected"


class Registration(CamelModel):
    """Business registration captured by the intake form.

    Fields are loosely typed so missing and invalid values can be reported
    together by the validation rules instead of failing on first error.
    """

    id: str | None = None
    company_name: str | None = None
    contact_person: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    account_type: str | None = None
    estimated_monthly_shipments: str | None = None
    interested_features: list[str] = Field(default_factory=list)
    comments: str | None = None
    source: str = "web-form"
    status: RegistrationStatus = RegistrationStatus.PENDING
    is_submitted: bool = False
    submitted_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def sanitized(self) -> "Registration":
        """Copy with strings trimmed, blanks dropped and the email lower-cased."""

        def clean(value: str | None) -> str | None:
            if value is None:
                return None
            return value.strip() or None

        email = clean(self.email)
        return self.model_copy(
            update={
                "company_name": clean(self.company_name),
                "contact_person": clean(self.contact_person),
                "email": email.lower() if email else None,
                "phone": clean(self.phone),
                "address": clean(self.address),
                "account_type": clean(self.account_type),
                "estimated_monthly_shipments": clean(self.estimated_monthly_shipments),
                "interested_features": [
                    f.strip() for f in self.interested_features if f and f.strip()
                ],
                "comments": clean(self.comments),
            }
        )
