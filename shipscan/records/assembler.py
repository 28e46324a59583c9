"""Mapping of extracted label fields onto the stored record shape."""

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from shipscan.extraction.aggregator import (
    DEFAULT_UNIT_PRICE,
    ContentItem,
    parse_record_contents,
)
from shipscan.extraction.fields import UNKNOWN, ExtractedFields
from shipscan.records.models import (
    DEFAULT_CLIENT_NAME,
    Additional,
    InvoiceType,
    Recipient,
    Sender,
    ShippingRecord,
    Tracking,
)
from shipscan.utils.logger import get_logger

logger = get_logger(__name__)

_LEADING_INT = re.compile(r"^\s*([-+]?\d+)")
_LEADING_NUMBER = re.compile(r"^\s*([-+]?(?:\d+\.?\d*|\.\d+))")


def parse_int(value: str | None) -> int | None:
    """Leading integer of a label value, ``None`` when absent or zero."""
    if not value or value == UNKNOWN:
        return None
    match = _LEADING_INT.match(value.replace(",", ""))
    if not match:
        return None
    return int(match.group(1)) or None


def parse_number(value: str | None) -> Decimal | None:
    """Leading decimal number of a label value, ``None`` when absent or zero."""
    if not value or value == UNKNOWN:
        return None
    match = _LEADING_NUMBER.match(value.replace(",", ""))
    if not match:
        return None
    try:
        number = Decimal(match.group(1))
    except InvalidOperation:
        return None
    return number or None


@dataclass
class AssembledRecord:
    """An assembled record and which totals were printed on the label.

    ``overrides`` maps ``totalPieces``, ``quantity`` and ``price`` to True
    when the value came from the label rather than from ``contents``.
    """

    record: ShippingRecord
    overrides: dict[str, bool] = field(default_factory=dict)


class RecordAssembler:
    """Builds ``ShippingRecord`` payloads from extracted fields.

    Args:
        unit_price: Placeholder unit price for parsed content items.
    """

    def __init__(self, unit_price: Decimal = DEFAULT_UNIT_PRICE) -> None:
        self.unit_price = unit_price

    @staticmethod
    def _text(fields: ExtractedFields, name: str) -> str:
        value = fields.get(name).strip()
        return value or UNKNOWN

    def assemble(
        self,
        fields: ExtractedFields,
        image_url: str = UNKNOWN,
        image_urls: Sequence[str] = (),
        client_name: str = DEFAULT_CLIENT_NAME,
        invoice_type: InvoiceType = InvoiceType.INDIVIDUAL,
        contents: list[ContentItem] | None = None,
    ) -> AssembledRecord:
        """Assemble a record for one label.

        Text fields keep the ``UNKNOWN`` sentinel; numeric fields that do
        not parse are left empty. Totals missing from the label are derived
        from ``contents``: pieces as the sum of quantities, quantity as the
        item count and price as the sum of quantity times unit price.

        Args:
            fields: Extracted field set of the label.
            image_url: Stored URL of this label's image.
            image_urls: URLs of every image in the same shipment.
            client_name: Owning client.
            invoice_type: Individual or business invoice.
            contents: Pre-aggregated items; parsed from ``fields`` if None.

        Returns:
            The record plus the per-total override flags.
        """
        if contents is None:
            contents = parse_record_contents(fields.get("contents"), self.unit_price)

        barcode = self._text(fields, "barcodeNumber")
        internal = self._text(fields, "internalNumber")
        if barcode == UNKNOWN:
            logger.warning("Barcode number is UNKNOWN for %s", image_url)
        if internal == UNKNOWN:
            logger.warning("Internal number is UNKNOWN for %s", image_url)

        email = self._text(fields, "senderEmail")
        if email != UNKNOWN:
            email = email.lower()

        printed_pieces = parse_int(fields.get("totalPieces"))
        printed_quantity = parse_int(fields.get("quantity"))
        printed_price = parse_number(fields.get("price"))

        derived_pieces = derived_quantity = derived_price = None
        if contents:
            derived_pieces = sum(item.qty for item in contents)
            derived_quantity = len(contents)
            derived_price = sum((item.qty * item.price for item in contents), Decimal("0"))

        weight = parse_number(fields.get("totalWeight"))
        shipping_date = self._text(fields, "shippingDate")

        record = ShippingRecord(
            client_name=client_name,
            sender=Sender(
                name=self._text(fields, "senderName"),
                address=self._text(fields, "senderAddress"),
                phone=self._text(fields, "senderPhone"),
                email=email,
            ),
            recipient=Recipient(
                name=self._text(fields, "recipientName"),
                address=self._text(fields, "recipientAddress"),
                phone=self._text(fields, "recipientPhone"),
            ),
            tracking=Tracking(
                barcode_number=barcode,
                internal_number=internal,
                distribution_code=self._text(fields, "distributionCode"),
                barcode_numbers=[barcode] if barcode != UNKNOWN else [],
                internal_numbers=[internal] if internal != UNKNOWN else [],
            ),
            additional=Additional(
                shipping_date=shipping_date if shipping_date != UNKNOWN else None,
                total_weight=float(weight) if weight is not None else None,
                total_pieces=printed_pieces or derived_pieces,
                quantity=printed_quantity or derived_quantity,
                price=printed_price or derived_price,
            ),
            contents=contents,
            additional_info=self._text(fields, "additionalInfo"),
            image_url=image_url,
            image_urls=list(image_urls),
            invoice_type=invoice_type,
            confidence_scores=dict(fields.confidence_scores),
        )

        overrides = {
            "totalPieces": printed_pieces is not None,
            "quantity": printed_quantity is not None,
            "price": printed_price is not None,
        }
        return AssembledRecord(record=record, overrides=overrides)
