"""CSV export of stored shipping records."""

import csv
from collections.abc import Iterable
from typing import TextIO

from shipscan.extraction.aggregator import format_contents
from shipscan.records.models import ShippingRecord

EXPORT_COLUMNS = [
    "id",
    "clientName",
    "invoiceType",
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
    "imageUrl",
    "createdAt",
]


def record_row(record: ShippingRecord) -> dict[str, object]:
    """Flatten a record into one export row."""
    additional = record.additional
    return {
        "id": record.id,
        "clientName": record.client_name,
        "invoiceType": record.invoice_type.value,
        "barcodeNumber": record.tracking.barcode_number,
        "internalNumber": record.tracking.internal_number,
        "distributionCode": record.tracking.distribution_code,
        "shippingDate": additional.shipping_date or "",
        "senderName": record.sender.name,
        "senderAddress": record.sender.address,
        "senderPhone": record.sender.phone,
        "senderEmail": record.sender.email,
        "recipientName": record.recipient.name,
        "recipientAddress": record.recipient.address,
        "recipientPhone": record.recipient.phone,
        "totalWeight": additional.total_weight if additional.total_weight is not None else "",
        "totalPieces": additional.total_pieces if additional.total_pieces is not None else "",
        "quantity": additional.quantity if additional.quantity is not None else "",
        "price": additional.price if additional.price is not None else "",
        "contents": format_contents(record.contents),
        "additionalInfo": record.additional_info,
        "imageUrl": record.image_url,
        "createdAt": record.created_at.isoformat() if record.created_at else "",
    }


def write_records_csv(records: Iterable[ShippingRecord], stream: TextIO) -> int:
    """Write records as CSV to an open text stream.

    Returns:
        Number of rows written, excluding the header.
    """
    writer = csv.DictWriter(stream, fieldnames=EXPORT_COLUMNS, extrasaction="ignore")
    writer.writeheader()
    count = 0
    for record in records:
        writer.writerow(record_row(record))
        count += 1
    return count
