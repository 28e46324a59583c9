"""Parsing and cross-image aggregation of shipment contents.

Contents arrive as ``"Name*Qty, Name*Qty, ..."`` strings. For a single
record the names are kept as printed; across the images of one shipment the
names are normalized and quantities are summed per name.
"""

import re
from collections.abc import Iterable
from decimal import Decimal

from pydantic import BaseModel, Field

from shipscan.extraction.fields import UNKNOWN
from shipscan.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_UNIT_PRICE = Decimal("0.01")

_LEADING_INT = re.compile(r"^\s*(\d+)")
_TRAILING_NUMBER = re.compile(r"^(.*?)(\s+(\d+))$")
_PARENTHESIZED_NUMBER = re.compile(r"^(.*)\((\d+)\)$")


class ContentItem(BaseModel):
    """One line of a shipment's itemized contents."""

    name: str = Field(min_length=1)
    qty: int = Field(ge=1)
    price: Decimal = Field(default=DEFAULT_UNIT_PRICE, ge=Decimal("0.01"))


def _parse_qty(text: str | None) -> int:
    """Leading integer of ``text``; missing or zero means one piece."""
    if not text:
        return 1
    match = _LEADING_INT.match(text)
    if not match:
        return 1
    return int(match.group(1)) or 1


def split_contents(contents: str | None) -> list[tuple[str, int]]:
    """Split a contents string into ``(name, qty)`` pairs.

    Names are trimmed but otherwise untouched. ``UNKNOWN`` or empty input
    yields an empty list.
    """
    if not contents or contents.strip() == UNKNOWN:
        return []

    pairs: list[tuple[str, int]] = []
    for entry in contents.split(","):
        name, _, qty = entry.strip().partition("*")
        pairs.append((name.strip(), _parse_qty(qty.strip())))
    return pairs


def normalize_item(name: str, qty: int) -> tuple[str, int]:
    """Lower-case a name and pull a trailing quantity out of it.

    ``"Top 3"`` and ``"Top (3)"`` both become ``("top", 3)``; the embedded
    number replaces ``qty``.
    """
    name = name.lower().strip()

    match = _TRAILING_NUMBER.match(name)
    if match:
        return match.group(1).strip(), int(match.group(3)) or qty

    match = _PARENTHESIZED_NUMBER.match(name)
    if match:
        return match.group(1).strip(), int(match.group(2)) or qty

    return name, qty


def aggregate_contents(
    contents_list: Iterable[str | None],
    unit_price: Decimal = DEFAULT_UNIT_PRICE,
) -> list[ContentItem]:
    """Merge the contents of several images of one shipment.

    Items are keyed by normalized name; quantities are summed and the output
    keeps the order in which each name was first seen. Unit prices are not
    aggregated; every merged item carries ``unit_price``. Items whose name is
    empty after normalization are dropped.

    Args:
        contents_list: One contents string per processed image.
        unit_price: Placeholder unit price for merged items.

    Returns:
        Flat list of merged content items.
    """
    totals: dict[str, int] = {}
    for contents in contents_list:
        for raw_name, raw_qty in split_contents(contents):
            name, qty = normalize_item(raw_name, raw_qty)
            if not name:
                continue
            totals[name] = totals.get(name, 0) + qty

    items = [ContentItem(name=name, qty=qty, price=unit_price) for name, qty in totals.items()]
    logger.debug("Aggregated %d distinct content items", len(items))
    return items


def parse_record_contents(
    contents: str | None,
    unit_price: Decimal = DEFAULT_UNIT_PRICE,
) -> list[ContentItem]:
    """Parse the contents of a single label into record items.

    Entries without a name are skipped with a warning.
    """
    items: list[ContentItem] = []
    for name, qty in split_contents(contents):
        if not name:
            logger.warning("Skipping content entry without a name in %r", contents)
            continue
        items.append(ContentItem(name=name, qty=qty, price=unit_price))
    return items


def format_contents(items: Iterable[ContentItem]) -> str:
    """Render items back into the ``Name*Qty`` wire form."""
    return ", ".join(f"{item.name}*{item.qty}" for item in items)
