"""Value normalization shared by the vision-model and fallback paths."""

from shipscan.extraction.fields import UNKNOWN

_MIN_YEAR = 1900
_MAX_YEAR = 2100
_CENTURY_PIVOT = 50


def _plausible_year(segment: str) -> bool:
    return len(segment) == 4 and segment.isdigit() and _MIN_YEAR <= int(segment) <= _MAX_YEAR


def normalize_shipping_date(value: str) -> str:
    """Normalize a ``-`` separated date to ``YYYY-MM-DD``.

    A leading segment that is a plausible 4-digit year is taken as
    ``YYYY-MM-DD``. Anything else is read as ``DD-MM-YY``; a 2-digit year
    above 50 maps to the 1900s, otherwise to the 2000s. Applying this to an
    already normalized date returns it unchanged. Values that are
    ``UNKNOWN``, not three parts, or not numeric are returned as is.

    >>> normalize_shipping_date("25-08-08")
    '2008-08-25'
    """
    if not value or value == UNKNOWN:
        return value

    parts = value.strip().split("-")
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        return value

    year, month, day = parts
    if not _plausible_year(year):
        day, month, year = parts
        if len(year) != 4:
            year = ("19" if int(year) > _CENTURY_PIVOT else "20") + year.zfill(2)[-2:]

    return f"{year}-{month.zfill(2)}-{day.zfill(2)}"
