"""
Value normalizers shared by the cleansing engine and the EVENT upsert.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional
import re

DATE_FORMATS = (
    "%Y/%m/%d",
    "%Y-%m-%d",
    "%Y%m%d",
    "%m/%d/%Y",
    "%Y/%m/%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y-%m-%d %H:%M",
)

# Currency marks, thousands separators and percent signs vendors put in numbers
_NUMBER_NOISE = re.compile(r"[¥￥,，%％\s]")


def first_non_empty(*values: Optional[str]) -> Optional[str]:
    """Return the first value that is not None or blank, stripped"""
    for value in values:
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def parse_decimal(raw: Optional[str]) -> Decimal:
    """
    Parse a vendor number such as "¥1,234", "12.5%" or "３．５".

    Raises:
        ValueError: the text is empty or not a finite number
    """
    if raw is None:
        raise ValueError("empty number")
    text = _NUMBER_NOISE.sub("", str(raw)).replace("．", ".")
    # Full-width digits
    text = text.translate(str.maketrans("０１２３４５６７８９－", "0123456789-"))
    if not text:
        raise ValueError(f"empty number: {raw!r}")
    try:
        value = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"not a number: {raw!r}")
    if not value.is_finite():
        raise ValueError(f"not a finite number: {raw!r}")
    return value


def parse_datetime(raw: Optional[str]) -> datetime:
    """
    Parse a vendor date or timestamp with the known formats, falling back
    to ISO-8601.

    Raises:
        ValueError: no format matched
    """
    if raw is None or not str(raw).strip():
        raise ValueError("empty date")
    text = str(raw).strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(f"unrecognized date: {raw!r}")
    # Stored columns are naive UTC
    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return parsed
