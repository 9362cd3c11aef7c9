"""
Typed column diffing.

A diff is an ordered list of ColumnChange(column, old, new). Values are
compared through an equality dispatcher keyed by declared data type, after
normalization, so "1234", Decimal("1234.00") and 1234.0 are one value and a
date is compared by its date part.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable, List, Optional, Tuple

from sqlalchemy import Numeric, DateTime, Date, Integer
from sqlalchemy.dialects.postgresql import JSONB

from models.base import DataType

JSON = "JSON"
ID = "ID"
MONEY_SCALE = Decimal("0.01")

# Provenance keys that change with every batch and never count as a change
VOLATILE_PROVENANCE_KEYS = frozenset({"idem_key", "batch_id", "run_at"})


@dataclass(frozen=True)
class ColumnChange:
    column: str
    old: Any
    new: Any


def normalize_number(value: Any) -> Optional[Decimal]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}")
    return number.quantize(MONEY_SCALE, rounding=ROUND_HALF_UP)


def normalize_date(value: Any) -> Optional[datetime]:
    """Date-only representation as a midnight datetime"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    raise ValueError(f"not a date: {value!r}")


def normalize_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = (value - value.utcoffset()).replace(tzinfo=None)
        return value.replace(microsecond=0)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    raise ValueError(f"not a timestamp: {value!r}")


def normalize_id(value: Any) -> Optional[int]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return int(value)


def normalize_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def strip_volatile(document: Any) -> Any:
    """Drop batch-scoped keys from a provenance document (dict or list of dicts)"""
    if isinstance(document, dict):
        return {k: strip_volatile(v) for k, v in document.items() if k not in VOLATILE_PROVENANCE_KEYS}
    if isinstance(document, list):
        return [strip_volatile(item) for item in document]
    return document


def normalize(data_type: Optional[str], value: Any) -> Any:
    """Normalize a value for storage and comparison under ``data_type``"""
    if data_type == DataType.NUM.value:
        return normalize_number(value)
    if data_type == DataType.DATE.value:
        return normalize_date(value)
    if data_type == DataType.TIMESTAMPTZ.value:
        return normalize_timestamp(value)
    if data_type == ID:
        return normalize_id(value)
    if data_type == JSON:
        return value
    return normalize_text(value)


def values_equal(data_type: Optional[str], old: Any, new: Any) -> bool:
    if data_type == JSON:
        return strip_volatile(old) == strip_volatile(new)
    return normalize(data_type, old) == normalize(data_type, new)


def column_data_type(column) -> str:
    """Comparison type of a mapped column, derived from its SQL type"""
    if isinstance(column.type, Numeric):
        return DataType.NUM.value
    if isinstance(column.type, DateTime):
        return DataType.TIMESTAMPTZ.value
    if isinstance(column.type, Date):
        return DataType.DATE.value
    if isinstance(column.type, JSONB):
        return JSON
    if isinstance(column.type, Integer):
        return ID
    return DataType.TEXT.value


def diff_columns(entity: Any, desired: Iterable[Tuple[str, Optional[str], Any]]) -> List[ColumnChange]:
    """
    Compare desired (column, data_type, value) triples with ``entity``.

    Only differing columns are returned, with the new value normalized.
    """
    changes = []
    for column, data_type, new in desired:
        old = getattr(entity, column)
        if not values_equal(data_type, old, new):
            changes.append(ColumnChange(column, old, normalize(data_type, new)))
    return changes


def apply_changes(entity: Any, changes: Iterable[ColumnChange]) -> None:
    for change in changes:
        setattr(entity, change.column, change.new)
