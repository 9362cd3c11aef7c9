"""
Whitelisted column transforms for import profiles.

A transform expression is a comma-separated chain applied left to right,
``@`` standing for the current value:

    trim(@)                     strip half- and full-width spaces
    upper(@)                    upper-case
    nullif(@,'x')               None when the value equals 'x' (blank for '')
    to_timestamp(@,'YYYY-MM-DD') reformat a date as ISO YYYY-MM-DD

Anything else is left untouched and logged once. A value that does not
match the to_timestamp format is kept as is.
"""

from datetime import datetime
from typing import List, Optional
import logging
import re

logger = logging.getLogger(__name__)

FULL_WIDTH_SPACE = "　"

_NULLIF = re.compile(r"^nullif\(@\s*,\s*'(.*)'\)$", re.IGNORECASE)
_TO_TIMESTAMP = re.compile(r"^to_timestamp\(@\s*,\s*'([^']+)'\)$", re.IGNORECASE)

# Longest tokens first so HH24 wins over HH
_FORMAT_TOKENS = (
    ("YYYY", "%Y"),
    ("HH24", "%H"),
    ("HH12", "%I"),
    ("YY", "%y"),
    ("MM", "%m"),
    ("DD", "%d"),
    ("MI", "%M"),
    ("SS", "%S"),
)

_unknown_reported = set()


def split_chain(expression: Optional[str]) -> List[str]:
    """Split on commas that are outside parentheses and quotes"""
    if not expression:
        return []
    parts, current, depth, quoted = [], [], 0, False
    for char in expression:
        if char == "'":
            quoted = not quoted
        elif not quoted and char == "(":
            depth += 1
        elif not quoted and char == ")":
            depth -= 1
        if char in ",;" and depth == 0 and not quoted:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    parts.append("".join(current).strip())
    return [p for p in parts if p]


def to_strptime_format(pg_format: str) -> str:
    """PostgreSQL-style date pattern → strptime pattern"""
    result, i = [], 0
    upper = pg_format.upper()
    while i < len(pg_format):
        for token, directive in _FORMAT_TOKENS:
            if upper.startswith(token, i):
                result.append(directive)
                i += len(token)
                break
        else:
            char = pg_format[i]
            result.append("%%" if char == "%" else char)
            i += 1
    return "".join(result)


def _trim(value: str) -> str:
    return value.strip().strip(FULL_WIDTH_SPACE).strip()


def _to_timestamp(value: str, pg_format: str) -> str:
    try:
        parsed = datetime.strptime(value.strip(), to_strptime_format(pg_format))
    except ValueError:
        logger.warning(f"to_timestamp: '{value}' does not match '{pg_format}', keeping the raw value")
        return value
    return parsed.strftime("%Y-%m-%d")


def apply_transform(value: Optional[str], expression: Optional[str]) -> Optional[str]:
    """
    Apply a transform chain to one cell.

    An empty expression trims the value.
    """
    if value is None:
        return None
    steps = split_chain(expression)
    if not steps:
        return _trim(value)

    result: Optional[str] = value
    for step in steps:
        if result is None:
            break
        lowered = step.lower().replace(" ", "")
        if lowered == "trim(@)":
            result = _trim(result)
        elif lowered == "upper(@)":
            result = result.upper()
        elif _NULLIF.match(step):
            sentinel = _NULLIF.match(step).group(1)
            if sentinel == "":
                if not _trim(result):
                    result = None
            elif result == sentinel:
                result = None
        elif _TO_TIMESTAMP.match(step):
            if _trim(result):
                result = _to_timestamp(result, _TO_TIMESTAMP.match(step).group(1))
        else:
            if step not in _unknown_reported:
                logger.warning(f"Unsupported transform '{step}' ignored")
                _unknown_reported.add(step)
    return result
