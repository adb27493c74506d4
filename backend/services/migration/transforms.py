"""
Coercion helpers shared by the entity migrations.

Legacy rows arrive as flat dicts of loosely typed values (CHAR padding,
'Y'/'N' flags, dates as strings or datetimes). These helpers are pure and
never raise on malformed input; they return None or a default instead.
"""

import re
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from dateutil import parser as date_parser

_TRUE_VALUES = {"1", "y", "yes", "true", "t"}
_POSTAL_FIRST = re.compile(r"^[A-Z]\d[A-Z]$")
_POSTAL_LAST = re.compile(r"^\d[A-Z]\d$")


def clean_text(value: Any) -> Optional[str]:
    """Strip a text value; blank strings become None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def to_bool(value: Any, default: bool = False) -> bool:
    """Coerce legacy flags (1/0, Y/N, true/false); None gives `default`."""
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in _TRUE_VALUES


def to_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(str(value).strip())
    except ValueError:
        try:
            return int(float(str(value).strip()))
        except (ValueError, OverflowError):
            return default


def to_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(str(value).strip())
    except ValueError:
        return default


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_date(value: Any) -> Optional[datetime]:
    """Parse a legacy date value into a naive (UTC) datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return _naive_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value).strip()
    if not text:
        return None
    try:
        return _naive_utc(date_parser.parse(text))
    except (ValueError, OverflowError):
        return None


def build_postal_code(first: Any, last: Any) -> Dict[str, Optional[str]]:
    first3 = (clean_text(first) or "").upper()
    last3 = (clean_text(last) or "").upper()
    full = f"{first3} {last3}".strip() or None
    return {"first3": first3 or None, "last3": last3 or None, "full": full}


def is_valid_postal_code(first: Any, last: Any) -> bool:
    """Canadian postal code check (A1A 1A1). Missing parts are allowed."""
    first3 = (clean_text(first) or "").upper()
    last3 = (clean_text(last) or "").upper()
    if first3 and not _POSTAL_FIRST.match(first3):
        return False
    if last3 and not _POSTAL_LAST.match(last3):
        return False
    return True


def build_phone(
    country_code: Any,
    area_code: Any,
    number: Any,
    extension: Any = None,
) -> Optional[Dict[str, Any]]:
    """Build a nested phone document; None when there is no number."""
    number = clean_text(number)
    if not number:
        return None
    area_code = clean_text(area_code)
    extension = clean_text(extension)

    full = f"({area_code}) {number}" if area_code else number
    if extension:
        full = f"{full} ext. {extension}"

    return {
        "countryCode": clean_text(country_code) or "1",
        "areaCode": area_code,
        "number": number,
        "extension": extension,
        "full": full,
    }


def normalize_gender(value: Any) -> str:
    text = (clean_text(value) or "").lower()
    if text in ("m", "male", "man"):
        return "Male"
    if text in ("f", "female", "woman"):
        return "Female"
    return "Other"


def contains_keyword(value: Any, keywords) -> bool:
    """Case-insensitive substring match against a set of keywords."""
    text = (clean_text(value) or "").lower()
    if not text:
        return False
    return any(keyword.lower() in text for keyword in keywords)


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching parse_date output."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_choice(value: Any, choices, default: str) -> str:
    """
    Map free text onto a fixed vocabulary. `choices` is a sequence of
    (result, keywords) pairs checked in order; the first result with a
    keyword contained in the text wins.
    """
    text = (clean_text(value) or "").lower()
    if not text:
        return default
    for result, keywords in choices:
        if any(keyword in text for keyword in keywords):
            return result
    return default
