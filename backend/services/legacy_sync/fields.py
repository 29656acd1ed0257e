"""
Legacy Material Request Sync - Field Extraction

Legacy exports name the same field differently across versions, so every read
goes through an ordered list of candidate key-paths. These helpers never raise;
a missing value is returned as None (or "" for the string helpers).
"""

import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from dateutil import parser as date_parser

LegacyRow = Dict[str, Any]

_WHITESPACE = re.compile(r"\s+")


# =============================================================================
# PATH ACCESS
# =============================================================================

def read_path(obj: Optional[LegacyRow], dot_path: str) -> Any:
    """Follow a dotted key-path through nested dicts, returning None when any hop is missing."""
    if not obj:
        return None

    cursor: Any = obj
    for part in dot_path.split("."):
        if not isinstance(cursor, dict) or part not in cursor:
            return None
        cursor = cursor[part]
    return cursor


def pick_path(obj: Optional[LegacyRow], paths: List[str]) -> Any:
    """Return the first value among `paths` that is present, not None and not empty."""
    for path in paths:
        value = read_path(obj, path)
        if value is not None and value != "":
            return value
    return None


# =============================================================================
# COERCION
# =============================================================================

def safe_string(value: Any) -> str:
    if isinstance(value, bool):
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)) and math.isfinite(value):
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        return str(value)
    return ""


def safe_number(value: Any) -> Optional[float]:
    """Coerce numbers, numeric strings and decimal-like objects to float."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = float(text)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    to_number = getattr(value, "to_number", None)
    if callable(to_number):
        return safe_number(to_number())
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def as_nullable_text(value: Any) -> Optional[str]:
    text = safe_string(value)
    return text or None


def to_date(value: Any) -> Optional[datetime]:
    """
    Parse a legacy timestamp.

    Accepts datetime objects, ISO-ish strings and epoch milliseconds.
    Naive values are assumed to be UTC.
    """
    parsed: Optional[datetime] = None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        return None
    elif isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        try:
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str) and value.strip():
        try:
            parsed = date_parser.isoparse(value.strip())
        except (ValueError, OverflowError):
            try:
                parsed = date_parser.parse(value.strip())
            except (ValueError, OverflowError):
                return None

    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_utc_date_only(value: datetime) -> datetime:
    utc_value = value.astimezone(timezone.utc)
    return datetime(utc_value.year, utc_value.month, utc_value.day, tzinfo=timezone.utc)


def _round_half_up(value: float, precision: int) -> float:
    multiplier = 10 ** precision
    return math.floor(value * multiplier + 0.5) / multiplier


def round_currency(value: float) -> float:
    return _round_half_up(value, 2)


def round_quantity(value: float) -> float:
    return _round_half_up(value, 3)


# =============================================================================
# NAMES & IDENTITIES
# =============================================================================

def normalize_text(value: Optional[str]) -> str:
    """Trim, collapse internal whitespace and lowercase; used for all index keys."""
    if not value:
        return ""
    return _WHITESPACE.sub(" ", value.strip()).lower()


def split_name(value: Any) -> Tuple[str, str]:
    """
    Split a free-text name into (first, last).

    "Dela Cruz, Juan" -> ("Juan", "Dela Cruz")
    "Juan P. Dela"    -> ("Juan", "Dela")
    """
    raw = safe_string(value)
    if not raw:
        return "", ""

    if "," in raw:
        last_part, _, first_part = raw.partition(",")
        return first_part.split(",")[0].strip(), last_part.strip()

    parts = raw.split()
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[-1]


def name_key(first_name: str, last_name: str) -> str:
    return f"{normalize_text(first_name)}|{normalize_text(last_name)}"


@dataclass
class Identity:
    """A loosely identified person from a legacy row."""
    employee_number: str = ""
    first_name: str = ""
    last_name: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


def extract_identity(
    row: LegacyRow,
    employee_number_paths: List[str],
    first_name_paths: Optional[List[str]] = None,
    last_name_paths: Optional[List[str]] = None,
    name_paths: Optional[List[str]] = None,
) -> Identity:
    """Read an identity, preferring explicit first/last name fields over a combined name."""
    employee_number = safe_string(pick_path(row, employee_number_paths))
    first_name = safe_string(pick_path(row, first_name_paths or []))
    last_name = safe_string(pick_path(row, last_name_paths or []))

    if first_name and last_name:
        return Identity(employee_number, first_name, last_name)

    parsed_first, parsed_last = split_name(pick_path(row, name_paths or []))
    return Identity(
        employee_number=employee_number,
        first_name=first_name or parsed_first,
        last_name=last_name or parsed_last,
    )


def has_identity(identity: Identity) -> bool:
    return bool(identity.employee_number or identity.first_name or identity.last_name)
