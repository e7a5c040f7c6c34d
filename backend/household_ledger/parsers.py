"""
Flexible value parsers for imported spreadsheet cells.

Two pure, total functions resolve every date and amount format question in
the import pipeline:

- parse_flexible_date: ISO, regional D/M/Y (``/``, ``-`` or ``.``) and
  spreadsheet serial dates to a canonical ``YYYY-MM-DD`` string.
- parse_flexible_amount: Brazilian and US thousands/decimal conventions,
  currency symbols and native spreadsheet numbers to a non-negative float
  rounded to two decimals.

Both return None instead of raising, and never guess: input that could be
read two ways, or that would produce an impossible calendar date, is rejected.
"""

import math
import re
from datetime import date, datetime, timedelta
from typing import Optional

from household_ledger.models import Cell

# Spreadsheet serials accepted as dates (roughly 1982 to 2064).
SERIAL_MIN = 30000
SERIAL_MAX = 60000
# Days between the 1900 spreadsheet epoch (with its leap-year bug) and 1970-01-01.
SERIAL_UNIX_OFFSET = 25569
# Amounts at or above this are rejected; below it every accepted value
# prints without an exponent, so str() output parses back to itself.
MAX_AMOUNT = 1e12

_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_REGIONAL_DATE = re.compile(r"^(\d{1,2})([/.\-])(\d{1,2})\2(\d{2}|\d{4})$")
_SERIAL_TEXT = re.compile(r"^\d+(\.\d+)?$")

_CURRENCY = re.compile(r"R\$|US\$|\$|€|£|\s")
# "1.234" or "1,234": thousands grouping or a three-digit fraction.
_AMBIGUOUS_GROUP = re.compile(r"^[1-9]\d{0,2}[.,]\d{3}$")
_BR_DECIMAL = re.compile(r"^\d{1,3}(\.\d{3})+,\d{1,2}$")
_BR_INTEGER = re.compile(r"^\d{1,3}(\.\d{3}){2,}$")
_US_GROUPED = re.compile(r"^\d{1,3}(,\d{3})+(\.\d{1,2})?$")
_COMMA_DECIMAL = re.compile(r"^\d+,\d{1,2}$")
_DOT_DECIMAL = re.compile(r"^\d+(\.\d+)?$")


def is_numeric_cell(raw: Cell) -> bool:
    return isinstance(raw, (int, float)) and not isinstance(raw, bool)


def cell_text(raw: Optional[Cell]) -> str:
    """Display/lookup text of a cell; integral numbers lose their ``.0``."""
    if raw is None:
        return ""
    if is_numeric_cell(raw):
        value = float(raw)
        return str(int(value)) if value.is_integer() else str(value)
    return str(raw).strip()


def _calendar_date(year: int, month: int, day: int) -> Optional[str]:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def _serial_to_iso(serial: float) -> Optional[str]:
    if math.isnan(serial) or not SERIAL_MIN < serial < SERIAL_MAX:
        return None
    moment = datetime(1970, 1, 1) + timedelta(days=serial - SERIAL_UNIX_OFFSET)
    return moment.date().isoformat()


def parse_flexible_date(raw: Optional[Cell]) -> Optional[str]:
    """
    Normalize a date cell to ``YYYY-MM-DD``.

    Args:
        raw: Cell text or a native spreadsheet number

    Returns:
        ISO date string, or None when the value is empty, malformed or not a
        real calendar date
    """
    if raw is None or isinstance(raw, bool):
        return None

    if is_numeric_cell(raw):
        return _serial_to_iso(float(raw))

    candidate = str(raw).strip()
    if not candidate:
        return None

    match = _ISO_DATE.match(candidate)
    if match:
        year, month, day = (int(part) for part in match.groups())
        return _calendar_date(year, month, day)

    match = _REGIONAL_DATE.match(candidate)
    if match:
        day, month, year_text = int(match.group(1)), int(match.group(3)), match.group(4)
        year = int(year_text)
        if len(year_text) == 2:
            year += 1900 if year > 50 else 2000
        return _calendar_date(year, month, day)

    if _SERIAL_TEXT.match(candidate):
        return _serial_to_iso(float(candidate))

    return None


def round_half_up(value: float) -> Optional[float]:
    """Round to cents, half up; None when the value is not finite or too large to scale."""
    scaled = value * 100
    if not math.isfinite(scaled):
        return None
    return math.floor(scaled + 0.5) / 100


def parse_flexible_amount(raw: Optional[Cell]) -> Optional[float]:
    """
    Normalize an amount cell to a non-negative float with two decimals.

    Accepted shapes (after dropping currency symbols and whitespace):
    ``1.234,56`` and ``1.234.567`` (Brazilian), ``1,234.56`` (US),
    ``127,61`` (decimal comma), ``127.61`` / ``127`` (plain).
    A single separator followed by exactly three digits (``1.234``,
    ``1,234``) is ambiguous between thousands grouping and a fraction and
    is rejected. Negative values and values from MAX_AMOUNT up are rejected.
    """
    if raw is None or isinstance(raw, bool):
        return None

    if is_numeric_cell(raw):
        value = float(raw)
        if not math.isfinite(value) or not 0 <= value < MAX_AMOUNT:
            return None
        return round_half_up(value)

    text = _CURRENCY.sub("", str(raw).strip())
    if not text:
        return None

    if _AMBIGUOUS_GROUP.match(text):
        return None
    if _BR_DECIMAL.match(text):
        text = text.replace(".", "").replace(",", ".")
    elif _BR_INTEGER.match(text):
        text = text.replace(".", "")
    elif _US_GROUPED.match(text):
        text = text.replace(",", "")
    elif _COMMA_DECIMAL.match(text):
        text = text.replace(",", ".")
    elif not _DOT_DECIMAL.match(text):
        return None

    value = float(text)
    if value >= MAX_AMOUNT:
        return None
    return round_half_up(value)
