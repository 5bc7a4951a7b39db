"""Normalization helpers for headers, identifiers, amounts and periods.

Both datasets go through the same helpers before any join, so formatting
differences ("0042" vs "42", " E1 " vs "e1", "Jan 2024" vs "2024-01-31")
never show up as spurious file-only / canonical-only splits.
"""

from __future__ import annotations

import datetime
import math
import re
from dataclasses import dataclass
from typing import Any, Iterable

_SEPARATOR_RE = re.compile(r"[\s_\-.]+")
_COMPACT_RE = re.compile(r"[\W_]+")
_NUMERIC_ID_RE = re.compile(r"^\d+$")

_CURRENCY_CHARS = "$€£¥₩₹  "
_THOUSANDS_COMMA_RE = re.compile(r"^-?\d{1,3}(,\d{3})+(\.\d+)?$")
_DECIMAL_COMMA_RE = re.compile(r"^-?\d+,\d{1,2}$")

_ISO_PERIOD_RE = re.compile(r"^(\d{4})[-/](\d{1,2})(?:[-/]\d{1,2})?(?:[ T].*)?$")
_MONTH_FIRST_RE = re.compile(r"^(\d{1,2})[-/](\d{4})$")
_QUARTER_RE = re.compile(r"^[QqTt]([1-4])\s*[-/ ]?\s*(\d{4})$")
_NAMED_MONTH_RE = re.compile(r"^([^\W\d_]+)\.?[\s\-/,]+(\d{4})$")
_YEAR_QUARTER_RE = re.compile(r"^(\d{4})\s*[-/ ]?\s*[Qq]([1-4])$")

ANY_YEAR = "*"

# English, Spanish and Portuguese month names; 3-letter prefixes also match.
_MONTH_NAMES: tuple[tuple[str, ...], ...] = (
    ("january", "enero", "janeiro"),
    ("february", "febrero", "fevereiro"),
    ("march", "marzo", "marco", "março"),
    ("april", "abril"),
    ("may", "mayo", "maio"),
    ("june", "junio", "junho"),
    ("july", "julio", "julho"),
    ("august", "agosto"),
    ("september", "septiembre", "setiembre", "setembro"),
    ("october", "octubre", "outubro"),
    ("november", "noviembre", "novembro"),
    ("december", "diciembre", "dezembro"),
)


# ---------------------------------------------------------------------------
# Headers
# ---------------------------------------------------------------------------


def normalize_header(header: str) -> str:
    """Lower-case and collapse whitespace/underscores/hyphens/dots to ``_``.

    >>> normalize_header("  Employee-ID ")
    'employee_id'
    """
    text = str(header).strip().lower()
    return _SEPARATOR_RE.sub("_", text).strip("_")


def compact(text: str) -> str:
    """Strip every separator and punctuation character: ``employee_id`` -> ``employeeid``."""
    return _COMPACT_RE.sub("", str(text).lower())


def header_tokens(header: str) -> list[str]:
    return [t for t in normalize_header(header).split("_") if t]


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------


def id_text(value: Any) -> str:
    """Render a raw id cell as trimmed text (``1001.0`` -> ``"1001"``)."""
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        if value.is_integer():
            return str(int(value))
    return str(value).strip()


def normalize_id(value: Any) -> str:
    """Identifier rule applied identically to both datasets before any join.

    Trims, case-folds and strips leading zeros from an all-digit id. The
    decision is made per id, so a footer row such as ``TOTAL`` does not stop
    ``"0101"`` from matching ``"101"``.

    >>> normalize_id(" 0042 ") == normalize_id(42) == "42"
    True
    """
    text = id_text(value).casefold()
    if _NUMERIC_ID_RE.match(text):
        text = text.lstrip("0") or "0"
    return text


# ---------------------------------------------------------------------------
# Amounts
# ---------------------------------------------------------------------------


def parse_amount(value: Any) -> float | None:
    """Parse a raw amount cell.

    Returns None for blank cells. Accepts currency symbols, thousands
    separators, a trailing ``%`` (stripped, value kept as written), decimal
    commas and accounting negatives ``(123.45)``.

    Raises ValueError for non-empty cells that are not amounts.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Not an amount: {value!r}")
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return None
        return float(value)
    if isinstance(value, (datetime.date, datetime.datetime)):
        raise ValueError(f"Not an amount: {value!r}")

    text = str(value).strip()
    if not text or text in ("-", "--"):
        return None

    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]
    text = text.strip(_CURRENCY_CHARS).rstrip("%").strip(_CURRENCY_CHARS)
    if text.startswith("-"):
        negative = not negative
        text = text[1:].strip(_CURRENCY_CHARS)

    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            # 1.234,56
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        if _THOUSANDS_COMMA_RE.match(text):
            text = text.replace(",", "")
        elif _DECIMAL_COMMA_RE.match(text):
            text = text.replace(",", ".")

    try:
        amount = float(text)
    except ValueError:
        raise ValueError(f"Not an amount: {value!r}") from None
    if math.isnan(amount) or math.isinf(amount):
        raise ValueError(f"Not an amount: {value!r}")
    return -amount if negative else amount


def is_amount(value: Any) -> bool:
    """True if the cell parses to a (non-blank) amount."""
    try:
        return parse_amount(value) is not None
    except ValueError:
        return False


# ---------------------------------------------------------------------------
# Periods
# ---------------------------------------------------------------------------


def month_from_name(text: str) -> int | None:
    name = text.strip().lower().rstrip(".")
    if len(name) < 3:
        return None
    for idx, names in enumerate(_MONTH_NAMES, start=1):
        for full in names:
            if name == full or (len(name) >= 3 and full.startswith(name)):
                return idx
    return None


@dataclass(frozen=True)
class Period:
    """A resolved period value.

    ``year`` is None for month-only values such as ``Enero`` or a bare ``3``
    in a month column; a missing year matches any year. ``text`` holds
    values that resolve to nothing structured and only match themselves.
    """

    year: int | None = None
    month: int | None = None
    quarter: int | None = None
    text: str | None = None

    @property
    def key(self) -> str:
        """``YYYY-MM``, ``YYYY-Qn`` or ``YYYY``; ``*`` stands in for a missing year."""
        if self.text is not None:
            return self.text
        year = f"{self.year:04d}" if self.year is not None else ANY_YEAR
        if self.month is not None:
            return f"{year}-{self.month:02d}"
        if self.quarter is not None:
            return f"{year}-Q{self.quarter}"
        return year

    @property
    def label(self) -> str:
        if self.text is not None:
            return self.text
        suffix = f" {self.year}" if self.year is not None else ""
        if self.month is not None:
            return _MONTH_NAMES[self.month - 1][0].title() + suffix
        if self.quarter is not None:
            return f"Q{self.quarter}{suffix}"
        return str(self.year)

    @property
    def sort_key(self) -> tuple[int, int, str]:
        if self.month is not None:
            month = self.month
        elif self.quarter is not None:
            month = (self.quarter - 1) * 3 + 1
        else:
            month = 0
        return (self.year if self.year is not None else -1, month, self.text or "")

    def _quarter(self) -> int | None:
        if self.month is not None:
            return (self.month - 1) // 3 + 1
        return self.quarter

    def within(self, target: "Period") -> bool:
        """True if this period falls inside ``target``.

        A month falls inside its own quarter and year, a quarter inside its
        year. Text periods only match equal text.
        """
        if self.text is not None or target.text is not None:
            return self.text == target.text
        if self.year is not None and target.year is not None and self.year != target.year:
            return False
        if target.month is not None:
            return self.month == target.month
        if target.quarter is not None:
            return self._quarter() == target.quarter
        return True


def _from_number(number: int) -> Period:
    if 1900 <= number <= 2100:
        return Period(year=number)
    if 1 <= number <= 12:
        return Period(month=number)
    return Period(text=str(number))


def _resolve_one(value: Any) -> Period | None:
    if value is None:
        return None
    if isinstance(value, (datetime.date, datetime.datetime)):
        return Period(value.year, value.month)
    if isinstance(value, float):
        if math.isnan(value):
            return None
        if value.is_integer():
            value = int(value)
    if isinstance(value, int) and not isinstance(value, bool):
        return _from_number(value)

    text = str(value).strip()
    if not text:
        return None

    m = _ISO_PERIOD_RE.match(text)
    if m and 1 <= int(m.group(2)) <= 12:
        return Period(int(m.group(1)), int(m.group(2)))

    m = _MONTH_FIRST_RE.match(text)
    if m and 1 <= int(m.group(1)) <= 12:
        return Period(int(m.group(2)), int(m.group(1)))

    m = _QUARTER_RE.match(text)
    if m:
        return Period(int(m.group(2)), quarter=int(m.group(1)))

    m = _YEAR_QUARTER_RE.match(text)
    if m:
        return Period(int(m.group(1)), quarter=int(m.group(2)))

    m = _NAMED_MONTH_RE.match(text)
    if m:
        month = month_from_name(m.group(1))
        if month:
            return Period(int(m.group(2)), month)

    if _NUMERIC_ID_RE.match(text):
        return _from_number(int(text))

    month = month_from_name(text)
    if month:
        return Period(month=month)
    return Period(text=text.casefold())


def resolve_period(values: Iterable[Any]) -> Period | None:
    """Resolve one or more period cells into a single Period.

    Several cells come from several period columns (a ``Mes`` column and an
    ``Año`` column, say). The first cell that supplies a year, a month or a
    quarter wins that part. Unrecognized text is kept only when nothing
    else resolved. Returns None when every cell is blank.
    """
    year: int | None = None
    month: int | None = None
    quarter: int | None = None
    text: str | None = None
    for value in values:
        period = _resolve_one(value)
        if period is None:
            continue
        if period.text is not None:
            if text is None:
                text = period.text
            continue
        if year is None:
            year = period.year
        if month is None:
            month = period.month
        if quarter is None:
            quarter = period.quarter
    if year is None and month is None and quarter is None:
        return Period(text=text) if text is not None else None
    if month is not None:
        quarter = None
    return Period(year, month, quarter)


def normalize_period(value: Any) -> str | None:
    """Normalize a period cell to a comparable key (see :attr:`Period.key`). Blank -> None."""
    period = resolve_period([value])
    return period.key if period is not None else None


def period_matches(key: Any, target: Any) -> bool:
    """True if a period value falls inside ``target``; both sides are resolved first."""
    value = resolve_period([key])
    wanted = resolve_period([target])
    if value is None or wanted is None:
        return False
    return value.within(wanted)
