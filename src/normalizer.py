"""
Canonical forms for document numbers, dates, amounts and counterparty ids.

OCR text, spreadsheet cells and Excel serial dates all arrive in different
shapes; everything that compares values goes through these helpers.
"""

import re
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import NamedTuple, Optional, Union

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")
_LEADING_DIGITS = re.compile(r"^\d+")
_DATE_DMY = re.compile(r"^(\d{1,2})([./-])(\d{1,2})\2(\d{2,4})$")
_DATE_ISO = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
_COUNTRY_PREFIX = re.compile(r"^[A-Z]{2}(?=\d)")
_CURRENCY_WORD = re.compile(r"[^\W\d_]+\.?")
_FOREIGN_VAT = re.compile(
    r"^(RO|CZ|DE|AT|SK|HU|PL|IT|FR|ES|NL|BE|GR|EL|PT|SE|FI|DK|IE|LU|MT|CY|EE|LV|LT|SI|HR)\d",
    re.IGNORECASE,
)

EXCEL_EPOCH = date(1899, 12, 30)
SERIAL_MIN = 30000
SERIAL_MAX = 60000

CREDIT_NOTE_KEYWORDS = ("КРЕДИТНО ИЗВЕСТИЕ", "CREDIT NOTE")
CREDIT_NOTE_CODE = "КИ"

CENT = Decimal("0.01")

Number = Union[int, float, Decimal]


class DateParts(NamedTuple):
    day: int
    month: int
    year: int


# --- document numbers -------------------------------------------------------

def normalize_document_number(number: Optional[str]) -> str:
    """'00012345' → '12345', 'INV-0042' → 'inv0042'. Empty string for nothing."""
    if not number:
        return ""
    s = _NON_ALNUM.sub("", str(number)).lower()
    return s.lstrip("0")


def document_numbers_match(a: Optional[str], b: Optional[str]) -> bool:
    na = normalize_document_number(a)
    return na != "" and na == normalize_document_number(b)


def sanitize_document_number(number: Optional[str]) -> Optional[str]:
    """Keep only the leading digits: '05580209291/21.01.2026' → '05580209291'."""
    if not number:
        return None
    s = str(number).strip()
    m = _LEADING_DIGITS.match(s)
    return m.group(0) if m else s


# --- dates --------------------------------------------------------------------

def _expand_year(year: int) -> int:
    if year < 100:
        return 2000 + year if year < 50 else 1900 + year
    return year


def _from_serial(serial: float) -> DateParts:
    d = EXCEL_EPOCH + timedelta(days=int(serial))
    return DateParts(d.day, d.month, d.year)


def extract_date_components(value: Union[str, Number, date, None]) -> Optional[DateParts]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return DateParts(value.day, value.month, value.year)
    if isinstance(value, date):
        return DateParts(value.day, value.month, value.year)
    if isinstance(value, (int, float, Decimal)):
        if SERIAL_MIN < value < SERIAL_MAX:
            return _from_serial(float(value))
        return None

    text = str(value).strip()
    if not text:
        return None

    try:
        serial = float(text)
    except ValueError:
        serial = None
    if serial is not None:
        if SERIAL_MIN < serial < SERIAL_MAX:
            return _from_serial(serial)
        return None

    m = _DATE_DMY.match(text)
    if m:
        return DateParts(int(m.group(1)), int(m.group(3)), _expand_year(int(m.group(4))))

    m = _DATE_ISO.match(text)
    if m:
        return DateParts(int(m.group(3)), int(m.group(2)), int(m.group(1)))

    return None


def normalize_date(value: Union[str, Number, date, None]) -> str:
    """Render as DD.MM.YYYY; unparseable input comes back trimmed."""
    parts = extract_date_components(value)
    if parts is None:
        return str(value).strip() if value is not None else ""
    return f"{parts.day:02d}.{parts.month:02d}.{parts.year}"


def dates_match(a: Union[str, Number, date, None], b: Union[str, Number, date, None]) -> bool:
    pa = extract_date_components(a)
    pb = extract_date_components(b)
    if pa is None or pb is None:
        return False
    return pa == pb


def to_date(value: Union[str, Number, date, None]) -> Optional[date]:
    parts = extract_date_components(value)
    if parts is None:
        return None
    try:
        return date(parts.year, parts.month, parts.day)
    except ValueError:
        return None


# --- amounts ------------------------------------------------------------------

def parse_amount(value: Union[str, Number, None]) -> Optional[float]:
    """Parse '1 234,56', '(1208.33)', '-1.234.567,89', '1234.56 лв.' and friends.

    Returns None for anything that does not hold a number.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        f = float(value)
        return None if f != f else f  # NaN from spreadsheets

    s = str(value).strip()
    if not s:
        return None

    if s.startswith("(") and s.endswith(")"):
        s = "-" + s[1:-1]
    negative = s.startswith("-")

    s = re.sub(r"\s", "", s)
    s = _CURRENCY_WORD.sub("", s)  # "лв.", "BGN"
    s = re.sub(r"[^\d.,]", "", s)
    # repeated separator of one kind only groups thousands
    if (s.count(".") > 1 and "," not in s) or (s.count(",") > 1 and "." not in s):
        s = s.replace(".", "").replace(",", "")
    s = s.replace(",", ".")
    if s.count(".") > 1:
        head, _, tail = s.rpartition(".")
        s = head.replace(".", "") + "." + tail
    if not s or s == ".":
        return None

    try:
        number = float(s)
    except ValueError:
        return None
    return -number if negative else number


def to_cents(value: Number) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def amounts_within(a: Optional[Number], b: Optional[Number], tolerance: Number) -> bool:
    """Strict comparison: a difference equal to the tolerance is not a match."""
    if a is None or b is None:
        return False
    try:
        return abs(to_cents(a) - to_cents(b)) < Decimal(str(tolerance))
    except InvalidOperation:
        return False


def format_amount(value: Optional[Number]) -> Optional[str]:
    if value is None:
        return None
    return f"{to_cents(value):.2f}"


# --- credit notes -------------------------------------------------------------

def is_credit_note(document_type: Optional[str]) -> bool:
    if not document_type:
        return False
    upper = document_type.strip().upper()
    if upper == CREDIT_NOTE_CODE:
        return True
    return any(keyword in upper for keyword in CREDIT_NOTE_KEYWORDS)


def normalize_credit_note_amount(amount: Optional[float], document_type: Optional[str]) -> Optional[float]:
    if amount is None:
        return None
    if is_credit_note(document_type):
        return -abs(amount)
    return amount


# --- counterparty ids ---------------------------------------------------------

def normalize_counterparty_id(value: Optional[str]) -> str:
    if not value:
        return ""
    return re.sub(r"\s", "", str(value)).upper()


def strip_country_prefix(value: str) -> str:
    return _COUNTRY_PREFIX.sub("", value)


def counterparty_ids_match(a: Optional[str], b: Optional[str], allow_suffix: bool = True) -> bool:
    na = normalize_counterparty_id(a)
    nb = normalize_counterparty_id(b)
    if not na or not nb:
        return False
    if na == nb:
        return True

    ba = strip_country_prefix(na)
    bb = strip_country_prefix(nb)
    # prefix present on one side only, e.g. BG123456789 vs 123456789
    if (ba != na) != (bb != nb) and ba == bb:
        return True

    if allow_suffix and ba and bb:
        return na.endswith(nb) or nb.endswith(na)
    return False


def is_foreign_counterparty(value: Optional[str]) -> bool:
    if not value:
        return False
    return bool(_FOREIGN_VAT.match(normalize_counterparty_id(value)))


def is_physical_individual_id(value: Optional[str]) -> bool:
    """Placeholder ids used for private persons (no VAT number/EIK)."""
    if not value:
        return False
    s = re.sub(r"\s", "", str(value)).upper()
    return (
        bool(re.fullmatch(r"9{6,}", s))
        or bool(re.fullmatch(r"0{6,}", s))
        or s in ("ФИЗЛИЦЕ", "ФИЗ.ЛИЦЕ")
    )


def is_vat_registered(counterparty_id: Optional[str]) -> bool:
    return normalize_counterparty_id(counterparty_id).startswith("BG")
