"""
Import of purchase/sales VAT journals exported by the accounting software.

Both journals share the layout of the first columns (type, number, date,
counterparty id); the amount columns differ per journal.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
import xlrd

from logging_setup import get_logger
from normalizer import is_vat_registered, normalize_date, parse_amount
from recon_models import LedgerParseError, LedgerRow

log = get_logger(__name__)

HEADER_SCAN_ROWS = 15
FIRM_ID_SCAN_ROWS = 5
MAX_COLUMNS = 40
EXCEL_ENGINES = {".xlsx": "openpyxl", ".xlsm": "openpyxl", ".xls": "xlrd"}
TEXT_SUFFIXES = (".csv", ".txt")

# 0-based column positions
COMMON_COLUMNS = {"document_type": 2, "document_number": 3, "document_date": 4, "counterparty_id": 5}
PURCHASE_COLUMNS = {"amount_no_credit": 9, "amount_full_credit": 10, "vat_full_credit": 11}
SALES_COLUMNS = {
    "counterparty_name": 6,
    "total_tax_base": 9,
    "total_vat": 10,
    "tax_base_20": 11,
    "vat_20": 12,
    "tax_base_9": 17,
    "vat_9": 18,
    "tax_base_0": 19,
}

_FIRM_VAT_LABELLED = re.compile(r"(?:ИН по ЗДДС|ДДС №?|VAT)\s*(BG\s*\d{9,10})", re.IGNORECASE)
_FIRM_VAT_BARE = re.compile(r"BG\s*(\d{9,10})", re.IGNORECASE)


@dataclass
class LedgerImport:
    rows: List[LedgerRow]
    firm_vat_id: Optional[str] = None
    skipped: Dict[str, int] = field(default_factory=dict)


def _cell(row: list, index: int):
    if index >= len(row):
        return None
    value = row[index]
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    return value


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return normalize_date(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _document_number(value) -> str:
    """Whole numbers lose the '.0' Excel gives them; date cells are not numbers."""
    if value is None or isinstance(value, (datetime, date)):
        return ""
    return _text(value)


def _is_numbering_row(row: list) -> bool:
    return [_text(_cell(row, i)) for i in range(3)] == ["1", "2", "3"]


def _is_empty(row: list) -> bool:
    return all(_cell(row, i) is None or _text(_cell(row, i)) == "" for i in range(len(row)))


def find_header_row(data: List[list]) -> int:
    """Index of the header row within the first rows, or -1."""
    for i, row in enumerate(data[:HEADER_SCAN_ROWS]):
        joined = " ".join(_text(_cell(row, j)) for j in range(len(row))).lower()
        if "вид" in joined and "документ" in joined:
            return i
        if _is_numbering_row(row):
            return i
    return -1


def find_firm_vat_id(data: List[list]) -> Optional[str]:
    for row in data[:FIRM_ID_SCAN_ROWS]:
        joined = " ".join(_text(_cell(row, j)) for j in range(len(row)))
        m = _FIRM_VAT_LABELLED.search(joined)
        if m:
            return re.sub(r"\s", "", m.group(1)).upper()
        m = _FIRM_VAT_BARE.search(joined)
        if m:
            return "BG" + m.group(1)
    return None


def read_table(path: str, delimiter: str = ",") -> List[list]:
    """Spreadsheet or CSV → list of raw cell lists, fully empty rows dropped."""
    suffix = Path(path).suffix.lower()
    if suffix not in EXCEL_ENGINES and suffix not in TEXT_SUFFIXES:
        raise LedgerParseError(f"unsupported ledger format '{suffix}': {path}")
    try:
        if suffix in EXCEL_ENGINES:
            df = pd.read_excel(path, header=None, dtype=object, engine=EXCEL_ENGINES[suffix])
        else:
            df = pd.read_csv(
                path,
                header=None,
                names=list(range(MAX_COLUMNS)),
                dtype=str,
                keep_default_na=False,
                sep=delimiter,
                encoding="utf-8-sig",
            )
    except (OSError, ValueError, xlrd.XLRDError) as e:
        raise LedgerParseError(f"cannot read ledger {path}: {e}") from e

    data = [list(values) for values in df.itertuples(index=False, name=None)]
    return [row for row in data if not _is_empty(row)]


def _parse_row(row: list, row_index: int, flow: str) -> LedgerRow:
    counterparty_id = _text(_cell(row, COMMON_COLUMNS["counterparty_id"]))
    values = {
        "row_index": row_index,
        "document_type": _text(_cell(row, COMMON_COLUMNS["document_type"])),
        "document_number": _document_number(_cell(row, COMMON_COLUMNS["document_number"])),
        "document_date": normalize_date(_cell(row, COMMON_COLUMNS["document_date"])),
        "counterparty_id": counterparty_id,
        "vat_registered": is_vat_registered(counterparty_id),
    }
    if flow == "sales":
        values["counterparty_name"] = _text(_cell(row, SALES_COLUMNS["counterparty_name"]))
        for name, column in SALES_COLUMNS.items():
            if name != "counterparty_name":
                values[name] = parse_amount(_cell(row, column))
    else:
        for name, column in PURCHASE_COLUMNS.items():
            values[name] = parse_amount(_cell(row, column))
    return LedgerRow(**values)


def parse_rows(data: List[list], flow: str) -> LedgerImport:
    if len(data) < 2:
        raise LedgerParseError("ledger does not contain enough data")

    header = find_header_row(data)
    start = header + 1 if header >= 0 else 1
    skipped = {"numbering": 0, "no_number": 0, "totals": 0}
    rows: List[LedgerRow] = []

    for i in range(start, len(data)):
        row = data[i]
        if _is_numbering_row(row):
            skipped["numbering"] += 1
            continue
        number = _document_number(_cell(row, COMMON_COLUMNS["document_number"]))
        if not number:
            skipped["no_number"] += 1
            continue
        if "общо" in number.lower():
            skipped["totals"] += 1
            continue
        rows.append(_parse_row(row, i + 1, flow))

    if not rows:
        raise LedgerParseError("no ledger rows could be parsed")

    firm_vat_id = find_firm_vat_id(data) if flow == "sales" else None
    return LedgerImport(rows=rows, firm_vat_id=firm_vat_id, skipped=skipped)


def load_ledger(path: str, flow: str, delimiter: str = ",") -> LedgerImport:
    if flow not in ("purchase", "sales"):
        raise LedgerParseError(f"unknown journal flow '{flow}'")
    result = parse_rows(read_table(path, delimiter), flow)
    log.info(
        "ledger_loaded",
        path=str(path),
        flow=flow,
        rows=len(result.rows),
        firm_vat_id=result.firm_vat_id,
        **{f"skipped_{k}": v for k, v in result.skipped.items()},
    )
    return result
