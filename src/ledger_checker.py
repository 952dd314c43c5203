"""
Internal consistency checks over the ledger itself: rate-bucket totals, VAT
arithmetic and per-type document numbering.
"""

from collections import defaultdict
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from config_loader import LedgerCheckConfig
from normalizer import normalize_date, normalize_document_number, to_cents, to_date
from recon_models import LedgerFinding, LedgerRow

# rate key in the config → (tax base column, VAT column)
_RATE_COLUMNS = {
    "20": ("tax_base_20", "vat_20"),
    "9": ("tax_base_9", "vat_9"),
}


def _sum_cents(values) -> Decimal:
    return sum((to_cents(v) for v in values if v is not None), Decimal("0.00"))


def _check_totals(row: LedgerRow, tolerance: Decimal) -> List[LedgerFinding]:
    findings = []
    if row.total_tax_base is not None:
        actual = to_cents(row.total_tax_base)
        expected = _sum_cents((row.tax_base_20, row.tax_base_9, row.tax_base_0))
        if abs(actual - expected) > tolerance:
            findings.append(LedgerFinding(
                row.row_index, row.document_number, "total_mismatch",
                "Total tax base does not match the sum of rate bases (20% + 9% + 0%)",
                f"{expected:.2f}", f"{actual:.2f}", "error",
            ))
    if row.total_vat is not None:
        actual = to_cents(row.total_vat)
        expected = _sum_cents((row.vat_20, row.vat_9))
        if abs(actual - expected) > tolerance:
            findings.append(LedgerFinding(
                row.row_index, row.document_number, "total_mismatch",
                "Total VAT does not match the sum of VAT amounts (20% + 9%)",
                f"{expected:.2f}", f"{actual:.2f}", "error",
            ))
    return findings


def _check_rates(row: LedgerRow, rates: Tuple[Tuple[str, float], ...], tolerance: Decimal) -> List[LedgerFinding]:
    findings = []
    for key, rate in rates:
        columns = _RATE_COLUMNS.get(key)
        if columns is None:
            continue
        base = getattr(row, columns[0])
        vat = getattr(row, columns[1])
        if base is None or vat is None:
            continue
        expected = to_cents(Decimal(str(base)) * Decimal(str(rate)))
        actual = to_cents(vat)
        if abs(expected - actual) > tolerance:
            findings.append(LedgerFinding(
                row.row_index, row.document_number, "vat_calculation",
                f"VAT {key}% does not match the calculated value",
                f"{expected:.2f}", f"{actual:.2f}", "error",
            ))
    return findings


def _numeric_part(key: str) -> Optional[int]:
    digits = "".join(ch for ch in key if ch.isdigit())
    return int(digits) if digits else None


def _check_sequences(rows: List[LedgerRow]) -> List[LedgerFinding]:
    findings = []
    by_type: Dict[str, List[Tuple[int, str, LedgerRow]]] = defaultdict(list)
    for row in rows:
        key = normalize_document_number(row.document_number)
        number = _numeric_part(key)
        if number is None:
            continue
        by_type[row.document_type or "unknown"].append((number, key, row))

    for doc_type, entries in by_type.items():
        if len(entries) < 2:
            continue
        ordered = sorted(entries, key=lambda e: e[0])

        for (prev_num, _, _), (num, _, _) in zip(ordered, ordered[1:]):
            gap = num - prev_num
            if gap > 1:
                findings.append(LedgerFinding(
                    0, f"{doc_type} {prev_num} - {num}", "number_sequence",
                    f"Gap in numbering: {gap - 1} document(s) missing",
                    str(prev_num + 1), str(num), "warning",
                ))

        seen: Dict[str, int] = {}
        for _, key, row in entries:
            if key in seen:
                findings.append(LedgerFinding(
                    row.row_index, key, "number_sequence",
                    "Duplicate document number",
                    "unique", f"rows {seen[key]} and {row.row_index}", "error",
                ))
            else:
                seen[key] = row.row_index

        for (_, _, prev), (num, _, row) in zip(ordered, ordered[1:]):
            prev_date = to_date(prev.document_date)
            curr_date = to_date(row.document_date)
            if prev_date and curr_date and curr_date < prev_date:
                findings.append(LedgerFinding(
                    row.row_index, str(num), "date_sequence",
                    "Document date is earlier than the previous document's",
                    f">= {normalize_date(prev.document_date)}", normalize_date(row.document_date), "warning",
                ))
    return findings


def run_ledger_checks(rows: List[LedgerRow], config: LedgerCheckConfig = None) -> List[LedgerFinding]:
    config = config or LedgerCheckConfig()
    tolerance = Decimal(str(config.tolerance))
    findings: List[LedgerFinding] = []
    for row in rows:
        findings.extend(_check_totals(row, tolerance))
        findings.extend(_check_rates(row, config.vat_rates, tolerance))
    findings.extend(_check_sequences(rows))
    return findings
