"""
Field-by-field comparison of one extracted document against one ledger row.
"""

from typing import Callable, List, Optional

from config_loader import FlowPolicy
from normalizer import (
    amounts_within,
    counterparty_ids_match,
    dates_match,
    document_numbers_match,
    format_amount,
    is_physical_individual_id,
    normalize_credit_note_amount,
    normalize_date,
)
from recon_models import (
    ExtractedDocument,
    FieldComparison,
    FieldStatus,
    LedgerRow,
    OverallStatus,
)


# Ledger type code → accepted spellings on the document itself
DOCUMENT_TYPE_MAPPING = {
    "Ф-ра": ["ФАКТУРА", "INVOICE"],
    "КИ": ["КРЕДИТНО ИЗВЕСТИЕ", "CREDIT NOTE"],
    "ДИ": ["ДЕБИТНО ИЗВЕСТИЕ", "DEBIT NOTE"],
}


def document_types_match(extracted_type: Optional[str], ledger_type: Optional[str]) -> bool:
    if not extracted_type or not ledger_type:
        return False
    upper = extracted_type.strip().upper()
    variants = DOCUMENT_TYPE_MAPPING.get(ledger_type.strip(), [])
    return any(v.upper() in upper for v in variants)


def derive_overall_status(comparisons: List[FieldComparison]) -> OverallStatus:
    statuses = {fc.status for fc in comparisons}
    if FieldStatus.SUSPICIOUS in statuses:
        return OverallStatus.SUSPICIOUS
    if FieldStatus.UNREADABLE in statuses:
        return OverallStatus.UNREADABLE
    return OverallStatus.MATCH


def _compare(
    name: str,
    label: str,
    extracted,
    ledger,
    equal: Callable[[object, object], bool],
    show: Callable[[object], Optional[str]] = lambda v: None if v is None else str(v),
) -> FieldComparison:
    extracted_missing = extracted is None or extracted == ""
    ledger_missing = ledger is None or ledger == ""
    if extracted_missing:
        status = FieldStatus.UNREADABLE
    elif ledger_missing:
        status = FieldStatus.MISSING
    else:
        status = FieldStatus.MATCH if equal(extracted, ledger) else FieldStatus.SUSPICIOUS
    return FieldComparison(
        field_name=name,
        field_label=label,
        extracted_value=None if extracted_missing else show(extracted),
        ledger_value=None if ledger_missing else show(ledger),
        status=status,
    )


def expected_tax_base(row: LedgerRow, policy: FlowPolicy) -> Optional[float]:
    if policy.is_sales:
        if row.total_tax_base is not None:
            return row.total_tax_base
        buckets = [v for v in (row.tax_base_20, row.tax_base_9, row.tax_base_0) if v is not None]
        return sum(buckets) if buckets else None
    return row.amount_full_credit if row.vat_registered else row.amount_no_credit


def expected_vat(row: LedgerRow, policy: FlowPolicy) -> Optional[float]:
    if policy.is_sales:
        if row.total_vat is not None:
            return row.total_vat
        buckets = [v for v in (row.vat_20, row.vat_9) if v is not None]
        return sum(buckets) if buckets else None
    return row.vat_full_credit


class FieldComparator:
    """Compares documents to ledger rows under one flow policy.

    The purchase flow compares type, number, date, supplier id, tax base and
    (for VAT-registered suppliers) VAT. The sales flow compares type, number,
    date, client id, tax base, VAT and, when the firm's own VAT id is known,
    the seller id printed on the document.
    """

    def __init__(self, policy: FlowPolicy, firm_vat_id: Optional[str] = None):
        self.policy = policy
        self.firm_vat_id = firm_vat_id

    def compare(self, doc: ExtractedDocument, row: LedgerRow) -> List[FieldComparison]:
        p = self.policy
        comparisons = [
            _compare("documentType", "Вид", doc.document_type, row.document_type, document_types_match),
            _compare("documentNumber", "Номер", doc.document_number, row.document_number, document_numbers_match),
            _compare(
                "documentDate", "Дата", doc.document_date, row.document_date, dates_match,
                show=normalize_date,
            ),
            self._compare_counterparty(doc, row),
        ]

        if p.is_sales and self.firm_vat_id:
            comparisons.append(
                _compare(
                    "sellerId", "ИН доставчик", doc.seller_id, self.firm_vat_id,
                    lambda a, b: counterparty_ids_match(a, b, allow_suffix=p.counterparty_suffix_match),
                )
            )

        comparisons.append(
            self._compare_amount(
                "taxBase", "ДО", doc.tax_base_amount, expected_tax_base(row, p),
                doc, row, p.tax_base_tolerance,
            )
        )
        if p.is_sales or row.vat_registered:
            comparisons.append(
                self._compare_amount(
                    "vatAmount", "ДДС", doc.vat_amount, expected_vat(row, p),
                    doc, row, p.vat_tolerance,
                )
            )
        return comparisons

    def count_mismatches(self, doc: ExtractedDocument, row: LedgerRow) -> int:
        return sum(1 for fc in self.compare(doc, row) if fc.status is not FieldStatus.MATCH)

    def _compare_counterparty(self, doc: ExtractedDocument, row: LedgerRow) -> FieldComparison:
        label = "ИН клиент" if self.policy.is_sales else "ИН"
        name = "clientId" if self.policy.is_sales else "supplierId"
        if self.policy.is_sales and is_physical_individual_id(row.counterparty_id):
            return FieldComparison(name, label, doc.counterparty_id, row.counterparty_id, FieldStatus.MATCH)
        suffix = self.policy.counterparty_suffix_match
        return _compare(
            name, label, doc.counterparty_id, row.counterparty_id,
            lambda a, b: counterparty_ids_match(a, b, allow_suffix=suffix),
        )

    @staticmethod
    def _compare_amount(
        name: str,
        label: str,
        extracted: Optional[float],
        ledger: Optional[float],
        doc: ExtractedDocument,
        row: LedgerRow,
        tolerance: float,
    ) -> FieldComparison:
        a = normalize_credit_note_amount(extracted, doc.document_type)
        b = normalize_credit_note_amount(ledger, row.document_type)
        return _compare(
            name, label, a, b,
            lambda x, y: amounts_within(x, y, tolerance),
            show=format_amount,
        )
