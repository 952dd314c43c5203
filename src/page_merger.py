"""
Merge first-page and last-page extractions of a multi-page document.

Document metadata sits on the first page, while grand totals are usually
printed on the last one; a page subtotal can never exceed the grand total.
"""

from typing import Optional

from config_loader import FlowPolicy
from logging_setup import get_logger
from recon_models import Confidence, ExtractedDocument

log = get_logger(__name__)


def _has_amounts(page: ExtractedDocument) -> bool:
    return page.tax_base_amount is not None or page.vat_amount is not None


def vat_ratio_valid(page: ExtractedDocument, rate: float, tolerance: float) -> bool:
    base = page.tax_base_amount
    vat = page.vat_amount
    if base is None or vat is None or base == 0:
        return False
    return abs(abs(vat / base) - rate) <= tolerance


def _merge_confidence(first: Confidence, last: Confidence) -> Confidence:
    if first is Confidence.UNREADABLE:
        return last
    if last is Confidence.UNREADABLE:
        return first
    if Confidence.HIGH in (first, last):
        return Confidence.HIGH
    return max(first, last)


def choose_amount_page(
    first: ExtractedDocument,
    last: ExtractedDocument,
    policy: FlowPolicy,
) -> ExtractedDocument:
    first_has, last_has = _has_amounts(first), _has_amounts(last)
    if first_has != last_has:
        return first if first_has else last
    if not first_has:
        return last

    first_valid = vat_ratio_valid(first, policy.standard_vat_rate, policy.vat_ratio_tolerance)
    last_valid = vat_ratio_valid(last, policy.standard_vat_rate, policy.vat_ratio_tolerance)
    if first_valid != last_valid:
        return first if first_valid else last

    first_base = abs(first.tax_base_amount or 0.0)
    last_base = abs(last.tax_base_amount or 0.0)
    return first if first_base > last_base else last


def merge_pages(
    first: ExtractedDocument,
    last: Optional[ExtractedDocument],
    policy: FlowPolicy,
) -> ExtractedDocument:
    if last is None:
        return first

    amounts = choose_amount_page(first, last, policy)
    merged = ExtractedDocument(
        source_index=first.source_index,
        file_name=first.file_name,
        document_type=first.document_type or last.document_type,
        document_number=first.document_number or last.document_number,
        document_date=first.document_date or last.document_date,
        counterparty_id=first.counterparty_id or last.counterparty_id,
        seller_id=first.seller_id or last.seller_id,
        counterparty_name=first.counterparty_name or last.counterparty_name,
        tax_base_amount=amounts.tax_base_amount,
        vat_amount=amounts.vat_amount,
        confidence=_merge_confidence(first.confidence, last.confidence),
        extraction_method=first.extraction_method,
        used_stronger_method=first.used_stronger_method or last.used_stronger_method,
        was_double_checked=first.was_double_checked,
    )
    log.info(
        "pages_merged",
        file_name=first.file_name,
        amounts_from="first" if amounts is first else "last",
        tax_base=merged.tax_base_amount,
        vat=merged.vat_amount,
    )
    return merged
