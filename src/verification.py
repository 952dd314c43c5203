"""
Batch verification: matching, per-document comparison results, counts and
the ledger rows no document claimed.
"""

from typing import Dict, List, Optional

from config_loader import FlowPolicy
from field_comparator import FieldComparator, derive_overall_status
from ledger_checker import run_ledger_checks
from logging_setup import get_logger
from matcher import ClaimRegistry, MatchingEngine
from normalizer import is_foreign_counterparty
from recon_models import (
    ComparisonResult,
    Confidence,
    ExtractedDocument,
    FieldStatus,
    LedgerRow,
    OverallStatus,
    VerificationSummary,
)

log = get_logger(__name__)


STATUS_LABELS = {
    "match": "Съвпадение",
    "suspicious": "Несъответствие",
    "unreadable": "Нечетимо",
    "not_found": "Липсва в дневника",
    "missing": "Липсва документ",
}


def is_verifiable(row: LedgerRow, policy: FlowPolicy) -> bool:
    if not policy.verifiable_document_types:
        return True
    doc_type = (row.document_type or "").strip().upper()
    return any(doc_type == t.upper() for t in policy.verifiable_document_types)


def run_verification(
    documents: List[ExtractedDocument],
    rows: List[LedgerRow],
    policy: FlowPolicy,
    firm_vat_id: Optional[str] = None,
) -> VerificationSummary:
    comparator = FieldComparator(policy, firm_vat_id)
    candidates = [row for row in rows if is_verifiable(row, policy)]
    if len(candidates) != len(rows):
        log.info(
            "ledger_rows_filtered",
            total=len(rows),
            verifiable=len(candidates),
            excluded=len(rows) - len(candidates),
        )

    registry = ClaimRegistry()
    outcomes = MatchingEngine(comparator).match(documents, candidates, registry)

    comparisons: List[ComparisonResult] = []
    for doc, outcome in zip(documents, outcomes):
        if outcome.row is None:
            status = OverallStatus.UNREADABLE if doc.confidence is Confidence.UNREADABLE else OverallStatus.NOT_FOUND
            comparisons.append(
                ComparisonResult(
                    source_index=doc.source_index,
                    file_name=doc.file_name,
                    matched_row_index=None,
                    document=doc,
                    field_comparisons=[],
                    overall_status=status,
                    mismatch_count=outcome.mismatches,
                )
            )
            continue

        fields = comparator.compare(doc, outcome.row)
        comparisons.append(
            ComparisonResult(
                source_index=doc.source_index,
                file_name=doc.file_name,
                matched_row_index=outcome.row.row_index,
                document=doc,
                field_comparisons=fields,
                overall_status=derive_overall_status(fields),
                mismatch_count=sum(1 for fc in fields if fc.status is not FieldStatus.MATCH),
                match_pass=outcome.match_pass,
            )
        )

    claimed = registry.claimed()
    missing_rows = [row for row in candidates if row.row_index not in claimed]
    if policy.exclude_foreign_from_missing:
        missing_rows = [row for row in missing_rows if not is_foreign_counterparty(row.counterparty_id)]

    counts: Dict[OverallStatus, int] = {status: 0 for status in OverallStatus}
    for comparison in comparisons:
        counts[comparison.overall_status] += 1

    findings = run_ledger_checks(rows, policy.ledger_checks) if policy.run_ledger_checks else []
    failed = [doc.file_name for doc in documents if doc.key_fields_empty()]

    summary = VerificationSummary(
        flow=policy.name,
        total_documents=len(documents),
        total_ledger_rows=len(candidates),
        status_counts=counts,
        comparisons=comparisons,
        missing_rows=missing_rows,
        ledger_findings=findings,
        failed_extraction_files=failed,
    )
    log.info(
        "verification_complete",
        flow=policy.name,
        documents=len(documents),
        matched=summary.matched_count,
        suspicious=summary.suspicious_count,
        unreadable=summary.unreadable_count,
        not_found=summary.not_found_count,
        missing=summary.missing_count,
        ledger_findings=len(findings),
    )
    return summary


def build_row_status_map(summary: VerificationSummary, labels: Optional[Dict[str, str]] = None) -> Dict[int, str]:
    """Row index → label for the status column written back into the journal."""
    labels = labels or STATUS_LABELS
    status_map: Dict[int, str] = {}
    for comparison in summary.comparisons:
        if comparison.matched_row_index is not None:
            key = comparison.overall_status.value
            status_map[comparison.matched_row_index] = labels.get(key, key)
    for row in summary.missing_rows:
        status_map[row.row_index] = labels.get("missing", "missing")
    return status_map
