"""
Re-extraction of doubtful documents with the stronger extraction tier and
selection between the original and the retried extraction.
"""

import dataclasses
from typing import List, Optional, Tuple

from field_comparator import FieldComparator
from logging_setup import get_logger
from recon_models import (
    Confidence,
    ExtractedDocument,
    LedgerRow,
    OverallStatus,
    VerificationSummary,
)

log = get_logger(__name__)

RETRY_STATUSES = (OverallStatus.SUSPICIOUS, OverallStatus.UNREADABLE, OverallStatus.NOT_FOUND)


def choose_extraction(
    original: ExtractedDocument,
    retried: ExtractedDocument,
    comparator: FieldComparator,
    matched_row: Optional[LedgerRow] = None,
) -> Tuple[bool, str]:
    """Return (use_retried, reason).

    Against a matched row the one with fewer mismatches wins. Otherwise (or
    on a tie) higher confidence wins, then more populated fields. When
    nothing separates them the original is kept.
    """
    if matched_row is not None:
        original_mismatches = comparator.count_mismatches(original, matched_row)
        retried_mismatches = comparator.count_mismatches(retried, matched_row)
        if retried_mismatches != original_mismatches:
            return retried_mismatches < original_mismatches, "fewer_mismatches"

    if retried.confidence != original.confidence:
        return retried.confidence > original.confidence, "higher_confidence"

    retried_fields = retried.populated_field_count()
    original_fields = original.populated_field_count()
    if retried_fields != original_fields:
        return retried_fields > original_fields, "more_fields"

    return False, "tie"


def select_better_extraction(
    original: ExtractedDocument,
    retried: ExtractedDocument,
    comparator: FieldComparator,
    matched_row: Optional[LedgerRow] = None,
) -> ExtractedDocument:
    use_retried, _ = choose_extraction(original, retried, comparator, matched_row)
    chosen = retried if use_retried else original
    return dataclasses.replace(chosen, was_double_checked=True)


def _reextraction_failed(doc: Optional[ExtractedDocument]) -> bool:
    return doc is None or (doc.confidence is Confidence.UNREADABLE and doc.key_fields_empty())


class ExtractionArbitrator:
    def __init__(self, extractor, comparator: FieldComparator):
        # extractor: anything with extract_document(source, strong=True)
        self.extractor = extractor
        self.comparator = comparator

    @staticmethod
    def retry_candidates(
        documents: List[ExtractedDocument],
        summary: VerificationSummary,
    ) -> List[int]:
        """Positions of documents worth a stronger extraction."""
        positions = []
        for position, doc in enumerate(documents):
            if doc.used_stronger_method:
                continue
            result = summary.result_for(doc.source_index)
            status = result.overall_status if result else None
            if doc.confidence is Confidence.UNREADABLE or status in RETRY_STATUSES:
                positions.append(position)
        return positions

    def rearbitrate(
        self,
        documents: List[ExtractedDocument],
        sources: List,
        summary: VerificationSummary,
        rows: List[LedgerRow],
    ) -> Tuple[List[ExtractedDocument], int]:
        """Return the updated document list and how many documents were retried.

        ``sources`` is parallel to ``documents``. The input list is not modified.
        """
        rows_by_index = {row.row_index: row for row in rows}
        updated = list(documents)
        candidates = self.retry_candidates(documents, summary)
        log.info("arbitration_start", candidates=len(candidates), documents=len(documents))

        for position in candidates:
            original = documents[position]
            result = summary.result_for(original.source_index)
            matched_row = None
            if result is not None and result.matched_row_index is not None:
                matched_row = rows_by_index.get(result.matched_row_index)

            retried = self.extractor.extract_document(sources[position], strong=True)
            if _reextraction_failed(retried):
                log.warning("reextraction_failed", file_name=original.file_name)
                updated[position] = dataclasses.replace(original, was_double_checked=True)
                continue

            use_retried, reason = choose_extraction(original, retried, self.comparator, matched_row)
            chosen = retried if use_retried else original
            updated[position] = dataclasses.replace(chosen, was_double_checked=True)
            log.info(
                "arbitration_decision",
                file_name=original.file_name,
                kept="retried" if use_retried else "original",
                reason=reason,
                against_row=matched_row.row_index if matched_row else None,
            )

        return updated, len(candidates)
