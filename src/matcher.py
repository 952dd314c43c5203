"""
Two-pass exclusive matching of extracted documents to ledger rows.

Pass 1 claims rows whose normalized document number equals the document's,
visiting high-confidence documents before medium ones so that a noisy
extraction earlier in the upload order cannot steal the row that is the
unique exact match of a better one. Pass 2 gives every remaining document
the unclaimed row with the fewest differing fields, unless even that row
differs in ``mismatch_ceiling`` fields or more.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from field_comparator import FieldComparator
from logging_setup import get_logger
from normalizer import normalize_document_number
from recon_models import (
    ClaimConflictError,
    Confidence,
    DuplicateRowIndexError,
    ExtractedDocument,
    LedgerRow,
    MatchPass,
)

log = get_logger(__name__)


class ClaimRegistry:
    """Row indices claimed during one verification run. Only ever grows."""

    def __init__(self):
        self._claimed: Set[int] = set()

    def is_claimed(self, row_index: int) -> bool:
        return row_index in self._claimed

    def claim(self, row_index: int) -> None:
        if row_index in self._claimed:
            raise ClaimConflictError(f"row {row_index} is already claimed")
        self._claimed.add(row_index)

    def claimed(self) -> Set[int]:
        return set(self._claimed)

    def __len__(self) -> int:
        return len(self._claimed)


@dataclass
class MatchOutcome:
    position: int  # position of the document in the batch
    row: Optional[LedgerRow]
    match_pass: Optional[MatchPass]
    mismatches: Optional[int] = None


def check_unique_row_indices(rows: Iterable[LedgerRow]) -> None:
    seen: Set[int] = set()
    for row in rows:
        if row.row_index in seen:
            raise DuplicateRowIndexError(f"row index {row.row_index} appears more than once")
        seen.add(row.row_index)


def _by_confidence(documents: List[ExtractedDocument], positions: Iterable[int]) -> List[int]:
    # sorted() is stable, so equal confidence keeps upload order
    return sorted(positions, key=lambda i: -int(documents[i].confidence))


class MatchingEngine:
    def __init__(self, comparator: FieldComparator):
        self.comparator = comparator
        self.ceiling = comparator.policy.mismatch_ceiling

    def match(
        self,
        documents: List[ExtractedDocument],
        rows: List[LedgerRow],
        registry: Optional[ClaimRegistry] = None,
    ) -> List[MatchOutcome]:
        """Return one MatchOutcome per document, in input order."""
        check_unique_row_indices(rows)
        registry = registry if registry is not None else ClaimRegistry()
        outcomes: Dict[int, MatchOutcome] = {}

        self._exact_pass(documents, rows, registry, outcomes)
        self._best_match_pass(documents, rows, registry, outcomes)

        return [outcomes[i] for i in range(len(documents))]

    def _exact_pass(self, documents, rows, registry, outcomes) -> None:
        eligible = [
            i for i, doc in enumerate(documents)
            if doc.confidence >= Confidence.MEDIUM and doc.document_number is not None
        ]
        log.debug("exact_pass_start", candidates=len(eligible), rows=len(rows))

        for i in _by_confidence(documents, eligible):
            key = normalize_document_number(documents[i].document_number)
            if not key:
                continue
            for row in rows:
                if registry.is_claimed(row.row_index):
                    continue
                if normalize_document_number(row.document_number) == key:
                    registry.claim(row.row_index)
                    outcomes[i] = MatchOutcome(i, row, MatchPass.EXACT)
                    log.info(
                        "exact_match",
                        file_name=documents[i].file_name,
                        document_number=documents[i].document_number,
                        row_index=row.row_index,
                    )
                    break

    def _best_match_pass(self, documents, rows, registry, outcomes) -> None:
        remaining = [i for i in range(len(documents)) if i not in outcomes]
        log.debug("best_match_pass_start", candidates=len(remaining))

        for i in _by_confidence(documents, remaining):
            doc = documents[i]
            best = self.find_best_row(doc, rows, registry)
            if best is None:
                log.info("not_found", file_name=doc.file_name, reason="no_unclaimed_rows")
                outcomes[i] = MatchOutcome(i, None, None)
                continue

            row, mismatches = best
            if mismatches >= self.ceiling:
                log.info(
                    "best_match_rejected",
                    file_name=doc.file_name,
                    row_index=row.row_index,
                    mismatches=mismatches,
                    ceiling=self.ceiling,
                )
                outcomes[i] = MatchOutcome(i, None, None, mismatches)
                continue

            registry.claim(row.row_index)
            outcomes[i] = MatchOutcome(i, row, MatchPass.BEST_MATCH, mismatches)
            log.info("best_match", file_name=doc.file_name, row_index=row.row_index, mismatches=mismatches)

    def find_best_row(
        self,
        doc: ExtractedDocument,
        rows: List[LedgerRow],
        registry: ClaimRegistry,
    ) -> Optional[Tuple[LedgerRow, int]]:
        best: Optional[Tuple[LedgerRow, int]] = None
        for row in rows:
            if registry.is_claimed(row.row_index):
                continue
            mismatches = self.comparator.count_mismatches(doc, row)
            if best is None or mismatches < best[1]:
                best = (row, mismatches)
            if mismatches == 0:
                break
        return best
