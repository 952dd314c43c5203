"""
Extracted documents, ledger rows and verification results shared by every
reconciliation module.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from normalizer import parse_amount


class ReconciliationError(Exception):
    """Base class for errors that abort a whole reconciliation batch."""


class LedgerParseError(ReconciliationError):
    pass


class DuplicateRowIndexError(ReconciliationError):
    pass


class ClaimConflictError(ReconciliationError):
    pass


class ConfigError(ReconciliationError):
    pass


class Confidence(IntEnum):
    """Extraction confidence with a total order (higher is better)."""

    UNREADABLE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Any, default: "Confidence" = None) -> "Confidence":
        if isinstance(value, Confidence):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        if default is None:
            default = cls.MEDIUM
        return default


class ExtractionTier(Enum):
    STANDARD = "standard"
    STRONG = "strong"


class FieldStatus(Enum):
    MATCH = "match"
    SUSPICIOUS = "suspicious"
    MISSING = "missing"
    UNREADABLE = "unreadable"


class OverallStatus(Enum):
    MATCH = "match"
    SUSPICIOUS = "suspicious"
    UNREADABLE = "unreadable"
    NOT_FOUND = "not_found"


class MatchPass(Enum):
    EXACT = "exact"
    BEST_MATCH = "best_match"


@dataclass
class ExtractedDocument:
    source_index: int
    file_name: str
    document_type: Optional[str] = None
    document_number: Optional[str] = None
    document_date: Optional[str] = None
    counterparty_id: Optional[str] = None  # supplier (purchases) or client (sales)
    seller_id: Optional[str] = None        # own firm, sales flow only
    counterparty_name: Optional[str] = None
    tax_base_amount: Optional[float] = None
    vat_amount: Optional[float] = None
    confidence: Confidence = Confidence.MEDIUM
    extraction_method: str = "ocr"  # native|ocr
    used_stronger_method: bool = False
    was_double_checked: bool = False

    def populated_field_count(self) -> int:
        count = 0
        for value in (
            self.document_type,
            self.document_number,
            self.document_date,
            self.counterparty_id,
        ):
            if value:
                count += 1
        if self.tax_base_amount is not None:
            count += 1
        if self.vat_amount is not None:
            count += 1
        return count

    def key_fields_empty(self) -> bool:
        return (
            self.document_number is None
            and self.document_date is None
            and self.counterparty_id is None
            and self.tax_base_amount is None
            and self.vat_amount is None
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["confidence"] = self.confidence.label
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source_index: int = None) -> "ExtractedDocument":
        index = data.get("source_index", source_index)
        return cls(
            source_index=int(index if index is not None else 0),
            file_name=data.get("file_name") or f"document-{index}",
            document_type=data.get("document_type"),
            document_number=data.get("document_number"),
            document_date=data.get("document_date"),
            counterparty_id=data.get("counterparty_id"),
            seller_id=data.get("seller_id"),
            counterparty_name=data.get("counterparty_name"),
            tax_base_amount=parse_amount(data.get("tax_base_amount")),
            vat_amount=parse_amount(data.get("vat_amount")),
            confidence=Confidence.parse(data.get("confidence")),
            extraction_method=data.get("extraction_method") or "ocr",
            used_stronger_method=bool(data.get("used_stronger_method", False)),
            was_double_checked=bool(data.get("was_double_checked", False)),
        )

    @classmethod
    def unreadable(cls, source_index: int, file_name: str, used_stronger_method: bool = False) -> "ExtractedDocument":
        return cls(
            source_index=source_index,
            file_name=file_name,
            confidence=Confidence.UNREADABLE,
            used_stronger_method=used_stronger_method,
        )


@dataclass(frozen=True)
class LedgerRow:
    row_index: int
    document_type: str
    document_number: str
    document_date: str
    counterparty_id: str = ""
    counterparty_name: str = ""
    vat_registered: bool = False
    # purchase journal columns
    amount_no_credit: Optional[float] = None
    amount_full_credit: Optional[float] = None
    vat_full_credit: Optional[float] = None
    # sales journal columns
    total_tax_base: Optional[float] = None
    total_vat: Optional[float] = None
    tax_base_20: Optional[float] = None
    vat_20: Optional[float] = None
    tax_base_9: Optional[float] = None
    vat_9: Optional[float] = None
    tax_base_0: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FieldComparison:
    field_name: str
    field_label: str
    extracted_value: Optional[str]
    ledger_value: Optional[str]
    status: FieldStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field_name": self.field_name,
            "field_label": self.field_label,
            "extracted_value": self.extracted_value,
            "ledger_value": self.ledger_value,
            "status": self.status.value,
        }


@dataclass
class ComparisonResult:
    source_index: int
    file_name: str
    matched_row_index: Optional[int]
    document: ExtractedDocument
    field_comparisons: List[FieldComparison]
    overall_status: OverallStatus
    mismatch_count: Optional[int] = None
    match_pass: Optional[MatchPass] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_index": self.source_index,
            "file_name": self.file_name,
            "matched_row_index": self.matched_row_index,
            "document": self.document.to_dict(),
            "field_comparisons": [fc.to_dict() for fc in self.field_comparisons],
            "overall_status": self.overall_status.value,
            "mismatch_count": self.mismatch_count,
            "match_pass": self.match_pass.value if self.match_pass else None,
        }


@dataclass
class LedgerFinding:
    row_index: int  # 0 when the finding concerns a range of rows
    document_number: str
    check_type: str  # total_mismatch|vat_calculation|number_sequence|date_sequence
    description: str
    expected_value: str
    actual_value: str
    severity: str  # error|warning

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class VerificationSummary:
    flow: str
    total_documents: int
    total_ledger_rows: int
    status_counts: Dict[OverallStatus, int]
    comparisons: List[ComparisonResult]
    missing_rows: List[LedgerRow]
    ledger_findings: List[LedgerFinding] = field(default_factory=list)
    failed_extraction_files: List[str] = field(default_factory=list)

    @property
    def matched_count(self) -> int:
        return self.status_counts.get(OverallStatus.MATCH, 0)

    @property
    def suspicious_count(self) -> int:
        return self.status_counts.get(OverallStatus.SUSPICIOUS, 0)

    @property
    def unreadable_count(self) -> int:
        return self.status_counts.get(OverallStatus.UNREADABLE, 0)

    @property
    def not_found_count(self) -> int:
        return self.status_counts.get(OverallStatus.NOT_FOUND, 0)

    @property
    def missing_count(self) -> int:
        return len(self.missing_rows)

    def claimed_row_indices(self) -> List[int]:
        return [c.matched_row_index for c in self.comparisons if c.matched_row_index is not None]

    def result_for(self, source_index: int) -> Optional[ComparisonResult]:
        for comparison in self.comparisons:
            if comparison.source_index == source_index:
                return comparison
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flow": self.flow,
            "total_documents": self.total_documents,
            "total_ledger_rows": self.total_ledger_rows,
            "counts": {status.value: self.status_counts.get(status, 0) for status in OverallStatus},
            "missing_count": self.missing_count,
            "comparisons": [c.to_dict() for c in self.comparisons],
            "missing_rows": [row.to_dict() for row in self.missing_rows],
            "ledger_findings": [f.to_dict() for f in self.ledger_findings],
            "failed_extraction_files": list(self.failed_extraction_files),
        }
