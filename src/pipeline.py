"""
End-to-end run: extract every source, verify, re-extract doubtful
documents with the stronger tier, verify again.
"""

from dataclasses import dataclass
from typing import List, Optional

from arbitrator import ExtractionArbitrator
from config_loader import FlowPolicy
from extraction_client import DocumentExtractor, ExtractionScheduler, SourceDocument
from field_comparator import FieldComparator
from logging_setup import get_logger
from recon_models import ExtractedDocument, LedgerRow, VerificationSummary
from verification import run_verification

log = get_logger(__name__)


@dataclass
class PipelineResult:
    summary: VerificationSummary
    documents: List[ExtractedDocument]
    double_checked_count: int = 0
    rate_limited_count: int = 0


class ReconciliationPipeline:
    def __init__(
        self,
        scheduler: ExtractionScheduler,
        policy: FlowPolicy,
        firm_vat_id: Optional[str] = None,
        arbitrate: bool = True,
    ):
        self.scheduler = scheduler
        self.policy = policy
        self.firm_vat_id = firm_vat_id
        self.arbitrate = arbitrate
        self.extractor = DocumentExtractor(scheduler, policy)
        self.arbitrator = ExtractionArbitrator(self.extractor, FieldComparator(policy, firm_vat_id))

    def run(self, sources: List[SourceDocument], rows: List[LedgerRow]) -> PipelineResult:
        log.info("pipeline_start", flow=self.policy.name, sources=len(sources), rows=len(rows))

        documents = self.extractor.extract_all(sources)
        summary = run_verification(documents, rows, self.policy, self.firm_vat_id)

        double_checked = 0
        if self.arbitrate:
            documents, double_checked = self.arbitrator.rearbitrate(documents, sources, summary, rows)
            if double_checked:
                summary = run_verification(documents, rows, self.policy, self.firm_vat_id)

        result = PipelineResult(
            summary=summary,
            documents=documents,
            double_checked_count=double_checked,
            rate_limited_count=self.scheduler.rate_limited_count,
        )
        log.info(
            "pipeline_complete",
            flow=self.policy.name,
            double_checked=double_checked,
            rate_limited=result.rate_limited_count,
        )
        return result
