"""
Client for the invoice extraction server and the single-worker scheduler
that paces calls to it.

The server is rate limited, so every call goes through ExtractionScheduler:
one request at a time, a fixed delay between requests and exponential
backoff when the server answers 429/503.
"""

import base64
import mimetypes
import os
import time
from io import BytesIO
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Protocol, Tuple

import requests
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError

from config_loader import FlowPolicy, PacingConfig
from logging_setup import get_logger
from normalizer import parse_amount, sanitize_document_number
from page_merger import merge_pages
from recon_models import Confidence, ExtractedDocument, ExtractionTier

log = get_logger(__name__)

RATE_LIMIT_STATUSES = (429, 503)
SOURCE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".pdf")


@dataclass
class SourceDocument:
    index: int
    file_name: str
    content: bytes
    mime_type: str = "image/jpeg"
    last_page_content: Optional[bytes] = None
    page_count: int = 1

    @property
    def has_last_page(self) -> bool:
        return self.last_page_content is not None and self.page_count > 1


class OutcomeKind(Enum):
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


@dataclass
class ExtractionOutcome:
    kind: OutcomeKind
    document: Optional[ExtractedDocument] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, document: ExtractedDocument) -> "ExtractionOutcome":
        return cls(OutcomeKind.SUCCESS, document=document)

    @classmethod
    def rate_limited(cls, error: str = "rate limited") -> "ExtractionOutcome":
        return cls(OutcomeKind.RATE_LIMITED, error=error)

    @classmethod
    def failed(cls, error: str) -> "ExtractionOutcome":
        return cls(OutcomeKind.FAILED, error=error)


class ExtractionService(Protocol):
    def extract(self, source: SourceDocument, tier: ExtractionTier, page: str = "first") -> ExtractionOutcome:
        ...


def parse_extraction_response(data: dict, source: SourceDocument, tier: ExtractionTier) -> ExtractedDocument:
    """Server JSON → ExtractedDocument. Unknown or junk values become None."""
    counterparty = data.get("supplierId") or data.get("clientId")
    return ExtractedDocument(
        source_index=source.index,
        file_name=source.file_name,
        document_type=data.get("documentType") or None,
        document_number=sanitize_document_number(data.get("documentNumber")),
        document_date=data.get("documentDate") or None,
        counterparty_id=counterparty or None,
        seller_id=data.get("sellerId") or None,
        counterparty_name=data.get("clientName") or data.get("supplierName") or None,
        tax_base_amount=parse_amount(data.get("taxBaseAmount")),
        vat_amount=parse_amount(data.get("vatAmount")),
        confidence=Confidence.parse(data.get("confidence")),
        extraction_method="ocr",
        used_stronger_method=tier is ExtractionTier.STRONG,
    )


class HttpExtractionClient:
    """POSTs page images to ``{base_url}/extract-invoice``."""

    def __init__(self, base_url: str, own_company_ids: Optional[List[str]] = None, timeout: float = 120.0):
        self.base_url = base_url.rstrip("/")
        self.own_company_ids = [i.strip() for i in (own_company_ids or []) if i and i.strip()]
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json"}

    def _payload(self, content: bytes, mime_type: str, tier: ExtractionTier) -> dict:
        payload = {
            "imageBase64": base64.b64encode(content).decode("ascii"),
            "mimeType": mime_type,
            "useProModel": tier is ExtractionTier.STRONG,
        }
        if self.own_company_ids:
            payload["ownCompanyIds"] = self.own_company_ids
        return payload

    def extract(self, source: SourceDocument, tier: ExtractionTier = ExtractionTier.STANDARD, page: str = "first") -> ExtractionOutcome:
        content = source.last_page_content if page == "last" else source.content
        if not content:
            return ExtractionOutcome.failed(f"no content for {page} page")

        url = f"{self.base_url}/extract-invoice"
        try:
            r = requests.post(
                url,
                headers=self.headers,
                json=self._payload(content, source.mime_type, tier),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            log.error("extraction_request_error", file_name=source.file_name, error=str(e))
            return ExtractionOutcome.failed(str(e))

        if r.status_code in RATE_LIMIT_STATUSES:
            return ExtractionOutcome.rate_limited(f"HTTP {r.status_code}")
        if r.status_code != 200:
            log.error("extraction_http_error", file_name=source.file_name, status=r.status_code, body=r.text[:200])
            return ExtractionOutcome.failed(f"HTTP {r.status_code}")

        try:
            data = r.json()
        except ValueError as e:
            return ExtractionOutcome.failed(f"invalid JSON: {e}")
        if not isinstance(data, dict):
            return ExtractionOutcome.failed("response is not an object")

        return ExtractionOutcome.success(parse_extraction_response(data, source, tier))


class ExtractionScheduler:
    """Issues extraction calls strictly one after another."""

    def __init__(self, service: ExtractionService, pacing: PacingConfig, sleep: Callable[[float], None] = time.sleep):
        self.service = service
        self.pacing = pacing
        self.sleep = sleep
        self.rate_limited_count = 0
        self._calls = 0
        self._skip_delay = False

    def backoff_seconds(self, attempt: int) -> float:
        return (self.pacing.backoff_factor ** attempt) * self.pacing.base_backoff

    def _pace(self) -> None:
        if self._calls and not self._skip_delay:
            self.sleep(self.pacing.delay_between_requests)
        self._skip_delay = False
        self._calls += 1

    def escalation_pause(self) -> None:
        """Wait before escalating to the stronger tier; replaces the regular delay."""
        self.sleep(self.pacing.escalation_delay)
        self._skip_delay = True

    def submit(self, source: SourceDocument, tier: ExtractionTier, page: str = "first") -> ExtractionOutcome:
        attempt = 0
        while True:
            self._pace()
            outcome = self.service.extract(source, tier, page)
            if outcome.kind is not OutcomeKind.RATE_LIMITED:
                return outcome

            self.rate_limited_count += 1
            if attempt >= self.pacing.max_retries:
                log.error("rate_limit_retries_exhausted", file_name=source.file_name, attempts=attempt + 1)
                return outcome

            wait = self.backoff_seconds(attempt)
            log.warning(
                "rate_limited_retry",
                file_name=source.file_name,
                retry=attempt + 1,
                max_retries=self.pacing.max_retries,
                wait_seconds=wait,
            )
            self.sleep(wait)
            self._skip_delay = True
            attempt += 1


class DocumentExtractor:
    """Turns a source file into one ExtractedDocument, never raising."""

    def __init__(self, scheduler: ExtractionScheduler, policy: FlowPolicy):
        self.scheduler = scheduler
        self.policy = policy

    def _extract_page(self, source: SourceDocument, tier: ExtractionTier, page: str) -> Optional[ExtractedDocument]:
        outcome = self.scheduler.submit(source, tier, page)
        if outcome.kind is OutcomeKind.SUCCESS:
            return outcome.document
        log.warning("extraction_failed", file_name=source.file_name, page=page, tier=tier.value, reason=outcome.error)
        return None

    def extract_document(self, source: SourceDocument, strong: bool = False) -> ExtractedDocument:
        tier = ExtractionTier.STRONG if strong else ExtractionTier.STANDARD
        first = self._extract_page(source, tier, "first")
        if first is None:
            first = ExtractedDocument.unreadable(source.index, source.file_name, used_stronger_method=strong)

        if first.confidence is Confidence.UNREADABLE and tier is ExtractionTier.STANDARD:
            log.info("escalating_to_strong_tier", file_name=source.file_name)
            self.scheduler.escalation_pause()
            tier = ExtractionTier.STRONG
            first = self._extract_page(source, tier, "first") or ExtractedDocument.unreadable(
                source.index, source.file_name, used_stronger_method=True
            )

        if source.has_last_page:
            last = self._extract_page(source, tier, "last")
            first = merge_pages(first, last, self.policy)

        log.info(
            "document_extracted",
            file_name=source.file_name,
            confidence=first.confidence.label,
            document_number=first.document_number,
            tax_base=first.tax_base_amount,
            tier=tier.value,
        )
        return first

    def extract_all(self, sources: List[SourceDocument]) -> List[ExtractedDocument]:
        documents = []
        for i, source in enumerate(sources, 1):
            log.info("extracting", position=i, total=len(sources), file_name=source.file_name)
            documents.append(self.extract_document(source))
        return documents


def split_pdf(content: bytes) -> Tuple[bytes, Optional[bytes], int]:
    """First and last page of a PDF as standalone PDFs, plus the page count.

    Single-page documents come back unchanged with no last page.
    """
    reader = PdfReader(BytesIO(content))
    count = len(reader.pages)
    if count < 2:
        return content, None, count
    return _single_page(reader, 0), _single_page(reader, count - 1), count


def _single_page(reader: PdfReader, number: int) -> bytes:
    writer = PdfWriter()
    writer.add_page(reader.pages[number])
    buf = BytesIO()
    writer.write(buf)
    return buf.getvalue()


def load_sources(directory: str) -> List[SourceDocument]:
    """Every image/PDF in ``directory``, sorted by name.

    Multi-page PDFs carry their last page separately so the extractor can
    merge it with the first.
    """
    names = sorted(
        n for n in os.listdir(directory)
        if os.path.splitext(n)[1].lower() in SOURCE_EXTENSIONS
    )
    sources = []
    for index, name in enumerate(names):
        with open(os.path.join(directory, name), "rb") as f:
            content = f.read()
        mime_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
        source = SourceDocument(index=index, file_name=name, content=content, mime_type=mime_type)
        if mime_type == "application/pdf":
            try:
                source.content, source.last_page_content, source.page_count = split_pdf(content)
            except PdfReadError as e:
                log.warning("pdf_split_failed", file_name=name, error=str(e))
        sources.append(source)
    return sources
