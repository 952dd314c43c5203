import base64
import unittest
from io import BytesIO
from unittest.mock import Mock, patch

import requests
from pypdf import PdfReader, PdfWriter

from config_loader import DEFAULTS, PacingConfig, flow_policy
from extraction_client import (
    DocumentExtractor,
    ExtractionOutcome,
    ExtractionScheduler,
    HttpExtractionClient,
    OutcomeKind,
    SourceDocument,
    load_sources,
    split_pdf,
)
from recon_models import Confidence, ExtractedDocument, ExtractionTier


SOURCE = SourceDocument(index=2, file_name="inv.jpg", content=b"img")


def http_response(status_code, payload=None):
    response = Mock()
    response.status_code = status_code
    response.text = "error body"
    response.json.return_value = payload
    return response


class HttpExtractionClientTest(unittest.TestCase):
    def setUp(self):
        self.client = HttpExtractionClient("http://ocr.local:3001/", own_company_ids=["BG111111111", " "])

    @patch("requests.post")
    def test_success_is_parsed(self, mock_post):
        mock_post.return_value = http_response(200, {
            "documentType": "ФАКТУРА",
            "documentNumber": "05580209291/21.01.2026",
            "documentDate": "21.01.2026",
            "supplierId": "BG123456789",
            "taxBaseAmount": "1 200,50",
            "vatAmount": 240.1,
            "confidence": "high",
        })

        outcome = self.client.extract(SOURCE, ExtractionTier.STANDARD)

        self.assertIs(outcome.kind, OutcomeKind.SUCCESS)
        doc = outcome.document
        self.assertEqual(doc.source_index, 2)
        self.assertEqual(doc.document_number, "05580209291")
        self.assertEqual(doc.counterparty_id, "BG123456789")
        self.assertEqual(doc.tax_base_amount, 1200.5)
        self.assertEqual(doc.vat_amount, 240.1)
        self.assertIs(doc.confidence, Confidence.HIGH)
        self.assertFalse(doc.used_stronger_method)

        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], "http://ocr.local:3001/extract-invoice")
        body = kwargs["json"]
        self.assertEqual(body["imageBase64"], base64.b64encode(b"img").decode("ascii"))
        self.assertEqual(body["mimeType"], "image/jpeg")
        self.assertFalse(body["useProModel"])
        self.assertEqual(body["ownCompanyIds"], ["BG111111111"])

    @patch("requests.post")
    def test_strong_tier_and_sales_keys(self, mock_post):
        mock_post.return_value = http_response(200, {"clientId": "BG222", "sellerId": "BG111", "clientName": "Клиент"})

        outcome = self.client.extract(SOURCE, ExtractionTier.STRONG)

        self.assertTrue(mock_post.call_args.kwargs["json"]["useProModel"])
        self.assertEqual(outcome.document.counterparty_id, "BG222")
        self.assertEqual(outcome.document.seller_id, "BG111")
        self.assertEqual(outcome.document.counterparty_name, "Клиент")
        self.assertIs(outcome.document.confidence, Confidence.MEDIUM)
        self.assertTrue(outcome.document.used_stronger_method)

    @patch("requests.post")
    def test_rate_limit_statuses(self, mock_post):
        for status in (429, 503):
            mock_post.return_value = http_response(status)
            self.assertIs(self.client.extract(SOURCE).kind, OutcomeKind.RATE_LIMITED)

    @patch("requests.post")
    def test_other_errors_fail(self, mock_post):
        mock_post.return_value = http_response(500)
        self.assertIs(self.client.extract(SOURCE).kind, OutcomeKind.FAILED)

        mock_post.side_effect = requests.ConnectionError("refused")
        outcome = self.client.extract(SOURCE)
        self.assertIs(outcome.kind, OutcomeKind.FAILED)
        self.assertIn("refused", outcome.error)

    @patch("requests.post")
    def test_invalid_json_fails(self, mock_post):
        response = http_response(200)
        response.json.side_effect = ValueError("no json")
        mock_post.return_value = response
        self.assertIs(self.client.extract(SOURCE).kind, OutcomeKind.FAILED)

    @patch("requests.post")
    def test_missing_last_page_is_not_sent(self, mock_post):
        outcome = self.client.extract(SOURCE, ExtractionTier.STANDARD, page="last")
        self.assertIs(outcome.kind, OutcomeKind.FAILED)
        mock_post.assert_not_called()


class FakeService:
    def __init__(self, responder):
        self.responder = responder
        self.calls = []

    def extract(self, source, tier, page="first"):
        self.calls.append((tier, page))
        return self.responder(source, tier, page)


def good_page(source, tier, **kw):
    values = dict(
        source_index=source.index,
        file_name=source.file_name,
        document_number="7",
        tax_base_amount=100.0,
        vat_amount=20.0,
        confidence=Confidence.HIGH,
        used_stronger_method=tier is ExtractionTier.STRONG,
    )
    values.update(kw)
    return ExtractedDocument(**values)


PACING = PacingConfig(delay_between_requests=8.0, escalation_delay=2.0, max_retries=3, base_backoff=10.0, backoff_factor=3.0)


def test_scheduler_backs_off_exponentially_then_succeeds():
    outcomes = iter([
        ExtractionOutcome.rate_limited(),
        ExtractionOutcome.rate_limited(),
        ExtractionOutcome.success(good_page(SOURCE, ExtractionTier.STANDARD)),
    ])
    service = FakeService(lambda *_: next(outcomes))
    sleeps = []
    scheduler = ExtractionScheduler(service, PACING, sleep=sleeps.append)

    outcome = scheduler.submit(SOURCE, ExtractionTier.STANDARD)

    assert outcome.kind is OutcomeKind.SUCCESS
    assert sleeps == [10.0, 30.0]
    assert scheduler.rate_limited_count == 2


def test_scheduler_delays_between_consecutive_calls():
    service = FakeService(lambda s, t, p: ExtractionOutcome.success(good_page(s, t)))
    sleeps = []
    scheduler = ExtractionScheduler(service, PACING, sleep=sleeps.append)
    scheduler.submit(SOURCE, ExtractionTier.STANDARD)
    scheduler.submit(SOURCE, ExtractionTier.STANDARD)
    scheduler.submit(SOURCE, ExtractionTier.STANDARD)
    assert sleeps == [8.0, 8.0]


def test_scheduler_gives_up_after_max_retries():
    service = FakeService(lambda *_: ExtractionOutcome.rate_limited())
    sleeps = []
    scheduler = ExtractionScheduler(service, PACING, sleep=sleeps.append)

    outcome = scheduler.submit(SOURCE, ExtractionTier.STANDARD)

    assert outcome.kind is OutcomeKind.RATE_LIMITED
    assert sleeps == [10.0, 30.0, 90.0]
    assert len(service.calls) == 4
    assert scheduler.backoff_seconds(2) == 90.0


def test_unreadable_result_escalates_to_strong_tier():
    def responder(source, tier, page):
        if tier is ExtractionTier.STANDARD:
            return ExtractionOutcome.success(ExtractedDocument.unreadable(source.index, source.file_name))
        return ExtractionOutcome.success(good_page(source, tier))

    service = FakeService(responder)
    sleeps = []
    extractor = DocumentExtractor(ExtractionScheduler(service, PACING, sleep=sleeps.append), flow_policy(DEFAULTS, "purchase"))

    doc = extractor.extract_document(SOURCE)

    assert service.calls == [(ExtractionTier.STANDARD, "first"), (ExtractionTier.STRONG, "first")]
    assert sleeps == [2.0]
    assert doc.confidence is Confidence.HIGH
    assert doc.used_stronger_method


def test_exhausted_retries_yield_unreadable_document():
    pacing = PacingConfig(max_retries=0)
    service = FakeService(lambda *_: ExtractionOutcome.rate_limited())
    extractor = DocumentExtractor(ExtractionScheduler(service, pacing, sleep=lambda s: None), flow_policy(DEFAULTS, "purchase"))

    doc = extractor.extract_document(SOURCE)

    assert doc.confidence is Confidence.UNREADABLE
    assert doc.source_index == 2
    assert doc.used_stronger_method


def test_multi_page_source_merges_last_page():
    source = SourceDocument(index=0, file_name="long.pdf", content=b"p1", last_page_content=b"p3", page_count=3)

    def responder(src, tier, page):
        if page == "first":
            return ExtractionOutcome.success(
                good_page(src, tier, document_number="0042", tax_base_amount=None, vat_amount=None)
            )
        return ExtractionOutcome.success(good_page(src, tier, document_number=None, tax_base_amount=900.0, vat_amount=180.0))

    service = FakeService(responder)
    extractor = DocumentExtractor(ExtractionScheduler(service, PACING, sleep=lambda s: None), flow_policy(DEFAULTS, "purchase"))

    doc = extractor.extract_document(source)

    assert service.calls == [(ExtractionTier.STANDARD, "first"), (ExtractionTier.STANDARD, "last")]
    assert doc.document_number == "0042"
    assert doc.tax_base_amount == 900.0
    assert doc.vat_amount == 180.0


def test_load_sources(tmp_path):
    (tmp_path / "b.png").write_bytes(b"png")
    (tmp_path / "a.jpg").write_bytes(b"jpg")
    (tmp_path / "notes.txt").write_text("skip me")

    sources = load_sources(str(tmp_path))

    assert [(s.index, s.file_name, s.mime_type) for s in sources] == [
        (0, "a.jpg", "image/jpeg"),
        (1, "b.png", "image/png"),
    ]
    assert sources[0].content == b"jpg"


def pdf_bytes(*widths):
    writer = PdfWriter()
    for width in widths:
        writer.add_blank_page(width=width, height=100)
    buf = BytesIO()
    writer.write(buf)
    return buf.getvalue()


def page_width(content):
    return float(PdfReader(BytesIO(content)).pages[0].mediabox.width)


def test_split_pdf_keeps_first_and_last_page():
    first, last, count = split_pdf(pdf_bytes(100, 200, 300))

    assert count == 3
    assert page_width(first) == 100
    assert page_width(last) == 300


def test_load_sources_splits_multi_page_pdf(tmp_path):
    (tmp_path / "a.pdf").write_bytes(pdf_bytes(100, 300))
    (tmp_path / "b.pdf").write_bytes(pdf_bytes(100))
    (tmp_path / "c.pdf").write_bytes(b"not a pdf")

    multi, single, broken = load_sources(str(tmp_path))

    assert multi.mime_type == "application/pdf"
    assert multi.has_last_page
    assert multi.page_count == 2
    assert page_width(multi.last_page_content) == 300
    assert not single.has_last_page
    assert not broken.has_last_page
    assert broken.content == b"not a pdf"
