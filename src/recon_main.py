import argparse
import json
import os
import sys
from datetime import datetime
from typing import List, Optional

from dotenv import load_dotenv

from config_loader import flow_policy, load_reconciliation_config, pacing_config
from extraction_client import ExtractionScheduler, HttpExtractionClient, load_sources
from ledger_importer import load_ledger
from logging_setup import configure_logging
from pipeline import ReconciliationPipeline
from recon_models import ExtractedDocument, ReconciliationError, VerificationSummary
from verification import run_verification

load_dotenv()


def load_extracted_documents(path: str) -> List[ExtractedDocument]:
    """Pre-extracted documents: a JSON list, or an object with a "documents" list."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("documents", [])
    if not isinstance(data, list):
        raise ReconciliationError(f"{path}: expected a list of documents")
    documents = []
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            raise ReconciliationError(f"{path}: document {i} is not an object")
        documents.append(ExtractedDocument.from_dict(item, source_index=i))
    return documents


def _own_company_ids(firm_vat_id: Optional[str]) -> List[str]:
    ids = [i.strip() for i in os.getenv("OWN_COMPANY_IDS", "").split(",") if i.strip()]
    if firm_vat_id and firm_vat_id not in ids:
        ids.append(firm_vat_id)
    return ids


def print_summary(summary: VerificationSummary, double_checked: int = 0, rate_limited: int = 0) -> None:
    print("\n=== Verification complete ===")
    print(f"  Flow: {summary.flow}")
    print(f"  Documents: {summary.total_documents}  Ledger rows: {summary.total_ledger_rows}")
    print(f"  Match: {summary.matched_count}")
    print(f"  Suspicious: {summary.suspicious_count}")
    print(f"  Unreadable: {summary.unreadable_count}")
    print(f"  Not found in ledger: {summary.not_found_count}")
    print(f"  Ledger rows without document: {summary.missing_count}")
    if double_checked:
        print(f"  Re-extracted with stronger tier: {double_checked}")
    if rate_limited:
        print(f"  Rate-limited responses: {rate_limited}")
    if summary.ledger_findings:
        errors = len([f for f in summary.ledger_findings if f.severity == "error"])
        print(f"  Ledger findings: {len(summary.ledger_findings)} ({errors} errors)")
    if summary.failed_extraction_files:
        print(f"  Failed extractions: {', '.join(summary.failed_extraction_files)}")

    for comparison in summary.comparisons:
        if comparison.overall_status.value == "match":
            continue
        row = comparison.matched_row_index if comparison.matched_row_index is not None else "-"
        print(f"    [{comparison.overall_status.value}] {comparison.file_name} → row {row}")
        for fc in comparison.field_comparisons:
            if fc.status.value != "match":
                print(f"        {fc.field_label}: {fc.extracted_value} / {fc.ledger_value} ({fc.status.value})")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reconcile extracted documents against a VAT journal")
    parser.add_argument("--flow", required=True, choices=["purchase", "sales"])
    parser.add_argument("--ledger", required=True, help="journal export (.xlsx or .csv)")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--extracted", help="JSON file with already extracted documents")
    source.add_argument("--sources", help="directory with document images to extract")
    parser.add_argument("--firm-vat-id", help="own VAT id (sales); read from the journal header when omitted")
    parser.add_argument("--config", help="path to reconciliation.yml")
    parser.add_argument("--output", help="write the summary as JSON to this file")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        cfg = load_reconciliation_config(args.config)
        configure_logging(os.getenv("LOG_LEVEL") or cfg["logging"]["level"])
        policy = flow_policy(cfg, args.flow)

        print(f"=== Reconciliation started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')} ===")
        ledger = load_ledger(args.ledger, args.flow)
        firm_vat_id = args.firm_vat_id or ledger.firm_vat_id
        print(f"Ledger rows: {len(ledger.rows)}")
        if policy.is_sales:
            print(f"Firm VAT id: {firm_vat_id or '(unknown)'}")

        double_checked = rate_limited = 0
        if args.extracted:
            documents = load_extracted_documents(args.extracted)
            print(f"Extracted documents: {len(documents)}")
            summary = run_verification(documents, ledger.rows, policy, firm_vat_id)
        else:
            sources = load_sources(args.sources)
            print(f"Source files: {len(sources)}")
            client = HttpExtractionClient(
                os.getenv("EXTRACTION_SERVER_URL") or cfg["extraction"]["server_url"],
                own_company_ids=_own_company_ids(firm_vat_id),
                timeout=float(cfg["extraction"]["timeout"]),
            )
            scheduler = ExtractionScheduler(client, pacing_config(cfg))
            result = ReconciliationPipeline(scheduler, policy, firm_vat_id).run(sources, ledger.rows)
            summary = result.summary
            double_checked = result.double_checked_count
            rate_limited = result.rate_limited_count
    except (ReconciliationError, OSError, json.JSONDecodeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print_summary(summary, double_checked, rate_limited)

    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(summary.to_dict(), f, ensure_ascii=False, indent=2)
        print(f"\nSummary written to {args.output}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
