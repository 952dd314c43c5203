import json

import pytest

from recon_main import build_parser, load_extracted_documents, main
from recon_models import Confidence, ReconciliationError


LEDGER = "\n".join([
    "Дневник на покупките",
    ",,Вид на документа,Номер,Дата,ИН,,,,,,",
    "1,,Ф-ра,0000000123,15.01.2026,123456789,,,,1000.00,,",
    "2,,Ф-ра,0000000124,16.01.2026,123456789,,,,50.00,,",
]) + "\n"

DOCUMENTS = [
    {
        "file_name": "inv.jpg",
        "document_type": "ФАКТУРА",
        "document_number": "123",
        "document_date": "15.01.2026",
        "counterparty_id": "123456789",
        "tax_base_amount": "1 000,00",
        "confidence": "high",
    }
]


@pytest.fixture
def ledger_file(tmp_path):
    path = tmp_path / "purchases.csv"
    path.write_text(LEDGER, encoding="utf-8")
    return str(path)


@pytest.fixture
def extracted_file(tmp_path):
    path = tmp_path / "extracted.json"
    path.write_text(json.dumps({"documents": DOCUMENTS}, ensure_ascii=False), encoding="utf-8")
    return str(path)


def test_load_extracted_documents(extracted_file):
    docs = load_extracted_documents(extracted_file)
    assert len(docs) == 1
    assert docs[0].source_index == 0
    assert docs[0].tax_base_amount == 1000.0
    assert docs[0].confidence is Confidence.HIGH


def test_load_extracted_documents_rejects_other_shapes(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text('"text"', encoding="utf-8")
    with pytest.raises(ReconciliationError):
        load_extracted_documents(str(path))


def test_load_extracted_documents_rejects_non_object_items(tmp_path):
    path = tmp_path / "mixed.json"
    path.write_text(json.dumps([DOCUMENTS[0], "oops"], ensure_ascii=False), encoding="utf-8")
    with pytest.raises(ReconciliationError, match="document 1"):
        load_extracted_documents(str(path))


def test_non_object_item_exits_with_error(ledger_file, tmp_path, capsys):
    path = tmp_path / "numbers.json"
    path.write_text("[1, 2]", encoding="utf-8")
    code = main(["--flow", "purchase", "--ledger", ledger_file, "--extracted", str(path)])
    assert code == 1
    assert "is not an object" in capsys.readouterr().err

def test_verify_extracted_documents(ledger_file, extracted_file, tmp_path, capsys):
    output = tmp_path / "summary.json"

    code = main(["--flow", "purchase", "--ledger", ledger_file, "--extracted", extracted_file, "--output", str(output)])

    assert code == 0
    summary = json.loads(output.read_text(encoding="utf-8"))
    assert summary["counts"]["match"] == 1
    assert summary["missing_count"] == 1
    assert "Match: 1" in capsys.readouterr().out


def test_bad_ledger_exits_with_error(tmp_path, extracted_file, capsys):
    missing = str(tmp_path / "missing.csv")
    code = main(["--flow", "purchase", "--ledger", missing, "--extracted", extracted_file])
    assert code == 1
    assert "Error:" in capsys.readouterr().err


def test_sources_and_extracted_are_exclusive():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--flow", "sales", "--ledger", "x.csv", "--extracted", "a.json", "--sources", "dir"])
