import io

import pytest
from docx import Document

from examcoach.core.errors import DocumentExtractionError, UploadTooLargeError
from examcoach.core.settings import settings
from examcoach.ingest.document_text import extract_document_text
from examcoach.orchestrator.states import SourceKind


def _docx_bytes() -> bytes:
    doc = Document()
    doc.add_paragraph("1. Geef de reactievergelijking van de verbranding van methaan.")
    table = doc.add_table(rows=1, cols=2)
    table.rows[0].cells[0].text = "Stof"
    table.rows[0].cells[1].text = "CH4"
    doc.add_paragraph("Antwoord: CH4 + 2 O2 → CO2 + 2 H2O")
    buffer = io.BytesIO()
    doc.save(buffer)
    return buffer.getvalue()


def _pdf_bytes(text: str) -> bytes:
    content = f"BT /F1 12 Tf 72 720 Td ({text}) Tj ET".encode("ascii")
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] /Contents 4 0 R "
        b"/Resources << /Font << /F1 5 0 R >> >> >>",
        b"<< /Length %d >>\nstream\n" % len(content) + content + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % number + body + b"\nendobj\n"
    xref_at = len(out)
    out += b"xref\n0 %d\n0000000000 65535 f \n" % (len(objects) + 1)
    for offset in offsets:
        out += b"%010d 00000 n \n" % offset
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (len(objects) + 1, xref_at)
    return bytes(out)


def test_docx_paragraphs_and_tables_in_document_order():
    extracted = extract_document_text("toets.docx", _docx_bytes())
    lines = extracted.text.splitlines()
    assert lines[0].startswith("1. Geef de reactievergelijking")
    assert lines[1] == "Stof | CH4"
    assert lines[2].startswith("Antwoord:")
    assert extracted.source_kind == SourceKind.DOCUMENT
    assert extracted.file_type == "Word Document (.docx)"
    assert extracted.word_count == len(extracted.text.split())


def test_pdf_text_is_extracted():
    extracted = extract_document_text("toets.PDF", _pdf_bytes("Bereken de molmassa van water"))
    assert "Bereken de molmassa van water" in extracted.text
    assert extracted.file_type == "PDF Document (.pdf)"


def test_plain_text_and_images():
    text = extract_document_text("antwoorden.txt", "Vraag 1: H₂O".encode("utf-8"))
    assert text.text == "Vraag 1: H₂O"
    assert text.source_kind == SourceKind.TEXT

    image = extract_document_text("foto.png", b"\x89PNG\r\n\x1a\n")
    assert image.source_kind == SourceKind.IMAGE
    assert image.text.startswith("data:image/png;base64,")


def test_corrupt_documents_raise_extraction_error():
    with pytest.raises(DocumentExtractionError):
        extract_document_text("kapot.docx", b"dit is geen zip")
    with pytest.raises(DocumentExtractionError):
        extract_document_text("kapot.pdf", b"dit is geen pdf")
    with pytest.raises(DocumentExtractionError):
        extract_document_text("kapot.txt", b"\xff\xfe\xfa")


def test_unsupported_and_empty_files_are_rejected():
    with pytest.raises(DocumentExtractionError) as excinfo:
        extract_document_text("toets.xlsx", b"data")
    assert ".docx" in excinfo.value.message
    with pytest.raises(DocumentExtractionError):
        extract_document_text("leeg.txt", b"")
    with pytest.raises(DocumentExtractionError):
        extract_document_text("spaties.txt", b"   \n  ")


def test_size_limit_is_enforced(monkeypatch):
    monkeypatch.setattr(settings, "max_upload_bytes", 16)
    with pytest.raises(UploadTooLargeError) as excinfo:
        extract_document_text("groot.txt", b"x" * 17)
    assert excinfo.value.status_code == 413
