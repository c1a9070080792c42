import base64
import io
from dataclasses import dataclass
from pathlib import PurePath
from zipfile import BadZipFile

from docx import Document
from docx.opc.exceptions import PackageNotFoundError
from docx.table import Table
from docx.text.paragraph import Paragraph
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from examcoach.core.errors import DocumentExtractionError, UploadTooLargeError
from examcoach.core.logging import DOMAIN_UPLOAD, get_domain_logger
from examcoach.core.settings import settings
from examcoach.orchestrator.states import SourceKind

logger = get_domain_logger(__name__, DOMAIN_UPLOAD)

IMAGE_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}
TEXT_SUFFIXES = {".txt", ".md"}


@dataclass
class ExtractedDocument:
    text: str
    file_type: str
    source_kind: SourceKind

    @property
    def word_count(self) -> int:
        return len(self.text.split())

    @property
    def character_count(self) -> int:
        return len(self.text)


def _pdf_text(data: bytes) -> str:
    reader = PdfReader(io.BytesIO(data))
    text_parts: list[str] = []
    for page in reader.pages:
        page_text = page.extract_text() or ""
        if page_text.strip():
            text_parts.append(page_text)
    return "\n".join(text_parts)


def _docx_text(data: bytes) -> str:
    """Paragraphs and tables in document order; table cells joined with ' | '."""
    doc = Document(io.BytesIO(data))
    lines: list[str] = []
    for element in doc.element.body:
        if element.tag.endswith("}p"):
            paragraph = Paragraph(element, doc)
            if paragraph.text.strip():
                lines.append(paragraph.text)
        elif element.tag.endswith("}tbl"):
            for row in Table(element, doc).rows:
                cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                if cells:
                    lines.append(" | ".join(cells))
    return "\n".join(lines)


def extract_document_text(filename: str, data: bytes) -> ExtractedDocument:
    """Turn an uploaded file into exam text; images come back as a data URL."""
    if len(data) > settings.max_upload_bytes:
        raise UploadTooLargeError(details={"size": len(data), "limit": settings.max_upload_bytes})
    if not data:
        raise DocumentExtractionError("Het bestand is leeg.")

    suffix = PurePath(filename or "").suffix.lower()
    if suffix not in {".pdf", ".docx", *TEXT_SUFFIXES, *IMAGE_TYPES}:
        raise DocumentExtractionError(
            "Ondersteunde formaten: .docx, .pdf, .txt, .md en afbeeldingen.",
            details={"filename": filename},
        )
    try:
        if suffix == ".pdf":
            text, file_type, kind = _pdf_text(data), "PDF Document (.pdf)", SourceKind.DOCUMENT
        elif suffix == ".docx":
            text, file_type, kind = _docx_text(data), "Word Document (.docx)", SourceKind.DOCUMENT
        elif suffix in TEXT_SUFFIXES:
            text, file_type, kind = data.decode("utf-8-sig"), f"Text ({suffix})", SourceKind.TEXT
        else:
            mime = IMAGE_TYPES[suffix]
            encoded = base64.b64encode(data).decode("ascii")
            text, file_type, kind = f"data:{mime};base64,{encoded}", f"Image ({suffix})", SourceKind.IMAGE
    except (PdfReadError, PackageNotFoundError, BadZipFile, UnicodeDecodeError, KeyError, ValueError, OSError) as exc:
        logger.warning("Extraction failed for %s: %s", filename, exc)
        raise DocumentExtractionError(details={"filename": filename, "reason": type(exc).__name__}) from exc

    if not text.strip():
        raise DocumentExtractionError(
            "Er is geen tekst gevonden in het bestand. Probeer het als .docx of .txt op te slaan en opnieuw te uploaden.",
            details={"filename": filename},
        )
    logger.info("Extracted %d characters from %s (%s)", len(text), filename, file_type)
    return ExtractedDocument(text=text, file_type=file_type, source_kind=kind)
