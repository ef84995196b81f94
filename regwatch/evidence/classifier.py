"""Binary content classification for captured evidence."""

import io
import zipfile
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlparse

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from regwatch.storage.database.models import ContentClass
from regwatch.utils.logging import get_logger

logger = get_logger(__name__)

SCANNED_PDF_CHARS_PER_PAGE = 50

PDF_MAGIC = b"%PDF"
ZIP_MAGIC = b"PK\x03\x04"
OLE_MAGIC = b"\xd0\xcf\x11\xe0"

CONTENT_TYPE_KINDS = {
    "application/pdf": "pdf",
    "text/html": "html",
    "application/xhtml+xml": "html",
    "application/xml": "xml",
    "text/xml": "xml",
    "application/rss+xml": "xml",
    "application/atom+xml": "xml",
    "application/json": "json",
    "text/plain": "text",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
}

EXTENSION_KINDS = {
    ".pdf": "pdf",
    ".html": "html",
    ".htm": "html",
    ".xml": "xml",
    ".json": "json",
    ".txt": "text",
    ".doc": "doc",
    ".docx": "docx",
    ".xls": "xls",
    ".xlsx": "xlsx",
}

TEXT_CLASSES = frozenset(
    {ContentClass.HTML, ContentClass.XML, ContentClass.JSON, ContentClass.TEXT}
)


@dataclass
class PdfText:
    text: str
    page_count: int
    page_map: list[dict[str, int]]


def extract_pdf_text(raw: bytes) -> PdfText:
    """Text layer of a PDF with per-page character offsets."""
    reader = PdfReader(io.BytesIO(raw))
    parts: list[str] = []
    page_map: list[dict[str, int]] = []
    offset = 0
    for number, page in enumerate(reader.pages, start=1):
        text = page.extract_text() or ""
        parts.append(text)
        page_map.append({"page": number, "start": offset, "end": offset + len(text)})
        offset += len(text) + 1
    return PdfText(text="\n".join(parts), page_count=len(reader.pages), page_map=page_map)


def _classify_pdf(raw: bytes) -> ContentClass:
    try:
        pdf = extract_pdf_text(raw)
    except (PdfReadError, ValueError, KeyError) as e:
        logger.warning("pdf_text_probe_failed", error=str(e))
        return ContentClass.PDF_SCANNED

    if pdf.page_count == 0:
        return ContentClass.PDF_SCANNED
    chars_per_page = len(pdf.text.strip()) / pdf.page_count
    if chars_per_page < SCANNED_PDF_CHARS_PER_PAGE:
        return ContentClass.PDF_SCANNED
    return ContentClass.PDF_TEXT


def _ooxml_kind(raw: bytes) -> str | None:
    try:
        with zipfile.ZipFile(io.BytesIO(raw)) as archive:
            names = archive.namelist()
    except zipfile.BadZipFile:
        return None
    if any(name.startswith("word/") for name in names):
        return "docx"
    if any(name.startswith("xl/") for name in names):
        return "xlsx"
    return None


def _sniff(raw: bytes) -> str | None:
    head = raw[:8]
    if head.startswith(PDF_MAGIC):
        return "pdf"
    if head.startswith(ZIP_MAGIC):
        return _ooxml_kind(raw)
    if head.startswith(OLE_MAGIC):
        # OLE container: Word or Excel, decided by the declared type / extension
        return "ole"
    return None


def _declared_kind(content_type: str | None, url: str | None) -> str | None:
    if content_type:
        mime = content_type.split(";", 1)[0].strip().lower()
        if mime in CONTENT_TYPE_KINDS:
            return CONTENT_TYPE_KINDS[mime]
    if url:
        path = urlparse(url).path.lower()
        for extension, kind in EXTENSION_KINDS.items():
            if path.endswith(extension):
                return kind
    return None


KIND_HANDLERS: dict[str, Callable[[bytes], ContentClass]] = {
    "pdf": _classify_pdf,
    "html": lambda raw: ContentClass.HTML,
    "xml": lambda raw: ContentClass.XML,
    "json": lambda raw: ContentClass.JSON,
    "text": lambda raw: ContentClass.TEXT,
    "doc": lambda raw: ContentClass.DOC,
    "docx": lambda raw: ContentClass.DOCX,
    "xls": lambda raw: ContentClass.XLS,
    "xlsx": lambda raw: ContentClass.XLSX,
}


def classify_content(raw: bytes, content_type: str | None = None, url: str | None = None) -> ContentClass:
    """Classify raw bytes: magic bytes first, then declared type, then URL extension."""
    sniffed = _sniff(raw)
    declared = _declared_kind(content_type, url)

    if sniffed == "ole":
        kind = declared if declared in ("doc", "xls") else "doc"
    else:
        kind = sniffed or declared

    if kind is None:
        stripped = raw.lstrip()[:100].lower()
        if stripped.startswith((b"<!doctype html", b"<html")):
            kind = "html"
        elif stripped.startswith(b"<?xml"):
            kind = "xml"
        elif stripped.startswith((b"{", b"[")):
            kind = "json"

    handler = KIND_HANDLERS.get(kind) if kind else None
    if handler is None:
        return ContentClass.UNKNOWN
    return handler(raw)


def content_type_label(content_class: ContentClass) -> str:
    """Short ``content_type`` column value for a class."""
    if content_class in (ContentClass.PDF_TEXT, ContentClass.PDF_SCANNED):
        return "pdf"
    if content_class == ContentClass.UNKNOWN:
        return "text"
    return content_class.value.lower()
