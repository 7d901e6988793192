from __future__ import annotations

import io
import re
from dataclasses import dataclass, field

from thesis_validator.errors import PipelineFailure

DOCUMENT_FORMATS: tuple[str, ...] = ("pdf", "docx", "xlsx", "pptx", "html", "image", "unknown")

_EXTENSION_FORMATS: dict[str, str] = {
    ".pdf": "pdf",
    ".docx": "docx",
    ".xlsx": "xlsx",
    ".xls": "xlsx",
    ".pptx": "pptx",
    ".html": "html",
    ".htm": "html",
    ".png": "image",
    ".jpg": "image",
    ".jpeg": "image",
    ".gif": "image",
    ".tiff": "image",
}
_MIME_FORMATS: dict[str, str] = {
    "application/pdf": "pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": "pptx",
    "text/html": "html",
}


@dataclass
class DocumentChunk:
    index: int
    text: str
    start_char: int
    end_char: int
    heading_path: list[str] = field(default_factory=list)


def detect_format(filename: str, mime_type: str | None = None) -> str:
    lower = filename.lower()
    for ext, fmt in _EXTENSION_FORMATS.items():
        if lower.endswith(ext):
            return fmt
    mime = (mime_type or "").split(";")[0].strip().lower()
    if mime in _MIME_FORMATS:
        return _MIME_FORMATS[mime]
    if mime.startswith("image/"):
        return "image"
    return "unknown"


def _normalize_text(text: str) -> str:
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    return "".join(ch for ch in normalized if ch in {"\n", "\t"} or ord(ch) >= 32)


def decode_text_with_fallback(raw: bytes) -> str:
    for encoding in ("utf-8", "cp1252"):
        try:
            return _normalize_text(raw.decode(encoding))
        except UnicodeDecodeError:
            continue
    raise PipelineFailure("text encoding unsupported", code="TEXT_ENCODING_UNSUPPORTED")


HTML_STRIPPED_TAGS: tuple[str, ...] = ("script", "style", "noscript", "template")
_HTML_BLOCK_TAGS: tuple[str, ...] = (
    "p", "div", "br", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6", "section", "article",
)


def parse_html_bytes(file_bytes: bytes) -> str:
    """Visible text of an HTML page, one paragraph per block element."""
    try:
        from bs4 import BeautifulSoup
    except ImportError:
        raise PipelineFailure(
            "beautifulsoup4 is required for HTML parsing",
            code="PARSER_DEPENDENCY_MISSING",
        ) from None

    soup = BeautifulSoup(decode_text_with_fallback(file_bytes), "html.parser")
    for tag in soup.find_all(list(HTML_STRIPPED_TAGS)):
        tag.decompose()
    for tag in soup.find_all(list(_HTML_BLOCK_TAGS)):
        tag.insert_before("\n\n")
        tag.insert_after("\n\n")
    text = re.sub(r"[ \t]+", " ", soup.get_text())
    return re.sub(r"\n\s*\n+", "\n\n", text).strip()


def parse_pdf_bytes(file_bytes: bytes) -> str:
    """Extract page text from PDF bytes using PyMuPDF."""
    try:
        import pymupdf
    except ImportError:
        raise PipelineFailure(
            "pymupdf is required for PDF parsing",
            code="PARSER_DEPENDENCY_MISSING",
        ) from None

    try:
        doc = pymupdf.open(stream=file_bytes, filetype="pdf")
    except Exception as exc:
        raise PipelineFailure(f"failed to open PDF: {exc}", code="DOC_PARSE_PDF_CORRUPT") from exc

    pages: list[str] = []
    try:
        for page in doc:
            text = page.get_text("text").strip()
            if text:
                pages.append(text)
    finally:
        doc.close()
    return "\n\n".join(pages)


def parse_docx_bytes(file_bytes: bytes) -> str:
    """Extract paragraph text from DOCX bytes using python-docx."""
    try:
        import docx
    except ImportError:
        raise PipelineFailure(
            "python-docx is required for DOCX parsing",
            code="PARSER_DEPENDENCY_MISSING",
        ) from None

    try:
        doc = docx.Document(io.BytesIO(file_bytes))
    except Exception as exc:
        raise PipelineFailure(f"failed to open DOCX: {exc}", code="DOC_PARSE_DOCX_CORRUPT") from exc
    return "\n\n".join(p.text.strip() for p in doc.paragraphs if p.text.strip())


def extract_text(file_bytes: bytes, *, fmt: str) -> str:
    if fmt == "pdf":
        return parse_pdf_bytes(file_bytes)
    if fmt == "docx":
        return parse_docx_bytes(file_bytes)
    if fmt == "html":
        return parse_html_bytes(file_bytes)
    if fmt == "unknown":
        return decode_text_with_fallback(file_bytes).strip()
    raise PipelineFailure(
        f"text extraction is not supported for {fmt} documents",
        code="DOC_FORMAT_UNSUPPORTED",
    )


def split_chunks(text: str, *, max_chars: int = 1200) -> list[DocumentChunk]:
    """Group paragraphs into chunks of at most max_chars, tracking markdown-style headings."""
    chunks: list[DocumentChunk] = []
    heading_path: list[str] = []
    current = ""
    current_start = 0
    offset = 0
    for para in re.split(r"\n{2,}", text):
        start = text.find(para, offset)
        offset = start + len(para) if start >= 0 else offset
        para = para.strip()
        if not para:
            continue
        if para.startswith("#"):
            level = len(para) - len(para.lstrip("#"))
            heading_path = heading_path[: max(0, level - 1)] + [para.lstrip("#").strip()]
        if current and len(current) + len(para) + 2 > max_chars:
            chunks.append(
                DocumentChunk(
                    index=len(chunks),
                    text=current,
                    start_char=current_start,
                    end_char=current_start + len(current),
                    heading_path=list(heading_path),
                )
            )
            current = ""
        if not current:
            current_start = max(0, start)
            current = para
        else:
            current += "\n\n" + para
    if current:
        chunks.append(
            DocumentChunk(
                index=len(chunks),
                text=current,
                start_char=current_start,
                end_char=current_start + len(current),
                heading_path=list(heading_path),
            )
        )
    return chunks
