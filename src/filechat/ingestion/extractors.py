"""Text extraction for PDF, plain text, Markdown and DOCX files.

PDF pages go through PyMuPDF (fitz). Pages whose embedded text is shorter
than ``ocr_min_chars`` are rendered at ``ocr_dpi`` and handed to the OCR
engine; a failed OCR call keeps the embedded text for that page.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, List

import docx
import fitz  # PyMuPDF

from filechat.config import IndexSettings
from filechat.errors import ExtractionFailed, FileChatError, UnsupportedFormat
from filechat.ingestion.ocr import OcrEngine
from filechat.models import ChunkRecord, DocumentKind, PageText
from filechat.utils.files import kind_from_path
from filechat.utils.text import chunk_page, clean_text, detect_language, normalize_whitespace, split_pages

LOGGER = logging.getLogger(__name__)


def _ocr_page(page, index: int, path: Path, embedded: str, settings: IndexSettings, ocr: OcrEngine) -> str:
    try:
        pixmap = page.get_pixmap(dpi=settings.ocr_dpi)
        recognized = ocr.ocr(pixmap.tobytes("png"), settings.ocr_lang, settings.ocr_dpi)
    except Exception as exc:
        LOGGER.warning("OCR failed for page %s in %s: %s", index, path, exc)
        return embedded

    recognized = normalize_whitespace(clean_text(recognized or "").splitlines())
    if len(recognized) > len(embedded):
        LOGGER.debug("Using OCR text for page %s in %s", index, path)
        return recognized
    return embedded


def extract_pdf(path: Path, settings: IndexSettings, ocr: OcrEngine | None = None) -> List[PageText]:
    """Yield text content from a PDF file page by page."""
    try:
        doc = fitz.open(path)
    except Exception as exc:
        raise ExtractionFailed(f"Failed to open PDF {path}: {exc}") from exc

    pages: List[PageText] = []
    try:
        if doc.needs_pass:
            raise ExtractionFailed(f"PDF is password protected: {path}")
        for index in range(len(doc)):
            try:
                page = doc[index]
            except Exception as exc:
                LOGGER.warning("Failed to load page %s in %s: %s", index, path, exc)
                pages.append(PageText(page=index, text=""))
                continue
            try:
                text = normalize_whitespace(clean_text(page.get_text() or "").splitlines())
            except Exception as exc:
                LOGGER.warning("Failed to read page %s in %s: %s", index, path, exc)
                text = ""
            if settings.ocr_enabled and ocr is not None and len(text) < settings.ocr_min_chars:
                text = _ocr_page(page, index, path, text, settings, ocr)
            pages.append(PageText(page=index, text=text))
    finally:
        doc.close()
    return pages


def extract_plain_text(path: Path) -> List[PageText]:
    try:
        raw = Path(path).read_bytes()
    except OSError as exc:
        raise ExtractionFailed(f"Failed to read {path}: {exc}") from exc
    text = raw.decode("utf-8", errors="replace")
    return [PageText(page=index, text=part) for index, part in enumerate(split_pages(text))]


def _ends_section(paragraph) -> bool:
    return bool(paragraph._p.xpath("./w:pPr/w:sectPr"))


def extract_docx(path: Path) -> List[PageText]:
    """Read paragraphs from a DOCX file; section breaks start a new page."""
    try:
        document = docx.Document(str(path))
    except Exception as exc:
        raise ExtractionFailed(f"Failed to open DOCX {path}: {exc}") from exc

    pages: List[PageText] = []
    current: List[str] = []
    try:
        for paragraph in document.paragraphs:
            current.append(paragraph.text)
            if _ends_section(paragraph):
                pages.append(PageText(page=len(pages), text=clean_text("\n".join(current))))
                current = []
    except Exception as exc:
        raise ExtractionFailed(f"Failed to read DOCX {path}: {exc}") from exc
    if current or not pages:
        pages.append(PageText(page=len(pages), text=clean_text("\n".join(current))))
    return pages


def extract(
    path: Path, settings: IndexSettings | None = None, ocr: OcrEngine | None = None
) -> List[PageText]:
    """Extract ordered ``PageText`` items from a supported document.

    Parser errors that are not already a ``FileChatError`` surface as
    ``ExtractionFailed`` so one unreadable file never aborts a run.
    """
    settings = settings or IndexSettings()
    path = Path(path)
    kind = kind_from_path(path)
    if kind is None:
        raise UnsupportedFormat(f"Unsupported file type: {path.suffix or path.name}")
    try:
        if kind is DocumentKind.PDF:
            return extract_pdf(path, settings, ocr)
        if kind is DocumentKind.DOCX:
            return extract_docx(path)
        return extract_plain_text(path)
    except FileChatError:
        raise
    except Exception as exc:
        raise ExtractionFailed(f"Failed to extract {path}: {exc}") from exc


Extractor = Callable[[Path, IndexSettings, OcrEngine | None], List[PageText]]


def build_chunks(
    path: Path, pages: List[PageText], *, max_chars: int = 1200, overlap: int = 200
) -> List[ChunkRecord]:
    """Produce chunk records for the extracted pages of one file."""
    chunks: List[ChunkRecord] = []
    for page in pages:
        for page_no, ordinal, text in chunk_page(page.page, page.text, max_chars=max_chars, overlap=overlap):
            chunks.append(
                ChunkRecord(
                    file_path=path, page=page_no, ordinal=ordinal, text=text, lang=detect_language(text)
                )
            )
    return chunks
