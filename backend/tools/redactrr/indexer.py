"""
Position indexer: plain text plus a character-offset -> geometry map.

PDF text comes from our own content stream interpreter (pdf_content), so
the geometry recorded here is exactly what the PDF engine later tests
against. DOCX text comes from walking the WordprocessingML parts.
"""

import logging
from typing import List, Optional, Tuple

import fitz

from config import runtime_config
from errors import DocumentParseError, StreamIntegrityError, UnsupportedFormatError

from . import ooxml
from .models import PositionIndex, TextFragment
from .pdf_content import TextRun, interpret_page, load_page_resources, read_page_streams, tokenize

logger = logging.getLogger(__name__)

PAGE_SEPARATOR = "\f"
LINE_SEPARATOR = "\n"
WORD_SEPARATOR = " "

# Thresholds relative to font size
LINE_BREAK_RATIO = 0.5
WORD_GAP_RATIO = 0.15


def open_pdf(data: bytes) -> "fitz.Document":
    """Open PDF bytes with MuPDF, rejecting encrypted or corrupt files."""
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except (fitz.FileDataError, RuntimeError, ValueError) as e:
        raise DocumentParseError("Could not open PDF", details=str(e), file_type="pdf")
    if doc.needs_pass:
        doc.close()
        raise DocumentParseError("PDF is encrypted", details="password required", file_type="pdf")
    return doc


class _TextBuilder:
    """Accumulates text and fragments, inserting separators between them."""

    def __init__(self):
        self.parts: List[str] = []
        self.length = 0
        self.fragments: List[TextFragment] = []

    def separator(self, sep: str) -> None:
        if self.length and not self.parts[-1].endswith(sep):
            self.parts.append(sep)
            self.length += len(sep)

    def add(self, text: str, **fields) -> TextFragment:
        fragment = TextFragment(text=text, char_offset=self.length, **fields)
        self.parts.append(text)
        self.length += len(text)
        self.fragments.append(fragment)
        return fragment

    @property
    def text(self) -> str:
        return "".join(self.parts)


def _separator_between(prev: TextRun, run: TextRun) -> Optional[str]:
    """Separator to insert between two consecutive runs on the same page."""
    size = max(run.size, prev.size, 1e-6)
    dx = run.start[0] - prev.end[0]
    dy = run.start[1] - prev.end[1]
    if abs(dy) > LINE_BREAK_RATIO * size or dx < -size:
        return LINE_SEPARATOR
    if dx > WORD_GAP_RATIO * size:
        return WORD_SEPARATOR
    return None


class PositionIndexer:
    """Extracts text and a PositionIndex from PDF or DOCX bytes."""

    def __init__(self, width_factor: Optional[float] = None):
        self.width_factor = width_factor

    def index(self, data: bytes, fmt: str) -> Tuple[str, PositionIndex]:
        """
        Build the document text and its position index.

        Args:
            data: Raw document bytes
            fmt: "pdf" or "docx"

        Returns:
            (text, PositionIndex). A document without extractable text
            returns ("", empty index); the caller decides what that means.
        """
        if fmt == "pdf":
            return self._index_pdf(data)
        if fmt == "docx":
            return self._index_docx(data)
        raise UnsupportedFormatError(f"Cannot index format: {fmt}")

    # =========================================================================
    # PDF
    # =========================================================================

    def _index_pdf(self, data: bytes) -> Tuple[str, PositionIndex]:
        builder = _TextBuilder()
        page_sizes = {}

        doc = open_pdf(data)
        try:
            page_count = doc.page_count
            for page in doc:
                number = page.number + 1
                page_sizes[number] = (page.mediabox.width, page.mediabox.height)
                builder.separator(PAGE_SEPARATOR)
                self._index_pdf_page(doc, page, number, builder)
        finally:
            doc.close()

        text = builder.text
        logger.info(f"Indexed PDF: {page_count} pages, {len(builder.fragments)} fragments, {len(text)} chars")
        return text, PositionIndex(fragments=builder.fragments, page_count=page_count, page_sizes=page_sizes)

    def _index_pdf_page(self, doc, page, number: int, builder: _TextBuilder) -> None:
        try:
            streams = [tokenize(raw, stream=i) for i, (_xref, raw) in enumerate(read_page_streams(doc, page))]
        except StreamIntegrityError as e:
            logger.warning(f"Page {number}: malformed content stream ({e.code.value}), indexing MuPDF words")
            self._index_pdf_words(page, number, builder)
            return

        resources = load_page_resources(doc, page)
        width_factor = self.width_factor if self.width_factor is not None else runtime_config.glyph_width_factor
        runs = interpret_page(streams, resources, width_factor)

        prev = None
        for run in runs:
            if not run.text:
                continue
            if prev is not None:
                sep = _separator_between(prev, run)
                if sep:
                    builder.separator(sep)
            builder.add(
                run.text,
                page=number,
                x=run.x0,
                y=run.y0,
                width=run.x1 - run.x0,
                height=run.y1 - run.y0,
            )
            prev = run

    def _index_pdf_words(self, page, number: int, builder: _TextBuilder) -> None:
        """Fallback for pages we cannot interpret: MuPDF words, mapped back to PDF user space."""
        to_user_space = ~page.transformation_matrix
        last_line = None
        for x0, y0, x1, y1, word, block, line, _ in page.get_text("words"):
            rect = fitz.Rect(x0, y0, x1, y1) * to_user_space
            if last_line is not None:
                builder.separator(LINE_SEPARATOR if (block, line) != last_line else WORD_SEPARATOR)
            builder.add(word, page=number, x=rect.x0, y=rect.y0, width=rect.width, height=rect.height)
            last_line = (block, line)

    # =========================================================================
    # DOCX
    # =========================================================================

    def _index_docx(self, data: bytes) -> Tuple[str, PositionIndex]:
        parts = ooxml.read_package(data)
        if ooxml.BODY_PART not in parts:
            raise DocumentParseError("DOCX has no word/document.xml", file_type="docx")

        builder = _TextBuilder()
        paragraph = -1
        for name in ooxml.word_parts(parts):
            root = ooxml.parse_xml(parts[name], name)
            for element in root.iter(ooxml.W_P, ooxml.W_T, ooxml.W_DEL_TEXT, ooxml.W_TAB, ooxml.W_BR, ooxml.W_CR):
                tag = element.tag
                if tag == ooxml.W_P:
                    paragraph += 1
                    builder.separator(LINE_SEPARATOR)
                elif tag == ooxml.W_TAB:
                    builder.separator("\t")
                elif tag in (ooxml.W_BR, ooxml.W_CR):
                    builder.separator(LINE_SEPARATOR)
                elif element.text:
                    builder.add(element.text, page=None, paragraph=paragraph, part=name, element=element)

        text = builder.text
        logger.info(f"Indexed DOCX: {paragraph + 1} paragraphs, {len(builder.fragments)} fragments, {len(text)} chars")
        return text, PositionIndex(fragments=builder.fragments, page_count=0)
