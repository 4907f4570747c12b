"""
Verification oracle.

Re-extracts text from the finished artifact and checks that no sensitive
string survived. Extraction deliberately avoids the code used to drive
redaction: PDFs are read with MuPDF's own text extraction, DOCX parts
with a plain itertext() walk. A bug in our interpreter or run map can
therefore not hide its own leak.
"""

import logging
from typing import Iterable, List, Optional, Tuple, Union

import fitz

from config import runtime_config
from errors import DocumentParseError, UnsupportedFormatError, VerificationError

from . import ooxml
from .models import AuditResult, VerificationResult

logger = logging.getLogger(__name__)

PageLabel = Union[int, str]


def _fold(text: str) -> str:
    return text.casefold()


def _collapse(text: str) -> str:
    return " ".join(text.split())


def extract_pages(data: bytes, fmt: str) -> List[Tuple[PageLabel, str]]:
    """
    Extract text per page (PDF, 1-based) or per part (DOCX, part name).

    Raises:
        VerificationError: the artifact cannot be read at all
    """
    if fmt == "pdf":
        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except (fitz.FileDataError, RuntimeError, ValueError) as e:
            raise VerificationError("Redacted PDF could not be opened for verification", details=str(e),
                                    unreadable=True)
        try:
            return [(page.number + 1, page.get_text("text")) for page in doc]
        finally:
            doc.close()

    if fmt == "docx":
        try:
            parts = ooxml.read_package(data)
            pages = []
            for name in ooxml.xml_parts(parts):
                root = ooxml.parse_xml(parts[name], name)
                pages.append((name, "".join(root.itertext())))
            return pages
        except DocumentParseError as e:
            raise VerificationError("Redacted DOCX could not be read for verification", details=str(e),
                                    unreadable=True)

    raise UnsupportedFormatError(f"Cannot verify format: {fmt}")


class VerificationOracle:
    """Literal, case-insensitive containment check over re-extracted text."""

    def __init__(self, min_length: Optional[int] = None):
        self.min_length = min_length

    def verify(self, data: bytes, fmt: str, sensitive_texts: Iterable[str]) -> VerificationResult:
        """
        Check that none of ``sensitive_texts`` remains in ``data``.

        Texts shorter than ``min_verify_length`` are skipped. Each text is
        looked for in the raw page text and in a whitespace-collapsed copy,
        so a value wrapped over two lines is still caught.

        Returns:
            VerificationResult; ``remaining`` lists every surviving
            ``{"text", "page"}`` pair
        """
        min_length = self.min_length if self.min_length is not None else runtime_config.min_verify_length

        needles = []
        seen = set()
        for text in sensitive_texts:
            if not text or len(text.strip()) < min_length:
                continue
            folded = _fold(text)
            if folded in seen:
                continue
            seen.add(folded)
            needles.append((text, folded, _collapse(folded)))

        pages = []
        for label, page_text in extract_pages(data, fmt):
            # Our own marker text is not document content
            folded = _fold(page_text.replace(ooxml.REDACTION_TEXT, " "))
            pages.append((label, folded, _collapse(folded)))

        remaining = []
        for text, needle, collapsed_needle in needles:
            for label, folded, collapsed in pages:
                if needle in folded or (collapsed_needle and collapsed_needle in collapsed):
                    remaining.append({"text": text, "page": label})

        return VerificationResult(success=not remaining, remaining=remaining, checked=len(needles))

    def audit(self, original: bytes, redacted: bytes, fmt: str) -> AuditResult:
        """
        Structural comparison of input and output. Reported, never gating.

        Flags a page count change (PDF) and extracted text shrinking below
        ``audit_shrink_ratio`` of the original.
        """
        before = extract_pages(original, fmt)
        after = extract_pages(redacted, fmt)

        result = AuditResult(
            original_size=sum(len(text) for _, text in before),
            redacted_size=sum(len(text) for _, text in after),
        )
        if fmt == "pdf":
            result.original_pages = len(before)
            result.redacted_pages = len(after)
            if not result.pages_match:
                result.warnings.append(
                    f"Page count changed: {result.original_pages} -> {result.redacted_pages}"
                )

        ratio = runtime_config.audit_shrink_ratio
        if result.original_size and result.redacted_size < result.original_size * ratio:
            result.warnings.append(
                f"Content shrank to {result.redacted_size}/{result.original_size} chars "
                f"(below {ratio:.0%} of original)"
            )

        for warning in result.warnings:
            logger.warning(f"Audit: {warning}")
        return result
