"""
Tests for the position indexer, box resolution and file type detection.
"""

import fitz
import pytest

from errors import DocumentParseError, ErrorCode, UnsupportedFormatError
from tools.redactrr.boxes import EPSILON, RedactionBoxResolver
from tools.redactrr.filetype import detect_file_type
from tools.redactrr.indexer import PositionIndexer
from tools.redactrr.models import DetectedEntity, PositionIndex, TextFragment


@pytest.fixture
def indexer():
    return PositionIndexer()


def _entity(text, start, end):
    return DetectedEntity(rule_id="r", rule_version="1", category="PII", text=text, char_start=start, char_end=end)


# =============================================================================
# FILE TYPE
# =============================================================================


class TestDetectFileType:
    """Test detect_file_type."""

    def test_pdf(self, ssn_pdf):
        assert detect_file_type(ssn_pdf) == "pdf"

    def test_docx(self, phone_docx):
        assert detect_file_type(phone_docx) == "docx"

    def test_small_zip_rejected(self):
        """A bare ZIP header is not enough for DOCX."""
        with pytest.raises(UnsupportedFormatError):
            detect_file_type(b"PK\x03\x04" + b"\x00" * 100)

    def test_unknown_magic(self):
        with pytest.raises(UnsupportedFormatError) as exc:
            detect_file_type(b"GIF89a\x00\x00\x00\x00")
        assert exc.value.code == ErrorCode.FORMAT_UNSUPPORTED

    def test_too_short(self):
        with pytest.raises(UnsupportedFormatError):
            detect_file_type(b"%PDF")


# =============================================================================
# PDF INDEXING
# =============================================================================


class TestIndexPdf:
    """Test PositionIndexer on PDFs."""

    def test_text_and_fragments(self, indexer, contact_pdf):
        """Lines come out in order, separated by newlines."""
        text, positions = indexer.index(contact_pdf, "pdf")

        assert "SSN: 123-45-6789" in text
        assert "Email: jane.doe@example.com" in text
        assert text.index("6789") < text.index("Email")
        assert "\n" in text[text.index("6789"):text.index("Email")]
        assert positions.page_count == 1
        assert all(f.page == 1 for f in positions)

    def test_offsets_match_text(self, indexer, contact_pdf):
        """Every fragment's text sits at its recorded offset."""
        text, positions = indexer.index(contact_pdf, "pdf")
        assert len(positions) > 0
        for fragment in positions:
            assert text[fragment.char_offset:fragment.char_end] == fragment.text

    def test_geometry_in_user_space(self, indexer, ssn_pdf):
        """Baseline at y=72 from the top is y=page height-72 in PDF space."""
        _, positions = indexer.index(ssn_pdf, "pdf")
        width, height = positions.page_sizes[1]
        fragment = positions.fragments[0]

        assert fragment.x == pytest.approx(72, abs=0.5)
        assert fragment.y < height - 72 < fragment.y + fragment.height
        assert fragment.width > 0

    def test_pages_separated(self, indexer, two_page_pdf):
        """Pages are separated by form feeds and fragments carry 1-based pages."""
        text, positions = indexer.index(two_page_pdf, "pdf")
        assert "\f" in text
        assert {f.page for f in positions} == {1, 2}
        offset = text.index("jane.doe")
        assert [f.page for f in positions.fragments_between(offset, offset + 1)] == [2]

    def test_image_only_pdf_has_no_text(self, indexer, image_only_pdf):
        text, positions = indexer.index(image_only_pdf, "pdf")
        assert text.strip() == ""
        assert len(positions) == 0

    def test_corrupt_pdf(self, indexer):
        with pytest.raises(DocumentParseError):
            indexer.index(b"%PDF-1.7\nthis is not a pdf", "pdf")

    def test_encrypted_pdf(self, indexer, ssn_pdf):
        """Password-protected PDFs are rejected."""
        doc = fitz.open(stream=ssn_pdf, filetype="pdf")
        encrypted = doc.tobytes(encryption=fitz.PDF_ENCRYPT_AES_256, owner_pw="owner", user_pw="user")
        doc.close()

        with pytest.raises(DocumentParseError) as exc:
            indexer.index(encrypted, "pdf")
        assert exc.value.code == ErrorCode.PARSE_PDF_FAILED


# =============================================================================
# DOCX INDEXING
# =============================================================================


class TestIndexDocx:
    """Test PositionIndexer on DOCX files."""

    def test_split_runs_join(self, indexer, phone_docx):
        """Runs of one paragraph concatenate without separators."""
        text, positions = indexer.index(phone_docx, "docx")
        assert "Call 555-123-4567 today." in text
        assert "\nNothing else to see here." in text

    def test_fragments_have_no_page(self, indexer, phone_docx):
        """DOCX fragments carry paragraph and part, never a page."""
        _, positions = indexer.index(phone_docx, "docx")
        assert all(f.page is None for f in positions)
        assert {f.part for f in positions} == {"word/document.xml"}
        assert [f.text for f in positions if f.paragraph == 0] == ["Call ", "555-", "123-4567", " today."]

    def test_header_text_indexed(self, indexer, contact_docx):
        text, positions = indexer.index(contact_docx, "docx")
        assert "jane.doe@example.com" in text
        assert "word/header1.xml" in {f.part for f in positions}

    def test_broken_package(self, indexer):
        with pytest.raises(DocumentParseError) as exc:
            indexer.index(b"PK\x03\x04" + b"\x00" * 3000, "docx")
        assert exc.value.code == ErrorCode.PARSE_DOCX_FAILED


# =============================================================================
# BOX RESOLUTION
# =============================================================================


class TestRedactionBoxResolver:
    """Test RedactionBoxResolver."""

    @pytest.fixture
    def positions(self):
        return PositionIndex(
            fragments=[
                TextFragment(text="SSN: 123-45-6789", char_offset=0, page=1, x=72, y=700, width=160, height=12),
                TextFragment(text="next line", char_offset=17, page=1, x=72, y=680, width=90, height=12),
                TextFragment(text="page two", char_offset=27, page=2, x=50, y=500, width=80, height=10),
            ],
            page_count=2,
        )

    def test_proportional_sub_fragment(self, positions):
        """Part of a fragment maps to the matching share of its width."""
        boxes = RedactionBoxResolver().resolve(_entity("123-45-6789", 5, 16), positions)

        assert len(boxes) == 1
        box = boxes[0]
        assert box.page == 1
        assert box.x1 == pytest.approx(72 + 50 - EPSILON)
        assert box.x2 == pytest.approx(72 + 160 + EPSILON)
        assert box.contains(122, 700, 232, 712, strict=True)

    def test_union_across_fragments_on_one_page(self, positions):
        """Fragments on one page merge into a single box."""
        boxes = RedactionBoxResolver().resolve(_entity("6789\nnext", 12, 21), positions)
        assert len(boxes) == 1
        assert boxes[0].y1 < 680 and boxes[0].y2 > 712

    def test_one_box_per_page(self, positions):
        """An entity spanning pages yields a box on each."""
        boxes = RedactionBoxResolver().resolve(_entity("line\fpage", 22, 31), positions)
        assert [b.page for b in boxes] == [1, 2]

    def test_resolve_all_marks_unconfirmed(self, positions):
        """Entities with no overlapping fragment are reported back."""
        found = _entity("123", 5, 8)
        lost = _entity("ghost", 100, 105)
        floating = DetectedEntity(rule_id="ai", rule_version="ai", category="PII", text="x")

        by_page, unconfirmed = RedactionBoxResolver().resolve_all([found, lost, floating], positions)

        assert list(by_page) == [1]
        assert found.page == 1 and found.geometry
        assert unconfirmed == [lost, floating]
        assert lost.geometry is None

    def test_docx_fragments_produce_no_boxes(self):
        positions = PositionIndex(fragments=[TextFragment(text="abc", char_offset=0, page=None)])
        assert RedactionBoxResolver().resolve(_entity("abc", 0, 3), positions) == []
