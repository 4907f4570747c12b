"""
Tests for PDF content stream redaction.
"""

import fitz
import pytest

from tools.redactrr.boxes import RedactionBoxResolver
from tools.redactrr.indexer import PositionIndexer
from tools.redactrr.models import DetectedEntity, RedactionParams
from tools.redactrr.pdf_content import count_text_objects, tokenize
from tools.redactrr.pdf_engine import PdfRedactionEngine

SSN = "123-45-6789"
EMAIL = "jane.doe@example.com"


def _prepare(data):
    """Index and detect literally, the way the pipeline does before redaction."""
    text, positions = PositionIndexer().index(data, "pdf")
    entities = []
    for needle, rule_id in ((SSN, "default-ssn"), (EMAIL, "default-email")):
        start = text.find(needle)
        if start >= 0:
            entities.append(
                DetectedEntity(
                    rule_id=rule_id, rule_version="1", category="PII",
                    text=needle, char_start=start, char_end=start + len(needle),
                )
            )
    RedactionBoxResolver().resolve_all(entities, positions)
    return entities, positions


def _streams(data):
    doc = fitz.open(stream=data, filetype="pdf")
    try:
        return [doc.xref_stream(xref) or b"" for page in doc for xref in page.get_contents()]
    finally:
        doc.close()


@pytest.fixture
def engine():
    return PdfRedactionEngine(max_workers=2)


# =============================================================================
# CONTENT STREAM REMOVAL
# =============================================================================


class TestPdfRedactionEngine:
    """Test PdfRedactionEngine.redact."""

    def test_removes_text_from_content_stream(self, engine, ssn_pdf, extract_text):
        """The entity is gone from the text layer, not just covered."""
        entities, positions = _prepare(ssn_pdf)
        output, outcome = engine.redact(ssn_pdf, entities, positions, RedactionParams(padding=2.0))

        assert SSN not in extract_text(output)
        assert outcome.redacted_count == 1
        assert outcome.removed_operations == 1
        assert outcome.stream_failures == []
        assert outcome.overlays == 1

    def test_original_bytes_untouched(self, engine, ssn_pdf):
        before = bytes(ssn_pdf)
        entities, positions = _prepare(ssn_pdf)
        engine.redact(ssn_pdf, entities, positions)
        assert ssn_pdf == before

    def test_unrelated_lines_survive(self, engine, make_pdf, extract_text):
        """Only text-showing ops touching a box are dropped."""
        data = make_pdf([[f"SSN: {SSN}", "Quarterly summary"]])
        entities, positions = _prepare(data)
        output, _ = engine.redact(data, entities, positions)

        text = extract_text(output)
        assert SSN not in text
        assert "Quarterly summary" in text

    def test_streams_stay_balanced(self, engine, contact_pdf):
        """Every rewritten stream still has matching BT/ET."""
        entities, positions = _prepare(contact_pdf)
        output, outcome = engine.redact(contact_pdf, entities, positions)

        assert outcome.removed_operations == 2
        bt = et = 0
        for stream in _streams(output):
            b, e = count_text_objects(tokenize(stream))
            bt, et = bt + b, et + e
        assert bt == et

    def test_entities_on_two_pages(self, engine, two_page_pdf, extract_text):
        entities, positions = _prepare(two_page_pdf)
        assert sorted(e.page for e in entities) == [1, 2]

        output, outcome = engine.redact(two_page_pdf, entities, positions)
        text = extract_text(output)
        assert SSN not in text
        assert EMAIL not in text
        assert outcome.overlays == 2

    def test_resolves_missing_geometry(self, engine, ssn_pdf, extract_text):
        """Entities without geometry are resolved from the position index."""
        entities, positions = _prepare(ssn_pdf)
        for entity in entities:
            entity.geometry = None

        output, outcome = engine.redact(ssn_pdf, entities, positions)
        assert outcome.redacted_count == 1
        assert SSN not in extract_text(output)

    def test_unpositioned_entity_is_skipped(self, engine, ssn_pdf):
        """Without geometry or an index there is nothing to draw."""
        floating = DetectedEntity(rule_id="ai", rule_version="ai", category="PII", text="ghost")
        _, outcome = engine.redact(ssn_pdf, [floating])
        assert outcome.redacted_count == 0
        assert outcome.warnings

    def test_aggressive_attempt(self, engine, ssn_pdf, extract_text):
        """The strict strategy adds native redaction and a full rebuild."""
        entities, positions = _prepare(ssn_pdf)
        output, outcome = engine.redact(ssn_pdf, entities, positions, RedactionParams(padding=6.0, aggressive=True))

        assert SSN not in extract_text(output)
        doc = fitz.open(stream=output, filetype="pdf")
        try:
            assert doc.page_count == 1
        finally:
            doc.close()


# =============================================================================
# LINE SELECTION
# =============================================================================


def _split_after_last_show(data):
    """Move everything from the last ET of page 1's text stream into a new stream after it."""
    doc = fitz.open(stream=data, filetype="pdf")
    try:
        page = doc[0]
        contents = page.get_contents()
        first = next(xref for xref in contents if b"BT" in (doc.xref_stream(xref) or b""))
        stream = doc.xref_stream(first)
        cut = stream.rindex(b"ET")
        doc.update_stream(first, stream[:cut])
        second = doc.get_new_xref()
        doc.update_object(second, "<<>>")
        doc.update_stream(second, stream[cut:], new=True)

        refs = []
        for xref in contents:
            refs.append(f"{xref} 0 R")
            if xref == first:
                refs.append(f"{second} 0 R")
        doc.xref_set_key(page.xref, "Contents", f"[{' '.join(refs)}]")
        return doc.tobytes()
    finally:
        doc.close()


class TestLineSelection:
    """Test which text-showing operations are chosen for removal."""

    SINGLE_SPACED = [["Name: Alice", f"SSN: {SSN}", "Keep this line"]]

    def test_single_spaced_neighbours_survive(self, engine, make_pdf, extract_text):
        """Lines directly above and below the entity keep their text at default padding."""
        data = make_pdf(self.SINGLE_SPACED, fontsize=12, leading=14)
        entities, positions = _prepare(data)
        output, outcome = engine.redact(data, entities, positions, RedactionParams(padding=2.0))

        text = extract_text(output)
        assert outcome.removed_operations == 1
        assert SSN not in text
        assert "Name: Alice" in text
        assert "Keep this line" in text

    def test_strict_padding_removes_one_operation(self, engine, make_pdf, extract_text):
        """Larger padding widens the overlay, not the set of removed operations."""
        data = make_pdf(self.SINGLE_SPACED, fontsize=12, leading=14)
        entities, positions = _prepare(data)
        output, outcome = engine.redact(data, entities, positions, RedactionParams(padding=6.0, aggressive=True))

        assert outcome.removed_operations == 1
        assert SSN not in extract_text(output)

    def test_text_object_split_across_streams(self, engine, ssn_pdf, extract_text):
        """A BT in one content stream closed by an ET in the next is not a failure."""
        data = _split_after_last_show(ssn_pdf)
        entities, positions = _prepare(data)
        output, outcome = engine.redact(data, entities, positions)

        assert outcome.stream_failures == []
        assert outcome.removed_operations == 1
        assert SSN not in extract_text(output)


# =============================================================================
# STRUCTURE AND ACCESSIBILITY
# =============================================================================


class TestDocumentStructure:
    """Test the document-level cleanup done alongside redaction."""

    def test_annotations_and_links_removed(self, engine, ssn_pdf):
        doc = fitz.open(stream=ssn_pdf, filetype="pdf")
        page = doc[0]
        page.add_text_annot((300, 300), f"Reviewer note: {SSN}")
        page.insert_link({"kind": fitz.LINK_URI, "from": fitz.Rect(72, 60, 200, 80), "uri": "https://example.com"})
        doc.set_toc([[1, "Overview", 1]])
        annotated = doc.tobytes()
        doc.close()

        entities, positions = _prepare(annotated)
        output, _ = engine.redact(annotated, entities, positions)

        doc = fitz.open(stream=output, filetype="pdf")
        try:
            page = doc[0]
            assert page.first_annot is None
            assert page.get_links() == []
            assert doc.get_toc() == []
        finally:
            doc.close()

    def test_accessibility_entries(self, engine, ssn_pdf):
        """Output is tagged, marked and has a language."""
        entities, positions = _prepare(ssn_pdf)
        output, _ = engine.redact(ssn_pdf, entities, positions)

        doc = fitz.open(stream=output, filetype="pdf")
        try:
            catalog = doc.pdf_catalog()
            assert doc.xref_get_key(catalog, "StructTreeRoot")[0] == "xref"
            assert "true" in doc.xref_get_key(catalog, "MarkInfo")[1]
            assert doc.xref_get_key(catalog, "Lang")[0] == "string"
        finally:
            doc.close()
