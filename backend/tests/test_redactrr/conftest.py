"""Pytest fixtures for Redactrr tests: small real PDF and DOCX documents."""

import io

import fitz
import pytest
from docx import Document

from tools.redactrr.models import DetectedEntity

SSN = "123-45-6789"
EMAIL = "jane.doe@example.com"
PHONE = "555-123-4567"


def build_pdf(pages, metadata=None, fontsize=11, leading=20) -> bytes:
    """One page per list of lines in Helvetica, first baseline at y=72 (top-left origin)."""
    doc = fitz.open()
    for lines in pages:
        page = doc.new_page()
        y = 72
        for line in lines:
            page.insert_text((72, y), line, fontsize=fontsize, fontname="helv")
            y += leading
    if metadata:
        doc.set_metadata(metadata)
    data = doc.tobytes()
    doc.close()
    return data


def build_docx(header_text=None, author=None) -> bytes:
    """A DOCX whose phone number is split across two bold runs."""
    document = Document()
    paragraph = document.add_paragraph("Call ")
    paragraph.add_run("555-").bold = True
    paragraph.add_run("123-4567").bold = True
    paragraph.add_run(" today.")
    document.add_paragraph("Nothing else to see here.")

    if header_text:
        document.sections[0].header.paragraphs[0].text = header_text
    if author:
        document.core_properties.author = author

    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


def pdf_text(data: bytes) -> str:
    """Independent extraction, as a reader of the output would see it."""
    doc = fitz.open(stream=data, filetype="pdf")
    try:
        return "".join(page.get_text("text") for page in doc)
    finally:
        doc.close()


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def ssn_pdf():
    """Single page: "SSN: 123-45-6789"."""
    return build_pdf([[f"SSN: {SSN}"]])


@pytest.fixture
def contact_pdf():
    """Single page with an SSN line and an email line."""
    return build_pdf([[f"SSN: {SSN}", f"Email: {EMAIL}"]])


@pytest.fixture
def two_page_pdf():
    """Two pages, one entity on each."""
    return build_pdf([[f"SSN: {SSN}"], ["Quarterly summary", f"Contact {EMAIL}"]])


@pytest.fixture
def clean_pdf():
    """Text with nothing the default rules match."""
    return build_pdf([["Quarterly summary", "Revenue grew in every region."]])


@pytest.fixture
def image_only_pdf():
    """A page with an image and a filled shape but no text at all."""
    doc = fitz.open()
    page = doc.new_page()
    pixmap = fitz.Pixmap(fitz.csRGB, fitz.IRect(0, 0, 16, 16), False)
    pixmap.clear_with(128)
    page.insert_image(fitz.Rect(72, 72, 272, 272), pixmap=pixmap)
    page.draw_rect(fitz.Rect(300, 300, 400, 400), color=(0, 0, 0), fill=(0.5, 0.5, 0.5))
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def phone_docx():
    """DOCX: "Call 555-123-4567 today." with the number split over bold runs."""
    return build_docx()


@pytest.fixture
def contact_docx():
    """DOCX with the split phone number, an email in the header and an author."""
    return build_docx(header_text=f"Contact: {EMAIL}", author="Jane Analyst")


@pytest.fixture
def ssn_entity():
    return DetectedEntity(
        rule_id="default-ssn",
        rule_name="US Social Security Number",
        rule_version="1",
        category="PII",
        text=SSN,
        char_start=5,
        char_end=16,
    )


@pytest.fixture
def phone_entity():
    return DetectedEntity(
        rule_id="default-us-phone",
        rule_name="US Phone Number",
        rule_version="1",
        category="PHI",
        text=PHONE,
    )


@pytest.fixture
def email_entity():
    return DetectedEntity(
        rule_id="default-email",
        rule_name="Email Address",
        rule_version="1",
        category="PII",
        text=EMAIL,
    )


@pytest.fixture
def make_pdf():
    """Builder for ad-hoc PDFs: make_pdf([["line", ...], ...], metadata=None, fontsize=11, leading=20)."""
    return build_pdf


@pytest.fixture
def make_docx():
    """Builder for ad-hoc DOCX files: make_docx(header_text=None, author=None)."""
    return build_docx


@pytest.fixture
def extract_text():
    """Text of a PDF as MuPDF extracts it."""
    return pdf_text
