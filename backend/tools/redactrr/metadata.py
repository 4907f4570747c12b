"""
Document metadata scrubbing.

PDF: the Info dictionary is emptied, custom keys included, XMP is
deleted and the dates are reset. DOCX: core, app and custom properties
are cleared in place.
"""

import logging
from datetime import datetime, timezone
from typing import Dict

import fitz

from errors import UnsupportedFormatError

from . import ooxml
from .indexer import open_pdf

logger = logging.getLogger(__name__)

CORE_PART = "docProps/core.xml"
APP_PART = "docProps/app.xml"
CUSTOM_PART = "docProps/custom.xml"

CP_NS = "http://schemas.openxmlformats.org/package/2006/metadata/core-properties"
DC_NS = "http://purl.org/dc/elements/1.1/"
DCTERMS_NS = "http://purl.org/dc/terms/"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
APP_NS = "http://schemas.openxmlformats.org/officeDocument/2006/extended-properties"
CUSTOM_NS = "http://schemas.openxmlformats.org/officeDocument/2006/custom-properties"
VT_NS = "http://schemas.openxmlformats.org/officeDocument/2006/docPropsVTypes"

CLEARED_CORE_FIELDS = (
    f"{{{DC_NS}}}creator",
    f"{{{CP_NS}}}lastModifiedBy",
    f"{{{DC_NS}}}title",
    f"{{{DC_NS}}}subject",
    f"{{{DC_NS}}}description",
    f"{{{CP_NS}}}keywords",
    f"{{{CP_NS}}}category",
    f"{{{CP_NS}}}contentStatus",
    f"{{{DC_NS}}}identifier",
)
CLEARED_APP_FIELDS = ("Company", "Manager", "Template", "HyperlinkBase")

PDF_INFO_FIELDS = ("author", "title", "subject", "keywords", "creator", "producer")


def _w3cdtf_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _scrub_core(data: bytes) -> bytes:
    root = ooxml.parse_xml(data, CORE_PART)
    for tag in CLEARED_CORE_FIELDS:
        for element in root.iter(tag):
            element.text = ""

    revision = root.find(f"{{{CP_NS}}}revision")
    if revision is None:
        revision = root.makeelement(f"{{{CP_NS}}}revision")
        root.append(revision)
    revision.text = "1"

    for printed in root.findall(f"{{{CP_NS}}}lastPrinted"):
        root.remove(printed)

    now = _w3cdtf_now()
    for name in ("created", "modified"):
        element = root.find(f"{{{DCTERMS_NS}}}{name}")
        if element is None:
            element = root.makeelement(f"{{{DCTERMS_NS}}}{name}")
            root.append(element)
        element.set(f"{{{XSI_NS}}}type", "dcterms:W3CDTF")
        element.text = now
    return ooxml.serialize_xml(root)


def _scrub_app(data: bytes) -> bytes:
    root = ooxml.parse_xml(data, APP_PART)
    for name in CLEARED_APP_FIELDS:
        for element in root.iter(f"{{{APP_NS}}}{name}"):
            element.text = ""

    # Hyperlink list and part titles repeat document text
    for links in root.findall(f"{{{APP_NS}}}HLinks"):
        root.remove(links)
    for titles in root.iter(f"{{{APP_NS}}}TitlesOfParts"):
        for value in titles.iter(f"{{{VT_NS}}}lpstr", f"{{{VT_NS}}}lpwstr"):
            value.text = ""
    return ooxml.serialize_xml(root)


def _scrub_custom(data: bytes) -> bytes:
    root = ooxml.parse_xml(data, CUSTOM_PART)
    for prop in root.iter(f"{{{CUSTOM_NS}}}property"):
        for value in prop.iter():
            if value is not prop:
                value.text = ""
    return ooxml.serialize_xml(root)


def scrub_docx_properties(parts: Dict[str, bytes]) -> None:
    """Clear core, app and custom document properties in a part dict (in place)."""
    for name, scrub in ((CORE_PART, _scrub_core), (APP_PART, _scrub_app), (CUSTOM_PART, _scrub_custom)):
        if name in parts:
            parts[name] = scrub(parts[name])


def _reset_info(doc: "fitz.Document") -> None:
    """Replace the trailer Info dictionary with an empty one, dropping custom keys."""
    kind, value = doc.xref_get_key(-1, "Info")
    if kind == "xref":
        doc.update_object(int(value.split()[0]), "<<>>")
    elif kind != "null":
        xref = doc.get_new_xref()
        doc.update_object(xref, "<<>>")
        doc.xref_set_key(-1, "Info", f"{xref} 0 R")


class MetadataSanitizer:
    """Clears authorship and descriptive metadata, resets timestamps."""

    def sanitize(self, data: bytes, fmt: str) -> bytes:
        if fmt == "pdf":
            return self._sanitize_pdf(data)
        if fmt == "docx":
            parts = ooxml.read_package(data)
            scrub_docx_properties(parts)
            logger.info("DOCX properties scrubbed")
            return ooxml.write_package(parts)
        raise UnsupportedFormatError(f"Cannot sanitize format: {fmt}")

    @staticmethod
    def _sanitize_pdf(data: bytes) -> bytes:
        doc = open_pdf(data)
        try:
            now = fitz.get_pdf_now()
            metadata = {key: "" for key in PDF_INFO_FIELDS}
            metadata["creationDate"] = now
            metadata["modDate"] = now
            _reset_info(doc)
            doc.set_metadata(metadata)
            doc.del_xml_metadata()
            output = doc.tobytes(garbage=1, deflate=True)
        finally:
            doc.close()
        logger.info("PDF metadata scrubbed")
        return output
