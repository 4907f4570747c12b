"""
WordprocessingML package helpers shared by the indexer, the DOCX engine,
the verifier and the metadata sanitizer.

A DOCX file is handled as an ordered ``{part name: bytes}`` dict. Parts are
parsed with lxml; namespaced tags are built with python-docx's ``qn``.
"""

import io
import re
import zipfile
from typing import Dict, List

from docx.oxml.ns import qn
from lxml import etree

from errors import DocumentParseError

CONTENT_TYPES = "[Content_Types].xml"

BODY_PART = "word/document.xml"

# Visible text of a redaction marker
REDACTION_TEXT = "[REDACTED]"

_HEADER_RE = re.compile(r"^word/header\d*\.xml$")
_FOOTER_RE = re.compile(r"^word/footer\d*\.xml$")
_NOTE_PARTS = ("word/footnotes.xml", "word/endnotes.xml", "word/comments.xml")
_CUSTOM_XML_RE = re.compile(r"^customXml/item\d+\.xml$")

# Elements holding visible run text
W_T = qn("w:t")
W_DEL_TEXT = qn("w:delText")
W_INSTR_TEXT = qn("w:instrText")
W_P = qn("w:p")
W_R = qn("w:r")
W_RPR = qn("w:rPr")
W_TAB = qn("w:tab")
W_BR = qn("w:br")
W_CR = qn("w:cr")

TEXT_TAGS = (W_T, W_DEL_TEXT)


def _natural_key(name: str):
    return [int(t) if t.isdigit() else t for t in re.split(r"(\d+)", name)]


def read_package(data: bytes) -> Dict[str, bytes]:
    """Unpack a DOCX into an ordered dict of part name -> bytes."""
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            return {info.filename: zf.read(info.filename) for info in zf.infolist() if not info.is_dir()}
    except (zipfile.BadZipFile, zipfile.LargeZipFile, KeyError, EOFError) as e:
        raise DocumentParseError("Could not unpack DOCX package", details=str(e), file_type="docx")


def write_package(parts: Dict[str, bytes]) -> bytes:
    """Repack parts into a DOCX. [Content_Types].xml is written first."""
    buffer = io.BytesIO()
    names = sorted(parts, key=lambda n: n != CONTENT_TYPES)
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for name in names:
            zf.writestr(name, parts[name])
    return buffer.getvalue()


def word_parts(names) -> List[str]:
    """WordprocessingML text parts in reading order: body, headers, footers, notes, comments."""
    names = list(names)
    ordered = [BODY_PART] if BODY_PART in names else []
    ordered += sorted((n for n in names if _HEADER_RE.match(n)), key=_natural_key)
    ordered += sorted((n for n in names if _FOOTER_RE.match(n)), key=_natural_key)
    ordered += [n for n in _NOTE_PARTS if n in names]
    return ordered


def custom_xml_parts(names) -> List[str]:
    return sorted((n for n in names if _CUSTOM_XML_RE.match(n)), key=_natural_key)


def xml_parts(names) -> List[str]:
    """Every XML part (including .rels), for independent text extraction."""
    return [n for n in names if n.endswith(".xml") or n.endswith(".rels")]


def parse_xml(data: bytes, part: str = "") -> etree._Element:
    try:
        parser = etree.XMLParser(resolve_entities=False, huge_tree=True)
        return etree.fromstring(data, parser)
    except etree.XMLSyntaxError as e:
        raise DocumentParseError(f"Malformed XML in {part or 'DOCX part'}", details=str(e), file_type="docx")


def serialize_xml(root: etree._Element) -> bytes:
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8", standalone=True)
