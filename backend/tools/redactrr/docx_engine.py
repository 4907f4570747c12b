"""
DOCX redaction engine.

Works on the raw OOXML parts with lxml rather than through python-docx's
document model, so headers, footers, notes, comments, field codes and
customXml are reached the same way as the body.

A redacted span becomes a content control (w:sdt) tagged "Redacted" whose
alias records the rule that triggered it::

    <w:sdt>
      <w:sdtPr>
        <w:alias w:val="Redacted:Rule-r-phone@1"/>
        <w:tag w:val="Redacted"/>
        <w:id w:val="100001"/>
      </w:sdtPr>
      <w:sdtContent>
        <w:r><w:rPr>...<w:highlight w:val="black"/></w:rPr><w:t>[REDACTED]</w:t></w:r>
      </w:sdtContent>
    </w:sdt>
"""

import copy
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from docx.oxml import OxmlElement
from docx.oxml.ns import qn
from lxml import etree

from config import runtime_config
from errors import DocumentParseError

from . import ooxml
from .metadata import scrub_docx_properties
from .models import DetectedEntity, EngineOutcome, PositionIndex, RedactionParams

logger = logging.getLogger(__name__)

REDACTION_TEXT = ooxml.REDACTION_TEXT
MARKER_TAG = "Redacted"

W_SDT = qn("w:sdt")
W_SDT_PR = qn("w:sdtPr")
W_SDT_CONTENT = qn("w:sdtContent")
W_ALIAS = qn("w:alias")
W_TAG = qn("w:tag")
W_ID = qn("w:id")
W_VAL = qn("w:val")
W_HIGHLIGHT = qn("w:highlight")
W_FLD_SIMPLE = qn("w:fldSimple")
W_INSTR = qn("w:instr")
XML_SPACE = "{http://www.w3.org/XML/1998/namespace}space"

# rPr children that come after w:highlight in CT_RPr order
_AFTER_HIGHLIGHT = {
    qn(f"w:{name}")
    for name in (
        "u", "effect", "bdr", "shd", "fitText", "vertAlign", "rtl", "cs", "em",
        "lang", "eastAsianLayout", "specVanish", "oMath", "rPrChange",
    )
}
# rPr children dropped from the marker run (hidden text, tracked formatting)
_DROPPED_RPR = {qn("w:vanish"), qn("w:specVanish"), qn("w:webHidden"), qn("w:rPrChange"), W_HIGHLIGHT}

SETTINGS_PART = "word/settings.xml"
DOCUMENT_LANG = "en-US"
W_DOCUMENT_PROTECTION = qn("w:documentProtection")
W_THEME_FONT_LANG = qn("w:themeFontLang")

# CT_Settings children that precede w:documentProtection
_BEFORE_PROTECTION = {
    qn(f"w:{name}")
    for name in (
        "writeProtection", "view", "zoom", "removePersonalInformation", "removeDateAndTime",
        "doNotDisplayPageBoundaries", "displayBackgroundShape", "printPostScriptOverText",
        "printFractionalCharacterWidth", "printFormsData", "embedTrueTypeFonts", "embedSystemFonts",
        "saveSubsetFonts", "saveFormsData", "mirrorMargins", "alignBordersAndEdges",
        "bordersDoNotSurroundHeader", "bordersDoNotSurroundFooter", "gutterAtTop", "hideSpellingErrors",
        "hideGrammaticalErrors", "activeWritingStyle", "proofState", "formsDesign", "attachedTemplate",
        "linkStyles", "stylePaneFormatFilter", "stylePaneSortMethod", "documentType", "mailMerge",
        "revisionView", "trackRevisions", "doNotTrackMoves", "doNotTrackFormatting",
    )
}
# CT_Settings children that follow w:themeFontLang
_AFTER_THEME_FONT_LANG = {
    qn(f"w:{name}")
    for name in (
        "clrSchemeMapping", "doNotIncludeSubdocsInStats", "doNotAutoCompressPictures", "forceUpgrade",
        "captions", "readModeInkLockDown", "smartTagType", "schemaLibrary", "shapeDefaults",
        "doNotEmbedSmartTags", "decimalSymbol", "listSeparator",
    )
}

RELS_NS = "http://schemas.openxmlformats.org/package/2006/relationships"

MACRO_PARTS = ("word/vbaProject.bin", "word/vbaData.xml", "word/_rels/vbaProject.bin.rels")
_CONTENT_TYPE_DOWNGRADES = {
    "application/vnd.ms-word.document.macroEnabled.main+xml":
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml",
    "application/vnd.ms-word.template.macroEnabledTemplate.main+xml":
        "application/vnd.openxmlformats-officedocument.wordprocessingml.template.main+xml",
}


@dataclass
class RunMatch:
    """One text node taking part in a match, with the matched slice of its text."""

    run: Any
    node: Any
    start: int
    end: int


# =============================================================================
# MATCHING
# =============================================================================


def _in_marker(node) -> bool:
    """True for text inside a content control we inserted."""
    for ancestor in node.iterancestors(W_SDT):
        tag = ancestor.find(f"{W_SDT_PR}/{W_TAG}")
        if tag is not None and tag.get(W_VAL) == MARKER_TAG:
            return True
    return False


def _paragraph_groups(root, tags) -> List[List[Any]]:
    """Text nodes grouped by their nearest paragraph, in document order."""
    groups: Dict[int, List[Any]] = {}
    order: List[int] = []
    for node in root.iter(*tags):
        if not node.text or _in_marker(node):
            continue
        paragraph = next(node.iterancestors(ooxml.W_P), None)
        key = id(paragraph) if paragraph is not None else id(node)
        if key not in groups:
            groups[key] = []
            order.append(key)
        groups[key].append(node)
    return [groups[key] for key in order]


def _fold(text: str) -> str:
    folded = text.casefold()
    return folded if len(folded) == len(text) else text.lower()


def find_runs_with_text(root, text: str, tags=ooxml.TEXT_TAGS) -> List[List[RunMatch]]:
    """
    Find every case-insensitive occurrence of ``text`` across run boundaries.

    Text nodes of each paragraph are concatenated into one offset map, so a
    value split over several differently formatted runs is still found.

    Args:
        root: Parsed part (lxml element)
        text: Literal text to look for
        tags: Text node tags to consider (w:t and w:delText by default)

    Returns:
        One list of RunMatch per occurrence, covering nodes in order
    """
    needle = _fold(text)
    if not needle:
        return []

    occurrences = []
    for nodes in _paragraph_groups(root, tags):
        spans = []
        offset = 0
        for node in nodes:
            spans.append((offset, offset + len(node.text), node))
            offset += len(node.text)
        haystack = _fold("".join(node.text for node in nodes))
        if len(haystack) != offset:
            continue

        start = haystack.find(needle)
        while start >= 0:
            end = start + len(needle)
            group = [
                RunMatch(run=node.getparent(), node=node, start=max(start, lo) - lo, end=min(end, hi) - lo)
                for lo, hi, node in spans
                if lo < end and start < hi
            ]
            occurrences.append(group)
            start = haystack.find(needle, end)
    return occurrences


# =============================================================================
# MARKERS
# =============================================================================


def _marker_rpr(rpr) -> etree._Element:
    """Copy of the run properties with black highlight and nothing hidden."""
    marker = copy.deepcopy(rpr) if rpr is not None else OxmlElement("w:rPr")
    for child in list(marker):
        if child.tag in _DROPPED_RPR:
            marker.remove(child)

    highlight = OxmlElement("w:highlight")
    highlight.set(W_VAL, "black")
    for index, child in enumerate(marker):
        if child.tag in _AFTER_HIGHLIGHT:
            marker.insert(index, highlight)
            break
    else:
        marker.append(highlight)
    return marker


def build_marker(entity: DetectedEntity, rpr, marker_id: int) -> etree._Element:
    """Create the w:sdt redaction marker for one match."""
    sdt = OxmlElement("w:sdt")
    props = etree.SubElement(sdt, W_SDT_PR)
    etree.SubElement(props, W_ALIAS).set(W_VAL, f"Redacted:Rule-{entity.rule_id}@{entity.rule_version}")
    etree.SubElement(props, W_TAG).set(W_VAL, MARKER_TAG)
    etree.SubElement(props, W_ID).set(W_VAL, str(marker_id))

    content = etree.SubElement(sdt, W_SDT_CONTENT)
    run = etree.SubElement(content, ooxml.W_R)
    run.append(_marker_rpr(rpr))
    etree.SubElement(run, ooxml.W_T).text = REDACTION_TEXT
    return sdt


def _set_text(node, text: str) -> None:
    node.text = text
    if text != text.strip():
        node.set(XML_SPACE, "preserve")


def _is_empty_run(run) -> bool:
    return all(child.tag == ooxml.W_RPR or (child.tag in ooxml.TEXT_TAGS and not child.text) for child in run)


def replace_match(group: List[RunMatch], marker) -> None:
    """
    Replace one matched span with ``marker``.

    The first run keeps the text before the match, a copy of the last run
    keeps the text after it, and every run in between is removed.
    """
    first, last = group[0], group[-1]
    run_a, run_b = first.run, last.run
    last_index = list(run_b).index(last.node)

    after = copy.deepcopy(run_b)
    for child in list(after)[:last_index]:
        if child.tag != ooxml.W_RPR:
            after.remove(child)
    tail_node = next(child for child in after if child.tag != ooxml.W_RPR)
    _set_text(tail_node, last.node.text[last.end:])

    first_index = list(run_a).index(first.node)
    for child in list(run_a)[first_index + 1:]:
        run_a.remove(child)
    _set_text(first.node, first.node.text[: first.start])

    for match in group[1:-1]:
        if match.run is not run_a and match.run is not run_b and match.run.getparent() is not None:
            match.run.getparent().remove(match.run)

    run_a.addnext(marker)
    if run_b is run_a:
        marker.addnext(after)
    else:
        run_b.addprevious(after)
        run_b.getparent().remove(run_b)

    for run in (run_a, after):
        if run.getparent() is not None and _is_empty_run(run):
            run.getparent().remove(run)


def _replace_literal(value: str, needle: str) -> Tuple[str, int]:
    return re.subn(re.escape(needle), REDACTION_TEXT, value, flags=re.IGNORECASE)


# =============================================================================
# ENGINE
# =============================================================================


class DocxRedactionEngine:
    """Run-level rewriting of every text-bearing part of a DOCX package."""

    def __init__(self, max_workers: Optional[int] = None):
        self.max_workers = max_workers

    def redact(
        self,
        data: bytes,
        entities: List[DetectedEntity],
        positions: Optional[PositionIndex] = None,
        params: Optional[RedactionParams] = None,
    ) -> Tuple[bytes, EngineOutcome]:
        """
        Redact entity texts from every part of a DOCX package.

        ``positions`` and ``params`` are accepted so both engines share one
        signature; DOCX redaction is text-driven and ignores them.

        Returns:
            (redacted DOCX bytes, EngineOutcome)
        """
        parts = ooxml.read_package(data)
        outcome = EngineOutcome()

        texts = []
        seen = set()
        for entity in sorted(entities, key=lambda e: -len(e.text)):
            key = _fold(entity.text)
            if key and key not in seen:
                seen.add(key)
                texts.append(entity)

        targets = [(name, "word") for name in ooxml.word_parts(parts)]
        targets += [(name, "custom") for name in ooxml.custom_xml_parts(parts)]

        workers = self.max_workers or runtime_config.max_workers
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [
                pool.submit(self._redact_part, name, kind, parts[name], texts, (index + 1) * 100000)
                for index, (name, kind) in enumerate(targets)
            ]
            for future in futures:
                name, new_bytes, count, failure = future.result()
                if failure:
                    outcome.stream_failures.append(failure)
                    continue
                if count:
                    parts[name] = new_bytes
                    outcome.redacted_count += count

        self._remove_macros(parts, outcome)
        self._neutralize_links(parts, texts, outcome)
        scrub_docx_properties(parts)
        self._mark_settings(parts)

        logger.info(
            f"DOCX redaction: {outcome.redacted_count} replacements across {len(targets)} parts, "
            f"{len(outcome.stream_failures)} part failures"
        )
        return ooxml.write_package(parts), outcome

    def _redact_part(
        self, name: str, kind: str, data: bytes, entities: List[DetectedEntity], id_base: int
    ) -> Tuple[str, bytes, int, Optional[Dict[str, Any]]]:
        """Worker: redact one part on its own bytes."""
        try:
            root = ooxml.parse_xml(data, name)
        except DocumentParseError as e:
            return name, data, 0, {"page": name, "xref": None, "code": e.code.value, "message": e.message,
                                   "details": e.details}

        if kind == "custom":
            count = self._redact_custom_xml(root, entities)
        else:
            count = self._redact_word_part(root, entities, id_base)
        return name, ooxml.serialize_xml(root) if count else data, count, None

    @staticmethod
    def _redact_word_part(root, entities: List[DetectedEntity], id_base: int) -> int:
        count = 0
        marker_id = id_base
        for entity in entities:
            for group in reversed(find_runs_with_text(root, entity.text)):
                marker_id += 1
                rpr = group[0].run.find(ooxml.W_RPR)
                replace_match(group, build_marker(entity, rpr, marker_id))
                count += 1

            # Field instructions: a content control cannot sit inside a field code
            for group in reversed(find_runs_with_text(root, entity.text, tags=(ooxml.W_INSTR_TEXT,))):
                first, last = group[0], group[-1]
                suffix = last.node.text[last.end:]
                _set_text(first.node, first.node.text[: first.start] + REDACTION_TEXT)
                for match in group[1:]:
                    _set_text(match.node, "")
                if last is not first:
                    _set_text(last.node, suffix)
                else:
                    _set_text(first.node, first.node.text + suffix)
                count += 1

            for field in root.iter(W_FLD_SIMPLE):
                instr, n = _replace_literal(field.get(W_INSTR, ""), entity.text)
                if n:
                    field.set(W_INSTR, instr)
                    count += n
        return count

    @staticmethod
    def _redact_custom_xml(root, entities: List[DetectedEntity]) -> int:
        count = 0
        for element in root.iter():
            for entity in entities:
                if element.text:
                    element.text, n = _replace_literal(element.text, entity.text)
                    count += n
                if element.tail:
                    element.tail, n = _replace_literal(element.tail, entity.text)
                    count += n
        return count

    @staticmethod
    def _remove_macros(parts: Dict[str, bytes], outcome: EngineOutcome) -> None:
        removed = [name for name in MACRO_PARTS if parts.pop(name, None) is not None]

        if ooxml.CONTENT_TYPES in parts:
            types = ooxml.parse_xml(parts[ooxml.CONTENT_TYPES], ooxml.CONTENT_TYPES)
            keep_bin = any(name.endswith(".bin") for name in parts)
            for element in list(types):
                tag = etree.QName(element).localname
                if tag == "Override":
                    if element.get("PartName", "").lstrip("/") in MACRO_PARTS:
                        types.remove(element)
                        continue
                    content_type = element.get("ContentType", "")
                    if content_type in _CONTENT_TYPE_DOWNGRADES:
                        element.set("ContentType", _CONTENT_TYPE_DOWNGRADES[content_type])
                        removed.append(content_type)
                elif tag == "Default" and element.get("Extension", "").lower() == "bin" and not keep_bin:
                    types.remove(element)
            parts[ooxml.CONTENT_TYPES] = ooxml.serialize_xml(types)

        rels_name = "word/_rels/document.xml.rels"
        if rels_name in parts:
            rels = ooxml.parse_xml(parts[rels_name], rels_name)
            for rel in list(rels):
                if rel.get("Type", "").endswith("/vbaProject"):
                    rels.remove(rel)
            parts[rels_name] = ooxml.serialize_xml(rels)

        if removed:
            outcome.warnings.append(f"Removed macro payload ({len(removed)} items)")
            logger.info(f"Removed macro payload: {removed}")

    @staticmethod
    def _neutralize_links(parts: Dict[str, bytes], entities: List[DetectedEntity], outcome: EngineOutcome) -> None:
        """Point external relationships whose target contains an entity at about:blank."""
        needles = [_fold(e.text) for e in entities]
        for name in [n for n in parts if n.startswith("word/_rels/") and n.endswith(".rels")]:
            rels = ooxml.parse_xml(parts[name], name)
            changed = 0
            for rel in rels.iter(f"{{{RELS_NS}}}Relationship"):
                target = rel.get("Target", "")
                if rel.get("TargetMode") == "External" and any(n in _fold(target) for n in needles):
                    rel.set("Target", "about:blank")
                    changed += 1
            if changed:
                parts[name] = ooxml.serialize_xml(rels)
                outcome.redacted_count += changed
                logger.info(f"Neutralized {changed} external link(s) in {name}")

    @staticmethod
    def _mark_settings(parts: Dict[str, bytes]) -> None:
        """
        Add a read-only recommendation and a document language to word/settings.xml.

        Existing protection and language settings are left as they are. A
        package without a settings part is not given one.
        """
        if SETTINGS_PART not in parts:
            return
        settings = ooxml.parse_xml(parts[SETTINGS_PART], SETTINGS_PART)
        children = list(settings)

        if settings.find(W_DOCUMENT_PROTECTION) is None:
            protection = OxmlElement("w:documentProtection")
            protection.set(qn("w:edit"), "readOnly")
            protection.set(qn("w:enforcement"), "0")
            preceding = [i for i, child in enumerate(children) if child.tag in _BEFORE_PROTECTION]
            settings.insert(preceding[-1] + 1 if preceding else 0, protection)

        if settings.find(W_THEME_FONT_LANG) is None:
            lang = OxmlElement("w:themeFontLang")
            lang.set(W_VAL, DOCUMENT_LANG)
            following = next((child for child in settings if child.tag in _AFTER_THEME_FONT_LANG), None)
            if following is not None:
                following.addprevious(lang)
            else:
                settings.append(lang)

        parts[SETTINGS_PART] = ooxml.serialize_xml(settings)
