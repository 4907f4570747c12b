"""
PDF redaction engine.

Removal is done in the content streams themselves: every text-showing
operation whose estimated rectangle lies on the same line as a redaction
box (more than half its height overlapping) and crosses it horizontally
loses its glyphs. The operation is swapped for a glyph-free `[n] TJ`
spacer carrying the same advance, so text after it on the line keeps its
position, and the stream is rewritten. Padding only widens the opaque
rectangle painted over each box, which is drawn whether or not removal
succeeded.

Threading: fitz objects are only touched on the calling thread. Workers
receive private copies of the stream bytes and plain-Python font data,
tokenize/interpret/filter, and hand back replacement bytes.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

import fitz

from config import runtime_config
from errors import StreamIntegrityError

from .boxes import RedactionBoxResolver
from .indexer import open_pdf
from .models import DetectedEntity, EngineOutcome, PositionIndex, RedactionBox, RedactionParams
from .pdf_content import (
    PageResources,
    count_text_objects,
    glyph_free_replacement,
    interpret_page,
    load_page_resources,
    read_page_streams,
    serialize,
    tokenize,
)

logger = logging.getLogger(__name__)

OVERLAY_COLOR = (0, 0, 0)

# Share of a run's height that must overlap a box for the run to count as on the same line
LINE_OVERLAP = 0.5

# Catalog entries that can carry text outside the page content
STRIPPED_CATALOG_KEYS = ("OCProperties", "PieceInfo", "Threads", "AA", "OpenAction", "AcroForm", "Names")


@dataclass
class _PageJob:
    page: int
    streams: List[Tuple[int, bytes]]
    resources: PageResources
    boxes: List[RedactionBox]
    padded: List[RedactionBox]


@dataclass
class _PageResult:
    page: int
    replacements: List[Tuple[int, bytes]] = field(default_factory=list)
    removed: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)


def _covers(box: RedactionBox, run: Any) -> bool:
    """Whether a text run crosses a box horizontally and sits on the same line."""
    if not (box.x1 < run.x1 and run.x0 < box.x2):
        return False
    height = run.y1 - run.y0
    overlap = min(box.y2, run.y1) - max(box.y1, run.y0)
    if height <= 0:
        return overlap >= 0 and box.y1 <= run.y0 <= box.y2
    return overlap > LINE_OVERLAP * min(height, box.height)


def _failure(error: StreamIntegrityError) -> Dict[str, Any]:
    return {
        "page": error.page,
        "xref": error.xref,
        "code": error.code.value,
        "message": error.message,
        "details": error.details,
    }


class PdfRedactionEngine:
    """Content-stream rewriting plus opaque overlay."""

    def __init__(self, max_workers: Optional[int] = None, width_factor: Optional[float] = None):
        self.max_workers = max_workers
        self.width_factor = width_factor

    def redact(
        self,
        data: bytes,
        entities: List[DetectedEntity],
        positions: Optional[PositionIndex] = None,
        params: Optional[RedactionParams] = None,
    ) -> Tuple[bytes, EngineOutcome]:
        """
        Redact resolved entities from a PDF.

        Args:
            data: Original PDF bytes (never modified)
            entities: Entities, normally with ``geometry`` set by the box resolver
            positions: Position index of ``data``, used to resolve entities
                that arrive without geometry
            params: Padding and strategy for this attempt

        Returns:
            (redacted PDF bytes, EngineOutcome)
        """
        params = params or RedactionParams(padding=runtime_config.box_padding)
        outcome = EngineOutcome()

        resolver = RedactionBoxResolver() if positions is not None else None
        boxes_by_page: Dict[int, List[RedactionBox]] = {}
        for entity in entities:
            geometry = entity.geometry
            if not geometry and resolver is not None:
                geometry = resolver.resolve(entity, positions)
            if not geometry:
                outcome.warnings.append(f"Entity {entity.content_hash[:12]} has no geometry, skipped")
                continue
            outcome.redacted_count += 1
            for box in geometry:
                boxes_by_page.setdefault(box.page, []).append(box)

        doc = open_pdf(data)
        try:
            jobs = []
            for number in sorted(boxes_by_page):
                if number < 1 or number > doc.page_count:
                    outcome.warnings.append(f"Box on page {number} outside document")
                    continue
                page = doc[number - 1]
                jobs.append(
                    _PageJob(
                        page=number,
                        streams=read_page_streams(doc, page),
                        resources=load_page_resources(doc, page),
                        boxes=boxes_by_page[number],
                        padded=[box.padded(params.padding) for box in boxes_by_page[number]],
                    )
                )

            workers = self.max_workers or runtime_config.max_workers
            with ThreadPoolExecutor(max_workers=workers) as pool:
                results = list(pool.map(self._filter_page, jobs))

            for result in results:
                for xref, stream in result.replacements:
                    doc.update_stream(xref, stream)
                outcome.removed_operations += result.removed
                outcome.stream_failures.extend(result.failures)

            if params.aggressive:
                self._apply_native_redactions(doc, jobs, params.padding)

            outcome.overlays = self._draw_overlays(doc, jobs)
            self._strip_structure(doc)
            self._ensure_accessibility(doc)

            output = doc.tobytes(
                garbage=4 if params.aggressive else 1,
                deflate=True,
                clean=params.aggressive,
            )
        finally:
            doc.close()

        logger.info(
            f"PDF redaction: {outcome.redacted_count} entities, {len(jobs)} pages, "
            f"{outcome.removed_operations} ops removed, {outcome.overlays} overlays, "
            f"{len(outcome.stream_failures)} stream failures"
        )
        for failure in outcome.stream_failures:
            logger.warning(
                f"Page {failure['page']} stream {failure['xref']}: {failure['code']} - kept original, overlay only"
            )
        return output, outcome

    # =========================================================================
    # STREAM FILTERING (worker threads, no fitz access)
    # =========================================================================

    def _filter_page(self, job: _PageJob) -> _PageResult:
        result = _PageResult(page=job.page)

        stream_ops = []
        for i, (xref, raw) in enumerate(job.streams):
            try:
                stream_ops.append(tokenize(raw, stream=i))
            except StreamIntegrityError as e:
                e.page, e.xref = job.page, xref
                result.failures.append(_failure(e))
        if result.failures:
            # Interpreter state spans streams; a hole makes every later position unreliable
            return result

        width_factor = self.width_factor if self.width_factor is not None else runtime_config.glyph_width_factor
        runs = interpret_page(stream_ops, job.resources, width_factor)

        hits: Dict[Tuple[int, int], Any] = {}
        for run in runs:
            if run.form is not None:
                continue
            if any(_covers(box, run) for box in job.boxes):
                hits[(run.stream, run.op_index)] = run

        for i, operations in enumerate(stream_ops):
            if not any(key[0] == i for key in hits):
                continue

            filtered = []
            removed = 0
            for op in operations:
                run = hits.get((i, op.index))
                if run is None:
                    filtered.append(op)
                    continue
                removed += 1
                spacer = glyph_free_replacement(op, run)
                if spacer:
                    filtered.append(replace(op, operator="TJ", operands=[], raw=spacer))

            xref = job.streams[i][0]
            # A text object may open in one stream and close in the next; only a change counts
            before = count_text_objects(operations)
            after = count_text_objects(filtered)
            if after != before:
                error = StreamIntegrityError(
                    "BT/ET balance changed by filtering",
                    details=f"{before[0]} BT / {before[1]} ET before, {after[0]} BT / {after[1]} ET after",
                    page=job.page,
                    xref=xref,
                )
                result.failures.append(_failure(error))
                continue

            result.replacements.append((xref, serialize(filtered)))
            result.removed += removed

        return result

    # =========================================================================
    # PAGE-LEVEL LAYERS (calling thread)
    # =========================================================================

    @staticmethod
    def _page_rect(page: "fitz.Page", box: RedactionBox) -> "fitz.Rect":
        """User-space box -> MuPDF page coordinates."""
        return fitz.Rect(box.as_tuple()) * page.transformation_matrix

    def _apply_native_redactions(self, doc: "fitz.Document", jobs: List[_PageJob], padding: float) -> None:
        """Secondary removal layer: MuPDF redaction annotations, padded sideways only."""
        for job in jobs:
            page = doc[job.page - 1]
            for box in job.boxes:
                box = box.widened(padding)
                page.add_redact_annot(self._page_rect(page, box), fill=OVERLAY_COLOR)
            page.apply_redactions(images=fitz.PDF_REDACT_IMAGE_NONE)

    def _draw_overlays(self, doc: "fitz.Document", jobs: List[_PageJob]) -> int:
        count = 0
        for job in jobs:
            page = doc[job.page - 1]
            for box in job.padded:
                page.draw_rect(self._page_rect(page, box), color=None, fill=OVERLAY_COLOR, fill_opacity=1, overlay=True)
                count += 1
        return count

    @staticmethod
    def _strip_structure(doc: "fitz.Document") -> None:
        """Remove annotations, form fields, links, outlines, attachments and hidden catalog entries."""
        for page in doc:
            annot = page.first_annot
            while annot:
                annot = page.delete_annot(annot)
            widget = page.first_widget
            while widget:
                widget = page.delete_widget(widget)
            for link in page.get_links():
                page.delete_link(link)
            doc.xref_set_key(page.xref, "PieceInfo", "null")

        doc.set_toc([])
        for name in doc.embfile_names():
            doc.embfile_del(name)

        catalog = doc.pdf_catalog()
        for key in STRIPPED_CATALOG_KEYS:
            doc.xref_set_key(catalog, key, "null")

    @staticmethod
    def _ensure_accessibility(doc: "fitz.Document") -> None:
        catalog = doc.pdf_catalog()
        if doc.xref_get_key(catalog, "StructTreeRoot")[0] == "null":
            xref = doc.get_new_xref()
            doc.update_object(xref, "<</Type/StructTreeRoot/K[]>>")
            doc.xref_set_key(catalog, "StructTreeRoot", f"{xref} 0 R")
        doc.xref_set_key(catalog, "MarkInfo", "<</Marked true>>")
        if doc.xref_get_key(catalog, "Lang")[0] == "null":
            doc.xref_set_key(catalog, "Lang", "(en-US)")
        doc.xref_set_key(catalog, "ViewerPreferences", "<</DisplayDocTitle true>>")
