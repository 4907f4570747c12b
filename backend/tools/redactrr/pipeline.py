"""
Redactrr pipeline.

index -> detect -> resolve -> redact -> sanitize -> verify -> report

Usage:
    redactor = Redactrr()
    outcome = redactor.redact("/path/to/document.pdf", template="rules.json")
    print(outcome.report.to_dict())

Every attempt redacts from the original bytes. The first attempt uses the
standard padding; if verification still finds sensitive text, a second
attempt uses the strict padding plus MuPDF's native redaction and a full
garbage-collecting rebuild. Text surviving that raises VerificationError.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from config import runtime_config
from errors import NoMatchesError, RedactionTimeoutError, SuggestionError, VerificationError, log_error
from logging_config import log_attempt, log_stage, log_verification

from .boxes import RedactionBoxResolver
from .collaborators import DocumentStore, EntitySuggester, LLMEntitySuggester, LocalFileStore
from .detector import EntityDetector
from .docx_engine import DocxRedactionEngine
from .filetype import detect_file_type
from .indexer import PositionIndexer
from .metadata import MetadataSanitizer
from .models import (
    AuditResult,
    DetectedEntity,
    EngineOutcome,
    RedactionParams,
    RedactionReport,
    RedactionTemplate,
    VerificationResult,
)
from .pdf_engine import PdfRedactionEngine
from .report import ReportBuilder
from .templates import load_template
from .verification import VerificationOracle

logger = logging.getLogger(__name__)

TemplateSource = Union[RedactionTemplate, Dict[str, Any], str, Path, None]


@dataclass
class RedactionOutcome:
    """Result of a verified redaction run."""

    data: bytes
    format: str
    report: RedactionReport
    verification: VerificationResult
    entities: List[DetectedEntity] = field(default_factory=list)
    audit: Optional[AuditResult] = None
    output_url: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.verification.success


class _Deadline:
    """Caller's time budget, checked between stages."""

    def __init__(self, seconds: Optional[float]):
        self.expires = time.monotonic() + seconds if seconds is not None else None

    def check(self, stage: str) -> None:
        if self.expires is not None and time.monotonic() > self.expires:
            raise RedactionTimeoutError("Redaction deadline exceeded", details=f"before {stage}", stage=stage)


class Redactrr:
    """
    Main redaction pipeline.

    All collaborators are injectable; defaults are the local filesystem
    store, the rule detector and, when ``use_llm`` is on, the LLM suggester.
    """

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        suggester: Optional[EntitySuggester] = None,
        use_llm: Optional[bool] = None,
        engines: Optional[Dict[str, Any]] = None,
        indexer: Optional[PositionIndexer] = None,
        detector: Optional[EntityDetector] = None,
        resolver: Optional[RedactionBoxResolver] = None,
        verifier: Optional[VerificationOracle] = None,
        sanitizer: Optional[MetadataSanitizer] = None,
        report_builder: Optional[ReportBuilder] = None,
    ):
        self.store = store or LocalFileStore()
        if suggester is None and (use_llm if use_llm is not None else runtime_config.use_llm):
            suggester = LLMEntitySuggester()
        self.suggester = suggester
        self.engines = engines or {"pdf": PdfRedactionEngine(), "docx": DocxRedactionEngine()}
        self.indexer = indexer or PositionIndexer()
        self.detector = detector or EntityDetector()
        self.resolver = resolver or RedactionBoxResolver()
        self.verifier = verifier or VerificationOracle()
        self.sanitizer = sanitizer or MetadataSanitizer()
        self.report_builder = report_builder or ReportBuilder()

    @staticmethod
    def attempt_schedule() -> List[RedactionParams]:
        """Parameters for each attempt, standard first, strict second."""
        schedule = [
            RedactionParams(padding=runtime_config.box_padding, aggressive=False),
            RedactionParams(padding=runtime_config.strict_box_padding, aggressive=True),
        ]
        return schedule[: runtime_config.max_attempts]

    @staticmethod
    def _template(template: TemplateSource) -> RedactionTemplate:
        if isinstance(template, RedactionTemplate):
            return template
        return load_template(template)

    # =========================================================================
    # DETECTION
    # =========================================================================

    def _detect(self, text: str, template: RedactionTemplate) -> List[DetectedEntity]:
        log_stage(logger, "detect", "start", rules=len(template.pattern_rules))
        entities = self.detector.detect(text, template.rules)

        if self.suggester is not None:
            try:
                suggestions = self.suggester.suggest(text, template.category_hints)
                entities = self.detector.merge(entities, suggestions, text=text)
            except SuggestionError as e:
                log_error(logger, e, context="AI suggestions skipped", include_traceback=False)

        log_stage(logger, "detect", "end", entities=len(entities))
        return entities

    # =========================================================================
    # REDACTION
    # =========================================================================

    def redact_bytes(
        self,
        data: bytes,
        template: TemplateSource = None,
        document_id: str = "",
        deadline: Optional[float] = None,
    ) -> RedactionOutcome:
        """
        Redact a document held in memory.

        Args:
            data: Original document bytes (never modified)
            template: RedactionTemplate, raw dict, JSON path, or None for defaults
            document_id: Identifier recorded in the report
            deadline: Time budget in seconds

        Returns:
            RedactionOutcome with verified bytes and the report

        Raises:
            TemplateValidationError: bad template (before anything else)
            UnsupportedFormatError: not a PDF or DOCX
            NoMatchesError: no text, or nothing to redact (manual review)
            VerificationError: sensitive text survived every attempt
            RedactionTimeoutError: deadline exceeded
        """
        template = self._template(template)
        timer = _Deadline(deadline)

        fmt = detect_file_type(data)
        log_stage(logger, "index", "start", format=fmt, size=len(data))
        text, positions = self.indexer.index(data, fmt)
        log_stage(logger, "index", "end", fragments=len(positions), chars=len(text))

        if not text.strip():
            raise NoMatchesError(
                "Document has no extractable text",
                details="image-only or scanned content needs manual review",
                no_text=True,
                original=data,
            )

        timer.check("detect")
        entities = self._detect(text, template)
        if not entities:
            raise NoMatchesError("No sensitive entities detected", original=data)

        timer.check("resolve")
        unconfirmed: List[DetectedEntity] = []
        if fmt == "pdf":
            log_stage(logger, "resolve", "start", entities=len(entities))
            _, unconfirmed = self.resolver.resolve_all(entities, positions)
            log_stage(logger, "resolve", "end", unconfirmed=len(unconfirmed))

        engine = self.engines[fmt]
        sensitive = [e.text for e in entities]
        schedule = self.attempt_schedule()
        result = None
        output = data
        engine_outcome = EngineOutcome()

        for attempt, params in enumerate(schedule, 1):
            timer.check(f"attempt {attempt}")
            log_attempt(logger, attempt, len(schedule), params.padding, params.aggressive)

            output, engine_outcome = engine.redact(data, entities, positions, params)
            output = self.sanitizer.sanitize(output, fmt)

            log_stage(logger, "verify", "start", texts=len(sensitive))
            result = self.verifier.verify(output, fmt, sensitive)
            log_verification(logger, result.success, result.checked, len(result.remaining))
            if result.success:
                break
        else:
            raise VerificationError(
                f"Sensitive text survived {len(schedule)} redaction attempt(s)",
                remaining=result.remaining if result else [],
                details=f"{len(result.remaining) if result else 0} fragment(s) remain",
            )

        timer.check("report")
        audit = self.verifier.audit(data, output, fmt)
        report = self.report_builder.build_report(
            entities,
            document_id=document_id,
            template_id=template.id,
            unconfirmed=unconfirmed,
            stream_failures=engine_outcome.stream_failures,
            attempts=attempt,
            verified=True,
            manual_review=bool(unconfirmed),
            audit=audit,
        )
        log_stage(logger, "report", "end", entities=report.total_entities_detected, attempts=attempt)

        return RedactionOutcome(
            data=output,
            format=fmt,
            report=report,
            verification=result,
            entities=entities,
            audit=audit,
        )

    def redact(
        self,
        input_path: Union[str, Path],
        output_path: Union[str, Path, None] = None,
        template: TemplateSource = None,
        document_id: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> RedactionOutcome:
        """
        Fetch, redact and store a document.

        Args:
            input_path: Source document (resolved by the store)
            output_path: Destination (default: input_REDACTED.ext)
            template: Template source, validated before the store is touched
            document_id: Report identifier (default: input file name)
            deadline: Time budget in seconds

        Returns:
            RedactionOutcome with ``output_url`` set
        """
        template = self._template(template)
        input_path = Path(input_path)
        if output_path is None:
            output_path = input_path.parent / f"{input_path.stem}_REDACTED{input_path.suffix}"

        logger.info(f"Redacting: {input_path.name}")
        data = self.store.fetch(str(input_path))
        outcome = self.redact_bytes(data, template, document_id=document_id or input_path.name, deadline=deadline)
        outcome.output_url = self.store.store(str(output_path), outcome.data)
        logger.info(f"Redacted {input_path.name} -> {Path(output_path).name}")
        return outcome

    # =========================================================================
    # PREVIEW
    # =========================================================================

    def preview_bytes(self, data: bytes, template: TemplateSource = None) -> Dict[str, Any]:
        """Run detection only and describe what would be redacted."""
        template = self._template(template)
        fmt = detect_file_type(data)
        text, positions = self.indexer.index(data, fmt)
        if not text.strip():
            return {"format": fmt, "error": "No extractable text", "manual_review": True, "entities": []}

        entities = self._detect(text, template)
        unconfirmed = []
        if fmt == "pdf":
            _, unconfirmed = self.resolver.resolve_all(entities, positions)

        by_rule: Dict[str, int] = {}
        for entity in entities:
            by_rule[entity.rule_id] = by_rule.get(entity.rule_id, 0) + 1

        return {
            "format": fmt,
            "template": template.id,
            "text_length": len(text),
            "entities_found": len(entities),
            "unconfirmed": len(unconfirmed),
            "entities": [
                {
                    "text": e.text,
                    "rule": e.rule_id,
                    "category": e.category,
                    "page": e.page,
                    "start": e.char_start,
                    "end": e.char_end,
                    "source": e.source,
                }
                for e in entities
            ],
            "by_rule": by_rule,
        }

    def preview(self, input_path: Union[str, Path], template: TemplateSource = None) -> Dict[str, Any]:
        template = self._template(template)
        input_path = Path(input_path)
        result = self.preview_bytes(self.store.fetch(str(input_path)), template)
        result["file"] = str(input_path)
        return result


def redact_document(
    input_path: Union[str, Path],
    output_path: Union[str, Path, None] = None,
    template: TemplateSource = None,
    use_llm: Optional[bool] = None,
    document_id: Optional[str] = None,
) -> RedactionOutcome:
    """
    Convenience function to redact a document.

    Args:
        input_path: Source document
        output_path: Output path (default: auto-generated)
        template: Template source (default: built-in rules)
        use_llm: Whether to add AI suggestions
        document_id: Report identifier

    Returns:
        RedactionOutcome
    """
    redactor = Redactrr(use_llm=use_llm)
    return redactor.redact(input_path, output_path, template=template, document_id=document_id)


def preview_redaction(
    input_path: Union[str, Path], template: TemplateSource = None, use_llm: Optional[bool] = None
) -> Dict[str, Any]:
    """Preview what would be redacted"""
    redactor = Redactrr(use_llm=use_llm)
    return redactor.preview(input_path, template)
