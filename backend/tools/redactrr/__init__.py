"""
Redactrr - Verified Document Redaction

Removes sensitive text from Word and PDF documents so that it cannot be
recovered from the output, then proves it by re-extracting the result.

Usage:
    from tools.redactrr import redact_document, preview_redaction

    # Preview what would be redacted
    preview = preview_redaction("/path/to/report.docx", template="rules.json")
    for entity in preview['entities']:
        print(f"{entity['rule']}: {entity['text']}")

    # Redact document
    outcome = redact_document("/path/to/report.docx", template="rules.json")
    print(f"Output: {outcome.output_url}")
    print(outcome.report.to_dict())

CLI:
    python -m tools.redactrr preview report.docx
    python -m tools.redactrr redact report.pdf --template rules.json
    python -m tools.redactrr batch ./reports/ --output-dir ./clean/
"""

from .boxes import RedactionBoxResolver
from .collaborators import DocumentStore, EntitySuggester, LLMEntitySuggester, LocalFileStore
from .detector import EntityDetector
from .docx_engine import DocxRedactionEngine
from .filetype import detect_file_type
from .indexer import PositionIndexer
from .metadata import MetadataSanitizer
from .models import (
    DetectedEntity,
    PositionIndex,
    RedactionBox,
    RedactionReport,
    RedactionRule,
    RedactionTemplate,
    TextFragment,
    VerificationResult,
)
from .pdf_engine import PdfRedactionEngine
from .pipeline import Redactrr, RedactionOutcome, preview_redaction, redact_document
from .report import ReportBuilder
from .templates import enrich_template_rules, load_template, validate_template
from .verification import VerificationOracle

__all__ = [
    "Redactrr",
    "RedactionOutcome",
    "redact_document",
    "preview_redaction",
    "load_template",
    "validate_template",
    "enrich_template_rules",
    "detect_file_type",
    "PositionIndexer",
    "EntityDetector",
    "RedactionBoxResolver",
    "PdfRedactionEngine",
    "DocxRedactionEngine",
    "MetadataSanitizer",
    "VerificationOracle",
    "ReportBuilder",
    "DocumentStore",
    "LocalFileStore",
    "EntitySuggester",
    "LLMEntitySuggester",
    "RedactionRule",
    "RedactionTemplate",
    "TextFragment",
    "PositionIndex",
    "DetectedEntity",
    "RedactionBox",
    "VerificationResult",
    "RedactionReport",
]
