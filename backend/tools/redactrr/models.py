"""
Redactrr data model.

Plain dataclasses shared by every stage of the pipeline:
rules and templates, the position index, detected entities, redaction
boxes, verification results and the audit report.

PDF geometry is expressed in PDF user space (points, origin at the
bottom-left of the page). Conversion to screen space only happens when
the overlay is drawn.
"""

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


def content_hash(text: str) -> str:
    """SHA-256 hex digest used to reference sensitive text without storing it."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# =============================================================================
# RULES AND TEMPLATES
# =============================================================================


@dataclass(frozen=True)
class RedactionRule:
    """A single detection rule. Immutable once loaded into a run."""

    id: str
    name: str
    category: str = "PII"
    severity: str = "high"
    pattern: Optional[str] = None
    ai_prompt: Optional[str] = None
    version: Optional[str] = None
    checksum: Optional[str] = None
    enabled: bool = True
    description: str = ""

    @property
    def rule_version(self) -> str:
        """Version tag recorded on entities and redaction markers."""
        return self.version or self.checksum or ""

    @property
    def is_pattern_rule(self) -> bool:
        return self.pattern is not None


@dataclass(frozen=True)
class RedactionTemplate:
    """A validated, ordered set of rules."""

    id: str
    name: str
    rules: tuple = ()

    @property
    def pattern_rules(self) -> List[RedactionRule]:
        return [r for r in self.rules if r.enabled and r.is_pattern_rule]

    @property
    def category_hints(self) -> List[str]:
        """Categories and prompts handed to the AI suggester."""
        hints = []
        for rule in self.rules:
            if not rule.enabled:
                continue
            hint = rule.ai_prompt or rule.category
            if hint and hint not in hints:
                hints.append(hint)
        return hints


# =============================================================================
# POSITION INDEX
# =============================================================================


@dataclass
class TextFragment:
    """One contiguous piece of extracted text and where it lives.

    For PDF fragments (x, y, width, height) is the axis-aligned bounding box
    of one text-showing operation and ``page`` is 1-based. DOCX fragments
    have no page; they carry the paragraph index, the part name and the
    text element instead.
    """

    text: str
    char_offset: int
    page: Optional[int]
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0
    paragraph: Optional[int] = None
    part: Optional[str] = None
    element: Any = field(default=None, repr=False, compare=False)

    @property
    def char_end(self) -> int:
        return self.char_offset + len(self.text)

    def overlaps(self, start: int, end: int) -> bool:
        return self.char_offset < end and start < self.char_end


@dataclass
class PositionIndex:
    """Ordered fragments of one document, fresh per run."""

    fragments: List[TextFragment] = field(default_factory=list)
    page_count: int = 0
    page_sizes: Dict[int, tuple] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.fragments)

    def __iter__(self):
        return iter(self.fragments)

    def fragments_between(self, start: int, end: int) -> List[TextFragment]:
        """Fragments overlapping the half-open range [start, end)."""
        return [f for f in self.fragments if f.overlaps(start, end)]


# =============================================================================
# ENTITIES AND BOXES
# =============================================================================


@dataclass
class DetectedEntity:
    """A sensitive span found in the extracted text."""

    rule_id: str
    rule_version: str
    category: str
    text: str
    char_start: int = -1
    char_end: int = -1
    rule_name: str = ""
    page: Optional[int] = None
    geometry: Optional[List["RedactionBox"]] = None
    content_hash: str = ""
    source: str = "rule"

    def __post_init__(self):
        if not self.content_hash:
            self.content_hash = content_hash(self.text)

    @property
    def length(self) -> int:
        return self.char_end - self.char_start

    @property
    def located(self) -> bool:
        return self.char_start >= 0 and self.char_end > self.char_start

    def overlaps(self, other: "DetectedEntity") -> bool:
        if not (self.located and other.located):
            return False
        return self.char_start < other.char_end and other.char_start < self.char_end


@dataclass(frozen=True)
class RedactionBox:
    """Axis-aligned rectangle in PDF user space."""

    page: int
    x1: float
    y1: float
    x2: float
    y2: float

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    def intersects(self, x1: float, y1: float, x2: float, y2: float) -> bool:
        return self.x1 < x2 and x1 < self.x2 and self.y1 < y2 and y1 < self.y2

    def contains(self, x1: float, y1: float, x2: float, y2: float, strict: bool = False) -> bool:
        if strict:
            return self.x1 < x1 and self.y1 < y1 and x2 < self.x2 and y2 < self.y2
        return self.x1 <= x1 and self.y1 <= y1 and x2 <= self.x2 and y2 <= self.y2

    def padded(self, padding: float) -> "RedactionBox":
        return RedactionBox(
            page=self.page,
            x1=self.x1 - padding,
            y1=self.y1 - padding,
            x2=self.x2 + padding,
            y2=self.y2 + padding,
        )

    def widened(self, padding: float) -> "RedactionBox":
        """Horizontal padding only, so the box stays on its own line."""
        return RedactionBox(page=self.page, x1=self.x1 - padding, y1=self.y1, x2=self.x2 + padding, y2=self.y2)

    def union(self, other: "RedactionBox") -> "RedactionBox":
        return RedactionBox(
            page=self.page,
            x1=min(self.x1, other.x1),
            y1=min(self.y1, other.y1),
            x2=max(self.x2, other.x2),
            y2=max(self.y2, other.y2),
        )

    def as_tuple(self) -> tuple:
        return (self.x1, self.y1, self.x2, self.y2)


# =============================================================================
# REDACTION ATTEMPTS AND RESULTS
# =============================================================================


@dataclass(frozen=True)
class RedactionParams:
    """Explicit parameters of one redaction attempt."""

    padding: float = 2.0
    aggressive: bool = False


@dataclass
class EngineOutcome:
    """What an engine did to one document."""

    redacted_count: int = 0
    removed_operations: int = 0
    overlays: int = 0
    stream_failures: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class VerificationResult:
    """Verdict of one verification pass. Never cached."""

    success: bool
    remaining: List[Dict[str, Any]] = field(default_factory=list)
    checked: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "remaining": self.remaining, "checked": self.checked}


@dataclass
class AuditResult:
    """Structural comparison of the original and redacted artifacts."""

    original_pages: Optional[int] = None
    redacted_pages: Optional[int] = None
    original_size: int = 0
    redacted_size: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def pages_match(self) -> bool:
        return self.original_pages == self.redacted_pages

    def to_dict(self) -> Dict[str, Any]:
        return {
            "originalPages": self.original_pages,
            "redactedPages": self.redacted_pages,
            "originalSize": self.original_size,
            "redactedSize": self.redacted_size,
            "warnings": list(self.warnings),
        }


@dataclass
class RedactionReport:
    """Write-once audit record of a redaction run. Contains hashes, not text."""

    timestamp: str
    document_id: str
    template_id: str
    entities: List[Dict[str, Any]] = field(default_factory=list)
    counts_by_rule: Dict[str, int] = field(default_factory=dict)
    counts_by_page: Dict[str, int] = field(default_factory=dict)
    unconfirmed: List[Dict[str, Any]] = field(default_factory=list)
    stream_failures: List[Dict[str, Any]] = field(default_factory=list)
    attempts: int = 0
    verified: bool = False
    manual_review: bool = False
    audit: Optional[Dict[str, Any]] = None

    @property
    def total_entities_detected(self) -> int:
        return len(self.entities)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready form handed to the report persistence collaborator."""
        return {
            "timestamp": self.timestamp,
            "documentId": self.document_id,
            "templateId": self.template_id,
            "totalEntitiesDetected": self.total_entities_detected,
            "entities": [dict(e) for e in self.entities],
            "countsByRule": dict(self.counts_by_rule),
            "countsByPage": dict(self.counts_by_page),
            "unconfirmedEntities": [dict(e) for e in self.unconfirmed],
            "streamFailures": [dict(f) for f in self.stream_failures],
            "attempts": self.attempts,
            "verified": self.verified,
            "manualReview": self.manual_review,
            "audit": self.audit,
        }
