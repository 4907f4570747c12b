"""Audit report assembly. Pure data transformation, no I/O."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .models import AuditResult, DetectedEntity, RedactionReport

UNKNOWN_PAGE = "unknown"


def entity_record(entity: DetectedEntity) -> Dict[str, Any]:
    """Report entry for one entity. Carries the content hash, never the text."""
    return {
        "ruleId": entity.rule_id,
        "ruleName": entity.rule_name,
        "ruleVersion": entity.rule_version,
        "category": entity.category,
        "entityHash": entity.content_hash,
        "page": entity.page,
        "positionStart": entity.char_start,
        "positionEnd": entity.char_end,
        "source": entity.source,
    }


class ReportBuilder:
    """Builds the write-once RedactionReport for a run."""

    def build_report(
        self,
        entities: List[DetectedEntity],
        document_id: str,
        template_id: str,
        unconfirmed: Optional[List[DetectedEntity]] = None,
        stream_failures: Optional[List[Dict[str, Any]]] = None,
        attempts: int = 0,
        verified: bool = False,
        manual_review: bool = False,
        audit: Optional[AuditResult] = None,
        timestamp: Optional[str] = None,
    ) -> RedactionReport:
        """
        Aggregate entities into counts by rule id and by page.

        Args:
            entities: Every entity that was redacted
            document_id: Caller's document identifier
            template_id: Template the rules came from
            unconfirmed: Entities whose on-page position could not be found
            stream_failures: Per-stream/part failures recorded by the engine
            attempts: Redaction attempts made
            verified: Whether the final verification passed
            manual_review: Whether the document needs a human look
            audit: Structural audit of the output
            timestamp: ISO-8601 timestamp (defaults to now, UTC)

        Returns:
            RedactionReport
        """
        counts_by_rule: Dict[str, int] = {}
        counts_by_page: Dict[str, int] = {}
        for entity in entities:
            counts_by_rule[entity.rule_id] = counts_by_rule.get(entity.rule_id, 0) + 1
            page = str(entity.page) if entity.page is not None else UNKNOWN_PAGE
            counts_by_page[page] = counts_by_page.get(page, 0) + 1

        return RedactionReport(
            timestamp=timestamp or datetime.now(timezone.utc).isoformat(),
            document_id=document_id,
            template_id=template_id,
            entities=[entity_record(e) for e in entities],
            counts_by_rule=counts_by_rule,
            counts_by_page=counts_by_page,
            unconfirmed=[entity_record(e) for e in unconfirmed or []],
            stream_failures=list(stream_failures or []),
            attempts=attempts,
            verified=verified,
            manual_review=manual_review,
            audit=audit.to_dict() if audit is not None else None,
        )
