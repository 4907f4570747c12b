"""
Rule-based entity detection.

Each enabled pattern rule runs case-insensitively over the whole document
text. Overlapping matches are collapsed to the longest span so a value
caught by two rules is redacted (and counted) once.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from .models import DetectedEntity, RedactionRule, content_hash

logger = logging.getLogger(__name__)


def _unescaped(pattern: str, index: int) -> bool:
    """True when the character at ``index`` is not preceded by an odd run of backslashes."""
    backslashes = 0
    while index - backslashes - 1 >= 0 and pattern[index - backslashes - 1] == "\\":
        backslashes += 1
    return backslashes % 2 == 0


def strip_anchors(pattern: str) -> str:
    """Remove leading ^ / \\A and trailing unescaped $ / \\Z so rules match mid-document."""
    while True:
        if pattern.startswith("^"):
            pattern = pattern[1:]
        elif pattern.startswith("\\A"):
            pattern = pattern[2:]
        else:
            break
    while True:
        if pattern.endswith("$") and _unescaped(pattern, len(pattern) - 1):
            pattern = pattern[:-1]
        elif pattern.endswith(("\\Z", "\\z")) and _unescaped(pattern, len(pattern) - 2):
            pattern = pattern[:-2]
        else:
            break
    return pattern


def dedupe_overlaps(entities: Iterable[DetectedEntity]) -> List[DetectedEntity]:
    """
    Collapse overlapping spans, keeping the longer one (first found on ties).

    Entities without offsets are kept as-is after the located ones.
    """
    entities = list(entities)
    located = [e for e in entities if e.located]
    unlocated = [e for e in entities if not e.located]

    ordered = sorted(enumerate(located), key=lambda pair: (pair[1].char_start, -pair[1].length, pair[0]))
    kept: List[DetectedEntity] = []
    for _, entity in ordered:
        if kept and kept[-1].overlaps(entity):
            if entity.length > kept[-1].length:
                kept[-1] = entity
            continue
        kept.append(entity)
    return kept + unlocated


class EntityDetector:
    """Applies template rules to document text."""

    def detect(self, text: str, rules: Iterable[RedactionRule]) -> List[DetectedEntity]:
        """
        Find every match of every enabled pattern rule.

        Args:
            text: Full document text from the indexer
            rules: Template rules (disabled and AI-only rules are skipped)

        Returns:
            Non-overlapping entities ordered by position
        """
        entities = []
        for rule in rules:
            if not rule.enabled or not rule.is_pattern_rule:
                continue
            regex = re.compile(strip_anchors(rule.pattern), re.IGNORECASE)
            for match in regex.finditer(text):
                if match.end() == match.start():
                    continue
                entities.append(
                    DetectedEntity(
                        rule_id=rule.id,
                        rule_name=rule.name,
                        rule_version=rule.rule_version,
                        category=rule.category,
                        text=match.group(0),
                        char_start=match.start(),
                        char_end=match.end(),
                    )
                )

        result = dedupe_overlaps(entities)
        logger.info(f"Detection: {len(entities)} matches, {len(result)} entities after overlap merge")
        return result

    def merge(
        self,
        base: List[DetectedEntity],
        supplemental: Iterable[Any],
        text: Optional[str] = None,
    ) -> List[DetectedEntity]:
        """
        Add supplemental entities (e.g. AI suggestions) to rule-based ones.

        A supplemental entity whose text case-insensitively equals a kept
        entity's text is dropped. Entities without offsets are located in
        ``text`` at the first occurrence not already covered.

        Args:
            base: Entities from detect()
            supplemental: DetectedEntity objects or dicts with at least "text"
            text: Document text, used to locate offset-less entities
        """
        kept = list(base)
        seen = {e.text.casefold() for e in kept}
        added = 0

        for item in supplemental:
            entity = item if isinstance(item, DetectedEntity) else self._from_dict(item)
            if entity is None or not entity.text.strip():
                continue
            key = entity.text.casefold()
            if key in seen:
                continue
            if not entity.located and text:
                self._locate(entity, text, kept)
            kept.append(entity)
            seen.add(key)
            added += 1

        result = dedupe_overlaps(kept)
        if added:
            logger.info(f"Merged {added} supplemental entities ({len(result)} total)")
        return result

    @staticmethod
    def _from_dict(item: Dict[str, Any]) -> Optional[DetectedEntity]:
        if not isinstance(item, dict) or not isinstance(item.get("text"), str):
            return None
        return DetectedEntity(
            rule_id=str(item.get("rule_id") or item.get("ruleId") or "ai-suggestion"),
            rule_name=str(item.get("rule_name") or item.get("ruleName") or "AI suggestion"),
            rule_version=str(item.get("rule_version") or item.get("ruleVersion") or "ai"),
            category=str(item.get("category") or "CUSTOM"),
            text=item["text"].strip(),
            char_start=int(item.get("char_start", item.get("start", -1))),
            char_end=int(item.get("char_end", item.get("end", -1))),
            source=str(item.get("source") or "ai"),
        )

    @staticmethod
    def _locate(entity: DetectedEntity, text: str, kept: List[DetectedEntity]) -> None:
        """Set offsets to the first case-insensitive occurrence not covered by ``kept``."""
        haystack = text.casefold()
        needle = entity.text.casefold()
        if len(haystack) != len(text):
            # casefold changed lengths (e.g. sharp s); fall back to lower()
            haystack, needle = text.lower(), entity.text.lower()
            if len(haystack) != len(text):
                return

        start = haystack.find(needle)
        while start >= 0:
            end = start + len(needle)
            if not any(k.located and k.char_start < end and start < k.char_end for k in kept):
                entity.char_start, entity.char_end = start, end
                entity.text = text[start:end]
                entity.content_hash = content_hash(entity.text)
                return
            start = haystack.find(needle, start + 1)
