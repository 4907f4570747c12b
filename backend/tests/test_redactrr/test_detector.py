"""
Tests for rule-based entity detection and supplemental merging.
"""

import pytest

from tools.redactrr.detector import EntityDetector, dedupe_overlaps, strip_anchors
from tools.redactrr.models import DetectedEntity, RedactionRule, content_hash
from tools.redactrr.templates import load_template

SSN_RULE = RedactionRule(id="r-ssn", name="SSN", category="PII", pattern=r"\d{3}-\d{2}-\d{4}", version="2")
NAME_RULE = RedactionRule(id="r-name", name="Client", category="PII", pattern=r"acme corp", version="1")


@pytest.fixture
def detector():
    return EntityDetector()


# =============================================================================
# DETECTION
# =============================================================================


class TestDetect:
    """Test EntityDetector.detect."""

    def test_finds_matches_with_offsets(self, detector):
        """Matches carry rule metadata and exact offsets."""
        text = "SSN: 123-45-6789 and 987-65-4321"
        entities = detector.detect(text, [SSN_RULE])

        assert [e.text for e in entities] == ["123-45-6789", "987-65-4321"]
        first = entities[0]
        assert (first.char_start, first.char_end) == (5, 16)
        assert text[first.char_start:first.char_end] == first.text
        assert first.rule_id == "r-ssn"
        assert first.rule_version == "2"
        assert first.content_hash == content_hash("123-45-6789")

    def test_case_insensitive(self, detector):
        """Patterns match regardless of case."""
        entities = detector.detect("Invoice for ACME Corp.", [NAME_RULE])
        assert [e.text for e in entities] == ["ACME Corp"]

    def test_idempotent(self, detector):
        """Same text and rules give the same entities."""
        text = "Call ACME Corp about 123-45-6789."
        first = detector.detect(text, [SSN_RULE, NAME_RULE])
        second = detector.detect(text, [SSN_RULE, NAME_RULE])
        assert [(e.rule_id, e.char_start, e.char_end) for e in first] == [
            (e.rule_id, e.char_start, e.char_end) for e in second
        ]

    def test_skips_disabled_and_prompt_rules(self, detector):
        """Disabled rules and AI-only rules produce nothing."""
        disabled = RedactionRule(id="off", name="Off", pattern=r"\d+", version="1", enabled=False)
        prompt = RedactionRule(id="ai", name="AI", ai_prompt="names", version="1")
        assert detector.detect("12345", [disabled, prompt]) == []

    def test_anchored_pattern_matches_mid_document(self, detector):
        """Anchors written for single values are stripped."""
        rule = RedactionRule(id="r", name="R", pattern=r"^\d{3}-\d{2}-\d{4}$", version="1")
        entities = detector.detect("first line\nSSN 123-45-6789 here", [rule])
        assert [e.text for e in entities] == ["123-45-6789"]

    def test_overlapping_rules_keep_longest(self, detector):
        """A value matched by two rules is reported once, as the longer span."""
        short = RedactionRule(id="short", name="Digits", pattern=r"\d{4}", version="1")
        entities = detector.detect("SSN 123-45-6789", [short, SSN_RULE])
        assert len(entities) == 1
        assert entities[0].rule_id == "r-ssn"

    def test_default_rules(self, detector):
        """The built-in template finds the usual suspects."""
        text = "Reach jane.doe@example.com or 555-123-4567. SSN 123-45-6789."
        entities = detector.detect(text, load_template(None).rules)
        found = {e.rule_id: e.text for e in entities}
        assert found["default-email"] == "jane.doe@example.com"
        assert found["default-us-phone"] == "555-123-4567"
        assert found["default-ssn"] == "123-45-6789"


class TestStripAnchors:
    """Test strip_anchors."""

    def test_strips_both_ends(self):
        assert strip_anchors(r"^\d+$") == r"\d+"
        assert strip_anchors(r"\Aabc\Z") == "abc"

    def test_keeps_escaped_dollar(self):
        """A literal dollar sign is not an anchor."""
        assert strip_anchors(r"price \$") == r"price \$"

    def test_plain_pattern_unchanged(self):
        assert strip_anchors(r"\bfoo\b") == r"\bfoo\b"


class TestDedupeOverlaps:
    """Test dedupe_overlaps."""

    def test_unlocated_kept_last(self):
        """Entities without offsets survive after the located ones."""
        located = DetectedEntity("r", "1", "PII", "abc", 0, 3)
        floating = DetectedEntity("ai", "ai", "PII", "xyz")
        assert dedupe_overlaps([floating, located]) == [located, floating]

    def test_disjoint_spans_kept(self):
        a = DetectedEntity("r", "1", "PII", "abc", 0, 3)
        b = DetectedEntity("r", "1", "PII", "def", 4, 7)
        assert dedupe_overlaps([b, a]) == [a, b]


# =============================================================================
# MERGING
# =============================================================================


class TestMerge:
    """Test EntityDetector.merge."""

    def test_locates_supplemental_text(self, detector):
        """Suggestions without offsets are located in the document text."""
        text = "Prepared for Jane Roe by ACME."
        merged = detector.merge([], [{"text": "jane roe", "category": "NAME"}], text=text)

        assert len(merged) == 1
        entity = merged[0]
        assert entity.text == "Jane Roe"
        assert (entity.char_start, entity.char_end) == (13, 21)
        assert entity.source == "ai"
        assert entity.rule_id == "ai-suggestion"
        assert entity.content_hash == content_hash("Jane Roe")

    def test_duplicates_dropped(self, detector):
        """A suggestion equal to a rule match (ignoring case) adds nothing."""
        text = "Call ACME Corp."
        base = detector.detect(text, [NAME_RULE])
        merged = detector.merge(base, [{"text": "acme corp"}], text=text)
        assert len(merged) == 1
        assert merged[0].rule_id == "r-name"

    def test_invalid_items_ignored(self, detector):
        """Non-dicts and blank texts are skipped."""
        merged = detector.merge([], [None, {"category": "X"}, {"text": "   "}], text="anything")
        assert merged == []

    def test_unfound_suggestion_kept_unlocated(self, detector):
        """A suggestion not present in the text is kept without offsets."""
        merged = detector.merge([], [{"text": "Ghost Name"}], text="Nobody here")
        assert len(merged) == 1
        assert not merged[0].located
