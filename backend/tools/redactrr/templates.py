"""
Redaction template loading and validation.

Templates are JSON documents of the form::

    {
        "id": "tpl-contact",
        "name": "Contact Information",
        "rules": [
            {"id": "r-phone", "name": "US Phone Number", "category": "PHI",
             "severity": "high", "pattern": "\\\\d{3}-\\\\d{3}-\\\\d{4}", "version": "1"}
        ]
    }

Validation runs before any document is fetched and rejects the whole
template on the first bad rule set. Every problem is collected so the
author sees all of them at once.
"""

import hashlib
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Union

from errors import DocumentParseError, ErrorCode, TemplateValidationError

from .models import RedactionRule, RedactionTemplate

logger = logging.getLogger(__name__)


# Built-in rules, used when no template is given on the command line
DEFAULT_RULES = [
    {
        "id": "default-us-phone",
        "name": "US Phone Number",
        "description": "Detects US phone numbers in various formats",
        "pattern": r"\b(\+?1[-\s]?)?\(?([0-9]{3})\)?[-\s]?([0-9]{3})[-\s]?([0-9]{4})\b",
        "category": "PHI",
        "severity": "high",
        "version": "1",
    },
    {
        "id": "default-email",
        "name": "Email Address",
        "description": "Detects email addresses",
        "pattern": r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b",
        "category": "PII",
        "severity": "high",
        "version": "1",
    },
    {
        "id": "default-patient-id",
        "name": "Patient ID",
        "description": "Detects patient ID numbers (MRN)",
        "pattern": r"\b(?:Patient|MRN|Medical Record)\s*(?:ID|Number|#)?:?\s*([A-Za-z0-9-]{5,12})\b",
        "category": "PHI",
        "severity": "high",
        "version": "1",
    },
    {
        "id": "default-dob",
        "name": "Date of Birth",
        "description": "Detects dates of birth in various formats",
        "pattern": r"\b(?:DOB|Date of Birth|Birth Date|Born)\s*:?\s*([0-9]{1,2}[/\-][0-9]{1,2}[/\-][0-9]{2,4})\b",
        "category": "PHI",
        "severity": "high",
        "version": "1",
    },
    {
        "id": "default-ssn",
        "name": "US Social Security Number",
        "description": "Detects SSNs written as 123-45-6789",
        "pattern": r"\b\d{3}-\d{2}-\d{4}\b",
        "category": "PII",
        "severity": "critical",
        "version": "1",
    },
    {
        "id": "default-credit-card",
        "name": "Credit Card Number",
        "description": "Detects 16 digit card numbers in groups of four",
        "pattern": r"\b(?:\d{4}[-\s]?){3}\d{4}\b",
        "category": "PCI",
        "severity": "critical",
        "version": "1",
    },
]

DEFAULT_TEMPLATE = {
    "id": "default",
    "name": "Comprehensive Protection",
    "rules": DEFAULT_RULES,
}


def _field(raw: Dict[str, Any], *keys: str) -> Any:
    """First present, non-empty value among camelCase/snake_case spellings."""
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def _validate_rule(raw: Any, position: int) -> List[str]:
    """Return every problem with one raw rule dict."""
    if not isinstance(raw, dict):
        return [f"rule #{position}: expected an object, got {type(raw).__name__}"]

    label = raw.get("id") or raw.get("name") or f"#{position}"
    issues = []

    if not raw.get("id"):
        issues.append(f"rule {label}: missing 'id'")
    if not raw.get("name"):
        issues.append(f"rule {label}: missing 'name'")

    pattern = _field(raw, "pattern")
    ai_prompt = _field(raw, "aiPrompt", "ai_prompt")
    if pattern is None and ai_prompt is None:
        issues.append(f"rule {label}: needs either 'pattern' or 'aiPrompt'")
    elif pattern is not None and ai_prompt is not None:
        issues.append(f"rule {label}: has both 'pattern' and 'aiPrompt', only one is allowed")

    if pattern is not None:
        if not isinstance(pattern, str):
            issues.append(f"rule {label}: 'pattern' must be a string")
        else:
            try:
                re.compile(pattern, re.IGNORECASE)
            except re.error as e:
                issues.append(f"rule {label}: invalid pattern: {e}")

    if _field(raw, "version") is None and _field(raw, "checksum") is None:
        issues.append(f"rule {label}: missing both 'version' and 'checksum'")

    return issues


def _issue_code(issues: List[str]) -> ErrorCode:
    if any("invalid pattern" in i for i in issues):
        return ErrorCode.TEMPLATE_PATTERN_INVALID
    if any("'version'" in i for i in issues):
        return ErrorCode.TEMPLATE_VERSION_MISSING
    return ErrorCode.TEMPLATE_RULE_INVALID


def validate_template(raw: Dict[str, Any]) -> RedactionTemplate:
    """
    Validate a raw template dict and build an immutable RedactionTemplate.

    Args:
        raw: Parsed template JSON

    Returns:
        RedactionTemplate with frozen rules

    Raises:
        TemplateValidationError: zero rules, missing id/name, neither or both
            of pattern/aiPrompt, uncompilable pattern, or missing version
            and checksum.
    """
    if not isinstance(raw, dict):
        raise TemplateValidationError("Template must be a JSON object", code=ErrorCode.TEMPLATE_RULE_INVALID)

    rules = raw.get("rules") or []
    if not isinstance(rules, list) or not rules:
        raise TemplateValidationError(
            "Template has no rules",
            issues=["template must contain at least one rule"],
            code=ErrorCode.TEMPLATE_EMPTY,
            template_id=raw.get("id"),
        )

    issues = []
    for position, rule in enumerate(rules, 1):
        issues.extend(_validate_rule(rule, position))

    if issues:
        raise TemplateValidationError(
            f"Template rejected: {len(issues)} problem(s)",
            issues=issues,
            code=_issue_code(issues),
            template_id=raw.get("id"),
        )

    built = []
    for rule in rules:
        version = _field(rule, "version")
        checksum = _field(rule, "checksum")
        built.append(
            RedactionRule(
                id=str(rule["id"]),
                name=str(rule["name"]),
                category=str(rule.get("category") or "PII"),
                severity=str(rule.get("severity") or "high"),
                pattern=_field(rule, "pattern"),
                ai_prompt=_field(rule, "aiPrompt", "ai_prompt"),
                version=str(version) if version is not None else None,
                checksum=str(checksum) if checksum is not None else None,
                enabled=bool(rule.get("enabled", rule.get("isEnabled", True))),
                description=str(rule.get("description") or ""),
            )
        )

    template = RedactionTemplate(
        id=str(raw.get("id") or "unnamed"),
        name=str(raw.get("name") or raw.get("id") or "Unnamed template"),
        rules=tuple(built),
    )
    logger.info(f"Template '{template.id}' validated: {len(template.rules)} rules")
    return template


def load_template(source: Union[str, Path, Dict[str, Any], None] = None) -> RedactionTemplate:
    """
    Load and validate a template from a JSON file or an in-memory dict.

    Args:
        source: Path to a JSON file, a parsed dict, or None for the defaults

    Returns:
        Validated RedactionTemplate
    """
    if source is None:
        return validate_template(DEFAULT_TEMPLATE)
    if isinstance(source, dict):
        return validate_template(source)

    path = Path(source)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise DocumentParseError(f"Template not found: {path}", file_type="template")
    except json.JSONDecodeError as e:
        raise DocumentParseError(f"Template is not valid JSON: {path}", details=str(e), file_type="template")

    return validate_template(raw)


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def enrich_template_rules(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Give legacy rules the version metadata validation requires.

    Rules that already carry a version or checksum are left alone. Others
    get ``checksum = sha256(pattern or aiPrompt)``; a rule with neither
    gets ``version = "1"``. The input dict is not modified.

    Returns:
        A new template dict with an ``enriched`` count.
    """
    enriched = 0
    rules = []
    for rule in raw.get("rules") or []:
        if not isinstance(rule, dict) or _field(rule, "version") or _field(rule, "checksum"):
            rules.append(rule)
            continue

        source = _field(rule, "pattern") or _field(rule, "aiPrompt", "ai_prompt")
        if source:
            rules.append({**rule, "checksum": _sha256(str(source))})
        else:
            rules.append({**rule, "version": "1"})
        enriched += 1

    if enriched:
        logger.info(f"Enriched {enriched} rule(s) with version metadata")
    return {**raw, "rules": rules, "enriched": enriched}
