"""
Error codes for Redactrr.

Provides a standardized taxonomy of error codes organized by category.
Use these codes consistently across all error responses.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for Redactrr.

    Categories:
    - TEMPLATE_*: Rule/template validation errors
    - DETECT_*: Entity detection outcomes needing manual review
    - FORMAT_*: Input format errors
    - PARSE_*: Document parsing errors
    - STREAM_*: PDF content stream rewrite errors
    - VERIFY_*: Post-redaction verification failures
    - EXTERNAL_*: Storage and AI collaborator errors
    - INTERNAL_*: Internal/unexpected errors
    """

    # Template errors (rule metadata)
    TEMPLATE_EMPTY = "TEMPLATE_EMPTY"
    TEMPLATE_RULE_INVALID = "TEMPLATE_RULE_INVALID"
    TEMPLATE_PATTERN_INVALID = "TEMPLATE_PATTERN_INVALID"
    TEMPLATE_VERSION_MISSING = "TEMPLATE_VERSION_MISSING"

    # Detection outcomes
    DETECT_NO_MATCHES = "DETECT_NO_MATCHES"
    DETECT_NO_TEXT = "DETECT_NO_TEXT"

    # Format errors
    FORMAT_UNSUPPORTED = "FORMAT_UNSUPPORTED"

    # Parse errors (file processing)
    PARSE_PDF_FAILED = "PARSE_PDF_FAILED"
    PARSE_DOCX_FAILED = "PARSE_DOCX_FAILED"
    PARSE_TEMPLATE_FAILED = "PARSE_TEMPLATE_FAILED"

    # Content stream errors
    STREAM_UNBALANCED = "STREAM_UNBALANCED"
    STREAM_MALFORMED = "STREAM_MALFORMED"

    # Verification errors
    VERIFY_LEAK = "VERIFY_LEAK"
    VERIFY_UNREADABLE = "VERIFY_UNREADABLE"

    # External collaborator errors
    EXTERNAL_STORAGE_FAILED = "EXTERNAL_STORAGE_FAILED"
    EXTERNAL_LLM_FAILED = "EXTERNAL_LLM_FAILED"

    # Internal errors (unexpected failures)
    INTERNAL_UNEXPECTED = "INTERNAL_UNEXPECTED"
    INTERNAL_DEADLINE = "INTERNAL_DEADLINE"
    INTERNAL_CONFIG_ERROR = "INTERNAL_CONFIG_ERROR"
