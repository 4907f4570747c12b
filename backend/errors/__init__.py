"""
Redactrr Error Handling Module

Provides standardized error codes, exceptions, and response builders
for consistent error handling across the redaction pipeline.

Usage:
    from errors import (
        # Error codes
        ErrorCode,

        # Exceptions
        RedactrrError,
        TemplateValidationError,
        NoMatchesError,
        UnsupportedFormatError,
        DocumentParseError,
        StreamIntegrityError,
        VerificationError,
        RedactionTimeoutError,
        StorageError,
        SuggestionError,

        # Response builders
        error_response,
        success_response,

        # Decorators
        handle_tool_errors,
        log_error,
    )

Example:
    from errors import handle_tool_errors, VerificationError

    @handle_tool_errors("redact")
    def redact_file(path, template):
        outcome = Redactrr().redact_bytes(path.read_bytes(), template)
        return {"success": True, "report": outcome.report.to_dict()}

Only VerificationError is a hard failure of the pipeline. NoMatchesError
means "send to manual review", StreamIntegrityError is recorded per stream
and never raised out of the PDF engine.
"""

from .codes import ErrorCode
from .exceptions import (
    RedactrrError,
    TemplateValidationError,
    NoMatchesError,
    UnsupportedFormatError,
    DocumentParseError,
    StreamIntegrityError,
    VerificationError,
    RedactionTimeoutError,
    StorageError,
    SuggestionError,
)
from .response import (
    error_response,
    success_response,
)
from .handlers import (
    handle_tool_errors,
    log_error,
)

__all__ = [
    # Error codes
    "ErrorCode",
    # Exceptions
    "RedactrrError",
    "TemplateValidationError",
    "NoMatchesError",
    "UnsupportedFormatError",
    "DocumentParseError",
    "StreamIntegrityError",
    "VerificationError",
    "RedactionTimeoutError",
    "StorageError",
    "SuggestionError",
    # Response builders
    "error_response",
    "success_response",
    # Decorators
    "handle_tool_errors",
    "log_error",
]
