"""
Custom exception hierarchy for Redactrr.

All exceptions inherit from RedactrrError and include:
- code: ErrorCode for categorization
- message: Human-readable error message
- details: Optional additional context
- recoverable: Whether the user can retry/fix the issue
- context: Additional key-value pairs for debugging
"""

from typing import Any, Dict, List, Optional
from .codes import ErrorCode


class RedactrrError(Exception):
    """Base exception for all Redactrr errors.

    Attributes:
        code: The ErrorCode categorizing this error
        message: Human-readable error message
        details: Optional additional context for the user
        recoverable: Whether the error can be resolved by user action
        context: Additional debugging information
    """

    code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED
    recoverable: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        recoverable: Optional[bool] = None,
        **context: Any,
    ):
        self.message = message
        self.details = details
        self.context = context if context else None

        # Allow overriding class defaults
        if code is not None:
            self.code = code
        if recoverable is not None:
            self.recoverable = recoverable

        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
        }


class TemplateValidationError(RedactrrError):
    """Template rejected before any document I/O.

    Every problem found in the template is listed in ``issues`` so the
    author can fix them in one pass.
    """

    code = ErrorCode.TEMPLATE_RULE_INVALID
    recoverable = True

    def __init__(
        self,
        message: str,
        issues: Optional[List[str]] = None,
        details: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        **context: Any,
    ):
        self.issues = list(issues or [])
        if details is None and self.issues:
            details = "; ".join(self.issues)
        ctx = {**context}
        if self.issues:
            ctx["issues"] = self.issues
        super().__init__(message, details, code=code, **ctx)


class NoMatchesError(RedactrrError):
    """Nothing to redact. The document needs manual review, not a crash."""

    code = ErrorCode.DETECT_NO_MATCHES
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        no_text: bool = False,
        original: Optional[bytes] = None,
        **context: Any,
    ):
        code = ErrorCode.DETECT_NO_TEXT if no_text else ErrorCode.DETECT_NO_MATCHES
        self.manual_review = True
        self.original = original
        super().__init__(message, details, code=code, manual_review=True, **context)


class UnsupportedFormatError(RedactrrError):
    """Input is neither a PDF nor a DOCX document."""

    code = ErrorCode.FORMAT_UNSUPPORTED
    recoverable = False


class DocumentParseError(RedactrrError):
    """Error opening or walking a document (encrypted, truncated, corrupt)."""

    code = ErrorCode.PARSE_PDF_FAILED
    recoverable = False

    def __init__(self, message: str, details: Optional[str] = None, file_type: Optional[str] = None, **context: Any):
        # Set appropriate code based on file type
        if file_type == "docx":
            code = ErrorCode.PARSE_DOCX_FAILED
        elif file_type == "template":
            code = ErrorCode.PARSE_TEMPLATE_FAILED
        else:
            code = ErrorCode.PARSE_PDF_FAILED

        ctx = {**context}
        if file_type:
            ctx["file_type"] = file_type
        super().__init__(message, details, code=code, **ctx)


class StreamIntegrityError(RedactrrError):
    """A rewritten content stream failed its integrity check.

    Recorded per sub-stream by the PDF engine. The original stream is kept
    and the page falls back to the opaque overlay.
    """

    code = ErrorCode.STREAM_UNBALANCED
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        page: Optional[int] = None,
        xref: Optional[int] = None,
        malformed: bool = False,
        **context: Any,
    ):
        code = ErrorCode.STREAM_MALFORMED if malformed else ErrorCode.STREAM_UNBALANCED
        self.page = page
        self.xref = xref
        ctx = {**context}
        if page is not None:
            ctx["page"] = page
        if xref is not None:
            ctx["xref"] = xref
        super().__init__(message, details, code=code, **ctx)


class VerificationError(RedactrrError):
    """Sensitive text survived every redaction attempt.

    This is the only error the pipeline must surface as a hard failure.
    ``remaining`` lists the exact fragments and where they were found.
    """

    code = ErrorCode.VERIFY_LEAK
    recoverable = False

    def __init__(
        self,
        message: str,
        remaining: Optional[List[Dict[str, Any]]] = None,
        details: Optional[str] = None,
        unreadable: bool = False,
        **context: Any,
    ):
        code = ErrorCode.VERIFY_UNREADABLE if unreadable else ErrorCode.VERIFY_LEAK
        self.remaining = list(remaining or [])
        ctx = {**context}
        ctx["remaining_count"] = len(self.remaining)
        super().__init__(message, details, code=code, **ctx)


class RedactionTimeoutError(RedactrrError):
    """The caller's deadline passed. Partial output is discarded."""

    code = ErrorCode.INTERNAL_DEADLINE
    recoverable = True


class StorageError(RedactrrError):
    """Error at the storage boundary (fetch/store)."""

    code = ErrorCode.EXTERNAL_STORAGE_FAILED
    recoverable = True

    def __init__(self, message: str, details: Optional[str] = None, path: Optional[str] = None, **context: Any):
        ctx = {**context}
        if path:
            ctx["path"] = path
        super().__init__(message, details, **ctx)


class SuggestionError(RedactrrError):
    """Error from the optional AI entity suggestion collaborator."""

    code = ErrorCode.EXTERNAL_LLM_FAILED
    recoverable = True

    def __init__(self, message: str, details: Optional[str] = None, model: Optional[str] = None, **context: Any):
        ctx = {**context}
        if model:
            ctx["model"] = model
        super().__init__(message, details, **ctx)
