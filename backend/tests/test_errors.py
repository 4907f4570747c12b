"""
Tests for the Redactrr error handling module.
"""

import hashlib
import logging

from errors import (
    ErrorCode,
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
    error_response,
    success_response,
    handle_tool_errors,
    log_error,
)


class TestErrorCodes:
    """Test the ErrorCode taxonomy."""

    def test_values_equal_names(self):
        """Codes serialize as their own names."""
        for code in ErrorCode:
            assert code.value == code.name

    def test_every_code_has_a_category(self):
        categories = {"TEMPLATE", "DETECT", "FORMAT", "PARSE", "STREAM", "VERIFY", "EXTERNAL", "INTERNAL"}
        assert {code.value.split("_")[0] for code in ErrorCode} == categories

    def test_str_enum(self):
        """ErrorCode compares equal to its string value."""
        assert ErrorCode.VERIFY_LEAK == "VERIFY_LEAK"


class TestRedactrrError:
    """Test the RedactrrError base class."""

    def test_defaults(self):
        err = RedactrrError("Pipeline stopped")
        assert (err.message, err.details, err.context) == ("Pipeline stopped", None, None)
        assert err.code == ErrorCode.INTERNAL_UNEXPECTED
        assert err.recoverable is False

    def test_keyword_context(self):
        """Extra keyword arguments become the context dict."""
        err = RedactrrError("Pipeline stopped", stage="verify", attempt=2)
        assert err.context == {"stage": "verify", "attempt": 2}

    def test_code_and_recoverable_override(self):
        err = RedactrrError("Odd", code=ErrorCode.INTERNAL_CONFIG_ERROR, recoverable=True)
        assert err.code == ErrorCode.INTERNAL_CONFIG_ERROR
        assert err.recoverable is True

    def test_str_joins_details(self):
        assert str(RedactrrError("Pipeline stopped", details="page 2")) == "Pipeline stopped - page 2"
        assert str(RedactrrError("Pipeline stopped")) == "Pipeline stopped"

    def test_to_dict(self):
        d = RedactrrError("Pipeline stopped", details="page 2", stage="verify").to_dict()
        assert d == {
            "code": "INTERNAL_UNEXPECTED",
            "message": "Pipeline stopped",
            "details": "page 2",
            "recoverable": False,
            "context": {"stage": "verify"},
        }


class TestTemplateValidationError:
    """Test TemplateValidationError exception."""

    def test_issues_become_details(self):
        """Issues are joined into details when none are given."""
        err = TemplateValidationError("Rejected", issues=["rule a: missing 'id'", "rule b: missing 'name'"])
        assert err.issues == ["rule a: missing 'id'", "rule b: missing 'name'"]
        assert "missing 'id'" in err.details
        assert err.context["issues"] == err.issues
        assert err.recoverable is True

    def test_code_override(self):
        """A specific template code can be supplied."""
        err = TemplateValidationError("Empty", code=ErrorCode.TEMPLATE_EMPTY)
        assert err.code == ErrorCode.TEMPLATE_EMPTY


class TestNoMatchesError:
    """Test NoMatchesError exception."""

    def test_no_matches(self):
        """Default code flags manual review."""
        err = NoMatchesError("Nothing found")
        assert err.code == ErrorCode.DETECT_NO_MATCHES
        assert err.manual_review is True
        assert err.context["manual_review"] is True

    def test_no_text_keeps_original(self):
        """No-text variant keeps the original bytes."""
        err = NoMatchesError("No text", no_text=True, original=b"%PDF-1.7")
        assert err.code == ErrorCode.DETECT_NO_TEXT
        assert err.original == b"%PDF-1.7"
        assert err.recoverable is True


class TestDocumentParseError:
    """Test DocumentParseError exception."""

    def test_default_code(self):
        """Default code is PARSE_PDF_FAILED."""
        err = DocumentParseError("Failed to parse")
        assert err.code == ErrorCode.PARSE_PDF_FAILED

    def test_docx_file_type(self):
        """DOCX file type sets appropriate code."""
        err = DocumentParseError("Failed to parse", file_type="docx")
        assert err.code == ErrorCode.PARSE_DOCX_FAILED
        assert err.context["file_type"] == "docx"

    def test_template_file_type(self):
        """Template file type sets appropriate code."""
        err = DocumentParseError("Failed to parse", file_type="template")
        assert err.code == ErrorCode.PARSE_TEMPLATE_FAILED


class TestStreamIntegrityError:
    """Test StreamIntegrityError exception."""

    def test_unbalanced(self):
        """Default code is STREAM_UNBALANCED with page and xref context."""
        err = StreamIntegrityError("Unbalanced", page=2, xref=14)
        assert err.code == ErrorCode.STREAM_UNBALANCED
        assert err.page == 2
        assert err.context == {"page": 2, "xref": 14}

    def test_malformed(self):
        """Malformed flag sets STREAM_MALFORMED."""
        err = StreamIntegrityError("Bad token", malformed=True)
        assert err.code == ErrorCode.STREAM_MALFORMED


class TestVerificationError:
    """Test VerificationError exception."""

    def test_leak(self):
        """Remaining fragments are kept and counted."""
        remaining = [{"text": "123-45-6789", "page": 1}, {"text": "a@b.com", "page": 2}]
        err = VerificationError("Leak", remaining=remaining)
        assert err.code == ErrorCode.VERIFY_LEAK
        assert err.remaining == remaining
        assert err.context["remaining_count"] == 2
        assert err.recoverable is False

    def test_unreadable(self):
        """Unreadable flag sets VERIFY_UNREADABLE."""
        err = VerificationError("Cannot open", unreadable=True)
        assert err.code == ErrorCode.VERIFY_UNREADABLE
        assert err.remaining == []


class TestOtherErrors:
    """Test the remaining exception defaults."""

    def test_unsupported_format(self):
        err = UnsupportedFormatError("Nope")
        assert err.code == ErrorCode.FORMAT_UNSUPPORTED
        assert err.recoverable is False

    def test_timeout(self):
        err = RedactionTimeoutError("Too slow", stage="verify")
        assert err.code == ErrorCode.INTERNAL_DEADLINE
        assert err.context["stage"] == "verify"

    def test_storage(self):
        err = StorageError("Cannot read", path="/tmp/x.pdf")
        assert err.code == ErrorCode.EXTERNAL_STORAGE_FAILED
        assert err.context["path"] == "/tmp/x.pdf"

    def test_suggestion(self):
        err = SuggestionError("LLM down", model="qwen")
        assert err.code == ErrorCode.EXTERNAL_LLM_FAILED
        assert err.context["model"] == "qwen"


class TestErrorResponse:
    """Test error_response function."""

    def test_redactrr_error_response(self):
        """Convert RedactrrError to response dict."""
        err = StorageError("No file", details="Check the path")
        resp = error_response(err, tool="redact")

        assert resp["success"] is False
        assert resp["error"]["code"] == "EXTERNAL_STORAGE_FAILED"
        assert resp["error"]["message"] == "No file"
        assert resp["error"]["details"] == "Check the path"
        assert resp["error"]["tool"] == "redact"
        assert resp["error"]["recoverable"] is True

    def test_verification_error_lists_locations_not_text(self):
        """Failed verification responses say where text survived, by hash."""
        err = VerificationError("Leak", remaining=[{"text": "secret", "page": 1}])
        resp = error_response(err)

        remaining = resp["error"]["remaining"]
        assert remaining == [{"page": 1, "entityHash": hashlib.sha256(b"secret").hexdigest()}]
        assert "secret" not in str(resp)

    def test_generic_exception_response(self):
        """Convert generic Exception to response dict."""
        err = ValueError("Bad value")
        resp = error_response(err, tool="test")

        assert resp["success"] is False
        assert resp["error"]["code"] == "INTERNAL_UNEXPECTED"
        assert resp["error"]["message"] == "Bad value"
        assert resp["error"]["recoverable"] is False

    def test_without_context(self):
        """Exclude context when requested."""
        err = VerificationError("Leak", remaining=[{"text": "secret", "page": 1}])
        resp = error_response(err, include_context=False)

        assert resp["error"]["context"] is None
        assert "remaining" not in resp["error"]


class TestSuccessResponse:
    """Test success_response function."""

    def test_basic_success(self):
        """Create basic success response."""
        resp = success_response()
        assert resp == {"success": True}

    def test_with_kwargs(self):
        """Include additional kwargs."""
        resp = success_response(output="clean.pdf", attempts=1)
        assert resp["success"] is True
        assert resp["output"] == "clean.pdf"
        assert resp["attempts"] == 1

    def test_with_data_dict(self):
        """Include data dictionary."""
        resp = success_response({"entities_found": 2, "format": "pdf"})
        assert resp["success"] is True
        assert resp["entities_found"] == 2
        assert resp["format"] == "pdf"


class TestHandleToolErrors:
    """Test the handle_tool_errors decorator."""

    def test_returns_result_unchanged(self):
        @handle_tool_errors("preview")
        def preview():
            return success_response(entities_found=3)

        assert preview() == {"success": True, "entities_found": 3}

    def test_expected_error_becomes_response(self):
        """Redactrr errors come back as error responses tagged with the command."""

        @handle_tool_errors("redact")
        def redact():
            raise NoMatchesError("Nothing to redact")

        result = redact()
        assert result["success"] is False
        assert result["error"]["code"] == "DETECT_NO_MATCHES"
        assert result["error"]["tool"] == "redact"
        assert result["error"]["context"] == {"manual_review": True}

    def test_unexpected_error_becomes_internal(self, caplog):
        """Anything else is INTERNAL_UNEXPECTED and logged with its traceback."""

        @handle_tool_errors("redact")
        def redact():
            raise KeyError("pdf")

        with caplog.at_level(logging.ERROR):
            result = redact()

        assert result["error"]["code"] == "INTERNAL_UNEXPECTED"
        assert caplog.records[-1].exc_info is not None

    def test_expected_error_logged_with_code(self, caplog):
        @handle_tool_errors("redact")
        def redact():
            raise StorageError("Could not read in.pdf")

        with caplog.at_level(logging.ERROR):
            redact()

        assert "[redact] EXTERNAL_STORAGE_FAILED: Could not read in.pdf" in caplog.text
        assert caplog.records[-1].exc_info is None

    def test_wraps_metadata(self):
        @handle_tool_errors("redact")
        def redact():
            """Run one redaction."""
            return success_response()

        assert redact.__name__ == "redact"
        assert redact.__doc__ == "Run one redaction."


class TestLogError:
    """Test log_error helper."""

    def test_prefixes_context(self, caplog):
        """Context and code appear in the message."""
        logger = logging.getLogger("test.log_error")
        with caplog.at_level(logging.ERROR):
            log_error(logger, SuggestionError("LLM down"), context="detect", include_traceback=False)

        assert "[detect] EXTERNAL_LLM_FAILED: LLM down" in caplog.text

    def test_plain_exception(self, caplog):
        """Non-Redactrr exceptions log their text."""
        logger = logging.getLogger("test.log_error")
        with caplog.at_level(logging.ERROR):
            log_error(logger, ValueError("boom"), include_traceback=False)

        assert "boom" in caplog.text
