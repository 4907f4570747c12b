"""
Response builders for Redactrr.

JSON-ready result dicts for the CLI's --json mode and for callers that
prefer a value to an exception.
"""

import hashlib
from typing import Any, Dict, List, Optional

from .codes import ErrorCode
from .exceptions import RedactrrError, VerificationError


def _remaining_locations(remaining: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Where text survived, with a hash in place of the text."""
    return [
        {
            "page": item.get("page"),
            "entityHash": hashlib.sha256(str(item.get("text", "")).encode("utf-8")).hexdigest(),
        }
        for item in remaining
    ]


def error_response(error: RedactrrError | Exception, tool: Optional[str] = None, include_context: bool = True) -> dict:
    """Build an error response dict.

    Args:
        error: Exception to convert
        tool: Command name ("redact", "preview")
        include_context: Include the context dict and leak locations

    Returns:
        {"success": False, "error": {...}}

    Example:
        >>> error_response(UnsupportedFormatError("Unsupported document format"), tool="redact")
        {
            "success": False,
            "error": {
                "code": "FORMAT_UNSUPPORTED",
                "message": "Unsupported document format",
                "details": None,
                "tool": "redact",
                "recoverable": False,
                "context": None
            }
        }
    """
    if not isinstance(error, RedactrrError):
        return {
            "success": False,
            "error": {
                "code": ErrorCode.INTERNAL_UNEXPECTED.value,
                "message": str(error),
                "details": None,
                "tool": tool,
                "recoverable": False,
                "context": None,
            },
        }

    body = error.to_dict()
    body["tool"] = tool
    if not include_context:
        body["context"] = None
    elif isinstance(error, VerificationError):
        body["remaining"] = _remaining_locations(error.remaining)
    return {"success": False, "error": body}


def success_response(data: Optional[dict] = None, **kwargs: Any) -> dict:
    """Build a success response dict: ``data`` and ``kwargs`` merged at top level.

    Example:
        >>> success_response(output="clean.pdf")
        {"success": True, "output": "clean.pdf"}
    """
    response = {"success": True}
    response.update(data or {})
    response.update(kwargs)
    return response
