"""
Error handling helpers for Redactrr commands.

handle_tool_errors turns exceptions into response dicts at the CLI/JSON
boundary; log_error gives in-pipeline failures one log format.
"""

import logging
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

from .exceptions import RedactrrError
from .response import error_response

F = TypeVar("F", bound=Callable[..., Any])


def handle_tool_errors(tool_name: str, logger: Optional[logging.Logger] = None):
    """Decorator: return error_response(...) instead of raising.

    RedactrrError subclasses are expected outcomes and are logged without a
    traceback. Anything else is logged with its stack and reported as
    INTERNAL_UNEXPECTED.

    Args:
        tool_name: Command name recorded in the response ("redact", "preview")
        logger: Logger to use (default: "redactrr.<tool_name>")

    Example:
        >>> @handle_tool_errors("redact")
        ... def redact_file(path):
        ...     return success_response(output=str(path))
    """

    def decorator(func: F) -> F:
        log = logger or logging.getLogger(f"redactrr.{tool_name}")

        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> dict:
            try:
                return func(*args, **kwargs)
            except RedactrrError as e:
                log.error(f"[{tool_name}] {e.code.value}: {e.message}")
                return error_response(e, tool=tool_name)
            except Exception as e:
                log.error(f"[{tool_name}] Unexpected error: {e}", exc_info=True)
                return error_response(e, tool=tool_name)

        return wrapper  # type: ignore

    return decorator


def log_error(
    logger: logging.Logger, error: Exception, context: Optional[str] = None, include_traceback: bool = True
) -> None:
    """Log ``error`` as "[context] CODE: message".

    Args:
        logger: Logger to write to
        error: Exception to report; non-Redactrr errors log their str()
        context: Prefix naming where it happened (stage, page, part)
        include_traceback: Attach the stack trace

    Example:
        >>> log_error(logger, err, context="page 3")
        # [page 3] STREAM_UNBALANCED: BT/ET imbalance after filtering
    """
    message = f"{error.code.value}: {error.message}" if isinstance(error, RedactrrError) else str(error)
    if context:
        message = f"[{context}] {message}"
    logger.error(message, exc_info=include_traceback)
