"""
Redactrr Logging Configuration - Color-Coded Console Logs

Provides:
- ColorFormatter: ANSI color-coded log output
- Helper functions: log_stage, log_attempt, log_verification
- setup_logging(): Configure application logging

Usage:
    from logging_config import setup_logging, log_stage
    setup_logging()
    logger = logging.getLogger(__name__)
    log_stage(logger, "detect", "start", rules=4)

Sensitive text never goes through these helpers. Pass counts and hashes.
"""

import logging
import sys

# ANSI color codes
COLORS = {
    "RESET": "\033[0m",
    "BOLD": "\033[1m",
    "DIM": "\033[2m",
    # Event colors
    "STAGE": "\033[96m",  # Cyan - pipeline stage
    "ATTEMPT": "\033[93m",  # Yellow - redaction attempt
    "PASS": "\033[92m",  # Green - verification passed
    "FAIL": "\033[91m",  # Red - verification failed
    "ERROR": "\033[91m",  # Red - errors
    "WARN": "\033[33m",  # Orange/Yellow - warnings
    "DEBUG": "\033[90m",  # Gray - debug info
}


class ColorFormatter(logging.Formatter):
    """Custom formatter with colors for different log levels."""

    LEVEL_COLORS = {
        logging.DEBUG: COLORS["DEBUG"],
        logging.INFO: COLORS["RESET"],
        logging.WARNING: COLORS["WARN"],
        logging.ERROR: COLORS["ERROR"],
        logging.CRITICAL: COLORS["ERROR"] + COLORS["BOLD"],
    }

    def format(self, record: logging.LogRecord) -> str:
        # Apply level-based color
        color = self.LEVEL_COLORS.get(record.levelno, COLORS["RESET"])

        # Format: timestamp [LEVEL] message (no module name for compactness)
        timestamp = self.formatTime(record, "%H:%M:%S")
        level = record.levelname[:4]

        formatted = (
            f"{COLORS['DIM']}{timestamp}{COLORS['RESET']} "
            f"[{color}{level}{COLORS['RESET']}] "
            f"{record.getMessage()}"
        )

        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)

        return formatted


def setup_logging(level: int | str = logging.INFO) -> None:
    """Configure colored logging for the application."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColorFormatter())

    # Configure root logger
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)


# =============================================================================
# COLORED LOG HELPER FUNCTIONS
# =============================================================================


def log_stage(logger: logging.Logger, stage: str, state: str, **context) -> None:
    """Log a pipeline stage boundary.

    Args:
        logger: Logger instance
        stage: Stage name (index, detect, resolve, redact, verify, sanitize, report)
        state: 'start' or 'end'
        **context: Additional context (counts, formats, timings)
    """
    ctx = " ".join(f"{k}={v}" for k, v in context.items()) if context else ""
    if state == "start":
        logger.info(f"{COLORS['STAGE']}>>> {stage.upper()}{COLORS['RESET']} {ctx}".rstrip())
    else:
        logger.info(f"{COLORS['STAGE']}<<< {stage.upper()}{COLORS['RESET']} {ctx}".rstrip())


def log_attempt(logger: logging.Logger, attempt: int, max_attempts: int, padding: float, aggressive: bool) -> None:
    """Log the start of a redaction attempt.

    Args:
        logger: Logger instance
        attempt: 1-based attempt number
        max_attempts: Retry budget
        padding: Box padding used for this attempt
        aggressive: Whether the strict rebuild strategy is on
    """
    mode = "strict" if aggressive else "standard"
    logger.info(
        f"{COLORS['ATTEMPT']}--- ATTEMPT {attempt}/{max_attempts}{COLORS['RESET']} "
        f"mode={mode} padding={padding:.1f}pt"
    )


def log_verification(logger: logging.Logger, success: bool, checked: int, remaining: int) -> None:
    """Log a verification verdict.

    Args:
        logger: Logger instance
        success: Whether no sensitive text survived
        checked: Number of sensitive strings checked
        remaining: Number of surviving fragments
    """
    if success:
        logger.info(f"{COLORS['PASS']}=== VERIFIED{COLORS['RESET']} checked={checked} remaining=0")
    else:
        logger.warning(f"{COLORS['FAIL']}!!! LEAK{COLORS['RESET']} checked={checked} remaining={remaining}")
