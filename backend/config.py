"""
Runtime Configuration for Redactrr.

Provides a singleton RuntimeConfig class holding the redaction pipeline's
tunables (box padding, retry budget, verification thresholds, worker pool
size, optional LLM suggester). Values default from environment variables
and can be adjusted at runtime without restarting the service.

Usage:
    from config import runtime_config
    padding = runtime_config.box_padding
    runtime_config.update(box_padding=3.0, max_workers=8)
"""

import os
import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple
from threading import Lock

logger = logging.getLogger(__name__)

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _env_bool(key: str, default: str = "false") -> bool:
    """Read a boolean flag from the environment."""
    return os.environ.get(key, default).strip().lower() in {"1", "true", "yes", "on"}


def _first_env(*keys: str, default: str) -> str:
    """Return the first non-empty environment value from keys, else default."""
    for key in keys:
        value = os.environ.get(key, "").strip()
        if value:
            return value
    return default


@dataclass
class RuntimeConfig:
    """
    Pipeline tunables shared by every redaction run in the process.

    Each field reads its REDACTRR_* environment variable on construction;
    update() changes values in place under a lock.
    """

    # Redaction geometry (PDF points)
    box_padding: float = field(default_factory=lambda: float(os.environ.get("REDACTRR_BOX_PADDING", "2.0")))
    strict_box_padding: float = field(
        default_factory=lambda: float(os.environ.get("REDACTRR_STRICT_BOX_PADDING", "6.0"))
    )
    glyph_width_factor: float = field(
        default_factory=lambda: float(os.environ.get("REDACTRR_GLYPH_WIDTH_FACTOR", "0.6"))
    )

    # Verification / retry budget
    max_attempts: int = field(default_factory=lambda: int(os.environ.get("REDACTRR_MAX_ATTEMPTS", "2")))
    min_verify_length: int = field(default_factory=lambda: int(os.environ.get("REDACTRR_MIN_VERIFY_LENGTH", "3")))
    audit_shrink_ratio: float = field(
        default_factory=lambda: float(os.environ.get("REDACTRR_AUDIT_SHRINK_RATIO", "0.5"))
    )

    # Format detection
    docx_min_size: int = field(default_factory=lambda: int(os.environ.get("REDACTRR_DOCX_MIN_SIZE", "2000")))

    # Parallel page/part processing
    max_workers: int = field(default_factory=lambda: int(os.environ.get("REDACTRR_MAX_WORKERS", "4")))

    # Optional AI entity suggestions (OpenAI-compatible endpoint)
    use_llm: bool = field(default_factory=lambda: _env_bool("REDACTRR_USE_LLM"))
    llm_base_url: str = field(
        default_factory=lambda: _first_env("REDACTRR_LLM_URL", "LLM_BASE_URL", default="http://localhost:8081")
    )
    llm_model: str = field(default_factory=lambda: _first_env("REDACTRR_LLM_MODEL", "LLM_CHAT_MODEL", default=""))
    llm_timeout: float = field(default_factory=lambda: float(os.environ.get("REDACTRR_LLM_TIMEOUT", "120")))
    llm_sample_chars: int = field(default_factory=lambda: int(os.environ.get("REDACTRR_LLM_SAMPLE_CHARS", "6000")))

    # Logging
    log_level: str = field(default_factory=lambda: os.environ.get("REDACTRR_LOG_LEVEL", "INFO").upper())

    # Internal state
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)
    _update_count: int = field(default=0, repr=False)

    # Validation ranges for numeric config values
    _VALIDATION_RANGES: Dict[str, tuple] = field(default_factory=lambda: {
        "box_padding": (0.0, 72.0),
        "strict_box_padding": (0.0, 72.0),
        "glyph_width_factor": (0.1, 2.0),
        "max_attempts": (1, 2),
        "min_verify_length": (1, 64),
        "audit_shrink_ratio": (0.0, 1.0),
        "docx_min_size": (0, 1_000_000),
        "max_workers": (1, 32),
        "llm_timeout": (1.0, 600.0),
        "llm_sample_chars": (500, 200_000),
    }, repr=False, compare=False)

    def _check(self, key: str, value: Any) -> Tuple[Any, Optional[str]]:
        """Normalize one incoming value. Returns (value, rejection reason or None)."""
        if key == "llm_base_url":
            url = str(value).strip().rstrip("/")
            if not url.startswith(("http://", "https://")):
                return value, f"invalid URL {value!r}"
            return url, None

        if key == "log_level":
            level = str(value).strip().upper()
            if level not in LOG_LEVELS:
                return value, f"invalid log level {value!r}"
            return level, None

        bounds = self._VALIDATION_RANGES.get(key)
        if bounds is None:
            return value, None
        lo, hi = bounds
        try:
            number = type(getattr(self, key))(value)
        except (TypeError, ValueError):
            return value, f"not a number: {value!r}"
        if not lo <= number <= hi:
            return value, f"{number} outside {lo}-{hi}"
        return number, None

    def update(self, **kwargs) -> Dict[str, Any]:
        """
        Change settings while the process runs.

        Unknown keys, private keys and values failing validation are left
        untouched and reported back.

        Args:
            **kwargs: Setting names and new values (e.g., box_padding=3.0)

        Returns:
            {"updated": [...], "ignored": [...]}
        """
        updated: List[str] = []
        ignored: List[str] = []

        with self._lock:
            for key, value in kwargs.items():
                if key.startswith("_") or not hasattr(self, key):
                    ignored.append(key)
                    logger.warning(f"Config: unknown setting {key}")
                    continue

                value, reason = self._check(key, value)
                if reason:
                    ignored.append(key)
                    logger.warning(f"Config: rejected {key} ({reason})")
                    continue

                previous = getattr(self, key)
                setattr(self, key, value)
                updated.append(key)
                logger.info(f"Config: {key} {previous} -> {value}")

            self._update_count += 1

        return {"updated": updated, "ignored": ignored}

    def to_dict(self) -> Dict[str, Any]:
        """Public settings as a plain dict."""
        return {f.name: getattr(self, f.name) for f in fields(self) if not f.name.startswith("_")}

    def reset_to_defaults(self) -> Dict[str, Any]:
        """Reload every setting from the environment, reporting what changed."""
        fresh = RuntimeConfig().to_dict()
        changes = {}

        with self._lock:
            for key, default in fresh.items():
                current = getattr(self, key)
                if current == default:
                    continue
                setattr(self, key, default)
                changes[key] = {"old": current, "new": default}
                logger.info(f"Config: {key} reset to {default}")

            self._update_count += 1

        return {"reset": True, "changes": changes, "update_count": self._update_count}


# Singleton instance
runtime_config = RuntimeConfig()


def get_config() -> RuntimeConfig:
    """Get the singleton config instance."""
    return runtime_config
