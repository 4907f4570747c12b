"""
External collaborators: document storage and AI entity suggestions.

Both are structural Protocols so callers can plug in their own (cloud
storage, a hosted model); the pipeline only touches them at its edges.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

import httpx
from openai import OpenAI, OpenAIError

from config import runtime_config
from errors import StorageError, SuggestionError

logger = logging.getLogger(__name__)


# =============================================================================
# STORAGE
# =============================================================================


class DocumentStore(Protocol):
    def fetch(self, path: str) -> bytes: ...

    def store(self, path: str, data: bytes) -> str: ...


class LocalFileStore:
    """DocumentStore on the local filesystem. Relative paths resolve under ``root``."""

    def __init__(self, root: Union[str, Path, None] = None):
        self.root = Path(root) if root is not None else None

    def _resolve(self, path: Union[str, Path]) -> Path:
        target = Path(path)
        if self.root is not None and not target.is_absolute():
            target = self.root / target
        return target

    def fetch(self, path: Union[str, Path]) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except OSError as e:
            raise StorageError(f"Could not read {target.name}", details=str(e), path=str(target))

    def store(self, path: Union[str, Path], data: bytes) -> str:
        """Write ``data`` and return its file:// URL."""
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Could not write {target.name}", details=str(e), path=str(target))
        return target.resolve().as_uri()


# =============================================================================
# AI SUGGESTIONS
# =============================================================================


class EntitySuggester(Protocol):
    def suggest(self, text: str, category_hints: List[str]) -> List[Dict[str, Any]]: ...


_THINK_RE = re.compile(r"<think>(.*?)</think>", re.DOTALL)
_MEASUREMENT_RE = re.compile(
    r"^\s*-?\d+\.?\d*\s*(?:m|cm|mm|km|ft|in|kg|g|mg|lb|oz|%|°|deg|psi|kPa|MPa)\s*$", re.IGNORECASE
)
_NUMBER_RE = re.compile(r"^\s*-?\d+\.?\d*\s*$")


def _is_measurement(text: str) -> bool:
    """Bare numbers and quantities with units are not entities."""
    return bool(_MEASUREMENT_RE.match(text) or _NUMBER_RE.match(text))


def parse_suggestions(content: str) -> List[Dict[str, Any]]:
    """
    Parse a model reply into suggestion dicts.

    Accepts a bare JSON array, an object wrapping one array (e.g.
    ``{"entities": [...]}``), or either inside a fenced code block.

    Raises:
        SuggestionError: no JSON array could be recovered
    """
    content = _THINK_RE.sub("", content or "").strip()
    content = re.sub(r"```json\s*", "", content)
    content = re.sub(r"```\s*", "", content)

    items = None
    try:
        parsed = json.loads(content)
        if isinstance(parsed, list):
            items = parsed
        elif isinstance(parsed, dict):
            for value in parsed.values():
                if isinstance(value, list):
                    items = value
                    break
    except json.JSONDecodeError:
        match = re.search(r"\[.*?\]", content, re.DOTALL)
        if match:
            try:
                items = json.loads(match.group())
            except json.JSONDecodeError as e:
                raise SuggestionError("Model returned invalid JSON", details=str(e))

    if items is None:
        raise SuggestionError("Model reply contained no JSON array", details=content[:200])

    suggestions = []
    for item in items:
        if not isinstance(item, dict) or not isinstance(item.get("text"), str):
            continue
        text = item["text"].strip()
        if len(text) < 2 or _is_measurement(text):
            continue
        suggestions.append({
            "text": text,
            "category": str(item.get("category") or item.get("type") or "CUSTOM"),
            "source": "ai",
        })
    return suggestions


class LLMEntitySuggester:
    """EntitySuggester backed by an OpenAI-compatible chat endpoint."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[OpenAI] = None,
    ):
        """
        Args:
            base_url: Server URL (e.g., "http://localhost:8081")
            model: Model name sent with each request
            timeout: Request timeout in seconds
            client: Pre-built OpenAI client (tests inject a fake here)
        """
        self.base_url = (base_url or runtime_config.llm_base_url).rstrip("/")
        self.model = model or runtime_config.llm_model or "default"
        self.timeout = timeout or runtime_config.llm_timeout
        self._openai = client or OpenAI(
            base_url=f"{self.base_url}/v1",
            api_key="not-needed",  # local servers don't require auth
            timeout=self.timeout,
        )

    def is_healthy(self, timeout: float = 3.0) -> bool:
        """Sync health check against the server's /health endpoint."""
        try:
            resp = httpx.get(f"{self.base_url}/health", timeout=timeout)
            return resp.status_code == 200
        except httpx.HTTPError:
            return False

    @staticmethod
    def _sample(text: str, limit: int) -> str:
        """Head and tail of long documents, where names and contacts cluster."""
        if len(text) <= limit:
            return text
        head = text[: limit * 2 // 3]
        tail = text[-(limit // 3):]
        return head + "\n\n[...middle content omitted...]\n\n" + tail

    def suggest(self, text: str, category_hints: List[str]) -> List[Dict[str, Any]]:
        """
        Ask the model for sensitive values the rules may have missed.

        Returns:
            Dicts with "text", "category" and "source" ("ai"), no offsets

        Raises:
            SuggestionError: transport failure or unparseable reply
        """
        sample = self._sample(text, runtime_config.llm_sample_chars)
        hints = "\n".join(f"- {hint}" for hint in category_hints) or "- Personal and confidential information"

        prompt = f"""Find sensitive values to redact from this document.

Look for:
{hints}

DO NOT extract:
- Measurements, technical values, percentages
- Generic terms

Text:
---
{sample}
---

Return JSON array: [{{"text": "exact text as it appears", "category": "category"}}]
Return [] if none found."""

        try:
            logger.info(f"LLM suggesting entities ({len(sample)} chars sampled)")
            response = self._openai.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=0.1,
                max_tokens=2048,
            )
        except (OpenAIError, httpx.HTTPError) as e:
            raise SuggestionError("LLM request failed", details=str(e), model=self.model)

        content = response.choices[0].message.content if response.choices else ""
        suggestions = parse_suggestions(content or "")
        logger.info(f"LLM suggested {len(suggestions)} entities")
        return suggestions
