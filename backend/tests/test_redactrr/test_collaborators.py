"""
Tests for the storage and AI suggestion collaborators.

The LLM suggester is exercised against an in-process fake client; no
model server is needed.
"""

from types import SimpleNamespace

import httpx
import pytest

from config import runtime_config
from errors import ErrorCode, StorageError, SuggestionError
from tools.redactrr.collaborators import LLMEntitySuggester, LocalFileStore, parse_suggestions


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_client(content=None, error=None):
    completions = FakeCompletions(content, error)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


# =============================================================================
# PARSING
# =============================================================================


class TestParseSuggestions:
    """Test parse_suggestions."""

    def test_bare_array(self):
        result = parse_suggestions('[{"text": "Jane Roe", "category": "NAME"}]')
        assert result == [{"text": "Jane Roe", "category": "NAME", "source": "ai"}]

    def test_wrapped_and_fenced(self):
        """Fenced replies and objects wrapping an array both parse."""
        content = '```json\n{"entities": [{"text": "Acme Holdings", "type": "ORG"}]}\n```'
        result = parse_suggestions(content)
        assert result[0]["text"] == "Acme Holdings"
        assert result[0]["category"] == "ORG"

    def test_think_block_stripped(self):
        content = '<think>the [list] is...</think>[{"text": "Jane Roe"}]'
        assert parse_suggestions(content)[0]["category"] == "CUSTOM"

    def test_array_inside_prose(self):
        content = 'Here you go: [{"text": "Jane Roe"}] hope that helps'
        assert [s["text"] for s in parse_suggestions(content)] == ["Jane Roe"]

    def test_measurements_and_noise_filtered(self):
        """Numbers, quantities and too-short texts are dropped."""
        content = '[{"text": "42"}, {"text": "3.5 kg"}, {"text": "x"}, {"text": 7}, "loose", {"text": " Jane Roe "}]'
        assert [s["text"] for s in parse_suggestions(content)] == ["Jane Roe"]

    def test_empty_array(self):
        assert parse_suggestions("[]") == []

    def test_no_array(self):
        with pytest.raises(SuggestionError) as exc:
            parse_suggestions("I could not find anything.")
        assert exc.value.code == ErrorCode.EXTERNAL_LLM_FAILED


# =============================================================================
# SUGGESTER
# =============================================================================


class TestLLMEntitySuggester:
    """Test LLMEntitySuggester.suggest."""

    def test_suggest(self):
        client, completions = fake_client('[{"text": "Jane Roe", "category": "NAME"}]')
        suggester = LLMEntitySuggester(base_url="http://llm.test", model="m1", client=client)

        result = suggester.suggest("Prepared for Jane Roe.", ["Person names"])

        assert result == [{"text": "Jane Roe", "category": "NAME", "source": "ai"}]
        call = completions.calls[0]
        assert call["model"] == "m1"
        prompt = call["messages"][0]["content"]
        assert "- Person names" in prompt
        assert "Prepared for Jane Roe." in prompt

    def test_long_text_sampled(self):
        """Only head and tail of long documents are sent."""
        client, completions = fake_client("[]")
        suggester = LLMEntitySuggester(base_url="http://llm.test", client=client)
        text = "A" * 5000 + "MIDDLE" + "Z" * 5000

        suggester.suggest(text, [])

        prompt = completions.calls[0]["messages"][0]["content"]
        assert "MIDDLE" not in prompt
        assert "[...middle content omitted...]" in prompt

    def test_transport_failure(self):
        client, _ = fake_client(error=httpx.ConnectError("connection refused"))
        suggester = LLMEntitySuggester(base_url="http://llm.test", model="m1", client=client)

        with pytest.raises(SuggestionError) as exc:
            suggester.suggest("text", [])
        assert exc.value.recoverable is True

    def test_defaults_from_config(self):
        client, _ = fake_client("[]")
        suggester = LLMEntitySuggester(client=client)
        assert suggester.base_url == runtime_config.llm_base_url
        assert suggester.model


# =============================================================================
# STORAGE
# =============================================================================


class TestLocalFileStore:
    """Test LocalFileStore."""

    def test_store_and_fetch(self, tmp_path):
        store = LocalFileStore(tmp_path)
        url = store.store("out/doc_REDACTED.pdf", b"%PDF-data")

        assert url.startswith("file://")
        assert (tmp_path / "out" / "doc_REDACTED.pdf").read_bytes() == b"%PDF-data"
        assert store.fetch("out/doc_REDACTED.pdf") == b"%PDF-data"

    def test_absolute_paths_bypass_root(self, tmp_path):
        target = tmp_path / "abs.bin"
        target.write_bytes(b"x")
        assert LocalFileStore("/nonexistent-root").fetch(target) == b"x"

    def test_missing_file(self, tmp_path):
        with pytest.raises(StorageError) as exc:
            LocalFileStore(tmp_path).fetch("nope.pdf")
        assert exc.value.code == ErrorCode.EXTERNAL_STORAGE_FAILED
