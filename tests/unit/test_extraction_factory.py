"""Unit tests for extraction provider factory.

Tests cover:
- Provider registry lookups
- Factory function provider creation
- Configuration-based selection
- Error handling for unknown providers
"""

import logging
from unittest.mock import patch

import pytest

from services.extraction.base import ExtractionProvider
from services.extraction.factory import ProviderRegistry, create_extraction_provider
from services.extraction.ollama_provider import OllamaExtractionProvider
from services.extraction.openai_provider import OpenAIExtractionProvider
from services.shared.config import Settings


def test_provider_registry_default_providers() -> None:
    """Test that registry contains both LLM providers."""
    providers = ProviderRegistry.list_providers()

    assert "openai" in providers
    assert "ollama" in providers


def test_provider_registry_get_ollama() -> None:
    assert ProviderRegistry.get_provider_class("ollama") == OllamaExtractionProvider


def test_provider_registry_unknown_provider() -> None:
    """Test that unknown provider raises ValueError listing the known ones."""
    with pytest.raises(ValueError, match="Available providers: .*openai"):
        ProviderRegistry.get_provider_class("nonexistent")


def test_provider_registry_register_new_provider() -> None:
    """Test registering a new provider."""

    class TestProvider(ExtractionProvider):
        def _complete(self, kind: str, document_text: str) -> str:
            return "{}"

        def is_available(self) -> bool:
            return True

        @property
        def provider_name(self) -> str:
            return "test"

    ProviderRegistry.register("test", TestProvider)
    try:
        assert "test" in ProviderRegistry.list_providers()
        assert ProviderRegistry.get_provider_class("test") == TestProvider
    finally:
        del ProviderRegistry._providers["test"]


def test_create_extraction_provider_default(caplog: pytest.LogCaptureFixture) -> None:
    """Test factory creates OpenAI provider by default and logs it."""
    settings = Settings(_env_file=None)

    with caplog.at_level(logging.INFO):
        provider = create_extraction_provider(settings)

    assert isinstance(provider, OpenAIExtractionProvider)
    assert "Created extraction provider: openai" in caplog.text


@patch.dict("os.environ", {}, clear=True)
def test_create_extraction_provider_warns_if_unavailable(
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Test that factory warns, but does not fail, without an API key."""
    settings = Settings(_env_file=None)

    with caplog.at_level(logging.WARNING):
        provider = create_extraction_provider(settings)

    assert provider.is_available() is False
    assert "not fully available" in caplog.text


def test_create_extraction_provider_ollama() -> None:
    settings = Settings(_env_file=None, extraction_provider="ollama")

    with patch.object(OllamaExtractionProvider, "is_available", return_value=True):
        provider = create_extraction_provider(settings)

    assert isinstance(provider, OllamaExtractionProvider)
    assert provider.provider_name == "ollama"
