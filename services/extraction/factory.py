"""Selection of the extraction oracle backend.

Both document kinds (invoices and bank statements) go through the same
provider; the provider picks the prompt and response model per kind. Which
backend answers is a deployment choice made with APP_EXTRACTION_PROVIDER:

- openai: hosted chat completions, needs OPENAI_API_KEY
- ollama: self-hosted model behind APP_OLLAMA_BASE_URL

Additional backends can be registered at runtime, e.g. from tests.
"""

import logging

from services.extraction.base import ExtractionProvider
from services.extraction.ollama_provider import OllamaExtractionProvider
from services.extraction.openai_provider import OpenAIExtractionProvider
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Maps APP_EXTRACTION_PROVIDER values to provider classes."""

    _providers: dict[str, type[ExtractionProvider]] = {
        "openai": OpenAIExtractionProvider,
        "ollama": OllamaExtractionProvider,
    }

    @classmethod
    def register(cls, name: str, provider_class: type[ExtractionProvider]) -> None:
        cls._providers[name] = provider_class
        logger.info(f"Registered extraction provider: {name}")

    @classmethod
    def get_provider_class(cls, name: str) -> type[ExtractionProvider]:
        """Look up the backend for a configured provider name.

        Raises:
            ValueError: If no backend is registered under that name
        """
        try:
            return cls._providers[name]
        except KeyError:
            available = ", ".join(cls._providers)
            raise ValueError(
                f"Unknown extraction provider: '{name}'. Available providers: {available}"
            ) from None

    @classmethod
    def list_providers(cls) -> list[str]:
        return list(cls._providers)


def create_extraction_provider(settings: Settings) -> ExtractionProvider:
    """Build the extraction backend the service will send documents to.

    An unavailable backend (missing API key, unreachable Ollama server) is
    still returned: ingestion then records the failure on each document
    instead of the API refusing to start.

    Raises:
        ValueError: If settings.extraction_provider names no registered backend
    """
    provider = ProviderRegistry.get_provider_class(settings.extraction_provider)(settings)

    if not provider.is_available():
        logger.warning(
            f"Extraction provider '{settings.extraction_provider}' is not fully available; "
            f"invoice and bank statement documents will fail until it is configured"
        )

    logger.info(f"Created extraction provider: {settings.extraction_provider}")
    return provider
