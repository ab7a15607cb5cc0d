"""Ollama-based extraction provider for self-hosted LLM inference.

Uses a local Ollama server for structured data extraction from document
text, so financial documents never leave the premises.

Requires Ollama server running on localhost:11434 (configurable).
See: https://ollama.ai/
"""

import logging

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.extraction.base import ExtractionProvider
from services.extraction.prompts import SYSTEM_PROMPTS, build_extraction_prompt
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class OllamaExtractionProvider(ExtractionProvider):
    """Ollama-based extraction provider for self-hosted LLM inference.

    Supports models like Qwen2.5, Llama3, Mistral.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize Ollama extraction provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._base_url = settings.ollama_base_url
        self._model = settings.ollama_model
        self._client = httpx.Client(timeout=settings.extraction_timeout_seconds)

    @property
    def provider_name(self) -> str:
        return "ollama"

    def is_available(self) -> bool:
        """Check if Ollama server is running and model is available.

        Returns:
            True if Ollama server responds and model is loaded
        """
        try:
            response = self._client.get(f"{self._base_url}/api/tags")
            if response.status_code != 200:
                return False
            models = response.json().get("models", [])
            model_names = [m.get("name", "").split(":")[0] for m in models]
            return self._model.split(":")[0] in model_names
        except httpx.HTTPError:
            return False

    def _complete(self, kind: str, document_text: str) -> str:
        return self._call_ollama_with_retry(kind, build_extraction_prompt(kind, document_text))

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential_jitter(initial=1, max=30),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _call_ollama_with_retry(self, kind: str, prompt: str) -> str:
        """Call Ollama API with retry logic for transient errors.

        Args:
            kind: Document kind, selects the system prompt
            prompt: Extraction prompt for the LLM

        Returns:
            Raw response text from Ollama

        Raises:
            httpx.HTTPError: After all retry attempts exhausted
        """
        response = self._client.post(
            f"{self._base_url}/api/generate",
            json={
                "model": self._model,
                "system": SYSTEM_PROMPTS[kind],
                "prompt": prompt,
                "format": "json",
                "stream": False,
                "options": {
                    "temperature": 0,  # Deterministic output
                    "num_predict": 4096,  # Statements can carry many transactions
                },
            },
        )
        response.raise_for_status()
        result: str = response.json().get("response", "")
        return result
