"""OpenAI-based extraction provider for invoices and bank statements.

Uses OpenAI chat completions in JSON mode for structured data extraction
from raw document text.

Includes retry logic with exponential backoff for transient API errors.

This provider uses cloud-based OpenAI API. For self-hosted inference,
use OllamaExtractionProvider instead.
"""

import logging
import os
from typing import Any

from openai import (
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
    OpenAI,
    RateLimitError,
)
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

TRANSIENT_ERRORS = (APIConnectionError, APITimeoutError, RateLimitError, InternalServerError)


class OpenAIExtractionProvider(ExtractionProvider):
    """OpenAI-based extraction provider.

    Requires OPENAI_API_KEY environment variable. The model is configured
    with APP_OPENAI_MODEL.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize OpenAI extraction provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._client: OpenAI | None = None

    @property
    def provider_name(self) -> str:
        return "openai"

    def is_available(self) -> bool:
        """Check if OpenAI API key is configured.

        Returns:
            True if OPENAI_API_KEY environment variable is set
        """
        return os.getenv("OPENAI_API_KEY") is not None

    def unavailable_reason(self) -> str | None:
        if not self.is_available():
            return "OPENAI_API_KEY environment variable not set"
        return None

    def _get_client(self) -> OpenAI:
        api_key = os.getenv("OPENAI_API_KEY")
        if self._client is None or self._client.api_key != api_key:
            self._client = OpenAI(
                api_key=api_key,
                timeout=self.settings.extraction_timeout_seconds,
                max_retries=0,  # tenacity owns retries
            )
        return self._client

    def _complete(self, kind: str, document_text: str) -> str:
        response = self._call_openai_with_retry(kind, build_extraction_prompt(kind, document_text))
        content: str | None = response.choices[0].message.content
        if not content:
            raise ValueError("No content in API response")
        return content

    @retry(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        wait=wait_exponential_jitter(initial=1, max=30),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _call_openai_with_retry(self, kind: str, prompt: str) -> Any:
        """Call OpenAI API with retry logic for transient errors.

        Uses exponential backoff with jitter to handle rate limits and temporary failures.
        Only connection errors, timeouts, rate limits and 5xx responses are retried;
        authentication and request errors fail on the first attempt.

        Args:
            kind: Document kind, selects the system prompt
            prompt: Extraction prompt for the LLM

        Returns:
            OpenAI API response

        Raises:
            openai.OpenAIError: After all retry attempts are exhausted
        """
        logger.debug(f"Requesting {kind} extraction from {self.settings.openai_model}")
        return self._get_client().chat.completions.create(
            model=self.settings.openai_model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPTS[kind]},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
            temperature=0,  # Deterministic output
        )
