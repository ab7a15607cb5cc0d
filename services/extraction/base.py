"""Abstract base class for extraction providers.

Enables switching between different extraction providers (OpenAI, Ollama)
while maintaining consistent interface and type safety.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

import json
import re
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from services.extraction.schema import (
    DOCUMENT_KINDS,
    EXTRACTION_MODELS,
    BankStatementExtraction,
    InvoiceExtraction,
)
from services.shared.config import Settings


class ExtractionResult(BaseModel):
    """Result of extraction operation.

    Attributes:
        kind: Document kind the extraction was requested for
        data: Extracted invoice or bank statement data, None if extraction failed
        success: Whether operation succeeded
        error: Error message if operation failed
        provider: Name of provider that performed extraction (e.g., 'openai', 'ollama')
    """

    kind: str
    data: InvoiceExtraction | BankStatementExtraction | None
    success: bool
    error: str | None = None
    provider: str


class ExtractionProvider(ABC):
    """Abstract base class for document extraction providers.

    Subclasses only talk to their backend (_complete); prompt building,
    JSON parsing and schema validation are shared here so every provider
    honours the same contract.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    def extract(self, kind: str, document_text: str) -> ExtractionResult:
        """Extract structured data from raw document text.

        Never raises: every failure is reported through ExtractionResult.

        Args:
            kind: 'invoice' or 'bank_statement'
            document_text: Raw text of the document

        Returns:
            ExtractionResult with structured data or error
        """
        if kind not in DOCUMENT_KINDS:
            return self._failure(kind, f"Unsupported document kind: {kind}")

        if not document_text or not document_text.strip():
            return self._failure(kind, "Empty document text provided")

        unavailable = self.unavailable_reason()
        if unavailable is not None:
            return self._failure(kind, unavailable)

        try:
            response_text = self._complete(kind, document_text)
            payload = self.parse_json_response(response_text)
            data = EXTRACTION_MODELS[kind].model_validate(payload)
        except json.JSONDecodeError as e:
            return self._failure(kind, f"JSON parsing failed: {e}")
        except PydanticValidationError as e:
            return self._failure(
                kind, f"Response does not match the {kind} schema: {e.error_count()} error(s)"
            )
        except Exception as e:
            return self._failure(kind, f"Extraction failed: {e}")

        return ExtractionResult(kind=kind, data=data, success=True, provider=self.provider_name)

    def unavailable_reason(self) -> str | None:
        """Explain why the provider cannot run right now, None if it can."""
        return None

    @abstractmethod
    def _complete(self, kind: str, document_text: str) -> str:
        """Send the extraction request and return the raw model output."""

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is available/configured.

        Returns:
            True if provider can be used, False otherwise
        """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get provider name for logging/metrics.

        Returns:
            Provider identifier (e.g., 'openai', 'ollama')
        """

    @staticmethod
    def parse_json_response(response_text: str | None) -> dict[str, Any]:
        """Extract and parse a JSON object from LLM output.

        Handles common LLM quirks like markdown code blocks and leading prose.

        Raises:
            json.JSONDecodeError: If no valid JSON object found
        """
        if response_text is None:
            raise json.JSONDecodeError("Empty response", "", 0)

        json_match = re.search(r"```(?:json)?\s*([\s\S]*?)```", response_text)
        if json_match:
            candidate = json_match.group(1).strip()
        else:
            json_match = re.search(r"\{[\s\S]*\}", response_text)
            candidate = json_match.group(0) if json_match else response_text.strip()

        result = json.loads(candidate)
        if not isinstance(result, dict):
            raise json.JSONDecodeError("Expected a JSON object", candidate, 0)
        return result

    def _failure(self, kind: str, error: str) -> ExtractionResult:
        return ExtractionResult(
            kind=kind, data=None, success=False, error=error, provider=self.provider_name
        )
