"""Extraction oracle client used by the ingestion pipeline.

Wraps a synchronous ExtractionProvider with the two guarantees the pipeline
relies on: the call is bounded by a timeout, and every failure surfaces as
ExtractionError rather than a provider-specific exception or result object.
"""

import asyncio
import logging
import time

from services.extraction.base import ExtractionProvider, ExtractionResult
from services.extraction.factory import create_extraction_provider
from services.extraction.schema import BankStatementExtraction, InvoiceExtraction
from services.shared import metrics
from services.shared.config import Settings
from services.shared.errors import ExtractionError

logger = logging.getLogger(__name__)


class ExtractionService:
    """Timeout-bounded access to the configured extraction provider."""

    def __init__(self, provider: ExtractionProvider, timeout_seconds: float) -> None:
        self.provider = provider
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExtractionService":
        return cls(create_extraction_provider(settings), settings.extraction_timeout_seconds)

    async def extract(
        self, kind: str, document_text: str
    ) -> InvoiceExtraction | BankStatementExtraction:
        """Run one extraction in a worker thread.

        On timeout the provider thread is abandoned, not interrupted; its
        eventual result is discarded.

        Raises:
            ExtractionError: On provider failure, unusable output or timeout
        """
        provider_name = self.provider.provider_name
        start = time.monotonic()
        try:
            result: ExtractionResult = await asyncio.wait_for(
                asyncio.to_thread(self.provider.extract, kind, document_text),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as e:
            metrics.extraction_requests_total.labels(provider=provider_name, status="timeout").inc()
            raise ExtractionError(
                f"Extraction timed out after {self.timeout_seconds:g}s ({provider_name})"
            ) from e
        finally:
            metrics.extraction_duration_seconds.labels(provider=provider_name).observe(
                time.monotonic() - start
            )

        if not result.success or result.data is None:
            metrics.extraction_requests_total.labels(provider=provider_name, status="failed").inc()
            raise ExtractionError(result.error or "Extraction returned no data")

        metrics.extraction_requests_total.labels(provider=provider_name, status="success").inc()
        logger.debug(f"Extracted {kind} data with {provider_name}")
        return result.data
