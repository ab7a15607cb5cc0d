"""Unit tests for the timeout-bounded extraction service.

Tests cover:
- Successful extraction returns typed data
- Provider failures surface as ExtractionError
- Slow providers are cut off by the timeout
"""

from collections.abc import Callable
from decimal import Decimal
from typing import Any

import pytest

from services.extraction.schema import BankStatementExtraction, InvoiceExtraction
from services.extraction.service import ExtractionService
from services.shared.config import Settings
from services.shared.errors import ExtractionError


@pytest.mark.asyncio
async def test_extract_invoice(make_provider: Callable[..., Any], acme_invoice: dict) -> None:
    service = ExtractionService(make_provider(invoice=acme_invoice), timeout_seconds=5)

    data = await service.extract("invoice", "INVOICE INV-001")

    assert isinstance(data, InvoiceExtraction)
    assert data.total_amount == Decimal("1200.00")


@pytest.mark.asyncio
async def test_extract_bank_statement(
    make_provider: Callable[..., Any], bank_statement: dict
) -> None:
    service = ExtractionService(make_provider(statement=bank_statement), timeout_seconds=5)

    data = await service.extract("bank_statement", "First Bank statement")

    assert isinstance(data, BankStatementExtraction)
    assert [line.amount for line in data.transactions] == [Decimal("1200.00"), Decimal("50.00")]


@pytest.mark.asyncio
async def test_provider_failure_raises(make_provider: Callable[..., Any]) -> None:
    """Should carry the provider's error message."""
    service = ExtractionService(make_provider(error=RuntimeError("quota exceeded")), 5)

    with pytest.raises(ExtractionError, match="Extraction failed: quota exceeded"):
        await service.extract("invoice", "INVOICE")


@pytest.mark.asyncio
async def test_malformed_output_raises(make_provider: Callable[..., Any]) -> None:
    service = ExtractionService(make_provider(invoice="<html>oops</html>"), 5)

    with pytest.raises(ExtractionError, match="JSON parsing failed"):
        await service.extract("invoice", "INVOICE")


@pytest.mark.asyncio
async def test_timeout_raises(make_provider: Callable[..., Any], acme_invoice: dict) -> None:
    """Should give up on a provider that does not answer in time."""
    service = ExtractionService(make_provider(invoice=acme_invoice, delay=0.5), 0.05)

    with pytest.raises(ExtractionError, match="timed out after 0.05s"):
        await service.extract("invoice", "INVOICE")


def test_from_settings_uses_configured_timeout() -> None:
    settings = Settings(_env_file=None, extraction_timeout_seconds=42)

    service = ExtractionService.from_settings(settings)

    assert service.timeout_seconds == 42
    assert service.provider.provider_name == "openai"
