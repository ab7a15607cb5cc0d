"""Shared fixtures: an in-memory database and a scripted extraction provider."""

import json
import time
from collections.abc import Callable, Generator
from typing import Any

import pytest

from services.extraction.base import ExtractionProvider
from services.extraction.service import ExtractionService
from services.ingestion.pipeline import IngestionPipeline
from services.shared.config import Settings
from services.storage.database import Database

ACME_INVOICE = {
    "clientName": "Acme Corp",
    "invoiceNumber": "INV-001",
    "issueDate": "2024-01-15",
    "dueDate": "2024-02-15",
    "totalAmount": "1200.00",
    "taxAmount": "200.00",
    "currency": "usd",
    "items": [
        {
            "description": "Consulting",
            "quantity": "10",
            "unitPrice": "100.00",
            "totalPrice": "1000.00",
        }
    ],
}

FIRST_BANK_STATEMENT = {
    "bankName": "First Bank",
    "accountNumber": "12-3456",
    "statementDate": "2024-01-31",
    "startingBalance": "5000.00",
    "endingBalance": "6150.00",
    "currency": "USD",
    "transactions": [
        {
            "date": "2024-01-20",
            "description": "Payment from Acme Corp",
            "amount": "1200.00",
            "type": "credit",
            "reference": "INV-001",
            "senderReceiver": "Acme Corp",
        },
        {
            "date": "2024-01-22",
            "description": "Office rent",
            "amount": "-50.00",
            "type": "DEBIT",
        },
    ],
}


class ScriptedProvider(ExtractionProvider):
    """Answers extraction requests from canned oracle responses."""

    def __init__(
        self,
        settings: Settings,
        responses: dict[str, str] | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        super().__init__(settings)
        self.responses = responses or {}
        self.error = error
        self.delay = delay
        self.calls: list[tuple[str, str]] = []

    @property
    def provider_name(self) -> str:
        return "scripted"

    def is_available(self) -> bool:
        return True

    def _complete(self, kind: str, document_text: str) -> str:
        self.calls.append((kind, document_text))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.responses[kind]


@pytest.fixture
def settings() -> Settings:
    """Settings pointing at an in-memory database."""
    return Settings(database_url="sqlite://", extraction_timeout_seconds=5)


@pytest.fixture
def database() -> Generator[Database, None, None]:
    """Fresh in-memory SQLite database with the full schema."""
    db = Database("sqlite://")
    db.create_tables()
    yield db
    db.dispose()


@pytest.fixture
def acme_invoice() -> dict[str, Any]:
    return json.loads(json.dumps(ACME_INVOICE))


@pytest.fixture
def bank_statement() -> dict[str, Any]:
    return json.loads(json.dumps(FIRST_BANK_STATEMENT))


@pytest.fixture
def make_provider(settings: Settings) -> Callable[..., ScriptedProvider]:
    """Factory for scripted providers; payload dicts are sent as JSON text."""

    def _make(
        invoice: dict[str, Any] | str | None = None,
        statement: dict[str, Any] | str | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> ScriptedProvider:
        responses = {}
        for kind, payload in (("invoice", invoice), ("bank_statement", statement)):
            if payload is not None:
                responses[kind] = payload if isinstance(payload, str) else json.dumps(payload)
        return ScriptedProvider(settings, responses=responses, error=error, delay=delay)

    return _make


@pytest.fixture
def provider(
    make_provider: Callable[..., ScriptedProvider],
    acme_invoice: dict[str, Any],
    bank_statement: dict[str, Any],
) -> ScriptedProvider:
    return make_provider(invoice=acme_invoice, statement=bank_statement)


@pytest.fixture
def pipeline(database: Database, provider: ScriptedProvider) -> IngestionPipeline:
    return IngestionPipeline(database, ExtractionService(provider, timeout_seconds=5))
