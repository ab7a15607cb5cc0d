"""Unit tests for the document ingestion pipeline.

Tests cover:
- Invoice and bank statement documents end to end, with item precision kept
- Extraction failures and cancellation recorded on the document
- All-or-nothing persistence of derived records
- Client dedup across documents
- Single pickup per document
"""

import asyncio
import json
import threading
from collections.abc import Callable
from decimal import Decimal
from typing import Any
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from services.extraction.service import ExtractionService
from services.ingestion.pipeline import IngestionPipeline
from services.shared.errors import InvalidStateTransitionError, NotFoundError, ValidationError
from services.storage.database import Database
from services.storage.models import (
    BankStatement,
    BankTransaction,
    Client,
    Invoice,
    InvoiceItem,
)
from services.storage.repository import DomainRepository

ACME_TEXT = (
    "INVOICE INV-001\nBill to: Acme Corp\nConsulting 10 x 100.00\nTax 200.00\nTotal 1200.00"
)


def _upload(database: Database, kind: str = "invoice", text: str = ACME_TEXT) -> int:
    with database.session_scope() as session:
        return DomainRepository(session).create_document(f"{kind}.txt", kind, text).id


def _count(database: Database, model: type) -> int:
    with database.session_scope() as session:
        return session.scalar(select(func.count()).select_from(model)) or 0


def _status(database: Database, document_id: int) -> tuple[str, str | None]:
    with database.session_scope() as session:
        document = DomainRepository(session).get_document(document_id)
        return document.processing_status, document.processing_error


class TestInvoiceIngestion:
    """Test the invoice path."""

    @pytest.mark.asyncio
    async def test_acme_invoice_end_to_end(
        self, database: Database, pipeline: IngestionPipeline
    ) -> None:
        document_id = _upload(database)

        outcome = await pipeline.ingest(document_id, "invoice", ACME_TEXT)

        assert outcome.status == "processed"
        assert outcome.error is None
        assert _status(database, document_id) == ("processed", None)

        with database.session_scope() as session:
            invoice = DomainRepository(session).get_invoice_with_items(outcome.invoice_id)
            assert invoice.document_id == document_id
            assert invoice.client.name == "Acme Corp"
            assert invoice.invoice_number == "INV-001"
            assert invoice.total_amount == Decimal("1200.00")
            assert invoice.tax_amount == Decimal("200.00")
            assert invoice.currency == "USD"
            assert invoice.status == "unpaid"
            assert invoice.payment_status == "unpaid"
            assert [item.description for item in invoice.items] == ["Consulting"]
            assert invoice.items[0].quantity == Decimal("10")
            assert invoice.items[0].total_price == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_line_items_stored_verbatim_in_order(
        self,
        database: Database,
        make_provider: Callable[..., Any],
        acme_invoice: dict[str, Any],
    ) -> None:
        """Should not recompute or reorder extracted line items."""
        acme_invoice["items"] = [
            {"description": "Zeta", "quantity": 2, "unitPrice": 10, "totalPrice": 25},
            {"description": "Alpha", "quantity": 0.5, "unitPrice": 99.99, "totalPrice": 50},
            {"description": "Mid", "quantity": 1, "unitPrice": 0, "totalPrice": 0},
        ]
        pipeline = IngestionPipeline(database, ExtractionService(make_provider(acme_invoice), 5))
        document_id = _upload(database)

        outcome = await pipeline.ingest(document_id, "invoice", ACME_TEXT)

        with database.session_scope() as session:
            items = DomainRepository(session).get_invoice_items(outcome.invoice_id)
            stored = [(i.description, i.quantity, i.unit_price, i.total_price) for i in items]

        assert stored == [
            ("Zeta", Decimal("2"), Decimal("10"), Decimal("25")),
            ("Alpha", Decimal("0.5"), Decimal("99.99"), Decimal("50")),
            ("Mid", Decimal("1"), Decimal("0"), Decimal("0")),
        ]

    @pytest.mark.asyncio
    async def test_sub_cent_prices_and_fractional_quantities_kept(
        self,
        database: Database,
        make_provider: Callable[..., Any],
        acme_invoice: dict[str, Any],
    ) -> None:
        acme_invoice["items"] = [
            {"description": "Bolts", "quantity": "1000", "unitPrice": "0.125", "totalPrice": "125"},
            {
                "description": "Support hours",
                "quantity": "0.33333",
                "unitPrice": "90",
                "totalPrice": "29.9997",
            },
        ]
        pipeline = IngestionPipeline(database, ExtractionService(make_provider(acme_invoice), 5))
        document_id = _upload(database)

        outcome = await pipeline.ingest(document_id, "invoice", ACME_TEXT)

        with database.session_scope() as session:
            items = DomainRepository(session).get_invoice_items(outcome.invoice_id)
            stored = [(i.quantity, i.unit_price, i.total_price) for i in items]

        assert stored == [
            (Decimal("1000"), Decimal("0.125"), Decimal("125")),
            (Decimal("0.33333"), Decimal("90"), Decimal("29.9997")),
        ]

    @pytest.mark.asyncio
    async def test_item_values_beyond_storable_precision_rejected(
        self,
        database: Database,
        make_provider: Callable[..., Any],
        acme_invoice: dict[str, Any],
    ) -> None:
        """Should fail the document rather than round a line item on write."""
        acme_invoice["items"][0]["unitPrice"] = "0.1234567"
        pipeline = IngestionPipeline(database, ExtractionService(make_provider(acme_invoice), 5))
        document_id = _upload(database)

        outcome = await pipeline.ingest(document_id, "invoice", ACME_TEXT)

        assert outcome.status == "error"
        assert _status(database, document_id)[0] == "error"
        assert _count(database, InvoiceItem) == 0

    @pytest.mark.asyncio
    async def test_database_work_runs_off_event_loop(
        self, database: Database, pipeline: IngestionPipeline
    ) -> None:
        """Should keep the API event loop free while writing records."""
        loop_thread = threading.get_ident()
        seen: list[int] = []
        original = DomainRepository.transition_document

        def _recording(self: DomainRepository, *args: Any, **kwargs: Any) -> Any:
            seen.append(threading.get_ident())
            return original(self, *args, **kwargs)

        with patch.object(DomainRepository, "transition_document", _recording):
            await pipeline.ingest(_upload(database), "invoice", ACME_TEXT)

        assert len(seen) == 2  # processing, then processed
        assert loop_thread not in seen

    @pytest.mark.asyncio
    async def test_same_client_name_reuses_client(
        self,
        database: Database,
        make_provider: Callable[..., Any],
        acme_invoice: dict[str, Any],
    ) -> None:
        first = _upload(database)
        second = _upload(database)
        pipeline = IngestionPipeline(database, ExtractionService(make_provider(acme_invoice), 5))

        await pipeline.ingest(first, "invoice", ACME_TEXT)
        acme_invoice["invoiceNumber"] = "INV-002"
        pipeline.extraction_service.provider.responses["invoice"] = json.dumps(acme_invoice)
        await pipeline.ingest(second, "invoice", ACME_TEXT)

        assert _count(database, Client) == 1
        assert _count(database, Invoice) == 2


class TestBankStatementIngestion:
    """Test the bank statement path."""

    @pytest.mark.asyncio
    async def test_statement_end_to_end(
        self, database: Database, pipeline: IngestionPipeline
    ) -> None:
        document_id = _upload(database, "bank_statement", "First Bank statement January")

        outcome = await pipeline.ingest(document_id, "bank_statement", "First Bank statement")

        assert outcome.status == "processed"
        with database.session_scope() as session:
            statement = DomainRepository(session).get_bank_statement(outcome.bank_statement_id)
            assert statement.document_id == document_id
            assert statement.bank_name == "First Bank"
            assert statement.ending_balance == Decimal("6150.00")
            lines = sorted(statement.transactions, key=lambda t: t.id)
            assert [(t.amount, t.type) for t in lines] == [
                (Decimal("1200.00"), "credit"),
                (Decimal("50.00"), "debit"),
            ]
            assert all(t.reconciled is False for t in lines)
            assert all(t.reconciled_with_invoice_id is None for t in lines)
            assert lines[0].sender_receiver == "Acme Corp"

        # Statements never create clients or invoices
        assert _count(database, Client) == 0
        assert _count(database, Invoice) == 0


class TestIngestionFailures:
    """Test failure handling."""

    @pytest.mark.asyncio
    async def test_extraction_failure_marks_document_error(
        self, database: Database, make_provider: Callable[..., Any]
    ) -> None:
        pipeline = IngestionPipeline(
            database, ExtractionService(make_provider(error=RuntimeError("model offline")), 5)
        )
        document_id = _upload(database)

        outcome = await pipeline.ingest(document_id, "invoice", ACME_TEXT)

        assert outcome.status == "error"
        assert outcome.invoice_id is None
        status, error = _status(database, document_id)
        assert status == "error"
        assert "model offline" in error
        assert _count(database, Invoice) == 0
        assert _count(database, Client) == 0

    @pytest.mark.asyncio
    async def test_unparseable_output_marks_document_error(
        self, database: Database, make_provider: Callable[..., Any]
    ) -> None:
        pipeline = IngestionPipeline(database, ExtractionService(make_provider("sorry, no"), 5))
        document_id = _upload(database)

        outcome = await pipeline.ingest(document_id, "invoice", ACME_TEXT)

        assert outcome.status == "error"
        assert "JSON parsing failed" in outcome.error
        assert _count(database, Invoice) == 0

    @pytest.mark.asyncio
    async def test_write_failure_leaves_no_orphans(
        self, database: Database, pipeline: IngestionPipeline
    ) -> None:
        """Should roll back client and invoice when storing the items fails."""
        document_id = _upload(database)
        failure = OperationalError("INSERT INTO invoice_items", {}, Exception("disk I/O error"))

        with patch.object(DomainRepository, "add_invoice_items", side_effect=failure):
            outcome = await pipeline.ingest(document_id, "invoice", ACME_TEXT)

        assert outcome.status == "error"
        status, error = _status(database, document_id)
        assert status == "error"
        assert error.startswith("Failed to save records")
        assert _count(database, Client) == 0
        assert _count(database, Invoice) == 0
        assert _count(database, InvoiceItem) == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_document_error(
        self, database: Database, pipeline: IngestionPipeline
    ) -> None:
        document_id = _upload(database)

        with patch.object(IngestionPipeline, "_store_invoice", side_effect=KeyError("client")):
            outcome = await pipeline.ingest(document_id, "invoice", ACME_TEXT)

        assert outcome.status == "error"
        status, error = _status(database, document_id)
        assert status == "error"
        assert error.startswith("Unexpected error")

    @pytest.mark.asyncio
    async def test_cancelled_ingestion_marks_document_error(
        self,
        database: Database,
        make_provider: Callable[..., Any],
        acme_invoice: dict[str, Any],
    ) -> None:
        """Should not leave the document in 'processing' when the run is cancelled."""
        slow = make_provider(acme_invoice, delay=1.0)
        pipeline = IngestionPipeline(database, ExtractionService(slow, 5))
        document_id = _upload(database)

        task = asyncio.create_task(pipeline.ingest(document_id, "invoice", ACME_TEXT))
        await asyncio.sleep(0.2)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert _status(database, document_id) == ("error", "Ingestion cancelled")
        assert _count(database, Invoice) == 0

    @pytest.mark.asyncio
    async def test_statement_write_failure_leaves_no_orphans(
        self, database: Database, pipeline: IngestionPipeline
    ) -> None:
        document_id = _upload(database, "bank_statement", "statement")
        failure = OperationalError("INSERT INTO bank_transactions", {}, Exception("locked"))

        with patch.object(DomainRepository, "add_bank_transactions", side_effect=failure):
            outcome = await pipeline.ingest(document_id, "bank_statement", "statement")

        assert outcome.status == "error"
        assert _count(database, BankStatement) == 0
        assert _count(database, BankTransaction) == 0


class TestIngestionPreconditions:
    """Test caller errors that are raised instead of recorded."""

    @pytest.mark.asyncio
    async def test_unknown_kind(self, database: Database, pipeline: IngestionPipeline) -> None:
        document_id = _upload(database)

        with pytest.raises(ValidationError, match="Invalid document type"):
            await pipeline.ingest(document_id, "receipt", ACME_TEXT)

        assert _status(database, document_id) == ("pending", None)

    @pytest.mark.asyncio
    async def test_blank_text(self, database: Database, pipeline: IngestionPipeline) -> None:
        with pytest.raises(ValidationError, match="must not be empty"):
            await pipeline.ingest(_upload(database), "invoice", "  \n ")

    @pytest.mark.asyncio
    async def test_kind_mismatch(self, database: Database, pipeline: IngestionPipeline) -> None:
        document_id = _upload(database, "bank_statement", "statement")

        with pytest.raises(ValidationError, match="has type .bank_statement., expected .invoice."):
            await pipeline.ingest(document_id, "invoice", "statement")

    @pytest.mark.asyncio
    async def test_unknown_document(self, pipeline: IngestionPipeline) -> None:
        with pytest.raises(NotFoundError):
            await pipeline.ingest(404, "invoice", ACME_TEXT)

    @pytest.mark.asyncio
    async def test_document_processed_only_once(
        self, database: Database, pipeline: IngestionPipeline
    ) -> None:
        """Should refuse to re-run a document that already reached a terminal state."""
        document_id = _upload(database)
        await pipeline.ingest(document_id, "invoice", ACME_TEXT)

        with pytest.raises(InvalidStateTransitionError):
            await pipeline.ingest(document_id, "invoice", ACME_TEXT)

        assert _status(database, document_id) == ("processed", None)
        assert _count(database, Invoice) == 1
