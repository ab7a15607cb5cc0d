"""Document ingestion pipeline.

Turns one uploaded document into structured records:

    pending -> processing -> extract -> persist records -> processed
                                 \\            \\
                                  +-> error     +-> error (records rolled back)

Each run is parameterized only by (document_id, kind, raw_text) and shares
nothing with other runs except the database. Derived records for a document
are written in a single transaction, so a failure halfway through leaves the
document in 'error' with no orphaned invoice, items, statement or
transactions.
"""

import asyncio
import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from services.extraction.schema import (
    DOCUMENT_KINDS,
    BankStatementExtraction,
    InvoiceExtraction,
)
from services.extraction.service import ExtractionService
from services.shared import metrics
from services.shared.errors import (
    ExtractionError,
    PersistenceError,
    ProcessingError,
    ValidationError,
)
from services.storage.database import Database
from services.storage.repository import DomainRepository

logger = logging.getLogger(__name__)


@dataclass
class IngestionOutcome:
    """Terminal state of one pipeline run."""

    document_id: int
    status: str
    invoice_id: int | None = None
    bank_statement_id: int | None = None
    error: str | None = None


class IngestionPipeline:
    """Runs the extract-and-persist workflow for one document at a time."""

    def __init__(self, database: Database, extraction_service: ExtractionService) -> None:
        self.database = database
        self.extraction_service = extraction_service

    async def ingest(self, document_id: int, kind: str, raw_text: str) -> IngestionOutcome:
        """Process one pending document to a terminal status.

        Invalid input and unknown or already picked-up documents are caller
        errors and raise. Once the document is 'processing', every failure is
        recorded on the document and reported through the returned outcome.
        A cancelled run is recorded as 'error' before the cancellation
        propagates.

        Database work runs in worker threads so the event loop stays free
        while the API dispatches ingestion in-process.

        Raises:
            ValidationError: If kind is unsupported, text is blank, or the
                document is no longer pending
            NotFoundError: If the document does not exist
        """
        if kind not in DOCUMENT_KINDS:
            raise ValidationError(
                f"Invalid document type '{kind}'. Must be one of: {', '.join(DOCUMENT_KINDS)}"
            )
        if not raw_text or not raw_text.strip():
            raise ValidationError("Document text must not be empty")

        await asyncio.to_thread(self._claim, document_id, kind)
        logger.info(f"Document {document_id} ({kind}) is processing")

        try:
            extracted = await self.extraction_service.extract(kind, raw_text)
            outcome = await asyncio.to_thread(self._store, document_id, extracted)
        except asyncio.CancelledError:
            self._record_cancellation(document_id, kind)
            raise
        except SQLAlchemyError as e:
            error = PersistenceError(f"Failed to save records: {e}")
            return await asyncio.to_thread(self._fail, document_id, kind, error)
        except ProcessingError as e:
            return await asyncio.to_thread(self._fail, document_id, kind, e)
        except Exception as e:
            logger.exception(f"Document {document_id} failed with unexpected error: {e}")
            error = ProcessingError(f"Unexpected error: {e}")
            return await asyncio.to_thread(self._fail, document_id, kind, error)

        metrics.documents_ingested_total.labels(document_type=kind, status="processed").inc()
        logger.info(f"Document {document_id} processed")
        return outcome

    def _claim(self, document_id: int, kind: str) -> None:
        with self.database.session_scope() as session:
            repository = DomainRepository(session)
            document = repository.get_document(document_id)
            if document is not None and document.document_type != kind:
                raise ValidationError(
                    f"Document {document_id} has type '{document.document_type}', expected '{kind}'"
                )
            repository.transition_document(document_id, "processing")

    def _store(
        self, document_id: int, extracted: InvoiceExtraction | BankStatementExtraction
    ) -> IngestionOutcome:
        with self.database.session_scope() as session:
            return self._persist(session, document_id, extracted)

    def _record_cancellation(self, document_id: int, kind: str) -> None:
        # Runs inline: the task is unwinding and must not await again
        try:
            self._fail(document_id, kind, ProcessingError("Ingestion cancelled"))
        except (ProcessingError, SQLAlchemyError) as e:
            logger.error(f"Could not record cancellation of document {document_id}: {e}")

    def _persist(
        self,
        session: Session,
        document_id: int,
        extracted: InvoiceExtraction | BankStatementExtraction,
    ) -> IngestionOutcome:
        repository = DomainRepository(session)
        if isinstance(extracted, InvoiceExtraction):
            invoice_id = self._store_invoice(repository, document_id, extracted)
            outcome = IngestionOutcome(document_id, "processed", invoice_id=invoice_id)
        else:
            statement_id = self._store_bank_statement(repository, document_id, extracted)
            outcome = IngestionOutcome(document_id, "processed", bank_statement_id=statement_id)
        repository.transition_document(document_id, "processed")
        return outcome

    @staticmethod
    def _store_invoice(
        repository: DomainRepository, document_id: int, extracted: InvoiceExtraction
    ) -> int:
        client, created = repository.get_or_create_client(extracted.client_name)
        if created:
            logger.info(f"Created client '{client.name}' ({client.id}) from document {document_id}")

        invoice = repository.create_invoice(
            invoice_number=extracted.invoice_number,
            document_id=document_id,
            client_id=client.id,
            issue_date=extracted.issue_date,
            due_date=extracted.due_date,
            total_amount=extracted.total_amount,
            tax_amount=extracted.tax_amount,
            currency=extracted.currency,
            status="unpaid",
            payment_status="unpaid",
            extracted_metadata=extracted.metadata,
        )
        repository.add_invoice_items(
            invoice.id,
            (
                {
                    "description": item.description,
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                    "total_price": item.total_price,
                }
                for item in extracted.items
            ),
        )
        logger.info(
            f"Invoice {invoice.invoice_number} ({invoice.id}) stored with "
            f"{len(extracted.items)} item(s)"
        )
        return invoice.id

    @staticmethod
    def _store_bank_statement(
        repository: DomainRepository, document_id: int, extracted: BankStatementExtraction
    ) -> int:
        statement = repository.create_bank_statement(
            document_id=document_id,
            statement_date=extracted.statement_date,
            account_number=extracted.account_number,
            bank_name=extracted.bank_name,
            starting_balance=extracted.starting_balance,
            ending_balance=extracted.ending_balance,
            currency=extracted.currency,
            extracted_metadata=extracted.metadata,
        )
        repository.add_bank_transactions(
            statement.id,
            (
                {
                    "date": line.date,
                    "description": line.description,
                    "amount": line.amount,
                    "type": line.type,
                    "reference": line.reference,
                    "sender_receiver": line.sender_receiver,
                    "extracted_metadata": {},
                }
                for line in extracted.transactions
            ),
        )
        logger.info(
            f"Bank statement {statement.id} stored with "
            f"{len(extracted.transactions)} transaction(s)"
        )
        return statement.id

    def _fail(self, document_id: int, kind: str, error: ProcessingError) -> IngestionOutcome:
        message = error.message or type(error).__name__
        level = logging.WARNING if isinstance(error, ExtractionError) else logging.ERROR
        logger.log(level, f"Document {document_id} failed: {message}")

        with self.database.session_scope() as session:
            DomainRepository(session).transition_document(document_id, "error", error=message)

        metrics.documents_ingested_total.labels(document_type=kind, status="error").inc()
        return IngestionOutcome(document_id, "error", error=message)
