"""Domain repository: persistence for documents and their derived records.

The repository works on a caller-supplied SQLAlchemy Session and never
commits on its own; the caller decides the transaction boundary with
Database.session_scope(). This is what lets ingestion write an invoice and
all of its items, or reconciliation update a transaction and an invoice, as
one unit.
"""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from services.shared.errors import InvalidStateTransitionError, NotFoundError, ValidationError
from services.storage.models import (
    DOCUMENT_TYPES,
    BankStatement,
    BankTransaction,
    Client,
    Document,
    Invoice,
    InvoiceItem,
)

logger = logging.getLogger(__name__)

# Forward-only document lifecycle; "pending -> error" covers dispatch failures
# that happen before a worker ever picks the document up.
DOCUMENT_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"processing", "error"}),
    "processing": frozenset({"processed", "error"}),
    "processed": frozenset(),
    "error": frozenset(),
}

INVOICE_UPDATABLE_FIELDS = frozenset(
    {
        "client_id",
        "invoice_number",
        "issue_date",
        "due_date",
        "total_amount",
        "tax_amount",
        "currency",
        "status",
        "payment_status",
        "notes",
        "extracted_metadata",
    }
)
CLIENT_UPDATABLE_FIELDS = frozenset({"name", "email", "phone", "address"})


class InvoiceFilters(BaseModel):
    """Optional filters for invoice listings."""

    client_id: int | None = None
    status: str | None = None
    start_date: date | None = None
    end_date: date | None = None


@dataclass
class ClientTotals:
    """Invoice count and billed total for one client."""

    client: Client
    invoice_count: int
    total_amount: Decimal


class DomainRepository:
    """Data access for documents, clients, invoices and bank records."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # Documents

    def create_document(
        self, file_name: str, document_type: str, original_text: str | None
    ) -> Document:
        if document_type not in DOCUMENT_TYPES:
            raise ValidationError(
                f"Invalid document type '{document_type}'. "
                f"Must be one of: {', '.join(DOCUMENT_TYPES)}"
            )
        document = Document(
            file_name=file_name,
            document_type=document_type,
            original_text=original_text,
            processing_status="pending",
        )
        self.session.add(document)
        self.session.flush()
        return document

    def get_document(self, document_id: int) -> Document | None:
        return self.session.get(Document, document_id)

    def list_documents(self, limit: int = 10) -> Sequence[Document]:
        stmt = (
            select(Document)
            .order_by(Document.created_at.desc(), Document.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def transition_document(
        self, document_id: int, target: str, error: str | None = None
    ) -> Document:
        """Move a document forward in its lifecycle.

        The update is conditional on the current status, so two concurrent
        callers cannot both move a document out of the same state.

        Raises:
            NotFoundError: If the document does not exist
            InvalidStateTransitionError: If the move is not a forward step
        """
        sources = [state for state, targets in DOCUMENT_TRANSITIONS.items() if target in targets]
        result = self.session.execute(
            update(Document)
            .where(Document.id == document_id, Document.processing_status.in_(sources))
            .values(
                processing_status=target,
                processing_error=error,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        document = self.session.get(Document, document_id, populate_existing=True)
        if document is None:
            raise NotFoundError("Document", document_id)
        if result.rowcount == 0:
            raise InvalidStateTransitionError(document_id, document.processing_status, target)
        return document

    # Clients

    def create_client(
        self,
        name: str,
        email: str | None = None,
        phone: str | None = None,
        address: str | None = None,
    ) -> Client:
        if not name or not name.strip():
            raise ValidationError("Client name must not be empty")
        client = Client(name=name, email=email, phone=phone, address=address)
        self.session.add(client)
        self.session.flush()
        return client

    def get_client(self, client_id: int) -> Client | None:
        return self.session.get(Client, client_id)

    def get_client_by_name(self, name: str) -> Client | None:
        """Exact, case-sensitive name lookup."""
        return self.session.scalars(select(Client).where(Client.name == name)).first()

    def get_or_create_client(self, name: str) -> tuple[Client, bool]:
        """Resolve a client by exact name, creating it with only the name set.

        Creation runs in a SAVEPOINT. If a concurrent writer inserted the same
        name first, the unique constraint fires and the existing row is read
        back instead.

        Returns:
            Tuple of (client, created)
        """
        existing = self.get_client_by_name(name)
        if existing is not None:
            return existing, False

        try:
            with self.session.begin_nested():
                client = self.create_client(name)
        except IntegrityError:
            logger.info(f"Client '{name}' created concurrently, reusing existing row")
            existing = self.get_client_by_name(name)
            if existing is None:
                raise
            return existing, False
        return client, True

    def list_clients(self) -> Sequence[Client]:
        return self.session.scalars(select(Client).order_by(Client.name)).all()

    def update_client(self, client_id: int, **fields: Any) -> Client:
        client = self.get_client(client_id)
        if client is None:
            raise NotFoundError("Client", client_id)
        unknown = set(fields) - CLIENT_UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown client fields: {', '.join(sorted(unknown))}")
        if "name" in fields and not (fields["name"] or "").strip():
            raise ValidationError("Client name must not be empty")
        for key, value in fields.items():
            setattr(client, key, value)
        self.session.flush()
        return client

    def count_clients(self) -> int:
        return self.session.scalar(select(func.count(Client.id))) or 0

    def top_clients(self, limit: int = 5) -> list[ClientTotals]:
        """Clients ordered by total billed amount, highest first."""
        total = func.coalesce(func.sum(Invoice.total_amount), 0)
        stmt = (
            select(Client, func.count(Invoice.id), total)
            .outerjoin(Invoice, Invoice.client_id == Client.id)
            .group_by(Client.id)
            .order_by(total.desc(), Client.id)
            .limit(limit)
        )
        return [
            ClientTotals(client=client, invoice_count=count, total_amount=Decimal(str(amount)))
            for client, count, amount in self.session.execute(stmt).all()
        ]

    # Invoices

    def create_invoice(self, invoice_number: str, **fields: Any) -> Invoice:
        if not invoice_number:
            raise ValidationError("Invoice number is required")
        total = fields.get("total_amount")
        if total is not None and total < 0:
            raise ValidationError("Invoice total amount must not be negative")
        fields.setdefault("status", "unpaid")
        fields.setdefault("payment_status", fields["status"])
        invoice = Invoice(invoice_number=invoice_number, **fields)
        self.session.add(invoice)
        self.session.flush()
        return invoice

    def get_invoice(self, invoice_id: int, for_update: bool = False) -> Invoice | None:
        if not for_update:
            return self.session.get(Invoice, invoice_id)
        stmt = select(Invoice).where(Invoice.id == invoice_id).with_for_update()
        return self.session.scalars(stmt).first()

    def get_invoice_with_items(self, invoice_id: int) -> Invoice | None:
        stmt = (
            select(Invoice)
            .where(Invoice.id == invoice_id)
            .options(selectinload(Invoice.items), selectinload(Invoice.client))
        )
        return self.session.scalars(stmt).first()

    def list_invoices(self, filters: InvoiceFilters | None = None) -> Sequence[Invoice]:
        stmt = select(Invoice).options(selectinload(Invoice.client))
        if filters is not None:
            if filters.client_id is not None:
                stmt = stmt.where(Invoice.client_id == filters.client_id)
            if filters.status is not None:
                stmt = stmt.where(Invoice.status == filters.status)
            if filters.start_date is not None:
                stmt = stmt.where(Invoice.issue_date >= filters.start_date)
            if filters.end_date is not None:
                stmt = stmt.where(Invoice.issue_date <= filters.end_date)
        stmt = stmt.order_by(Invoice.created_at.desc(), Invoice.id.desc())
        return self.session.scalars(stmt).all()

    def list_unpaid_invoices(self) -> Sequence[Invoice]:
        stmt = (
            select(Invoice)
            .where((Invoice.payment_status.is_(None)) | (Invoice.payment_status == "unpaid"))
            .order_by(Invoice.id)
        )
        return self.session.scalars(stmt).all()

    def recent_invoices(self, limit: int = 5) -> Sequence[Invoice]:
        stmt = (
            select(Invoice)
            .options(selectinload(Invoice.client))
            .order_by(Invoice.created_at.desc(), Invoice.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def update_invoice(self, invoice_id: int, **fields: Any) -> Invoice:
        """Apply a partial update.

        Setting only one of status/payment_status to 'unpaid' or 'paid'
        mirrors it onto the other so the two never drift apart.
        """
        invoice = self.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        unknown = set(fields) - INVOICE_UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown invoice fields: {', '.join(sorted(unknown))}")
        if fields.get("total_amount") is not None and fields["total_amount"] < 0:
            raise ValidationError("Invoice total amount must not be negative")
        for required in ("invoice_number", "currency", "status"):
            if required in fields and not fields[required]:
                raise ValidationError(f"Invoice {required} must not be empty")

        if "status" in fields and "payment_status" not in fields:
            if fields["status"] in ("unpaid", "paid"):
                fields["payment_status"] = fields["status"]
        elif "payment_status" in fields and "status" not in fields:
            if fields["payment_status"] in ("unpaid", "paid"):
                fields["status"] = fields["payment_status"]

        for key, value in fields.items():
            setattr(invoice, key, value)
        self.session.flush()
        return invoice

    def set_invoice_payment_state(self, invoice: Invoice, state: str) -> None:
        invoice.status = state
        invoice.payment_status = state
        self.session.flush()

    def add_invoice_items(
        self, invoice_id: int, items: Iterable[dict[str, Any]]
    ) -> list[InvoiceItem]:
        """Create items in the given order, values stored verbatim."""
        created = [
            InvoiceItem(invoice_id=invoice_id, position=position, **item)
            for position, item in enumerate(items)
        ]
        self.session.add_all(created)
        self.session.flush()
        return created

    def get_invoice_items(self, invoice_id: int) -> Sequence[InvoiceItem]:
        stmt = (
            select(InvoiceItem)
            .where(InvoiceItem.invoice_id == invoice_id)
            .order_by(InvoiceItem.position, InvoiceItem.id)
        )
        return self.session.scalars(stmt).all()

    # Bank statements and transactions

    def create_bank_statement(self, **fields: Any) -> BankStatement:
        statement = BankStatement(**fields)
        self.session.add(statement)
        self.session.flush()
        return statement

    def get_bank_statement(self, statement_id: int) -> BankStatement | None:
        stmt = (
            select(BankStatement)
            .where(BankStatement.id == statement_id)
            .options(selectinload(BankStatement.transactions))
        )
        return self.session.scalars(stmt).first()

    def list_bank_statements(self) -> Sequence[BankStatement]:
        stmt = select(BankStatement).order_by(
            BankStatement.statement_date.desc().nulls_last(), BankStatement.id.desc()
        )
        return self.session.scalars(stmt).all()

    def add_bank_transactions(
        self, bank_statement_id: int, transactions: Iterable[dict[str, Any]]
    ) -> list[BankTransaction]:
        created = [
            BankTransaction(
                bank_statement_id=bank_statement_id,
                reconciled=False,
                reconciled_with_invoice_id=None,
                **transaction,
            )
            for transaction in transactions
        ]
        self.session.add_all(created)
        self.session.flush()
        return created

    def get_bank_transactions(self, bank_statement_id: int) -> Sequence[BankTransaction]:
        stmt = (
            select(BankTransaction)
            .where(BankTransaction.bank_statement_id == bank_statement_id)
            .order_by(BankTransaction.date.desc().nulls_last(), BankTransaction.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get_transaction(
        self, transaction_id: int, for_update: bool = False
    ) -> BankTransaction | None:
        if not for_update:
            return self.session.get(BankTransaction, transaction_id)
        stmt = select(BankTransaction).where(BankTransaction.id == transaction_id).with_for_update()
        return self.session.scalars(stmt).first()

    def list_unreconciled_transactions(
        self, limit: int | None = None, offset: int = 0
    ) -> Sequence[BankTransaction]:
        """Unreconciled transactions, newest first, ties broken by id descending."""
        stmt = (
            select(BankTransaction)
            .where(BankTransaction.reconciled.is_(False))
            .order_by(BankTransaction.date.desc().nulls_last(), BankTransaction.id.desc())
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return self.session.scalars(stmt).all()

    def count_transactions_for_invoice(self, invoice_id: int, exclude_id: int | None = None) -> int:
        stmt = select(func.count(BankTransaction.id)).where(
            BankTransaction.reconciled_with_invoice_id == invoice_id
        )
        if exclude_id is not None:
            stmt = stmt.where(BankTransaction.id != exclude_id)
        return self.session.scalar(stmt) or 0

    # Aggregates

    def total_revenue(self) -> Decimal:
        total = self.session.scalar(select(func.coalesce(func.sum(Invoice.total_amount), 0)))
        return Decimal(str(total))

    def unpaid_invoices_total(self) -> Decimal:
        total = self.session.scalar(
            select(func.coalesce(func.sum(Invoice.total_amount), 0)).where(
                Invoice.status == "unpaid"
            )
        )
        return Decimal(str(total))

    def reconciliation_percentage(self) -> float:
        total = self.session.scalar(select(func.count(BankTransaction.id))) or 0
        if total == 0:
            return 0.0
        reconciled = (
            self.session.scalar(
                select(func.count(BankTransaction.id)).where(BankTransaction.reconciled.is_(True))
            )
            or 0
        )
        return reconciled / total * 100
