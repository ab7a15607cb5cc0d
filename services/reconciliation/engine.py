"""Reconciliation engine: match bank transactions to the invoices they pay.

Suggestions are a pure amount-proximity filter. Committing a match updates
the transaction and the invoice in one database transaction, so nobody can
observe a reconciled transaction next to an unpaid invoice or the reverse.
"""

import logging
from collections.abc import Iterable, Sequence
from decimal import Decimal
from typing import Protocol, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from services.shared import metrics
from services.shared.errors import (
    InvoiceAlreadyPaidError,
    NotFoundError,
    PersistenceError,
    ProcessingError,
    ValidationError,
)
from services.storage.database import Database
from services.storage.models import BankTransaction, Invoice
from services.storage.repository import DomainRepository

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = Decimal("0.01")


class TransactionLike(Protocol):
    amount: Decimal


class InvoiceLike(Protocol):
    id: int
    total_amount: Decimal | None
    payment_status: str | None


InvoiceT = TypeVar("InvoiceT", bound=InvoiceLike)


def _as_decimal(value: Decimal | float | int) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def amounts_match(
    transaction_amount: Decimal | float,
    invoice_amount: Decimal | float | None,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> bool:
    """True if the amounts differ by strictly less than `tolerance` of the invoice amount.

    An invoice amount of zero or None never matches.
    """
    if invoice_amount is None:
        return False
    invoice_total = _as_decimal(invoice_amount)
    if invoice_total == 0:
        return False
    difference = abs(_as_decimal(transaction_amount) - invoice_total)
    return difference / abs(invoice_total) < tolerance


def suggest_matches(
    transaction: TransactionLike,
    candidate_invoices: Iterable[InvoiceT],
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> list[InvoiceT]:
    """Invoices that could be settled by `transaction`, ordered by id.

    Keeps candidates whose payment status is unset or 'unpaid' and whose
    total is within `tolerance` (relative to the invoice total) of the
    transaction amount. Has no side effects.
    """
    suggested = [
        invoice
        for invoice in candidate_invoices
        if invoice.payment_status in (None, "unpaid")
        and amounts_match(transaction.amount, invoice.total_amount, tolerance)
    ]
    return sorted(suggested, key=lambda invoice: invoice.id)


class ReconciliationEngine:
    """Lists open transactions, proposes invoices and commits matches."""

    def __init__(self, database: Database, tolerance: Decimal = DEFAULT_TOLERANCE) -> None:
        self.database = database
        self.tolerance = tolerance

    def list_unreconciled(
        self, limit: int | None = None, offset: int = 0
    ) -> Sequence[BankTransaction]:
        """Transactions not yet matched, newest first."""
        if limit is not None and limit < 1:
            raise ValidationError("limit must be positive")
        if offset < 0:
            raise ValidationError("offset must not be negative")
        with self.database.session_scope() as session:
            return DomainRepository(session).list_unreconciled_transactions(limit, offset)

    def suggestions_for(self, transaction_id: int) -> list[Invoice]:
        """Suggested invoices for one stored transaction.

        Raises:
            NotFoundError: If the transaction does not exist
        """
        with self.database.session_scope() as session:
            repository = DomainRepository(session)
            transaction = repository.get_transaction(transaction_id)
            if transaction is None:
                raise NotFoundError("Bank transaction", transaction_id)
            return suggest_matches(transaction, repository.list_unpaid_invoices(), self.tolerance)

    def reconcile(self, transaction_id: int, invoice_id: int) -> BankTransaction:
        """Mark a transaction as settling an invoice and the invoice as paid.

        Re-running with the same pair is a no-op. Pointing an already
        reconciled transaction at a different invoice re-matches it: the
        previous invoice goes back to 'unpaid' unless another transaction
        still settles it.

        Raises:
            ValidationError: If either id is missing
            NotFoundError: If the transaction or invoice does not exist
            InvoiceAlreadyPaidError: If the invoice is already paid
            PersistenceError: If the database write fails (nothing is changed)
        """
        if not transaction_id or not invoice_id:
            raise ValidationError("transaction_id and invoice_id are required")

        try:
            with self.database.session_scope() as session:
                transaction, outcome = self._apply_match(
                    DomainRepository(session), transaction_id, invoice_id
                )
        except ProcessingError:
            metrics.reconciliations_total.labels(outcome="rejected").inc()
            raise
        except SQLAlchemyError as e:
            metrics.reconciliations_total.labels(outcome="failed").inc()
            logger.error(f"Reconciling transaction {transaction_id} failed: {e}")
            raise PersistenceError(f"Failed to reconcile transaction {transaction_id}") from e

        metrics.reconciliations_total.labels(outcome=outcome).inc()
        if outcome != "noop":
            logger.info(f"Transaction {transaction_id} reconciled with invoice {invoice_id}")
        return transaction

    @staticmethod
    def _apply_match(
        repository: DomainRepository, transaction_id: int, invoice_id: int
    ) -> tuple[BankTransaction, str]:
        # Lock order is always transaction first, then invoice
        transaction = repository.get_transaction(transaction_id, for_update=True)
        if transaction is None:
            raise NotFoundError("Bank transaction", transaction_id)
        invoice = repository.get_invoice(invoice_id, for_update=True)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)

        if transaction.reconciled and transaction.reconciled_with_invoice_id == invoice_id:
            return transaction, "noop"
        if invoice.status == "paid" or invoice.payment_status == "paid":
            raise InvoiceAlreadyPaidError(invoice_id)

        previous_invoice_id = transaction.reconciled_with_invoice_id
        transaction.reconciled = True
        transaction.reconciled_with_invoice_id = invoice_id
        repository.set_invoice_payment_state(invoice, "paid")

        if previous_invoice_id is None:
            return transaction, "matched"

        if repository.count_transactions_for_invoice(previous_invoice_id, transaction.id) == 0:
            previous = repository.get_invoice(previous_invoice_id, for_update=True)
            if previous is not None:
                repository.set_invoice_payment_state(previous, "unpaid")
                logger.info(f"Invoice {previous_invoice_id} released back to unpaid")
        return transaction, "rematched"
