"""Relational model for documents and the records derived from them.

Ownership:
- A Document is the provenance root of at most one Invoice or BankStatement.
- An Invoice owns its InvoiceItems, a BankStatement owns its BankTransactions.
- A BankTransaction references (does not own) the Invoice it settles.
"""

import datetime as dt
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from services.extraction.schema import ITEM_DECIMAL_PLACES
from services.storage.database import Base

MONEY = Numeric(14, 2)
# Line items are stored as extracted: sub-cent prices and fractional quantities
ITEM_VALUE = Numeric(20, ITEM_DECIMAL_PLACES)

DOCUMENT_TYPES = ("invoice", "bank_statement")
PROCESSING_STATUSES = ("pending", "processing", "processed", "error")
INVOICE_STATUSES = ("unpaid", "paid", "overdue")
TRANSACTION_TYPES = ("debit", "credit")


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "document_type IN ('invoice', 'bank_statement')", name="ck_documents_type"
        ),
        CheckConstraint(
            "processing_status IN ('pending', 'processing', 'processed', 'error')",
            name="ck_documents_status",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    document_type: Mapped[str] = mapped_column(String(20), nullable=False)
    original_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    invoice: Mapped["Invoice | None"] = relationship(back_populates="document")
    bank_statement: Mapped["BankStatement | None"] = relationship(back_populates="document")


class Client(Base):
    __tablename__ = "clients"
    __table_args__ = (UniqueConstraint("name", name="uq_clients_name"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    invoices: Mapped[list["Invoice"]] = relationship(back_populates="client")


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        CheckConstraint("total_amount IS NULL OR total_amount >= 0", name="ck_invoices_total"),
        Index("ix_invoices_client_status", "client_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    document_id: Mapped[int | None] = mapped_column(
        ForeignKey("documents.id"), unique=True, nullable=True
    )
    client_id: Mapped[int | None] = mapped_column(ForeignKey("clients.id"), nullable=True)
    invoice_number: Mapped[str] = mapped_column(String(100), nullable=False)
    issue_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    due_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    total_amount: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    tax_amount: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    currency: Mapped[str] = mapped_column(String(10), default="USD")
    status: Mapped[str] = mapped_column(String(20), default="unpaid")
    payment_status: Mapped[str | None] = mapped_column(String(20), default="unpaid")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    extracted_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSON, nullable=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    document: Mapped["Document | None"] = relationship(back_populates="invoice")
    client: Mapped["Client | None"] = relationship(back_populates="invoices")
    items: Mapped[list["InvoiceItem"]] = relationship(
        back_populates="invoice", order_by="InvoiceItem.position"
    )


class InvoiceItem(Base):
    __tablename__ = "invoice_items"
    __table_args__ = (
        CheckConstraint(
            "quantity >= 0 AND unit_price >= 0 AND total_price >= 0",
            name="ck_invoice_items_non_negative",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(ITEM_VALUE, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(ITEM_VALUE, nullable=False)
    total_price: Mapped[Decimal] = mapped_column(ITEM_VALUE, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    invoice: Mapped["Invoice"] = relationship(back_populates="items")


class BankStatement(Base):
    __tablename__ = "bank_statements"

    id: Mapped[int] = mapped_column(primary_key=True)
    document_id: Mapped[int | None] = mapped_column(
        ForeignKey("documents.id"), unique=True, nullable=True
    )
    statement_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    account_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    bank_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    starting_balance: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    ending_balance: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    currency: Mapped[str] = mapped_column(String(10), default="USD")
    extracted_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSON, nullable=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    document: Mapped["Document | None"] = relationship(back_populates="bank_statement")
    transactions: Mapped[list["BankTransaction"]] = relationship(
        back_populates="bank_statement", order_by="BankTransaction.id"
    )


class BankTransaction(Base):
    __tablename__ = "bank_transactions"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_bank_transactions_amount"),
        CheckConstraint("type IN ('debit', 'credit')", name="ck_bank_transactions_type"),
        # reconciled iff linked to an invoice
        CheckConstraint(
            "(reconciled AND reconciled_with_invoice_id IS NOT NULL) OR "
            "(NOT reconciled AND reconciled_with_invoice_id IS NULL)",
            name="ck_bank_transactions_reconciled_link",
        ),
        Index("ix_bank_transactions_reconciled_date", "reconciled", "date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    bank_statement_id: Mapped[int] = mapped_column(
        ForeignKey("bank_statements.id"), nullable=False, index=True
    )
    date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    type: Mapped[str] = mapped_column(String(10), nullable=False)
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sender_receiver: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reconciled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reconciled_with_invoice_id: Mapped[int | None] = mapped_column(
        ForeignKey("invoices.id"), nullable=True, index=True
    )
    extracted_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSON, nullable=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    bank_statement: Mapped["BankStatement"] = relationship(back_populates="transactions")
    reconciled_invoice: Mapped["Invoice | None"] = relationship()
