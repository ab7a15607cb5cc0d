"""Request and response models for the HTTP API.

Response models read straight from ORM rows (from_attributes); they are
built inside the request's session so relationships load before it closes.
"""

import datetime as dt
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    database: bool


class ErrorResponse(BaseModel):
    detail: str


# Documents


class DocumentResponse(ORMModel):
    id: int
    file_name: str
    document_type: str
    processing_status: str
    processing_error: str | None = None
    created_at: dt.datetime
    updated_at: dt.datetime


class UploadResponse(BaseModel):
    """Document accepted for ingestion."""

    document: DocumentResponse
    dispatch: str = Field(description="'queue' (arq worker) or 'background' (in-process)")
    job_id: str | None = None


# Clients


class ClientResponse(ORMModel):
    id: int
    name: str
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    created_at: dt.datetime


class ClientCreate(BaseModel):
    name: str = Field(min_length=1)
    email: str | None = None
    phone: str | None = None
    address: str | None = None


class ClientUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    email: str | None = None
    phone: str | None = None
    address: str | None = None


class ClientTotalsResponse(ORMModel):
    client: ClientResponse
    invoice_count: int
    total_amount: Decimal


# Invoices


class InvoiceItemResponse(ORMModel):
    id: int
    position: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    total_price: Decimal


class InvoiceResponse(ORMModel):
    id: int
    document_id: int | None = None
    client_id: int | None = None
    invoice_number: str
    issue_date: dt.date | None = None
    due_date: dt.date | None = None
    total_amount: Decimal | None = None
    tax_amount: Decimal | None = None
    currency: str
    status: str
    payment_status: str | None = None
    notes: str | None = None
    created_at: dt.datetime


class InvoiceDetailResponse(InvoiceResponse):
    client: ClientResponse | None = None
    items: list[InvoiceItemResponse] = []
    extracted_metadata: dict[str, Any] | None = Field(default=None, serialization_alias="metadata")


class InvoiceUpdate(BaseModel):
    """Partial invoice update; only fields that are sent are applied."""

    client_id: int | None = None
    invoice_number: str | None = Field(default=None, min_length=1)
    issue_date: dt.date | None = None
    due_date: dt.date | None = None
    total_amount: Decimal | None = Field(default=None, ge=0)
    tax_amount: Decimal | None = None
    currency: str | None = None
    status: str | None = None
    payment_status: str | None = None
    notes: str | None = None


class ClientDetailResponse(ClientResponse):
    invoices: list[InvoiceResponse] = []


# Bank statements


class BankTransactionResponse(ORMModel):
    id: int
    bank_statement_id: int
    date: dt.date | None = None
    description: str
    amount: Decimal
    type: str
    reference: str | None = None
    sender_receiver: str | None = None
    reconciled: bool
    reconciled_with_invoice_id: int | None = None


class BankStatementResponse(ORMModel):
    id: int
    document_id: int | None = None
    statement_date: dt.date | None = None
    account_number: str | None = None
    bank_name: str | None = None
    starting_balance: Decimal | None = None
    ending_balance: Decimal | None = None
    currency: str
    created_at: dt.datetime


class BankStatementDetailResponse(BankStatementResponse):
    transactions: list[BankTransactionResponse] = []


# Reconciliation


class MatchRequest(BaseModel):
    transaction_id: int = Field(gt=0)
    invoice_id: int = Field(gt=0)


# Dashboard


class DashboardSummary(BaseModel):
    total_revenue: Decimal
    unpaid_total: Decimal
    client_count: int
    reconciliation_percentage: float
    recent_invoices: list[InvoiceResponse]
    top_clients: list[ClientTotalsResponse]
