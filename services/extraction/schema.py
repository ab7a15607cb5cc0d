"""Structured extraction models for invoices and bank statements.

The extraction oracle answers in camelCase JSON (clientName, unitPrice,
senderReceiver, ...). The models accept those wire names as aliases and
expose snake_case attributes to the rest of the code base.
"""

import datetime as dt
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel

DocumentKind = Literal["invoice", "bank_statement"]
DOCUMENT_KINDS: tuple[str, ...] = ("invoice", "bank_statement")

# Scale of the invoice_items numeric columns
ITEM_DECIMAL_PLACES = 6


class OracleModel(BaseModel):
    """Base model accepting both camelCase wire names and field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        # LLMs return "" for fields they could not find
        if isinstance(value, str) and not value.strip():
            return None
        return value


def _normalize_currency(value: Any) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        return "USD"
    if isinstance(value, str):
        return value.strip().upper()
    return value


class InvoiceLineItem(OracleModel):
    """One invoice line, values kept exactly as extracted."""

    description: str = Field(..., min_length=1)
    quantity: Decimal = Field(..., ge=0)
    unit_price: Decimal = Field(..., ge=0)
    total_price: Decimal = Field(..., ge=0)

    @field_validator("quantity", "unit_price", "total_price")
    @classmethod
    def _storable_precision(cls, value: Decimal) -> Decimal:
        # Item columns hold ITEM_DECIMAL_PLACES; finer values would be rounded on write
        exponent = value.normalize().as_tuple().exponent
        if isinstance(exponent, int) and -exponent > ITEM_DECIMAL_PLACES:
            raise ValueError(f"at most {ITEM_DECIMAL_PLACES} decimal places are supported")
        return value


class InvoiceExtraction(OracleModel):
    """Structured invoice data extracted from document text."""

    client_name: str = Field(..., min_length=1, description="Billed counterparty")
    invoice_number: str = Field(..., min_length=1, description="Unique invoice identifier")
    issue_date: dt.date | None = Field(None, description="Date invoice was issued")
    due_date: dt.date | None = Field(None, description="Payment due date")
    total_amount: Decimal = Field(..., ge=0, description="Total amount including tax")
    tax_amount: Decimal | None = Field(None, ge=0, description="Tax amount")
    currency: str = Field("USD", max_length=10, description="Currency code (ISO 4217)")
    items: list[InvoiceLineItem] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("client_name", "invoice_number")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("currency", mode="before")
    @classmethod
    def _currency(cls, value: Any) -> Any:
        return _normalize_currency(value)

    @field_validator("items", "metadata", mode="before")
    @classmethod
    def _null_collections(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return [] if info.field_name == "items" else {}
        return value


class StatementTransaction(OracleModel):
    """One bank statement line."""

    date: dt.date | None = None
    description: str = Field(..., min_length=1)
    amount: Decimal = Field(..., description="Magnitude of the movement")
    type: Literal["debit", "credit"]
    reference: str | None = None
    sender_receiver: str | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _lowercase_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("amount")
    @classmethod
    def _magnitude(cls, value: Decimal) -> Decimal:
        # Direction lives in `type`; some statements print debits as negatives
        return abs(value)


class BankStatementExtraction(OracleModel):
    """Structured bank statement data extracted from document text."""

    bank_name: str | None = None
    account_number: str | None = None
    statement_date: dt.date | None = None
    starting_balance: Decimal | None = None
    ending_balance: Decimal | None = None
    currency: str = Field("USD", max_length=10)
    transactions: list[StatementTransaction] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency", mode="before")
    @classmethod
    def _currency(cls, value: Any) -> Any:
        return _normalize_currency(value)

    @field_validator("transactions", "metadata", mode="before")
    @classmethod
    def _null_collections(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return [] if info.field_name == "transactions" else {}
        return value


ExtractionData = InvoiceExtraction | BankStatementExtraction

EXTRACTION_MODELS: dict[str, type[InvoiceExtraction] | type[BankStatementExtraction]] = {
    "invoice": InvoiceExtraction,
    "bank_statement": BankStatementExtraction,
}
