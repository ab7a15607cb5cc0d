"""Prompt templates for invoice and bank statement extraction.

Shared by every LLM-backed provider so each one asks for the same JSON shape
(the camelCase contract parsed by services.extraction.schema).
"""

SYSTEM_PROMPTS: dict[str, str] = {
    "invoice": (
        "You are a financial document extraction specialist. Extract data from invoices "
        "accurately and return it as a single JSON object. Be precise with numbers, "
        "dates and names."
    ),
    "bank_statement": (
        "You are a financial document extraction specialist. Extract data from bank "
        "statements accurately and return it as a single JSON object. Be precise with "
        "numbers, dates and names."
    ),
}

INVOICE_SCHEMA = """{
  "clientName": string,
  "invoiceNumber": string,
  "issueDate": string (YYYY-MM-DD),
  "dueDate": string (YYYY-MM-DD),
  "totalAmount": number,
  "taxAmount": number | null,
  "currency": string (ISO 4217, e.g. "USD"),
  "items": [
    {"description": string, "quantity": number, "unitPrice": number, "totalPrice": number}
  ],
  "metadata": object (any additional useful information)
}"""

BANK_STATEMENT_SCHEMA = """{
  "bankName": string,
  "accountNumber": string,
  "statementDate": string (YYYY-MM-DD),
  "startingBalance": number,
  "endingBalance": number,
  "currency": string (ISO 4217, e.g. "USD"),
  "transactions": [
    {
      "date": string (YYYY-MM-DD),
      "description": string,
      "amount": number (always positive),
      "type": "debit" | "credit",
      "reference": string | null,
      "senderReceiver": string | null
    }
  ],
  "metadata": object (any additional useful information)
}"""

_INVOICE_INSTRUCTIONS = """Extract the following fields from this invoice:
- client name (the billed customer, not the issuer)
- invoice number
- issue date and due date
- total amount and tax amount if present (numeric values only)
- currency
- every line item with description, quantity, unit price and total price

Instructions:
- Convert dates to YYYY-MM-DD
- European decimals: "211,77" -> 211.77
- Keep line items in the order they appear
- Use null for any field not clearly present
- Return ONLY JSON, no explanation"""

_BANK_STATEMENT_INSTRUCTIONS = """Extract the following fields from this bank statement:
- bank name and account number
- statement date
- starting and ending balance (numeric values only)
- currency
- every transaction with date, description, amount, type (debit or credit),
  reference number and sender/receiver

Instructions:
- Convert dates to YYYY-MM-DD
- Amounts are positive magnitudes; money leaving the account is "debit",
  money arriving is "credit"
- Keep transactions in the order they appear
- Use null for any field not clearly present
- Return ONLY JSON, no explanation"""


def build_extraction_prompt(kind: str, document_text: str) -> str:
    """Build the user prompt for one document.

    Args:
        kind: Document kind ('invoice' or 'bank_statement')
        document_text: Raw text of the document

    Returns:
        Formatted prompt string

    Raises:
        ValueError: If kind is not supported
    """
    if kind == "invoice":
        instructions, schema, label = _INVOICE_INSTRUCTIONS, INVOICE_SCHEMA, "invoice"
    elif kind == "bank_statement":
        instructions, schema, label = (
            _BANK_STATEMENT_INSTRUCTIONS,
            BANK_STATEMENT_SCHEMA,
            "bank statement",
        )
    else:
        raise ValueError(f"Unsupported document kind: {kind}")

    return f"""{instructions}

Return the result as a JSON object with this structure:
{schema}

Here is the {label} text:
{document_text}"""
