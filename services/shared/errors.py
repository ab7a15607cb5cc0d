"""Error taxonomy shared by ingestion, reconciliation and the API layer.

Every failure is scoped to the single operation that raised it. The API maps
each class to an HTTP status; the ingestion pipeline records ExtractionError
and PersistenceError on the document instead of raising them to its caller.
"""


class ProcessingError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ProcessingError):
    """Malformed or missing input to an ingestion or reconciliation call."""


class InvalidStateTransitionError(ValidationError):
    """A document status change that would move backwards or skip a state."""

    def __init__(self, document_id: int, current: str, target: str) -> None:
        super().__init__(
            f"Document {document_id} cannot move from '{current}' to '{target}'"
        )
        self.document_id = document_id
        self.current = current
        self.target = target


class InvoiceAlreadyPaidError(ValidationError):
    """Reconciliation against an invoice that is already settled."""

    def __init__(self, invoice_id: int) -> None:
        super().__init__(f"Invoice {invoice_id} is already paid")
        self.invoice_id = invoice_id


class ExtractionError(ProcessingError):
    """The extraction oracle failed or returned unusable structured output."""


class PersistenceError(ProcessingError):
    """A repository write failed."""


class NotFoundError(ProcessingError):
    """A referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: int) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id
