"""FastAPI application for financial document ingestion and reconciliation.

Production-ready API with:
- Health and readiness checks for Kubernetes
- Text document upload with per-document background ingestion
- Read/update access to invoices, clients and bank statements
- Transaction-to-invoice reconciliation
- Structured error responses
- Prometheus metrics for monitoring

Based on FastAPI best practices:
https://fastapi.tiangolo.com/
"""

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date

from arq import create_pool
from arq.connections import ArqRedis
from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
    status,
)
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from services.api.schemas import (
    BankStatementDetailResponse,
    BankStatementResponse,
    BankTransactionResponse,
    ClientCreate,
    ClientDetailResponse,
    ClientResponse,
    ClientTotalsResponse,
    ClientUpdate,
    DashboardSummary,
    DocumentResponse,
    ErrorResponse,
    HealthResponse,
    InvoiceDetailResponse,
    InvoiceResponse,
    InvoiceUpdate,
    MatchRequest,
    ReadinessResponse,
    UploadResponse,
)
from services.extraction.schema import DOCUMENT_KINDS
from services.extraction.service import ExtractionService
from services.ingestion.pipeline import IngestionPipeline
from services.queue.tasks import get_redis_settings
from services.reconciliation.engine import ReconciliationEngine
from services.shared import metrics
from services.shared.config import get_settings
from services.shared.errors import (
    InvoiceAlreadyPaidError,
    NotFoundError,
    PersistenceError,
    ProcessingError,
    ValidationError,
)
from services.storage.database import Database
from services.storage.repository import DomainRepository, InvoiceFilters

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

database = Database.from_settings(settings)
extraction_service = ExtractionService.from_settings(settings)

_arq_pool: ArqRedis | None = None

NOT_FOUND = {404: {"model": ErrorResponse}}


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    database.create_tables()
    logger.info(f"{settings.service_name} {settings.service_version} started")
    yield
    if _arq_pool is not None:
        await _arq_pool.close()
    database.dispose()


app = FastAPI(
    title="Financial Document Ingestion Service",
    description="Invoice and bank statement extraction with payment reconciliation",
    version=settings.service_version,
    lifespan=lifespan,
)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware to collect request metrics.

    Tracks:
    - Request count by method, endpoint, and status
    - Request duration by method and endpoint

    Endpoints are labelled by route template so ids do not explode cardinality.
    """
    # Skip metrics for /metrics endpoint itself
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
    ).inc()

    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint,
    ).observe(duration)

    return response


# Error mapping


def _error(status_code: int, exc: ProcessingError) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


@app.exception_handler(NotFoundError)
async def not_found_handler(_request: Request, exc: NotFoundError) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(InvoiceAlreadyPaidError)
async def already_paid_handler(_request: Request, exc: InvoiceAlreadyPaidError) -> JSONResponse:
    return _error(status.HTTP_409_CONFLICT, exc)


@app.exception_handler(ValidationError)
async def validation_handler(_request: Request, exc: ValidationError) -> JSONResponse:
    return _error(status.HTTP_400_BAD_REQUEST, exc)


@app.exception_handler(ProcessingError)
async def processing_handler(_request: Request, exc: ProcessingError) -> JSONResponse:
    if not isinstance(exc, PersistenceError):
        logger.error(f"Unhandled processing error: {exc.message}")
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, exc)


@app.exception_handler(SQLAlchemyError)
async def database_handler(_request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error(f"Database error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Database operation failed"},
    )


# Dependencies


def get_database() -> Database:
    return database


def get_pipeline(db: Database = Depends(get_database)) -> IngestionPipeline:  # noqa: B008
    return IngestionPipeline(db, extraction_service)


def get_reconciliation_engine(
    db: Database = Depends(get_database),  # noqa: B008
) -> ReconciliationEngine:
    return ReconciliationEngine(db, settings.match_tolerance)


async def get_arq_pool() -> ArqRedis:
    """Lazily connect to Redis the first time a job is enqueued."""
    global _arq_pool
    if _arq_pool is None:
        _arq_pool = await create_pool(get_redis_settings(settings))
    return _arq_pool


async def run_ingestion(
    pipeline: IngestionPipeline, document_id: int, kind: str, raw_text: str
) -> None:
    """In-process ingestion used when the queue is disabled."""
    try:
        await pipeline.ingest(document_id, kind, raw_text)
    except ProcessingError as e:
        logger.error(f"Ingestion of document {document_id} could not start: {e.message}")


# Health


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Health check endpoint for liveness probe."""
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
def readiness_check(
    response: Response, db: Database = Depends(get_database)  # noqa: B008
) -> ReadinessResponse:
    """Readiness check endpoint for Kubernetes readiness probe.

    Returns 503 while the database is unreachable.
    """
    database_ok = db.health_check()
    if not database_ok:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ReadinessResponse(ready=database_ok, database=database_ok)


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint."""
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


# Documents


@app.post(
    "/api/v1/documents/upload",
    response_model=UploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Documents"],
)
async def upload_document(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(..., description="UTF-8 text of the document"),  # noqa: B008
    document_type: str = Form(..., description="'invoice' or 'bank_statement'"),
    db: Database = Depends(get_database),  # noqa: B008
    pipeline: IngestionPipeline = Depends(get_pipeline),  # noqa: B008
) -> UploadResponse:
    """Accept a document and schedule its ingestion.

    The document is stored as 'pending' and processed either by the arq
    worker (APP_QUEUE_ENABLED=true) or by an in-process background task.
    Poll `GET /api/v1/documents/{id}` for the outcome.

    ## Usage Example

    ```bash
    curl -X POST "http://localhost:8000/api/v1/documents/upload" \\
      -F "file=@invoice.txt" -F "document_type=invoice"
    ```

    ## Error Handling

    - Returns 400 for unsupported document types and empty, oversized or
      non-UTF-8 files; nothing is stored in that case
    - Returns 503 if the job queue is unreachable; the document is marked 'error'
    """
    if document_type not in DOCUMENT_KINDS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=(
                f"Invalid document type '{document_type}'. "
                f"Must be one of: {', '.join(DOCUMENT_KINDS)}"
            ),
        )
    if not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No filename provided")

    content = await file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")
    if len(content) > settings.max_upload_size_bytes:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File too large. Maximum size is {settings.max_upload_size_bytes} bytes",
        )
    try:
        raw_text = content.decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="File must be UTF-8 encoded text"
        ) from None
    if not raw_text.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")

    metrics.document_upload_size_bytes.observe(len(content))

    with db.session_scope() as session:
        document = DomainRepository(session).create_document(
            file.filename, document_type, raw_text
        )
        document_id = document.id
    metrics.documents_uploaded_total.labels(document_type=document_type).inc()
    logger.info(f"Accepted {document_type} '{file.filename}' as document {document_id}")

    job_id = None
    if settings.queue_enabled:
        try:
            pool = await get_arq_pool()
            job = await pool.enqueue_job("ingest_document", document_id, document_type, raw_text)
            job_id = job.job_id if job is not None else None
        except (OSError, RedisError) as e:
            logger.error(f"Failed to enqueue document {document_id}: {e}")
            with db.session_scope() as session:
                DomainRepository(session).transition_document(
                    document_id, "error", error=f"Failed to enqueue ingestion job: {e}"
                )
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Job queue unavailable, document marked as failed",
            ) from e
        dispatch = "queue"
    else:
        background_tasks.add_task(run_ingestion, pipeline, document_id, document_type, raw_text)
        dispatch = "background"

    with db.session_scope() as session:
        document = DomainRepository(session).get_document(document_id)
        return UploadResponse(
            document=DocumentResponse.model_validate(document), dispatch=dispatch, job_id=job_id
        )


@app.get("/api/v1/documents", response_model=list[DocumentResponse], tags=["Documents"])
def list_documents(
    limit: int = Query(10, ge=1, le=100),
    db: Database = Depends(get_database),  # noqa: B008
) -> list[DocumentResponse]:
    """Most recently uploaded documents first."""
    with db.session_scope() as session:
        documents = DomainRepository(session).list_documents(limit)
        return [DocumentResponse.model_validate(document) for document in documents]


@app.get(
    "/api/v1/documents/{document_id}",
    response_model=DocumentResponse,
    responses=NOT_FOUND,
    tags=["Documents"],
)
def get_document(
    document_id: int, db: Database = Depends(get_database)  # noqa: B008
) -> DocumentResponse:
    with db.session_scope() as session:
        document = DomainRepository(session).get_document(document_id)
        if document is None:
            raise NotFoundError("Document", document_id)
        return DocumentResponse.model_validate(document)


# Invoices


@app.get("/api/v1/invoices", response_model=list[InvoiceResponse], tags=["Invoices"])
def list_invoices(
    client_id: int | None = None,
    invoice_status: str | None = Query(None, alias="status"),
    start_date: date | None = None,
    end_date: date | None = None,
    db: Database = Depends(get_database),  # noqa: B008
) -> list[InvoiceResponse]:
    """Invoices, newest first, optionally filtered by client, status and issue date."""
    filters = InvoiceFilters(
        client_id=client_id, status=invoice_status, start_date=start_date, end_date=end_date
    )
    with db.session_scope() as session:
        invoices = DomainRepository(session).list_invoices(filters)
        return [InvoiceResponse.model_validate(invoice) for invoice in invoices]


@app.get(
    "/api/v1/invoices/{invoice_id}",
    response_model=InvoiceDetailResponse,
    responses=NOT_FOUND,
    tags=["Invoices"],
)
def get_invoice(
    invoice_id: int, db: Database = Depends(get_database)  # noqa: B008
) -> InvoiceDetailResponse:
    """Invoice with its client and line items in extraction order."""
    with db.session_scope() as session:
        invoice = DomainRepository(session).get_invoice_with_items(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        return InvoiceDetailResponse.model_validate(invoice)


@app.patch(
    "/api/v1/invoices/{invoice_id}",
    response_model=InvoiceResponse,
    responses=NOT_FOUND,
    tags=["Invoices"],
)
def update_invoice(
    invoice_id: int,
    payload: InvoiceUpdate,
    db: Database = Depends(get_database),  # noqa: B008
) -> InvoiceResponse:
    with db.session_scope() as session:
        invoice = DomainRepository(session).update_invoice(
            invoice_id, **payload.model_dump(exclude_unset=True)
        )
        logger.info(f"Invoice {invoice_id} updated")
        return InvoiceResponse.model_validate(invoice)


# Bank statements


@app.get(
    "/api/v1/bank-statements",
    response_model=list[BankStatementResponse],
    tags=["Bank statements"],
)
def list_bank_statements(
    db: Database = Depends(get_database),  # noqa: B008
) -> list[BankStatementResponse]:
    with db.session_scope() as session:
        statements = DomainRepository(session).list_bank_statements()
        return [BankStatementResponse.model_validate(statement) for statement in statements]


@app.get(
    "/api/v1/bank-statements/{statement_id}",
    response_model=BankStatementDetailResponse,
    responses=NOT_FOUND,
    tags=["Bank statements"],
)
def get_bank_statement(
    statement_id: int, db: Database = Depends(get_database)  # noqa: B008
) -> BankStatementDetailResponse:
    with db.session_scope() as session:
        statement = DomainRepository(session).get_bank_statement(statement_id)
        if statement is None:
            raise NotFoundError("Bank statement", statement_id)
        return BankStatementDetailResponse.model_validate(statement)


# Clients


@app.get("/api/v1/clients", response_model=list[ClientResponse], tags=["Clients"])
def list_clients(db: Database = Depends(get_database)) -> list[ClientResponse]:  # noqa: B008
    with db.session_scope() as session:
        return [
            ClientResponse.model_validate(client)
            for client in DomainRepository(session).list_clients()
        ]


@app.post(
    "/api/v1/clients",
    response_model=ClientResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Clients"],
)
def create_client(
    payload: ClientCreate, db: Database = Depends(get_database)  # noqa: B008
) -> ClientResponse:
    with db.session_scope() as session:
        repository = DomainRepository(session)
        if repository.get_client_by_name(payload.name) is not None:
            raise ValidationError(f"Client '{payload.name}' already exists")
        client = repository.create_client(**payload.model_dump())
        return ClientResponse.model_validate(client)


@app.get("/api/v1/clients/top", response_model=list[ClientTotalsResponse], tags=["Clients"])
def top_clients(
    limit: int = Query(5, ge=1, le=50),
    db: Database = Depends(get_database),  # noqa: B008
) -> list[ClientTotalsResponse]:
    """Clients ranked by total invoiced amount."""
    with db.session_scope() as session:
        return [
            ClientTotalsResponse.model_validate(totals)
            for totals in DomainRepository(session).top_clients(limit)
        ]


@app.get(
    "/api/v1/clients/{client_id}",
    response_model=ClientDetailResponse,
    responses=NOT_FOUND,
    tags=["Clients"],
)
def get_client(
    client_id: int, db: Database = Depends(get_database)  # noqa: B008
) -> ClientDetailResponse:
    with db.session_scope() as session:
        client = DomainRepository(session).get_client(client_id)
        if client is None:
            raise NotFoundError("Client", client_id)
        return ClientDetailResponse.model_validate(client)


@app.patch(
    "/api/v1/clients/{client_id}",
    response_model=ClientResponse,
    responses=NOT_FOUND,
    tags=["Clients"],
)
def update_client(
    client_id: int,
    payload: ClientUpdate,
    db: Database = Depends(get_database),  # noqa: B008
) -> ClientResponse:
    with db.session_scope() as session:
        client = DomainRepository(session).update_client(
            client_id, **payload.model_dump(exclude_unset=True)
        )
        return ClientResponse.model_validate(client)


# Reconciliation


@app.get(
    "/api/v1/reconciliation/unreconciled",
    response_model=list[BankTransactionResponse],
    tags=["Reconciliation"],
)
def list_unreconciled(
    limit: int | None = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),  # noqa: B008
) -> list[BankTransactionResponse]:
    """Transactions awaiting a match, newest first."""
    return [
        BankTransactionResponse.model_validate(transaction)
        for transaction in engine.list_unreconciled(limit, offset)
    ]


@app.get(
    "/api/v1/reconciliation/transactions/{transaction_id}/suggestions",
    response_model=list[InvoiceResponse],
    responses=NOT_FOUND,
    tags=["Reconciliation"],
)
def transaction_suggestions(
    transaction_id: int,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),  # noqa: B008
) -> list[InvoiceResponse]:
    """Unpaid invoices whose total is within the match tolerance of the transaction."""
    return [
        InvoiceResponse.model_validate(invoice)
        for invoice in engine.suggestions_for(transaction_id)
    ]


@app.post(
    "/api/v1/reconciliation/match",
    response_model=BankTransactionResponse,
    responses={**NOT_FOUND, 409: {"model": ErrorResponse}},
    tags=["Reconciliation"],
)
def reconcile(
    payload: MatchRequest,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),  # noqa: B008
) -> BankTransactionResponse:
    """Mark a transaction as paying an invoice; the invoice becomes 'paid'."""
    transaction = engine.reconcile(payload.transaction_id, payload.invoice_id)
    return BankTransactionResponse.model_validate(transaction)


# Dashboard


@app.get("/api/v1/dashboard/summary", response_model=DashboardSummary, tags=["Dashboard"])
def dashboard_summary(db: Database = Depends(get_database)) -> DashboardSummary:  # noqa: B008
    with db.session_scope() as session:
        repository = DomainRepository(session)
        return DashboardSummary(
            total_revenue=repository.total_revenue(),
            unpaid_total=repository.unpaid_invoices_total(),
            client_count=repository.count_clients(),
            reconciliation_percentage=round(repository.reconciliation_percentage(), 2),
            recent_invoices=[
                InvoiceResponse.model_validate(invoice)
                for invoice in repository.recent_invoices()
            ],
            top_clients=[
                ClientTotalsResponse.model_validate(totals)
                for totals in repository.top_clients()
            ],
        )
