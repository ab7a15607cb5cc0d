"""Background ingestion jobs.

Uses arq (async Redis queue) so uploads return immediately while the
extraction call and the database writes happen in a worker process.
Progress is tracked on the document row itself, not in Redis.

Based on arq documentation:
https://arq-docs.helpmanual.io/
"""

import logging
from dataclasses import asdict
from typing import Any

from arq.connections import RedisSettings

from services.extraction.service import ExtractionService
from services.ingestion.pipeline import IngestionPipeline
from services.shared.config import Settings, get_settings
from services.storage.database import Database

logger = logging.getLogger(__name__)


def build_pipeline(settings: Settings, database: Database | None = None) -> IngestionPipeline:
    """Wire an ingestion pipeline from configuration."""
    database = database or Database.from_settings(settings)
    return IngestionPipeline(database, ExtractionService.from_settings(settings))


async def ingest_document(
    ctx: dict[str, Any], document_id: int, kind: str, raw_text: str
) -> dict[str, Any]:
    """Run the ingestion pipeline for one uploaded document.

    Pipeline failures are recorded on the document and returned, so arq
    sees the job as complete. Only caller errors (unknown document, wrong
    state) propagate and fail the job.

    Args:
        ctx: arq context, populated by startup()
        document_id: Id of the pending document row
        kind: 'invoice' or 'bank_statement'
        raw_text: Uploaded document text

    Returns:
        IngestionOutcome as dict
    """
    pipeline: IngestionPipeline = ctx.get("pipeline") or build_pipeline(get_settings())
    logger.info(f"Job {ctx.get('job_id', '-')} ingesting document {document_id} ({kind})")

    outcome = await pipeline.ingest(document_id, kind, raw_text)

    logger.info(f"Document {document_id} finished with status: {outcome.status}")
    return asdict(outcome)


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup hook - initialize services.

    Called once when worker starts so jobs share one database engine and
    one extraction provider.
    """
    logger.info("Initializing worker services...")
    settings = get_settings()
    database = Database.from_settings(settings)
    database.create_tables()
    ctx["settings"] = settings
    ctx["database"] = database
    ctx["pipeline"] = build_pipeline(settings, database)
    logger.info("Worker services initialized")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown hook - cleanup resources."""
    logger.info("Worker shutting down...")
    database: Database | None = ctx.get("database")
    if database is not None:
        database.dispose()


def get_redis_settings(settings: Settings | None = None) -> RedisSettings:
    """Redis connection settings from configuration."""
    settings = settings or get_settings()
    return RedisSettings.from_dsn(settings.redis_url)


class WorkerSettings:
    """arq worker settings.

    Defines the worker configuration including:
    - Task functions to register
    - Redis connection settings
    - Job timeout and concurrency
    """

    functions = [ingest_document]
    on_startup = startup
    on_shutdown = shutdown

    # These will be set from environment
    redis_settings: RedisSettings | None = None
    max_jobs = 10
    job_timeout = 300

    @classmethod
    def configure(cls, settings: Settings) -> None:
        cls.redis_settings = get_redis_settings(settings)
        cls.max_jobs = settings.queue_max_jobs
        cls.job_timeout = settings.queue_job_timeout
