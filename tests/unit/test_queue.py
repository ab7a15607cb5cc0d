"""Unit tests for async queue functionality.

Tests task definitions and queue configuration.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from services.ingestion.pipeline import IngestionOutcome, IngestionPipeline
from services.queue.tasks import (
    WorkerSettings,
    get_redis_settings,
    ingest_document,
    shutdown,
    startup,
)
from services.shared.config import Settings
from services.shared.errors import InvalidStateTransitionError
from services.storage.database import Database
from services.storage.repository import DomainRepository


@pytest.fixture
def settings() -> Settings:
    """Create test settings with queue enabled."""
    return Settings(
        database_url="sqlite://",
        queue_enabled=True,
        redis_url="redis://redis.internal:6380/2",
        queue_max_jobs=5,
        queue_job_timeout=60,
    )


@pytest.fixture
def mock_pipeline() -> MagicMock:
    pipeline = MagicMock(spec=IngestionPipeline)
    pipeline.ingest = AsyncMock(
        return_value=IngestionOutcome(document_id=7, status="processed", invoice_id=3)
    )
    return pipeline


class TestIngestDocumentTask:
    """Test the arq job function."""

    @pytest.mark.asyncio
    async def test_runs_pipeline_from_context(self, mock_pipeline: MagicMock) -> None:
        """Should use the worker's shared pipeline and return the outcome."""
        result = await ingest_document(
            {"pipeline": mock_pipeline, "job_id": "job-1"}, 7, "invoice", "INVOICE"
        )

        mock_pipeline.ingest.assert_awaited_once_with(7, "invoice", "INVOICE")
        assert result == {
            "document_id": 7,
            "status": "processed",
            "invoice_id": 3,
            "bank_statement_id": None,
            "error": None,
        }

    @pytest.mark.asyncio
    async def test_error_outcome_returned(self, mock_pipeline: MagicMock) -> None:
        """Should complete the job when the document ends in error."""
        mock_pipeline.ingest.return_value = IngestionOutcome(
            document_id=7, status="error", error="Extraction timed out after 120s (openai)"
        )

        result = await ingest_document({"pipeline": mock_pipeline}, 7, "invoice", "INVOICE")

        assert result["status"] == "error"
        assert "timed out" in result["error"]

    @pytest.mark.asyncio
    async def test_caller_error_fails_job(self, mock_pipeline: MagicMock) -> None:
        mock_pipeline.ingest.side_effect = InvalidStateTransitionError(7, "processed", "processing")

        with pytest.raises(InvalidStateTransitionError):
            await ingest_document({"pipeline": mock_pipeline}, 7, "invoice", "INVOICE")

    @pytest.mark.asyncio
    async def test_end_to_end_with_real_pipeline(
        self, database: Database, pipeline: IngestionPipeline
    ) -> None:
        with database.session_scope() as session:
            document_id = DomainRepository(session).create_document("a.txt", "invoice", "INV").id

        result = await ingest_document({"pipeline": pipeline}, document_id, "invoice", "INV")

        assert result["status"] == "processed"
        assert result["invoice_id"] is not None


class TestWorkerLifecycle:
    """Test startup/shutdown hooks."""

    @pytest.mark.asyncio
    async def test_startup_builds_shared_services(self, settings: Settings) -> None:
        ctx: dict = {}
        with patch("services.queue.tasks.get_settings", return_value=settings):
            await startup(ctx)

        assert isinstance(ctx["database"], Database)
        assert isinstance(ctx["pipeline"], IngestionPipeline)
        assert ctx["pipeline"].database is ctx["database"]
        assert ctx["database"].health_check() is True

        with patch.object(ctx["database"], "dispose") as mock_dispose:
            await shutdown(ctx)
        mock_dispose.assert_called_once()

    @pytest.mark.asyncio
    async def test_shutdown_without_startup(self) -> None:
        await shutdown({})


class TestWorkerSettings:
    """Test arq worker configuration."""

    def test_registers_ingest_task(self) -> None:
        assert ingest_document in WorkerSettings.functions
        assert WorkerSettings.on_startup is startup
        assert WorkerSettings.on_shutdown is shutdown

    def test_redis_settings_from_url(self, settings: Settings) -> None:
        redis_settings = get_redis_settings(settings)

        assert redis_settings.host == "redis.internal"
        assert redis_settings.port == 6380
        assert redis_settings.database == 2

    def test_configure_applies_settings(self, settings: Settings) -> None:
        original = (
            WorkerSettings.redis_settings,
            WorkerSettings.max_jobs,
            WorkerSettings.job_timeout,
        )
        try:
            WorkerSettings.configure(settings)

            assert WorkerSettings.redis_settings.host == "redis.internal"
            assert WorkerSettings.max_jobs == 5
            assert WorkerSettings.job_timeout == 60
        finally:
            (
                WorkerSettings.redis_settings,
                WorkerSettings.max_jobs,
                WorkerSettings.job_timeout,
            ) = original
