"""Prometheus metrics shared by the API and the ingestion worker.

Exposes key metrics for monitoring:
- Request counts by endpoint and status
- Request duration histograms
- Document upload and ingestion outcomes
- Extraction latency by provider
- Reconciliation outcomes

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import Counter, Histogram, generate_latest
from prometheus_client.openmetrics.exposition import CONTENT_TYPE_LATEST

# Request metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Document metrics
documents_uploaded_total = Counter(
    "documents_uploaded_total",
    "Total documents accepted for ingestion",
    ["document_type"],
)

document_upload_size_bytes = Histogram(
    "document_upload_size_bytes",
    "Document upload size in bytes",
    buckets=(1024, 10240, 102400, 1048576, 10485760),  # 1KB to 10MB
)

documents_ingested_total = Counter(
    "documents_ingested_total",
    "Documents that reached a terminal processing status",
    ["document_type", "status"],  # status: processed, error
)

# Extraction metrics
extraction_duration_seconds = Histogram(
    "extraction_duration_seconds",
    "Extraction oracle call duration in seconds",
    ["provider"],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

extraction_requests_total = Counter(
    "extraction_requests_total",
    "Total extraction oracle calls",
    ["provider", "status"],  # success, failed, timeout
)

# Reconciliation metrics
reconciliations_total = Counter(
    "reconciliations_total",
    "Reconciliation match attempts",
    ["outcome"],  # matched, rematched, noop, rejected, failed
)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics in text format.

    Returns:
        Tuple of (metrics bytes, content type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
