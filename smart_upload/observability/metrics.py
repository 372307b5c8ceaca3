"""
Prometheus metrics for the Smart Upload pipeline.
"""

from prometheus_client import Counter, Histogram, Gauge


# ── Uploads ──────────────────────────────────────────────────
items_uploaded_total = Counter(
    "smart_upload_items_uploaded_total",
    "Total files accepted into a batch",
    ["mime_type"],
)

batches_finished_total = Counter(
    "smart_upload_batches_finished_total",
    "Total batches that reached a terminal status",
    ["status"],
)

items_failed_total = Counter(
    "smart_upload_items_failed_total",
    "Total items that ended FAILED",
    ["stage"],
)

# ── Jobs ─────────────────────────────────────────────────────
jobs_enqueued_total = Counter(
    "smart_upload_jobs_enqueued_total",
    "Total jobs enqueued",
    ["kind"],
)

jobs_completed_total = Counter(
    "smart_upload_jobs_completed_total",
    "Total job executions by outcome",
    ["kind", "outcome"],
)

job_duration_seconds = Histogram(
    "smart_upload_job_duration_seconds",
    "Time per job execution",
    ["kind"],
    buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 120, 300],
)

dead_letters_total = Counter(
    "smart_upload_dead_letters_total",
    "Total jobs moved to the dead-letter area",
    ["kind"],
)

worker_jobs_active = Gauge(
    "smart_upload_worker_jobs_active",
    "Number of currently active worker jobs",
    ["kind"],
)

# ── Content processing ───────────────────────────────────────
text_extractions_total = Counter(
    "smart_upload_text_extractions_total",
    "Text extractions by method",
    ["method"],
)

extraction_confidence = Histogram(
    "smart_upload_extraction_confidence",
    "Distribution of text extraction confidence",
    ["method"],
    buckets=[0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
)

split_parts_total = Counter(
    "smart_upload_split_parts_total",
    "PDF parts produced by the splitter",
    ["outcome"],
)

instrument_matches_total = Counter(
    "smart_upload_instrument_matches_total",
    "Instrument label resolutions by method",
    ["method"],
)

# ── External backend ─────────────────────────────────────────
analysis_latency_seconds = Histogram(
    "smart_upload_analysis_latency_seconds",
    "Latency of OCR/LLM analysis calls",
    ["backend"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60],
)

# ── Ingestion ────────────────────────────────────────────────
proposals_ingested_total = Counter(
    "smart_upload_proposals_ingested_total",
    "Proposals committed to the catalog, by outcome",
    ["outcome"],
)

cleanup_files_total = Counter(
    "smart_upload_cleanup_files_total",
    "Temporary files handled by cleanup, by outcome",
    ["outcome"],
)
