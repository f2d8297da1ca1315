"""Prometheus metrics for the migration pipeline."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

PAGES_FETCHED = Counter(
    "migration_pages_fetched_total",
    "Source pages fetched by the migration pipeline",
    ["source", "entity_type", "status"],  # status: ok, failed
)

RECORDS_PROCESSED = Counter(
    "migration_records_processed_total",
    "Records processed during execution",
    ["source", "entity_type", "outcome"],  # outcome: created, updated, skipped, failed
)

STAGE_RUNS = Counter(
    "migration_stage_runs_total",
    "Pipeline stage runs",
    ["source", "stage", "status"],
)

STAGE_DURATION = Histogram(
    "migration_stage_duration_seconds",
    "Pipeline stage duration",
    ["source", "stage"],
    buckets=(0.5, 1, 5, 15, 60, 300, 900, 1800, 3600, 14400),
)


def observe_stage(source: str, stage: str, status: str, duration: float) -> None:
    STAGE_RUNS.labels(source=source, stage=stage, status=status).inc()
    STAGE_DURATION.labels(source=source, stage=stage).observe(duration)
