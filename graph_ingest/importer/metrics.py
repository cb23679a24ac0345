"""Prometheus metrics helpers for the importer."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Histogram

_records_staged = Counter(
    "importer_records_staged_total",
    "Raw payloads written to the staging store by adapter kind.",
    ["adapter"],
)
_staging_failures = Counter(
    "importer_staging_failures_total",
    "Staging batches rolled back by adapter kind.",
    ["adapter"],
)
_intent_outcomes = Counter(
    "importer_intents_total",
    "Entity intents persisted by kind and outcome.",
    ["kind", "outcome"],
)
_record_outcomes = Counter(
    "importer_staged_records_processed_total",
    "Staged records processed by final status.",
    ["status"],
)
_poll_ticks = Counter(
    "importer_poll_ticks_total",
    "Polling ticks by adapter kind and outcome.",
    ["adapter", "outcome"],
)
_poll_duration = Histogram(
    "importer_poll_duration_seconds",
    "Duration of a polling tick in seconds.",
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300),
)
_timeseries_rows = Counter(
    "importer_timeseries_rows_total",
    "Time-series rows appended by outcome.",
    ["outcome"],
)


def record_staged(adapter: str, count: int) -> None:
    if count > 0:
        _records_staged.labels(adapter=adapter).inc(count)


def record_staging_failure(adapter: str) -> None:
    _staging_failures.labels(adapter=adapter).inc()


def record_intent(kind: str, outcome: Literal["succeeded", "failed", "skipped"]) -> None:
    _intent_outcomes.labels(kind=kind, outcome=outcome).inc()


def record_processed(status: str) -> None:
    _record_outcomes.labels(status=status).inc()


def record_poll_tick(
    adapter: str,
    outcome: Literal["success", "failure", "skipped"],
    duration_seconds: float | None = None,
) -> None:
    """Count a polling tick; skipped ticks never observe a duration."""
    _poll_ticks.labels(adapter=adapter, outcome=outcome).inc()
    if duration_seconds is not None:
        _poll_duration.observe(duration_seconds)


def record_timeseries_rows(succeeded: int, failed: int) -> None:
    if succeeded:
        _timeseries_rows.labels(outcome="succeeded").inc(succeeded)
    if failed:
        _timeseries_rows.labels(outcome="failed").inc(failed)
