"""
Importer Celery tasks.

Tasks are registered by name so the web process can queue them with
``send_task`` without importing worker-only code paths.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app
from sqlalchemy import select

from graph_ingest.models import DataSource, db
from graph_ingest.models.importer import DataSourceKind

from .errors import ImporterError, ProcessingBusyError
from .pipeline.imports import ImportService
from .pipeline.processing import ImportProcessor
from .pipeline.staging import StagingStore
from .scheduler import run_due_polls, tick


@shared_task(name="importer.healthcheck", bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by worker health checks."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name="importer.process_import", bind=True, max_retries=20)
def process_import(self, *, import_id: int) -> dict[str, Any]:
    """
    Transform and persist the staged records of one import.

    While another run holds the source's processing claim the task retries
    later and the import stays ``ready``. Any other failure marks the import
    as errored before the exception propagates to Celery.
    """
    try:
        summary = ImportProcessor().run(import_id)
    except ProcessingBusyError as exc:
        current_app.logger.info(
            "Importer processing deferred; source busy",
            extra={"importer_import_id": import_id, "importer_task_id": self.request.id},
        )
        raise self.retry(exc=exc, countdown=int(current_app.config.get("IMPORTER_PROCESSING_RETRY_SECONDS", 30)))
    except ImporterError as exc:
        _fail_import(self, import_id, exc.message)
        raise
    except Exception as exc:
        _fail_import(self, import_id, f"Processing failed: {exc}")
        raise
    return summary.as_dict()


def _fail_import(task, import_id: int, message: str) -> None:
    db.session.rollback()
    ImportService().fail(import_id, message)
    current_app.logger.exception(
        "Importer processing task failed",
        extra={"importer_import_id": import_id, "importer_task_id": task.request.id},
    )


@shared_task(name="importer.poll_data_source", bind=True)
def poll_data_source(self, *, data_source_id: int) -> dict[str, Any]:
    return tick(data_source_id).as_dict()


@shared_task(name="importer.poll_due_sources", bind=True)
def poll_due_sources(self) -> list[dict[str, Any]]:
    """Beat entry point: tick every polling source whose interval has elapsed."""
    outcomes = run_due_polls()
    if outcomes:
        current_app.logger.info(
            "Importer poll sweep finished",
            extra={
                "importer_polled": sum(1 for outcome in outcomes if outcome.status == "polled"),
                "importer_failed": sum(1 for outcome in outcomes if outcome.status == "failed"),
                "importer_skipped": sum(1 for outcome in outcomes if outcome.status == "skipped"),
            },
        )
    return [outcome.as_dict() for outcome in outcomes]


@shared_task(name="importer.apply_retention", bind=True)
def apply_retention(self) -> dict[str, int]:
    """Delete expired inserted staging records for every source with a retention window."""
    store = StagingStore()
    deleted: dict[str, int] = {}
    sources = list(
        db.session.scalars(
            select(DataSource).where(DataSource.adapter_type != DataSourceKind.TIMESERIES).order_by(DataSource.id)
        )
    )
    for source in sources:
        count = store.apply_retention(source)
        if count:
            deleted[str(source.id)] = count
    db.session.commit()
    return deleted
