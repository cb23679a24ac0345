"""
Celery wiring for the ingestion worker.

Without ``CELERY_BROKER_URL``/``CELERY_RESULT_BACKEND`` the broker and result
backend share one SQLite file in the Flask instance folder. Beat drives the
polling scheduler and staging retention.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from celery import Celery
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "imports"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"

POLL_DUE_SOURCES_TASK = "importer.poll_due_sources"
APPLY_RETENTION_TASK = "importer.apply_retention"

LOG_FORMAT = "[%(asctime)s: %(levelname)s/%(processName)s]"


def _sqlite_url_path(app: Flask) -> str:
    configured = app.config.get("CELERY_SQLITE_PATH") or DEFAULT_SQLITE_FILENAME
    path = Path(configured)
    if not path.is_absolute():
        path = Path(app.instance_path) / path
    path.parent.mkdir(parents=True, exist_ok=True)
    # forward slashes on every platform
    return path.as_posix()


def _transport_urls(app: Flask) -> tuple[str, str]:
    broker = app.config.get("CELERY_BROKER_URL")
    backend = app.config.get("CELERY_RESULT_BACKEND")
    if not (broker and backend):
        sqlite_path = _sqlite_url_path(app)
        broker = broker or f"sqla+sqlite:///{sqlite_path}"
        backend = backend or f"db+sqlite:///{sqlite_path}"
    return broker, backend


def _extra_config(app: Flask) -> dict[str, Any]:
    raw = app.config.get("CELERY_CONFIG")
    if not raw:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            app.logger.warning("Ignoring CELERY_CONFIG: not valid JSON", exc_info=True)
            return {}
    return dict(raw)


def build_beat_schedule(app: Flask) -> dict[str, dict[str, Any]]:
    cadence = {
        POLL_DUE_SOURCES_TASK: app.config.get("IMPORTER_POLL_SCHEDULER_SECONDS", 60),
        APPLY_RETENTION_TASK: app.config.get("IMPORTER_RETENTION_SCHEDULER_SECONDS", 3600),
    }
    return {
        task.replace(".", "-").replace("_", "-"): {"task": task, "schedule": float(seconds)}
        for task, seconds in cadence.items()
    }


def create_celery_app(app: Flask) -> Celery:
    broker, backend = _transport_urls(app)
    celery_app = Celery(app.import_name, broker=broker, backend=backend, include=("graph_ingest.importer.tasks",))
    celery_app.conf.update(
        task_queues=[Queue(DEFAULT_QUEUE_NAME)],
        task_default_queue=DEFAULT_QUEUE_NAME,
        task_default_exchange=DEFAULT_QUEUE_NAME,
        task_default_routing_key=DEFAULT_QUEUE_NAME,
        # one import at a time per worker process, acknowledged once processed
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_track_started=True,
        result_extended=True,
        broker_connection_retry_on_startup=True,
        task_time_limit=app.config.get("IMPORTER_TASK_TIME_LIMIT", 900),
        task_soft_time_limit=app.config.get("IMPORTER_TASK_SOFT_TIME_LIMIT", 720),
        beat_schedule=build_beat_schedule(app),
        worker_hijack_root_logger=False,
        worker_log_format=f"{LOG_FORMAT} %(message)s",
        worker_task_log_format=f"{LOG_FORMAT}[%(task_name)s(%(task_id)s)] %(message)s",
    )
    celery_app.conf.update(_extra_config(app))

    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery.worker.strategy").setLevel(logging.WARNING)

    app.logger.info(
        "Importer worker transport: broker=%s backend=%s",
        broker,
        backend,
        extra={"importer_worker_enabled": app.config.get("IMPORTER_WORKER_ENABLED")},
    )

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    """Create the worker app once and keep it in the importer extension state."""
    if state.get("celery_app") is None:
        state["celery_app"] = create_celery_app(app)
    return state["celery_app"]


def get_celery_app(app: Flask) -> Celery | None:
    state = app.extensions.get("importer")
    if not state:
        return None
    if state.get("celery_app") is None and state.get("enabled"):
        return ensure_celery_app(app, state)
    return state.get("celery_app")
