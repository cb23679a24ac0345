"""
Hand-off from acquisition to transformation.

Adapters call :func:`dispatch_processing` once their staging transaction has
committed. With the worker enabled the import is queued on Celery by task
name; ``inline=True`` processes it in the calling process instead, falling
back to the queue when another run holds the source's processing claim.
Otherwise the import stays ``ready`` until ``flask importer process`` picks
it up.
"""

from __future__ import annotations

from flask import current_app

from .celery_app import get_celery_app
from .errors import ProcessingBusyError

PROCESS_IMPORT_TASK = "importer.process_import"


def dispatch_processing(import_id: int, *, inline: bool = False) -> str | None:
    """Queue (or run) processing for ``import_id``; returns the Celery task id when queued."""
    if inline:
        from .pipeline.processing import ImportProcessor

        try:
            ImportProcessor().run(import_id)
            return None
        except ProcessingBusyError as exc:
            current_app.logger.info(
                "Importer inline processing deferred: %s",
                exc.message,
                extra={"importer_import_id": import_id},
            )

    if not current_app.config.get("IMPORTER_WORKER_ENABLED", False):
        current_app.logger.info(
            "Importer worker disabled; import left ready for processing",
            extra={"importer_import_id": import_id},
        )
        return None

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        current_app.logger.warning(
            "Importer worker enabled but no Celery app is configured",
            extra={"importer_import_id": import_id},
        )
        return None
    async_result = celery_app.send_task(PROCESS_IMPORT_TASK, kwargs={"import_id": import_id})
    current_app.logger.info(
        "Importer processing queued",
        extra={"importer_import_id": import_id, "importer_task_id": async_result.id},
    )
    return async_result.id
