"""
Polling scheduler for ``http`` and ``salesforce`` data sources.

A beat task calls :func:`run_due_polls` on a fixed cadence. Each due source is
claimed with a conditional UPDATE on ``poll_in_progress`` before its adapter
runs, so two workers never tick the same source at once; a tick that loses
the claim is skipped rather than queued behind the running one.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from flask import current_app
from sqlalchemy import or_, select, update

from graph_ingest.models import DataSource, db
from graph_ingest.models.importer import DataSourceKind

from .adapters import get_adapter
from .metrics import record_poll_tick

PollStatus = Literal["polled", "failed", "skipped"]

POLLING_KINDS = tuple(kind for kind in DataSourceKind if kind.is_polling)


@dataclass(frozen=True)
class PollOutcome:
    data_source_id: int
    status: PollStatus
    import_id: int | None = None
    message: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "data_source_id": self.data_source_id,
            "status": self.status,
            "import_id": self.import_id,
            "message": self.message,
        }


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _poll_interval(source: DataSource) -> timedelta:
    try:
        minutes = int((source.config or {}).get("poll_interval") or 0)
    except (TypeError, ValueError):
        minutes = 0
    return timedelta(minutes=max(minutes, 1))


def is_due(source: DataSource, now: datetime) -> bool:
    last = _as_utc(source.last_polled_at)
    return last is None or last + _poll_interval(source) <= now


def due_sources(now: datetime | None = None, session=None) -> list[DataSource]:
    """Active polling sources whose interval has elapsed, oldest poll first."""
    session = session or db.session
    now = now or datetime.now(timezone.utc)
    candidates = session.scalars(
        select(DataSource)
        .where(
            DataSource.adapter_type.in_(POLLING_KINDS),
            DataSource.active.is_(True),
            DataSource.archived.is_(False),
        )
        .order_by(DataSource.last_polled_at.is_(None).desc(), DataSource.last_polled_at, DataSource.id)
    )
    return [source for source in candidates if is_due(source, now)]


def claim(data_source_id: int, *, now: datetime | None = None, session=None) -> bool:
    """
    Atomically mark a source as being polled.

    Only an active, unarchived source whose previous claim was released (or
    has gone stale) can be claimed.
    """
    session = session or db.session
    now = now or datetime.now(timezone.utc)
    stale_after = int(current_app.config.get("IMPORTER_POLL_CLAIM_TIMEOUT_SECONDS", 3600))
    result = session.execute(
        update(DataSource)
        .where(
            DataSource.id == data_source_id,
            DataSource.active.is_(True),
            DataSource.archived.is_(False),
            or_(
                DataSource.poll_in_progress.is_(False),
                DataSource.last_polled_at.is_(None),
                DataSource.last_polled_at < now - timedelta(seconds=stale_after),
            ),
        )
        .values(poll_in_progress=True, last_polled_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount == 1


def release(data_source_id: int, *, session=None) -> None:
    session = session or db.session
    session.rollback()
    session.execute(
        update(DataSource)
        .where(DataSource.id == data_source_id)
        .values(poll_in_progress=False)
        .execution_options(synchronize_session=False)
    )
    session.commit()


def tick(data_source_id: int, *, now: datetime | None = None, session=None) -> PollOutcome:
    """Run one polling cycle for a source if the claim succeeds."""
    session = session or db.session
    source = session.get(DataSource, data_source_id)
    if source is None or not source.kind.is_polling:
        return PollOutcome(data_source_id=data_source_id, status="skipped", message="not a polling data source")
    adapter_name = source.kind.value

    if not claim(data_source_id, now=now, session=session):
        record_poll_tick(adapter_name, "skipped")
        current_app.logger.info(
            "Importer poll skipped; source busy or inactive",
            extra={"importer_data_source_id": data_source_id, "importer_adapter": adapter_name},
        )
        return PollOutcome(data_source_id=data_source_id, status="skipped", message="poll already in progress")

    started = time.monotonic()
    try:
        session.refresh(source)
        result = get_adapter(source.kind).poll(source)
    finally:
        release(data_source_id, session=session)
    duration = time.monotonic() - started

    if result.is_error:
        record_poll_tick(adapter_name, "failure", duration)
        current_app.logger.warning(
            "Importer poll failed",
            extra={
                "importer_data_source_id": data_source_id,
                "importer_adapter": adapter_name,
                "importer_error": result.error.message,
            },
        )
        return PollOutcome(
            data_source_id=data_source_id,
            status="failed",
            import_id=result.error.details.get("import_id"),
            message=result.error.message,
        )

    record_poll_tick(adapter_name, "success", duration)
    return PollOutcome(data_source_id=data_source_id, status="polled", import_id=result.value.import_id)


def run_due_polls(now: datetime | None = None, session=None) -> list[PollOutcome]:
    """Tick every due source in turn; a deactivated source loses its claim and is skipped."""
    session = session or db.session
    now = now or datetime.now(timezone.utc)
    return [tick(source.id, now=now, session=session) for source in due_sources(now, session=session)]
