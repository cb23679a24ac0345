"""Staging store: durable record of every inbound payload."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Iterator, Mapping

from flask import current_app
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from graph_ingest.models import DataSource, DataStaging, StagingIntentOutcome, db
from graph_ingest.models.base import utc_now
from graph_ingest.models.importer import StagingStatus

from ..errors import StagingError
from ..shape import shape_hash_for_source

BATCH_SIZE = 500

# records that automatic processing may pick up
UNPROCESSED_STATUSES = (StagingStatus.STAGED,)


def config_snapshot(source: DataSource) -> dict[str, Any]:
    """Copy of the source configuration without credentials."""
    snapshot = dict(source.config or {})
    for secret in ("password", "token", "client_secret", "security_token"):
        if secret in snapshot:
            snapshot[secret] = "***"
    snapshot["adapter_type"] = source.kind.value
    return snapshot


class StagingStore:
    def __init__(self, session=None, batch_size: int | None = None):
        self.session = session or db.session
        if batch_size is None:
            batch_size = int(current_app.config.get("IMPORTER_STAGING_BATCH_SIZE", BATCH_SIZE))
        self.batch_size = max(1, batch_size)

    def _build(
        self,
        import_id: int,
        data_source_id: int,
        payload: Any,
        snapshot: Mapping[str, Any] | None,
    ) -> DataStaging:
        return DataStaging(
            import_id=import_id,
            data_source_id=data_source_id,
            data=payload,
            data_source_config=dict(snapshot or {}),
            shape_hash=shape_hash_for_source(payload, snapshot),
            status=StagingStatus.STAGED,
            errors=[],
        )

    def stage(
        self,
        import_id: int,
        data_source_id: int,
        payload: Any,
        snapshot: Mapping[str, Any] | None = None,
    ) -> int:
        """Persist one payload and return its staging id. The caller commits."""
        record = self._build(import_id, data_source_id, payload, snapshot)
        try:
            self.session.add(record)
            self.session.flush()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StagingError(f"failed to stage payload: {exc}") from exc
        return record.id

    def stage_many(
        self,
        import_id: int,
        data_source_id: int,
        payloads: Iterable[Any],
        snapshot: Mapping[str, Any] | None = None,
    ) -> int:
        """
        Stage ``payloads`` in flushes of ``batch_size``.

        Nothing is committed here: a failure rolls back every payload of the
        delivery so the next acquisition cycle re-delivers all of it.
        """
        pending: list[DataStaging] = []
        staged = 0
        try:
            for payload in payloads:
                pending.append(self._build(import_id, data_source_id, payload, snapshot))
                if len(pending) >= self.batch_size:
                    self.session.add_all(pending)
                    self.session.flush()
                    staged += len(pending)
                    pending.clear()
            if pending:
                self.session.add_all(pending)
                self.session.flush()
                staged += len(pending)
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StagingError(f"failed to stage batch after {staged} records: {exc}") from exc
        return staged

    def get(self, staged_id: int) -> DataStaging | None:
        return self.session.get(DataStaging, staged_id)

    def list_unprocessed(
        self,
        data_source_id: int,
        shape_hash: str | None = None,
        *,
        import_id: int | None = None,
        statuses: Iterable[StagingStatus] = UNPROCESSED_STATUSES,
    ) -> Iterator[DataStaging]:
        """
        Yield staged records in arrival order.

        Ids are read up front and records loaded in slices so callers may
        commit between records.
        """
        statement = select(DataStaging.id).where(
            DataStaging.data_source_id == data_source_id,
            DataStaging.status.in_(tuple(statuses)),
        )
        if shape_hash is not None:
            statement = statement.where(DataStaging.shape_hash == shape_hash)
        if import_id is not None:
            statement = statement.where(DataStaging.import_id == import_id)
        ids = list(self.session.scalars(statement.order_by(DataStaging.id)))
        for start in range(0, len(ids), self.batch_size):
            chunk = ids[start : start + self.batch_size]
            records = self.session.scalars(
                select(DataStaging).where(DataStaging.id.in_(chunk)).order_by(DataStaging.id)
            ).all()
            yield from records

    def record_error(self, staged_id: int, error: Mapping[str, Any] | str) -> None:
        record = self.session.get(DataStaging, staged_id)
        if record is None:
            return
        entry = {"message": error} if isinstance(error, str) else dict(error)
        entry.setdefault("recorded_at", utc_now().isoformat())
        # reassign so the JSON column is marked dirty
        record.errors = [*(record.errors or []), entry]
        self.session.flush()

    def mark_status(self, staged_id: int, status: StagingStatus) -> None:
        record = self.session.get(DataStaging, staged_id)
        if record is None:
            return
        record.status = status
        if status in (StagingStatus.INSERTED, StagingStatus.PARTIALLY_INSERTED):
            record.inserted_at = record.inserted_at or utc_now()
        self.session.flush()

    def mark_inserted(self, staged_id: int) -> None:
        self.mark_status(staged_id, StagingStatus.INSERTED)

    def count_for_source(self, data_source_id: int, status: StagingStatus | None = None) -> int:
        statement = select(func.count(DataStaging.id)).where(DataStaging.data_source_id == data_source_id)
        if status is not None:
            statement = statement.where(DataStaging.status == status)
        return int(self.session.scalar(statement) or 0)

    def count_by_status(self, *, import_id: int) -> dict[str, int]:
        rows = self.session.execute(
            select(DataStaging.status, func.count(DataStaging.id))
            .where(DataStaging.import_id == import_id)
            .group_by(DataStaging.status)
        )
        return {StagingStatus(status).value: int(count) for status, count in rows}

    def delete_for_source(self, data_source_id: int) -> int:
        staged_ids = select(DataStaging.id).where(DataStaging.data_source_id == data_source_id)
        self.session.execute(
            delete(StagingIntentOutcome).where(StagingIntentOutcome.staging_id.in_(staged_ids)),
            execution_options={"synchronize_session": False},
        )
        result = self.session.execute(
            delete(DataStaging).where(DataStaging.data_source_id == data_source_id),
            execution_options={"synchronize_session": False},
        )
        return int(result.rowcount or 0)

    def apply_retention(self, source: DataSource, *, now: datetime | None = None) -> int:
        """Delete inserted records older than the source's ``data_retention_days``."""
        try:
            days = int((source.config or {}).get("data_retention_days") or 0)
        except (TypeError, ValueError):
            days = 0
        if days <= 0:
            return 0
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
        expired = select(DataStaging.id).where(
            DataStaging.data_source_id == source.id,
            DataStaging.status == StagingStatus.INSERTED,
            DataStaging.inserted_at.is_not(None),
            DataStaging.inserted_at < cutoff,
        )
        expired_ids = list(self.session.scalars(expired))
        if not expired_ids:
            return 0
        self.session.execute(
            delete(StagingIntentOutcome).where(StagingIntentOutcome.staging_id.in_(expired_ids)),
            execution_options={"synchronize_session": False},
        )
        self.session.execute(
            delete(DataStaging).where(DataStaging.id.in_(expired_ids)),
            execution_options={"synchronize_session": False},
        )
        self.session.flush()
        current_app.logger.info(
            "Applied staging retention",
            extra={
                "importer_data_source_id": source.id,
                "importer_retention_days": days,
                "importer_records_deleted": len(expired_ids),
            },
        )
        return len(expired_ids)
