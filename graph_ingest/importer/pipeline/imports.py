"""
Import lifecycle helpers: creation, status transitions, counts and listings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from sqlalchemy import func, select, update

from graph_ingest.models import DataSource, DataStaging, Import, db
from graph_ingest.models.importer import ImportStatus, StagingStatus

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100


def _coerce_positive_int(value: Any, *, fallback: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return fallback
    return number if number > 0 else fallback


@dataclass(frozen=True)
class ImportFilters:
    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    statuses: tuple[ImportStatus, ...] = field(default_factory=tuple)

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> "ImportFilters":
        resolved_statuses = []
        for value in statuses or ():
            if not value:
                continue
            try:
                resolved_statuses.append(ImportStatus(str(value).strip().lower()))
            except ValueError as exc:
                raise ValueError(f"Unsupported import status '{value}'.") from exc
        return cls(
            page=_coerce_positive_int(page, fallback=DEFAULT_PAGE),
            page_size=min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE),
            statuses=tuple(resolved_statuses),
        )


@dataclass(frozen=True)
class ImportSummary:
    """Outcome of one acquisition cycle."""

    import_id: int | None
    data_source_id: int
    status: str
    total_records: int = 0
    records_inserted: int = 0
    total_errors: int = 0
    message: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "import_id": self.import_id,
            "data_source_id": self.data_source_id,
            "status": self.status,
            "total_records": self.total_records,
            "records_inserted": self.records_inserted,
            "total_errors": self.total_errors,
            "message": self.message,
        }


class ImportService:
    def __init__(self, session=None):
        self.session = session or db.session

    def start(self, source: DataSource, *, created_by: str | None = None, reference: str | None = None) -> Import:
        """Open an import for ``source`` and commit it so failures can be recorded against it."""
        import_record = Import(
            data_source_id=source.id,
            status=ImportStatus.READY,
            created_by=created_by,
            reference=reference,
        )
        self.session.add(import_record)
        self.session.commit()
        return import_record

    def set_status(self, import_record: Import, status: ImportStatus, message: str | None = None) -> Import:
        import_record.status = status
        if message is not None:
            import_record.status_message = message
        self.session.flush()
        return import_record

    def claim(self, import_id: int, from_statuses: Iterable[ImportStatus] = (ImportStatus.READY,)) -> bool:
        """
        Move an import to ``processing`` with a conditional UPDATE and commit.

        Returns False when the import has left ``from_statuses`` in the
        meantime, e.g. because another worker already took it.
        """
        result = self.session.execute(
            update(Import)
            .where(Import.id == import_id, Import.status.in_(tuple(from_statuses)))
            .values(status=ImportStatus.PROCESSING)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount == 1

    def fail(self, import_id: int, message: str) -> Import | None:
        """Mark an import as errored in a fresh transaction."""
        self.session.rollback()
        import_record = self.session.get(Import, import_id)
        if import_record is None:
            return None
        import_record.status = ImportStatus.ERROR
        import_record.status_message = message[:2000]
        self.session.commit()
        return import_record

    def refresh_counts(self, import_record: Import) -> Import:
        """Recompute aggregate counts from the import's staged records."""
        rows = self.session.execute(
            select(DataStaging.status, func.count(DataStaging.id))
            .where(DataStaging.import_id == import_record.id)
            .group_by(DataStaging.status)
        )
        counts = {StagingStatus(status): int(count) for status, count in rows}
        total = sum(counts.values())
        # time-series imports bypass staging and keep their own counts
        if total:
            import_record.total_records = total
            import_record.records_inserted = counts.get(StagingStatus.INSERTED, 0) + counts.get(
                StagingStatus.PARTIALLY_INSERTED, 0
            )
            import_record.total_errors = counts.get(StagingStatus.ERRORED, 0) + counts.get(
                StagingStatus.PARTIALLY_INSERTED, 0
            )
        self.session.flush()
        return import_record

    def summarize(self, import_record: Import) -> ImportSummary:
        return ImportSummary(
            import_id=import_record.id,
            data_source_id=import_record.data_source_id,
            status=ImportStatus(import_record.status).value,
            total_records=import_record.total_records or 0,
            records_inserted=import_record.records_inserted or 0,
            total_errors=import_record.total_errors or 0,
            message=import_record.status_message,
        )

    def list_imports(self, data_source_id: int, filters: ImportFilters | None = None) -> tuple[list[Import], int]:
        filters = filters or ImportFilters()
        statement = select(Import).where(Import.data_source_id == data_source_id)
        if filters.statuses:
            statement = statement.where(Import.status.in_(filters.statuses))
        total = int(self.session.scalar(select(func.count()).select_from(statement.subquery())) or 0)
        rows = self.session.scalars(
            statement.order_by(Import.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
        ).all()
        return list(rows), total

    def open_imports(self, data_source_id: int, statuses: Iterable[ImportStatus]) -> list[Import]:
        return list(
            self.session.scalars(
                select(Import)
                .where(Import.data_source_id == data_source_id, Import.status.in_(tuple(statuses)))
                .order_by(Import.id)
            )
        )


def serialize_import(import_record: Import) -> dict[str, Any]:
    return {
        "id": import_record.id,
        "data_source_id": import_record.data_source_id,
        "status": ImportStatus(import_record.status).value,
        "status_message": import_record.status_message,
        "reference": import_record.reference,
        "created_by": import_record.created_by,
        "total_records": import_record.total_records,
        "records_inserted": import_record.records_inserted,
        "total_errors": import_record.total_errors,
        "created_at": import_record.created_at.isoformat() if import_record.created_at else None,
        "updated_at": import_record.updated_at.isoformat() if import_record.updated_at else None,
    }
