"""
Push adapter for ``timeseries`` sources.

Rows bypass staging and the mapping registry: each upload lands directly in
the source's ``ts_<id>`` table, one savepoint per row, and the import records
how many rows were appended and how many were rejected.
"""

from __future__ import annotations

from typing import IO, Any, ClassVar, Mapping

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from graph_ingest.models import DataSource
from graph_ingest.models.importer import DataSourceKind, ImportStatus

from ..errors import AcquisitionError, ConfigurationError
from ..metrics import record_timeseries_rows
from ..pipeline.imports import ImportService, ImportSummary
from ..pipeline.timeseries import TimeseriesStorage, rows_from_payloads, validate_timeseries_config
from ..result import Result
from .base import DATA_TYPES, parse_stream, validate_common_config

MAX_REPORTED_ROW_ERRORS = 20


class TimeseriesAdapter:
    kind: ClassVar[DataSourceKind] = DataSourceKind.TIMESERIES
    polling: ClassVar[bool] = False

    def __init__(self, storage: TimeseriesStorage | None = None):
        self._storage = storage

    @property
    def storage(self) -> TimeseriesStorage:
        if self._storage is None:
            self._storage = TimeseriesStorage()
        return self._storage

    def validate_config(self, config: Mapping[str, Any]) -> dict[str, Any]:
        normalized = validate_common_config(config)
        columns = []
        for column in normalized.get("columns") or []:
            if isinstance(column, Mapping):
                column = dict(column)
                if column.get("type") is not None:
                    column["type"] = str(column["type"]).strip().lower()
                if column.get("column_name") is not None:
                    column["column_name"] = str(column["column_name"]).strip()
            columns.append(column)
        if columns:
            normalized["columns"] = columns
        validate_timeseries_config(normalized)
        return normalized

    def receive(
        self,
        source: DataSource,
        stream: IO | bytes | str | None,
        user: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> Result[ImportSummary]:
        options = dict(options or {})
        data_type = str(options.get("data_type") or (source.config or {}).get("data_type") or "json").lower()
        if data_type not in DATA_TYPES:
            return Result.failure(f"unsupported data type '{data_type}'", code="invalid_configuration", status=400)
        try:
            payloads = parse_stream(stream, data_type)
        except AcquisitionError as exc:
            return Result.failure(exc.message, code=exc.code, status=400)
        rows = rows_from_payloads(source.config or {}, payloads)

        imports = ImportService()
        import_record = imports.start(source, created_by=user, reference=options.get("reference"))
        import_id = import_record.id
        try:
            imports.set_status(import_record, ImportStatus.PROCESSING)
            results = self.storage.append_rows(source, rows, import_id)
            failures = [result for result in results if not result.succeeded]
            import_record.total_records = len(results)
            import_record.records_inserted = len(results) - len(failures)
            import_record.total_errors = len(failures)
            message = None
            if failures:
                reported = "; ".join(
                    f"row {failure.index + 1}: {failure.error}" for failure in failures[:MAX_REPORTED_ROW_ERRORS]
                )
                message = f"{len(failures)} row(s) rejected. {reported}"
            imports.set_status(import_record, ImportStatus.COMPLETED, message)
            imports.session.commit()
        except (SQLAlchemyError, ConfigurationError) as exc:
            imports.fail(import_id, f"Time-series ingestion failed: {exc}")
            current_app.logger.exception(
                "Importer time-series ingestion failed",
                extra={"importer_import_id": import_id, "importer_data_source_id": source.id},
            )
            return Result.failure(str(exc), code="persistence_failed", status=500, import_id=import_id)
        except Exception as exc:
            imports.fail(import_id, f"Time-series ingestion failed unexpectedly: {exc}")
            current_app.logger.exception(
                "Importer time-series ingestion raised an unexpected error",
                extra={"importer_import_id": import_id, "importer_data_source_id": source.id},
            )
            return Result.failure(
                f"unexpected error during time-series ingestion: {exc}",
                code="importer_error",
                status=500,
                import_id=import_id,
            )

        record_timeseries_rows(import_record.records_inserted, import_record.total_errors)
        current_app.logger.info(
            "Importer appended time-series rows",
            extra={
                "importer_import_id": import_id,
                "importer_data_source_id": source.id,
                "importer_rows_appended": import_record.records_inserted,
                "importer_rows_rejected": import_record.total_errors,
            },
        )
        return Result.success(imports.summarize(import_record))

    def poll(self, source: DataSource) -> Result[ImportSummary]:
        return Result.failure("timeseries data sources do not poll", code="invalid_operation", status=400)
