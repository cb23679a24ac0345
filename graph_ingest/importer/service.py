"""
Data source lifecycle: create, configure, activate, archive, delete, ingest.

Every public operation returns a :class:`Result` so the blueprint, the CLI and
Celery tasks report failures the same way.
"""

from __future__ import annotations

from typing import IO, Any, Mapping

from flask import current_app
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError

from graph_ingest.models import DataSource, Edge, Import, Node, db
from graph_ingest.models.importer import DataSourceKind, ImportStatus
from graph_ingest.utils.importer import get_importer_adapters

from .adapters import get_adapter
from .dispatch import dispatch_processing
from .errors import ConfigurationError, ImporterError, NotFoundError
from .mapping import TypeMappingRegistry
from .pipeline.imports import ImportService, ImportSummary
from .pipeline.processing import ImportProcessor, ReprocessSummary
from .pipeline.staging import StagingStore, config_snapshot
from .pipeline.timeseries import TimeseriesStorage
from .result import Result


def serialize_data_source(source: DataSource) -> dict[str, Any]:
    config = config_snapshot(source)
    config.pop("adapter_type", None)
    return {
        "id": source.id,
        "name": source.name,
        "adapter_type": source.kind.value,
        "active": bool(source.active),
        "archived": bool(source.archived),
        "config": config,
        "created_by": source.created_by,
        "modified_by": source.modified_by,
        "last_polled_at": source.last_polled_at.isoformat() if source.last_polled_at else None,
        "created_at": source.created_at.isoformat() if source.created_at else None,
        "updated_at": source.updated_at.isoformat() if source.updated_at else None,
    }


class DataSourceService:
    def __init__(self, session=None):
        self.session = session or db.session

    def get(self, data_source_id: int) -> DataSource:
        source = self.session.get(DataSource, data_source_id)
        if source is None:
            raise NotFoundError(f"data source {data_source_id} not found")
        return source

    def list(self, *, include_archived: bool = False, kind: DataSourceKind | str | None = None) -> list[DataSource]:
        statement = select(DataSource).order_by(DataSource.id)
        if not include_archived:
            statement = statement.where(DataSource.archived.is_(False))
        if kind is not None:
            statement = statement.where(DataSource.adapter_type == DataSourceKind(kind))
        return list(self.session.scalars(statement))

    def create(
        self,
        name: str,
        adapter_type: DataSourceKind | str,
        config: Mapping[str, Any] | None = None,
        *,
        user: str | None = None,
        active: bool = False,
    ) -> Result[DataSource]:
        name = (name or "").strip()
        if not name:
            return Result.failure("name is required", code="invalid_configuration", status=400)
        try:
            kind = DataSourceKind(str(adapter_type).strip().lower())
        except ValueError:
            return Result.failure(
                f"unknown adapter type '{adapter_type}'",
                code="invalid_configuration",
                status=400,
                allowed=[member.value for member in DataSourceKind],
            )
        enabled = get_importer_adapters()
        if enabled and kind.value not in enabled:
            return Result.failure(
                f"adapter type '{kind.value}' is not enabled", code="invalid_configuration", status=400
            )
        try:
            normalized = get_adapter(kind).validate_config(config or {})
        except ConfigurationError as exc:
            return Result.from_exception(exc)

        source = DataSource(
            name=name,
            adapter_type=kind,
            config=normalized,
            active=bool(active),
            archived=False,
            created_by=user,
            modified_by=user,
        )
        self.session.add(source)
        self.session.commit()
        current_app.logger.info(
            "Data source created",
            extra={"importer_data_source_id": source.id, "importer_adapter": kind.value},
        )
        return Result.success(source)

    def update(
        self,
        data_source_id: int,
        *,
        name: str | None = None,
        config: Mapping[str, Any] | None = None,
        user: str | None = None,
    ) -> Result[DataSource]:
        try:
            source = self.get(data_source_id)
            if source.archived:
                raise ConfigurationError("archived data sources cannot be modified")
            if config is not None:
                normalized = get_adapter(source.kind).validate_config(config)
                self._check_timeseries_columns(source, normalized)
                source.config = normalized
        except ImporterError as exc:
            return Result.from_exception(exc)
        if name is not None and name.strip():
            source.name = name.strip()
        source.modified_by = user
        self.session.commit()
        return Result.success(source)

    def _check_timeseries_columns(self, source: DataSource, normalized: Mapping[str, Any]) -> None:
        if source.kind is not DataSourceKind.TIMESERIES:
            return
        if (source.config or {}).get("columns") == normalized.get("columns"):
            return
        has_imports = self.session.scalar(select(Import.id).where(Import.data_source_id == source.id).limit(1))
        if has_imports is not None:
            raise ConfigurationError("timeseries columns cannot change once data has been ingested")

    def set_active(self, data_source_id: int, *, user: str | None = None) -> Result[DataSource]:
        """Activate a source and resume imports stopped while it was inactive."""
        try:
            source = self.get(data_source_id)
        except NotFoundError as exc:
            return Result.from_exception(exc)
        if source.archived:
            return Result.failure("archived data sources cannot be activated", code="invalid_operation", status=409)
        source.active = True
        source.modified_by = user
        imports = ImportService(session=self.session)
        resumed = []
        for import_record in imports.open_imports(source.id, (ImportStatus.STOPPED,)):
            imports.set_status(import_record, ImportStatus.READY, "Resumed after data source activation.")
            resumed.append(import_record.id)
        self.session.commit()
        for import_id in resumed:
            dispatch_processing(import_id)
        current_app.logger.info(
            "Data source activated",
            extra={"importer_data_source_id": source.id, "importer_resumed_imports": resumed},
        )
        return Result.success(source)

    def set_inactive(self, data_source_id: int, *, user: str | None = None) -> Result[DataSource]:
        """Deactivate without touching configuration; in-flight work finishes, nothing new starts."""
        try:
            source = self.get(data_source_id)
        except NotFoundError as exc:
            return Result.from_exception(exc)
        source.active = False
        source.modified_by = user
        self.session.commit()
        current_app.logger.info("Data source deactivated", extra={"importer_data_source_id": source.id})
        return Result.success(source)

    def archive(self, data_source_id: int, *, user: str | None = None) -> Result[DataSource]:
        try:
            source = self.get(data_source_id)
        except NotFoundError as exc:
            return Result.from_exception(exc)
        source.archived = True
        source.active = False
        source.modified_by = user
        self.session.commit()
        current_app.logger.info("Data source archived", extra={"importer_data_source_id": source.id})
        return Result.success(source)

    def delete(self, data_source_id: int, *, remove_data: bool = False) -> Result[int]:
        """
        Hard delete a data source.

        Without ``remove_data`` the delete is refused while the source still
        owns imports; with it, staged data, imports, mappings, the graph
        entities it produced and any time-series table go too.
        """
        try:
            source = self.get(data_source_id)
        except NotFoundError as exc:
            return Result.from_exception(exc)

        has_imports = self.session.scalar(select(Import.id).where(Import.data_source_id == source.id).limit(1))
        if has_imports is not None and not remove_data:
            return Result.failure(
                "data source has ingested data; archive it or delete with remove_data",
                code="invalid_operation",
                status=409,
            )

        try:
            if remove_data:
                self._remove_data(source)
            self.session.delete(source)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            current_app.logger.exception("Data source delete failed", extra={"importer_data_source_id": data_source_id})
            return Result.failure(f"failed to delete data source: {exc}", code="persistence_failed", status=500)
        current_app.logger.info(
            "Data source deleted",
            extra={"importer_data_source_id": data_source_id, "importer_remove_data": remove_data},
        )
        return Result.success(data_source_id)

    def _remove_data(self, source: DataSource) -> None:
        node_ids = select(Node.id).where(Node.data_source_id == source.id)
        self.session.execute(
            delete(Edge).where(
                or_(
                    Edge.data_source_id == source.id,
                    Edge.origin_id.in_(node_ids),
                    Edge.destination_id.in_(node_ids),
                )
            ),
            execution_options={"synchronize_session": False},
        )
        self.session.execute(
            delete(Node).where(Node.data_source_id == source.id),
            execution_options={"synchronize_session": False},
        )
        StagingStore(session=self.session).delete_for_source(source.id)
        # bulk deletes bypass the identity map
        self.session.expire_all()
        TypeMappingRegistry(session=self.session).delete_for_source(source.id)
        if source.kind is DataSourceKind.TIMESERIES:
            TimeseriesStorage(session=self.session).drop_schema(source)

    def ingest(
        self,
        data_source_id: int,
        stream: IO | bytes | str | None,
        *,
        user: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> Result[ImportSummary]:
        """Push ``stream`` into an active source through its adapter."""
        try:
            source = self.get(data_source_id)
        except NotFoundError as exc:
            return Result.from_exception(exc)
        if not source.active or source.archived:
            return Result.failure("data source is inactive", code="inactive_data_source", status=409)
        return get_adapter(source.kind).receive(source, stream, user=user, options=options)

    def reprocess(self, data_source_id: int) -> Result[ReprocessSummary]:
        try:
            source = self.get(data_source_id)
        except NotFoundError as exc:
            return Result.from_exception(exc)
        if source.archived:
            return Result.failure("archived data sources cannot be reprocessed", code="invalid_operation", status=409)
        if source.kind is DataSourceKind.TIMESERIES:
            return Result.failure(
                "timeseries data sources have no staged records to reprocess", code="invalid_operation", status=400
            )
        try:
            summary = ImportProcessor(session=self.session).reprocess(source)
        except ImporterError as exc:
            return Result.from_exception(exc)
        return Result.success(summary)
