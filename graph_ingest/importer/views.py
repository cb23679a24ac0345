"""
Importer blueprint: JSON endpoints for data sources, uploads, imports and mappings.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import Any, Callable

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request

from graph_ingest.models import Import, db
from graph_ingest.models.importer import DataSourceKind, ImportStatus
from graph_ingest.utils.importer import is_importer_enabled

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .dispatch import dispatch_processing
from .errors import ConfigurationError, ImporterError, NotFoundError
from .mapping import TypeMappingRegistry
from .pipeline.imports import ImportFilters, ImportService, serialize_import
from .pipeline.staging import StagingStore
from .pipeline.timeseries import TimeseriesStorage
from .registry import AdapterDescriptor
from .result import Result
from .service import DataSourceService, serialize_data_source
from .utils import coerce_flag, max_upload_bytes, persist_upload, upload_data_type

importer_blueprint = Blueprint("importer", __name__, url_prefix="/importer")

USER_HEADER = "X-Importer-User"


def _serialize_adapter(adapter: AdapterDescriptor) -> dict:
    return {
        "name": adapter.name,
        "title": adapter.title,
        "summary": adapter.summary,
        "polling": adapter.polling,
    }


def _json_error(message: str, status: HTTPStatus, code: str = "invalid_request"):
    return jsonify({"error": {"code": code, "message": message, "status": int(status)}}), status


def _error_response(exc: ImporterError):
    return jsonify({"error": exc.as_dict()}), exc.status


def _result_response(result: Result, serialize: Callable[[Any], Any], status: HTTPStatus = HTTPStatus.OK):
    if result.is_error:
        return jsonify({"error": result.error.as_dict()}), result.error.status
    return jsonify({"value": serialize(result.value)}), status


def _current_user() -> str | None:
    return request.headers.get(USER_HEADER) or None


def _flag(name: str, default: bool = False) -> bool:
    return coerce_flag(request.args.get(name), default=default)


def _serialize_mapping(mapping, registry: TypeMappingRegistry) -> dict[str, Any]:
    return {
        "id": mapping.id,
        "data_source_id": mapping.data_source_id,
        "shape_hash": mapping.shape_hash,
        "active": bool(mapping.active),
        "sample_payload": mapping.sample_payload,
        "transformation_count": len(registry.transformations_for(mapping.id)),
        "created_at": mapping.created_at.isoformat() if mapping.created_at else None,
    }


@importer_blueprint.before_request
def _ensure_importer_enabled():
    if not is_importer_enabled(current_app):
        return _json_error("Importer is disabled.", HTTPStatus.NOT_FOUND, code="importer_disabled")
    return None


@importer_blueprint.errorhandler(ImporterError)
def _handle_importer_error(exc: ImporterError):
    db.session.rollback()
    return _error_response(exc)


@importer_blueprint.get("/health")
def importer_healthcheck():
    """Report importer state and per-adapter readiness."""
    importer_state = current_app.extensions.get("importer", {})
    adapters = importer_state.get("active_adapters", ())
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": importer_state.get("enabled", False),
                "worker_enabled": importer_state.get("worker_enabled", False),
                "adapters": [_serialize_adapter(adapter) for adapter in adapters],
                "adapter_readiness": importer_state.get("adapter_readiness", {}),
            }
        ),
        HTTPStatus.OK,
    )


@importer_blueprint.get("/worker_health")
def importer_worker_health():
    """Validate worker availability via the heartbeat task."""
    importer_state = current_app.extensions.get("importer", {})
    timeout_seconds = float(request.args.get("timeout", 5))
    payload: dict[str, Any] = {
        "worker_enabled": importer_state.get("worker_enabled", False),
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }
    if not payload["worker_enabled"]:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; start the worker or set IMPORTER_WORKER_ENABLED=true."
        return jsonify(payload), HTTPStatus.OK

    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get("importer.healthcheck") if celery_app is not None else None
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), HTTPStatus.INTERNAL_SERVER_ERROR

    result = task.apply_async()
    try:
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), HTTPStatus.GATEWAY_TIMEOUT
    payload["status"] = "ok"
    return jsonify(payload), HTTPStatus.OK


# -- data sources ---------------------------------------------------------------


@importer_blueprint.get("/data_sources")
def list_data_sources():
    kind = request.args.get("adapter_type")
    try:
        sources = DataSourceService().list(
            include_archived=_flag("include_archived"),
            kind=DataSourceKind(kind) if kind else None,
        )
    except ValueError:
        return _json_error(f"unknown adapter type '{kind}'", HTTPStatus.BAD_REQUEST)
    return jsonify({"value": [serialize_data_source(source) for source in sources]}), HTTPStatus.OK


@importer_blueprint.post("/data_sources")
def create_data_source():
    body = request.get_json(silent=True) or {}
    result = DataSourceService().create(
        body.get("name"),
        body.get("adapter_type") or "",
        body.get("config") or {},
        user=_current_user(),
        active=bool(body.get("active", False)),
    )
    return _result_response(result, serialize_data_source, HTTPStatus.CREATED)


@importer_blueprint.get("/data_sources/<int:data_source_id>")
def get_data_source(data_source_id: int):
    source = DataSourceService().get(data_source_id)
    return jsonify({"value": serialize_data_source(source)}), HTTPStatus.OK


@importer_blueprint.put("/data_sources/<int:data_source_id>")
def update_data_source(data_source_id: int):
    body = request.get_json(silent=True) or {}
    result = DataSourceService().update(
        data_source_id,
        name=body.get("name"),
        config=body.get("config"),
        user=_current_user(),
    )
    return _result_response(result, serialize_data_source)


@importer_blueprint.delete("/data_sources/<int:data_source_id>")
def delete_data_source(data_source_id: int):
    """``?archive=true`` soft deletes; otherwise hard delete, optionally with ``remove_data``."""
    service = DataSourceService()
    if _flag("archive"):
        return _result_response(service.archive(data_source_id, user=_current_user()), serialize_data_source)
    result = service.delete(data_source_id, remove_data=_flag("remove_data"))
    return _result_response(result, lambda deleted_id: {"id": deleted_id, "deleted": True})


@importer_blueprint.post("/data_sources/<int:data_source_id>/active")
def activate_data_source(data_source_id: int):
    return _result_response(DataSourceService().set_active(data_source_id, user=_current_user()), serialize_data_source)


@importer_blueprint.delete("/data_sources/<int:data_source_id>/active")
def deactivate_data_source(data_source_id: int):
    return _result_response(
        DataSourceService().set_inactive(data_source_id, user=_current_user()), serialize_data_source
    )


@importer_blueprint.post("/data_sources/<int:data_source_id>/reprocess")
def reprocess_data_source(data_source_id: int):
    return _result_response(DataSourceService().reprocess(data_source_id), lambda summary: summary.as_dict())


# -- uploads and imports --------------------------------------------------------


@importer_blueprint.post("/data_sources/<int:data_source_id>/imports")
def upload_data(data_source_id: int):
    """
    Push data into a source.

    Accepts a multipart ``file`` (``.json`` or ``.csv``) or a raw JSON/CSV
    request body. ``?process=true`` transforms before responding.
    """
    limit = max_upload_bytes()
    if request.content_length is not None and request.content_length > limit:
        return _json_error(
            f"upload exceeds {limit // (1024 * 1024)} MB", HTTPStatus.REQUEST_ENTITY_TOO_LARGE, code="upload_too_large"
        )

    options: dict[str, Any] = {"process": _flag("process"), "data_type": request.args.get("data_type")}
    upload = request.files.get("file")
    service = DataSourceService()
    if upload is not None:
        if not upload.filename:
            return _json_error("uploaded file has no name", HTTPStatus.BAD_REQUEST)
        options["data_type"] = options["data_type"] or upload_data_type(upload.filename)
        if options["data_type"] is None:
            return _json_error("only .json and .csv uploads are accepted", HTTPStatus.BAD_REQUEST)
        options["reference"] = upload.filename
        saved = persist_upload(upload)
        with saved.open("rb") as handle:
            result = service.ingest(data_source_id, handle, user=_current_user(), options=options)
    else:
        body = request.get_data()
        if not body:
            return _json_error("request body is empty", HTTPStatus.BAD_REQUEST)
        if options["data_type"] is None:
            options["data_type"] = "csv" if request.mimetype == "text/csv" else "json"
        result = service.ingest(data_source_id, body, user=_current_user(), options=options)
    return _result_response(result, lambda summary: summary.as_dict(), HTTPStatus.CREATED)


@importer_blueprint.get("/data_sources/<int:data_source_id>/imports")
def list_imports(data_source_id: int):
    DataSourceService().get(data_source_id)
    statuses = [value for value in (request.args.get("status") or "").split(",") if value.strip()]
    try:
        filters = ImportFilters.coerce(
            page=request.args.get("page"),
            page_size=request.args.get("page_size"),
            statuses=statuses,
        )
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    rows, total = ImportService().list_imports(data_source_id, filters)
    return (
        jsonify(
            {
                "value": [serialize_import(row) for row in rows],
                "total": total,
                "page": filters.page,
                "page_size": filters.page_size,
            }
        ),
        HTTPStatus.OK,
    )


@importer_blueprint.get("/imports/<int:import_id>")
def get_import(import_id: int):
    import_record = db.session.get(Import, import_id)
    if import_record is None:
        raise NotFoundError(f"import {import_id} not found")
    payload = serialize_import(import_record)
    payload["staging_counts"] = StagingStore().count_by_status(import_id=import_id)
    return jsonify({"value": payload}), HTTPStatus.OK


@importer_blueprint.post("/imports/<int:import_id>/process")
def process_import(import_id: int):
    import_record = db.session.get(Import, import_id)
    if import_record is None:
        raise NotFoundError(f"import {import_id} not found")
    if ImportStatus(import_record.status).is_terminal:
        return _json_error("import already finished", HTTPStatus.CONFLICT, code="invalid_operation")
    task_id = dispatch_processing(import_id, inline=_flag("inline"))
    db.session.refresh(import_record)
    return jsonify({"value": serialize_import(import_record), "task_id": task_id}), HTTPStatus.ACCEPTED


@importer_blueprint.get("/data_sources/<int:data_source_id>/data/count")
def count_staged_data(data_source_id: int):
    DataSourceService().get(data_source_id)
    store = StagingStore()
    return jsonify({"value": store.count_for_source(data_source_id)}), HTTPStatus.OK


@importer_blueprint.get("/data_sources/<int:data_source_id>/timeseries")
def list_timeseries_rows(data_source_id: int):
    source = DataSourceService().get(data_source_id)
    if source.kind is not DataSourceKind.TIMESERIES:
        raise ConfigurationError("data source is not a timeseries source")
    try:
        limit = max(1, min(int(request.args.get("limit", 100)), 1000))
    except ValueError:
        return _json_error("limit must be an integer", HTTPStatus.BAD_REQUEST)
    storage = TimeseriesStorage()
    rows = storage.fetch_rows(source, limit=limit)
    db.session.commit()
    return jsonify({"value": rows, "total": storage.count_rows(source)}), HTTPStatus.OK


# -- mappings ------------------------------------------------------------------


@importer_blueprint.get("/data_sources/<int:data_source_id>/mappings")
def list_mappings(data_source_id: int):
    DataSourceService().get(data_source_id)
    registry = TypeMappingRegistry()
    mappings = registry.list_for_source(data_source_id)
    return jsonify({"value": [_serialize_mapping(mapping, registry) for mapping in mappings]}), HTTPStatus.OK


@importer_blueprint.post("/mappings/<int:mapping_id>/active")
def activate_mapping(mapping_id: int):
    registry = TypeMappingRegistry()
    mapping = registry.set_active(mapping_id, True)
    db.session.commit()
    return jsonify({"value": _serialize_mapping(mapping, registry)}), HTTPStatus.OK


@importer_blueprint.delete("/mappings/<int:mapping_id>/active")
def deactivate_mapping(mapping_id: int):
    registry = TypeMappingRegistry()
    mapping = registry.set_active(mapping_id, False)
    db.session.commit()
    return jsonify({"value": _serialize_mapping(mapping, registry)}), HTTPStatus.OK


@importer_blueprint.post("/mappings/upgrade")
def upgrade_mappings():
    body = request.get_json(silent=True) or {}
    mapping_ids = body.get("mapping_ids") or []
    version_id = body.get("ontology_version_id")
    if not isinstance(mapping_ids, list) or not mapping_ids or version_id is None:
        return _json_error("mapping_ids and ontology_version_id are required", HTTPStatus.BAD_REQUEST)
    registry = TypeMappingRegistry()
    mappings = registry.upgrade([int(mapping_id) for mapping_id in mapping_ids], int(version_id))
    db.session.commit()
    return jsonify({"value": [_serialize_mapping(mapping, registry) for mapping in mappings]}), HTTPStatus.OK
