"""
Shared pieces for data source adapters.

Adapters are one class per data source kind, each satisfying the
``DataSourceAdapter`` protocol. The helpers here parse pushed streams and
stage a delivery under a fresh import; adapters compose them rather than
inherit from a common base.
"""

from __future__ import annotations

import csv
import io
import json
from typing import IO, Any, ClassVar, Iterable, Iterator, Mapping, Protocol

from flask import current_app

from graph_ingest.models import DataSource
from graph_ingest.models.importer import DataSourceKind, ImportStatus

from ..dispatch import dispatch_processing
from ..errors import AcquisitionError, ConfigurationError, StagingError
from ..metrics import record_staged, record_staging_failure
from ..pipeline.imports import ImportService, ImportSummary
from ..pipeline.staging import StagingStore, config_snapshot
from ..result import Result

DATA_TYPES = ("json", "csv")
COMMON_KEYS = ("stop_nodes", "value_nodes", "data_retention_days")


class DataSourceAdapter(Protocol):
    kind: DataSourceKind
    polling: ClassVar[bool]

    def validate_config(self, config: Mapping[str, Any]) -> dict[str, Any]: ...

    def receive(
        self,
        source: DataSource,
        stream: IO | bytes | str | None,
        user: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> Result[ImportSummary]: ...

    def poll(self, source: DataSource) -> Result[ImportSummary]: ...


def validate_common_config(config: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize the keys every data source kind accepts."""
    normalized = dict(config or {})
    for name in ("stop_nodes", "value_nodes"):
        value = normalized.get(name)
        if value in (None, ""):
            normalized[name] = []
        elif isinstance(value, str):
            normalized[name] = [item.strip() for item in value.split(",") if item.strip()]
        elif isinstance(value, (list, tuple)):
            normalized[name] = [str(item).strip() for item in value if str(item).strip()]
        else:
            raise ConfigurationError(f"{name} must be a list of key names")
    retention = normalized.get("data_retention_days")
    if retention in (None, ""):
        normalized.pop("data_retention_days", None)
    else:
        try:
            normalized["data_retention_days"] = int(retention)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError("data_retention_days must be an integer") from exc
        if normalized["data_retention_days"] < 0:
            raise ConfigurationError("data_retention_days cannot be negative")
    return normalized


def coerce_positive_number(config: dict[str, Any], name: str, *, default: int | None = None) -> None:
    value = config.get(name, default)
    if value in (None, ""):
        config.pop(name, None)
        return
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be a positive integer") from exc
    if number <= 0:
        raise ConfigurationError(f"{name} must be a positive integer")
    config[name] = number


def _read_text(stream: IO | bytes | str | None) -> str:
    if stream is None:
        raise AcquisitionError("no payload supplied")
    if isinstance(stream, bytes):
        raw: Any = stream
    elif isinstance(stream, str):
        return stream
    else:
        raw = stream.read()
    if isinstance(raw, bytes):
        try:
            return raw.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise AcquisitionError(f"payload is not valid UTF-8: {exc}") from exc
    return raw


def _sanitize_header(header: str | None) -> str:
    token = (header or "").strip()
    return token.lstrip("﻿")


def _row_is_blank(row: Mapping[str, Any]) -> bool:
    return all((value is None or (isinstance(value, str) and value.strip() == "")) for value in row.values())


def iter_csv_rows(text: str) -> Iterator[dict[str, Any]]:
    """Yield CSV rows as objects keyed by header, skipping blank rows."""
    reader = csv.DictReader(io.StringIO(text))
    if reader.fieldnames is None:
        raise AcquisitionError("CSV payload has no header row")
    headers = [_sanitize_header(header) for header in reader.fieldnames]
    if any(not header for header in headers):
        raise AcquisitionError("CSV header contains an empty column name")
    if len(set(headers)) != len(headers):
        raise AcquisitionError("CSV header contains duplicate column names")
    reader.fieldnames = headers
    for raw_row in reader:
        row = {key: value for key, value in raw_row.items() if key is not None}
        if _row_is_blank(row):
            continue
        yield row


def iter_json_payloads(text: str) -> Iterator[Any]:
    """A JSON array yields each element; any other document yields itself."""
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise AcquisitionError(f"payload is not valid JSON: {exc}") from exc
    if isinstance(document, list):
        yield from document
    else:
        yield document


def parse_stream(stream: IO | bytes | str | None, data_type: str) -> list[Any]:
    text = _read_text(stream)
    if data_type == "csv":
        return list(iter_csv_rows(text))
    return list(iter_json_payloads(text))


def stage_delivery(
    source: DataSource,
    payloads: Iterable[Any],
    *,
    user: str | None = None,
    reference: str | None = None,
    inline: bool = False,
) -> Result[ImportSummary]:
    """
    Open an import, stage ``payloads`` under it and hand it to processing.

    The import is committed first so a failed staging write can be recorded
    against it; the staged rows themselves commit together or not at all.
    """
    imports = ImportService()
    import_record = imports.start(source, created_by=user, reference=reference)
    import_id = import_record.id
    adapter = source.kind.value
    try:
        staged = StagingStore().stage_many(import_id, source.id, payloads, config_snapshot(source))
        import_record.total_records = staged
        imports.set_status(import_record, ImportStatus.READY, f"{staged} record(s) staged")
        imports.session.commit()
    except (StagingError, AcquisitionError) as exc:
        record_staging_failure(adapter)
        imports.fail(import_id, exc.message)
        current_app.logger.warning(
            "Importer staging failed",
            extra={"importer_import_id": import_id, "importer_data_source_id": source.id, "importer_error": exc.message},
        )
        return Result.failure(exc.message, code=exc.code, status=exc.status, import_id=import_id)

    record_staged(adapter, staged)
    current_app.logger.info(
        "Importer staged delivery",
        extra={
            "importer_import_id": import_id,
            "importer_data_source_id": source.id,
            "importer_adapter": adapter,
            "importer_records_staged": staged,
        },
    )
    dispatch_processing(import_id, inline=inline)
    return Result.success(imports.summarize(import_record))


def fail_delivery(source: DataSource, exc: AcquisitionError, *, reference: str | None = None) -> Result[ImportSummary]:
    """Record a failed pull as an errored import; the source stays active."""
    imports = ImportService()
    import_record = imports.start(source, reference=reference)
    imports.fail(import_record.id, exc.message)
    current_app.logger.warning(
        "Importer acquisition failed",
        extra={
            "importer_import_id": import_record.id,
            "importer_data_source_id": source.id,
            "importer_adapter": source.kind.value,
            "importer_error": exc.message,
        },
    )
    return Result.failure(exc.message, code=exc.code, status=exc.status, import_id=import_record.id)
