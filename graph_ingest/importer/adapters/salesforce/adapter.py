"""
Polling adapter for Salesforce objects.

Each tick exports records changed since the stored watermark through the Bulk
API 2.0 and stages one payload per row. The watermark only advances after the
delivery has been committed to the staging store.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import IO, Any, Callable, ClassVar, Iterator, Mapping

import requests
from flask import current_app
from simple_salesforce import SalesforceAuthenticationFailed
from sqlalchemy import select

from graph_ingest.models import DataSource, ImporterWatermark, db
from graph_ingest.models.importer import DataSourceKind

from ...errors import AcquisitionError, ConfigurationError
from ...pipeline.imports import ImportSummary
from ...result import Result
from ...transform.conversion import ValueConversionError, parse_datetime
from ...utils import coerce_flag
from ..base import coerce_positive_number, fail_delivery, stage_delivery, validate_common_config
from . import SalesforceAdapterError
from .extractor import MODSTAMP_FIELD, SalesforceExtractor, SalesforceExtractorError, build_soql, create_salesforce_client

ADAPTER_NAME = "salesforce"
DEFAULT_POLL_INTERVAL_MINUTES = 60
_IDENTIFIER_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*(\.[A-Za-z][A-Za-z0-9_]*)*$")


class _WatermarkTracker:
    """Pass rows through while remembering the newest ``SystemModstamp``."""

    def __init__(self, batches):
        self.batches = batches
        self.latest: datetime | None = None
        self.rows = 0

    def __iter__(self) -> Iterator[dict[str, Any]]:
        try:
            for batch in self.batches:
                for row in batch.records:
                    payload = {key: (None if value == "" else value) for key, value in row.items()}
                    stamp = payload.get(MODSTAMP_FIELD)
                    if stamp:
                        try:
                            parsed = parse_datetime(stamp)
                        except ValueConversionError:
                            parsed = None
                        if parsed is not None and (self.latest is None or parsed > self.latest):
                            self.latest = parsed
                    self.rows += 1
                    yield payload
        except (SalesforceExtractorError, requests.RequestException) as exc:
            raise AcquisitionError(f"Salesforce extraction failed: {exc}") from exc


class SalesforceAdapter:
    kind: ClassVar[DataSourceKind] = DataSourceKind.SALESFORCE
    polling: ClassVar[bool] = True

    def __init__(self, client_factory: Callable[[], Any] = create_salesforce_client, sleep_fn=None):
        self.client_factory = client_factory
        self.sleep_fn = sleep_fn

    def validate_config(self, config: Mapping[str, Any]) -> dict[str, Any]:
        normalized = validate_common_config(config)
        soql = str(normalized.get("soql") or "").strip()
        object_name = str(normalized.get("object_name") or "").strip()
        if soql:
            if not soql.lower().startswith("select "):
                raise ConfigurationError("soql must be a SELECT statement")
            normalized["soql"] = soql
            normalized["incremental"] = coerce_flag(normalized.get("incremental"), default=False)
            if normalized["incremental"]:
                raise ConfigurationError("incremental pulls require object_name and fields instead of raw soql")
        elif object_name:
            if not _IDENTIFIER_RE.match(object_name):
                raise ConfigurationError(f"invalid Salesforce object name '{object_name}'")
            fields = normalized.get("fields")
            if isinstance(fields, str):
                fields = [field.strip() for field in fields.split(",")]
            if not isinstance(fields, list) or not [field for field in fields if field]:
                raise ConfigurationError("fields must list at least one Salesforce field")
            fields = [str(field).strip() for field in fields if str(field).strip()]
            invalid = [field for field in fields if not _IDENTIFIER_RE.match(field)]
            if invalid:
                raise ConfigurationError("invalid Salesforce field names: " + ", ".join(invalid))
            normalized["object_name"] = object_name
            normalized["fields"] = fields
            normalized["incremental"] = coerce_flag(normalized.get("incremental"), default=True)
        else:
            raise ConfigurationError("salesforce data sources require soql or object_name")

        coerce_positive_number(normalized, "poll_interval", default=DEFAULT_POLL_INTERVAL_MINUTES)
        coerce_positive_number(normalized, "batch_size")
        return normalized

    def receive(
        self,
        source: DataSource,
        stream: IO | bytes | str | None,
        user: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> Result[ImportSummary]:
        return Result.failure("salesforce data sources are polled, not pushed to", code="invalid_operation", status=400)

    def _watermark(self, source: DataSource) -> ImporterWatermark | None:
        return db.session.scalar(
            select(ImporterWatermark).where(
                ImporterWatermark.adapter == ADAPTER_NAME,
                ImporterWatermark.data_source_id == source.id,
            )
        )

    def build_query(self, source: DataSource) -> str:
        config = source.config or {}
        if config.get("soql"):
            return config["soql"]
        last_modstamp = None
        if config.get("incremental", True):
            watermark = self._watermark(source)
            last_modstamp = watermark.last_successful_modstamp if watermark else None
        return build_soql(
            config["object_name"],
            fields=config.get("fields") or ["Id"],
            where=config.get("where"),
            last_modstamp=last_modstamp,
        )

    def _extractor(self, source: DataSource) -> SalesforceExtractor:
        config = source.config or {}
        kwargs: dict[str, Any] = {
            "client": self.client_factory(),
            "batch_size": config.get("batch_size") or current_app.config.get("IMPORTER_SALESFORCE_BATCH_SIZE", 5000),
            "api_version": str(current_app.config.get("SALESFORCE_API_VERSION", "60.0")),
        }
        if self.sleep_fn is not None:
            kwargs["sleep_fn"] = self.sleep_fn
        return SalesforceExtractor(**kwargs)

    def _advance_watermark(self, source: DataSource, latest: datetime | None, import_id: int | None) -> None:
        if latest is None or not (source.config or {}).get("incremental", True):
            return
        watermark = self._watermark(source)
        if watermark is None:
            watermark = ImporterWatermark(adapter=ADAPTER_NAME, data_source_id=source.id)
            db.session.add(watermark)
        watermark.last_successful_modstamp = latest
        watermark.last_import_id = import_id
        db.session.commit()

    def poll(self, source: DataSource) -> Result[ImportSummary]:
        reference = f"salesforce:{(source.config or {}).get('object_name') or 'soql'}"
        try:
            soql = self.build_query(source)
            extractor = self._extractor(source)
        except (SalesforceAdapterError, SalesforceAuthenticationFailed, requests.RequestException) as exc:
            return fail_delivery(source, AcquisitionError(f"Salesforce client unavailable: {exc}"), reference=reference)

        tracker = _WatermarkTracker(extractor.extract_batches(soql))
        result = stage_delivery(source, tracker, reference=reference)
        if result.is_success:
            self._advance_watermark(source, tracker.latest, result.value.import_id)
            current_app.logger.info(
                "Salesforce pull staged",
                extra={
                    "importer_data_source_id": source.id,
                    "importer_records_staged": tracker.rows,
                    "importer_watermark": tracker.latest.isoformat() if tracker.latest else None,
                },
            )
        return result
