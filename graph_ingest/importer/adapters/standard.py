"""
Push adapter for uploads of JSON or CSV.

``standard`` and ``manual`` sources behave identically; the registry builds
one ``StandardAdapter`` per kind.
"""

from __future__ import annotations

from typing import IO, Any, ClassVar, Mapping

from graph_ingest.models import DataSource
from graph_ingest.models.importer import DataSourceKind

from ..errors import AcquisitionError, ConfigurationError
from ..pipeline.imports import ImportSummary
from ..result import Result
from .base import DATA_TYPES, parse_stream, stage_delivery, validate_common_config


class StandardAdapter:
    polling: ClassVar[bool] = False

    def __init__(self, kind: DataSourceKind = DataSourceKind.STANDARD):
        self.kind = DataSourceKind(kind)

    def validate_config(self, config: Mapping[str, Any]) -> dict[str, Any]:
        normalized = validate_common_config(config)
        data_type = str(normalized.get("data_type") or "json").strip().lower()
        if data_type not in DATA_TYPES:
            raise ConfigurationError(
                f"data_type must be one of {', '.join(DATA_TYPES)}", details={"data_type": data_type}
            )
        normalized["data_type"] = data_type
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
        return stage_delivery(
            source,
            payloads,
            user=user,
            reference=options.get("reference"),
            inline=bool(options.get("process")),
        )

    def poll(self, source: DataSource) -> Result[ImportSummary]:
        return Result.failure(
            f"{source.kind.value} data sources do not poll", code="invalid_operation", status=400
        )
