"""
Polling adapter for plain HTTP endpoints.

Each tick issues one GET against the configured endpoint and stages the
response body (a JSON document or array, or CSV) under a fresh import.
"""

from __future__ import annotations

from typing import IO, Any, Callable, ClassVar, Mapping
from urllib.parse import urlparse

import requests
from flask import current_app

from graph_ingest.models import DataSource
from graph_ingest.models.importer import DataSourceKind

from ..errors import AcquisitionError, ConfigurationError
from ..pipeline.imports import ImportSummary
from ..result import Result
from ..utils import coerce_flag
from .base import (
    DATA_TYPES,
    coerce_positive_number,
    fail_delivery,
    parse_stream,
    stage_delivery,
    validate_common_config,
)

AUTH_METHODS = ("none", "basic", "token")
DEFAULT_POLL_INTERVAL_MINUTES = 10


class HttpAdapter:
    kind: ClassVar[DataSourceKind] = DataSourceKind.HTTP
    polling: ClassVar[bool] = True

    def __init__(self, session_factory: Callable[[], requests.Session] = requests.Session):
        self.session_factory = session_factory

    def validate_config(self, config: Mapping[str, Any]) -> dict[str, Any]:
        normalized = validate_common_config(config)
        endpoint = str(normalized.get("endpoint") or "").strip()
        parsed = urlparse(endpoint)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError("endpoint must be an absolute http(s) URL", details={"endpoint": endpoint})
        normalized["endpoint"] = endpoint

        auth_method = str(normalized.get("auth_method") or "none").strip().lower()
        if auth_method not in AUTH_METHODS:
            raise ConfigurationError(f"auth_method must be one of {', '.join(AUTH_METHODS)}")
        if auth_method == "basic" and not (normalized.get("username") and normalized.get("password")):
            raise ConfigurationError("basic auth requires username and password")
        if auth_method == "token" and not normalized.get("token"):
            raise ConfigurationError("token auth requires a token")
        normalized["auth_method"] = auth_method

        data_type = str(normalized.get("data_type") or "json").strip().lower()
        if data_type not in DATA_TYPES:
            raise ConfigurationError(f"data_type must be one of {', '.join(DATA_TYPES)}")
        normalized["data_type"] = data_type

        coerce_positive_number(normalized, "poll_interval", default=DEFAULT_POLL_INTERVAL_MINUTES)
        coerce_positive_number(normalized, "timeout")
        normalized["secure"] = coerce_flag(normalized.get("secure"), default=True)
        return normalized

    def receive(
        self,
        source: DataSource,
        stream: IO | bytes | str | None,
        user: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> Result[ImportSummary]:
        return Result.failure("http data sources are polled, not pushed to", code="invalid_operation", status=400)

    def _request_kwargs(self, config: Mapping[str, Any]) -> dict[str, Any]:
        timeout_ms = config.get("timeout") or current_app.config.get("IMPORTER_HTTP_DEFAULT_TIMEOUT_MS", 15000)
        kwargs: dict[str, Any] = {
            "timeout": int(timeout_ms) / 1000.0,
            "verify": bool(config.get("secure", True)),
            "headers": {"Accept": "text/csv" if config.get("data_type") == "csv" else "application/json"},
        }
        auth_method = config.get("auth_method", "none")
        if auth_method == "basic":
            kwargs["auth"] = (config.get("username"), config.get("password"))
        elif auth_method == "token":
            kwargs["headers"]["Authorization"] = f"Bearer {config.get('token')}"
        return kwargs

    def fetch(self, source: DataSource) -> list[Any]:
        config = source.config or {}
        session = self.session_factory()
        try:
            response = session.get(config["endpoint"], **self._request_kwargs(config))
            response.raise_for_status()
        except requests.RequestException as exc:
            raise AcquisitionError(f"GET {config.get('endpoint')} failed: {exc}") from exc
        finally:
            session.close()
        return parse_stream(response.content, config.get("data_type", "json"))

    def poll(self, source: DataSource) -> Result[ImportSummary]:
        reference = (source.config or {}).get("endpoint")
        try:
            payloads = self.fetch(source)
        except AcquisitionError as exc:
            return fail_delivery(source, exc, reference=reference)
        return stage_delivery(source, payloads, reference=reference)
