"""
Exception taxonomy for the ingestion pipeline.

Each error carries a stable ``code`` and the HTTP status the blueprint should
answer with when the failure surfaces through a request.
"""

from __future__ import annotations

from typing import Any, Mapping


class ImporterError(Exception):
    """Base class for importer failures."""

    code = "importer_error"
    status = 500

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message, "status": self.status}
        if self.details:
            payload["details"] = self.details
        return payload


class ConfigurationError(ImporterError):
    """Data source configuration rejected at save time."""

    code = "invalid_configuration"
    status = 400


class NotFoundError(ImporterError):
    code = "not_found"
    status = 404


class AcquisitionError(ImporterError):
    """Upstream fetch or parse failure, recorded on the Import."""

    code = "acquisition_failed"
    status = 502


class KeyExtractionError(ImporterError):
    code = "key_extraction_failed"
    status = 422

    def __init__(self, key: str, message: str | None = None, *, required: bool = False):
        super().__init__(message or f"unable to extract key '{key}'", details={"key": key})
        self.key = key
        self.required = required


class ConversionError(ImporterError):
    code = "conversion_failed"
    status = 422

    def __init__(self, key: str, value: Any, data_type: str, *, required: bool = False):
        super().__init__(
            f"unable to convert value {value!r} of key '{key}' to {data_type}",
            details={"key": key, "data_type": data_type},
        )
        self.key = key
        self.value = value
        self.data_type = data_type
        self.required = required


class PersistenceError(ImporterError):
    """A single intent could not be written."""

    code = "persistence_failed"
    status = 500


class ProcessingBusyError(ImporterError):
    """Another worker holds the processing claim for the data source."""

    code = "processing_busy"
    status = 409


class MappingUpgradeError(ImporterError):
    """Mapping upgrade aborted because a reference has no counterpart."""

    code = "mapping_upgrade_failed"
    status = 409

    def __init__(self, message: str, *, unresolved: list[str] | None = None):
        super().__init__(message, details={"unresolved": list(unresolved or [])})
        self.unresolved = list(unresolved or [])


class StagingError(ImporterError):
    """Staging batch could not be persisted; the whole batch was rolled back."""

    code = "staging_failed"
    status = 500
