"""
Importer-specific SQLAlchemy models.

These models back the ingestion pipeline: data sources, imports, staged
records, the per-intent outcome ledger, type mappings, and polling watermarks.
"""

from .schema import (
    DataSource,
    DataSourceKind,
    DataStaging,
    ErrorAction,
    Import,
    ImporterWatermark,
    ImportStatus,
    IntentOutcomeStatus,
    OnConflict,
    StagingIntentOutcome,
    StagingStatus,
    TransformationType,
    TypeMapping,
    TypeTransformation,
)

__all__ = [
    "DataSource",
    "DataSourceKind",
    "DataStaging",
    "ErrorAction",
    "Import",
    "ImporterWatermark",
    "ImportStatus",
    "IntentOutcomeStatus",
    "OnConflict",
    "StagingIntentOutcome",
    "StagingStatus",
    "TransformationType",
    "TypeMapping",
    "TypeTransformation",
]
