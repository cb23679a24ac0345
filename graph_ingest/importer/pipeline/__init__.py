"""Staging, processing and persistence stages of the importer."""

from .imports import ImportFilters, ImportService, ImportSummary, serialize_import
from .persistence import GraphPersistence, IntentResult
from .processing import ImportProcessor, RecordOutcome, ReprocessSummary, StagedRecordProcessor
from .staging import StagingStore, config_snapshot
from .timeseries import TimeseriesStorage, validate_timeseries_config

__all__ = [
    "GraphPersistence",
    "ImportFilters",
    "ImportProcessor",
    "ImportService",
    "ImportSummary",
    "IntentResult",
    "RecordOutcome",
    "ReprocessSummary",
    "StagedRecordProcessor",
    "StagingStore",
    "TimeseriesStorage",
    "config_snapshot",
    "serialize_import",
    "validate_timeseries_config",
]
