"""
Data source adapters keyed by data source kind.

``get_adapter`` is the single dispatch point used by the service layer, the
scheduler, the blueprint and the CLI. Tests swap adapters through
``register_adapter``.
"""

from __future__ import annotations

from functools import partial
from typing import Callable, Dict

from graph_ingest.models.importer import DataSourceKind

from .base import DataSourceAdapter, parse_stream, stage_delivery
from .http import HttpAdapter
from .salesforce import SalesforceAdapter
from .standard import StandardAdapter
from .timeseries import TimeseriesAdapter

_ADAPTER_FACTORIES: Dict[DataSourceKind, Callable[[], DataSourceAdapter]] = {
    DataSourceKind.STANDARD: StandardAdapter,
    DataSourceKind.MANUAL: partial(StandardAdapter, DataSourceKind.MANUAL),
    DataSourceKind.HTTP: HttpAdapter,
    DataSourceKind.SALESFORCE: SalesforceAdapter,
    DataSourceKind.TIMESERIES: TimeseriesAdapter,
}


def get_adapter(kind: DataSourceKind | str) -> DataSourceAdapter:
    kind = DataSourceKind(kind)
    return _ADAPTER_FACTORIES[kind]()


def register_adapter(kind: DataSourceKind | str, factory: Callable[[], DataSourceAdapter]) -> Callable[[], DataSourceAdapter]:
    """Replace the factory for ``kind``, returning the previous one."""
    kind = DataSourceKind(kind)
    previous = _ADAPTER_FACTORIES[kind]
    _ADAPTER_FACTORIES[kind] = factory
    return previous


__all__ = [
    "DataSourceAdapter",
    "HttpAdapter",
    "SalesforceAdapter",
    "StandardAdapter",
    "TimeseriesAdapter",
    "get_adapter",
    "parse_stream",
    "register_adapter",
    "stage_delivery",
]
