"""
Adapter descriptors used to validate ``IMPORTER_ADAPTERS``.

Descriptors carry display metadata only; the adapter classes themselves live
in :mod:`graph_ingest.importer.adapters`.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence, Tuple


@dataclass(frozen=True)
class AdapterDescriptor:
    """Metadata describing an importer adapter."""

    name: str
    title: str
    polling: bool = False
    summary: str | None = None
    required_env: Tuple[str, ...] = ()


def get_adapter_registry() -> Mapping[str, AdapterDescriptor]:
    """Return the registry of supported adapters in display order."""
    descriptors = (
        AdapterDescriptor(
            name="standard",
            title="Standard",
            summary="Accept JSON or CSV deliveries pushed by other systems.",
        ),
        AdapterDescriptor(
            name="manual",
            title="Manual Upload",
            summary="Accept JSON or CSV files uploaded by an operator.",
        ),
        AdapterDescriptor(
            name="http",
            title="HTTP Endpoint",
            polling=True,
            summary="Poll a JSON or CSV endpoint on a fixed interval.",
        ),
        AdapterDescriptor(
            name="salesforce",
            title="Salesforce (Bulk API)",
            polling=True,
            summary="Pull changed Salesforce records incrementally.",
            required_env=("SF_USERNAME", "SF_PASSWORD", "SF_SECURITY_TOKEN"),
        ),
        AdapterDescriptor(
            name="timeseries",
            title="Time Series",
            summary="Append rows to a time-partitioned table.",
        ),
    )
    return OrderedDict((descriptor.name, descriptor) for descriptor in descriptors)


def resolve_adapters(
    configured: Sequence[str],
    registry: Mapping[str, AdapterDescriptor] | None = None,
) -> Iterable[AdapterDescriptor]:
    """Map configured adapter names to descriptors, raising on unknowns."""
    registry = registry or get_adapter_registry()
    unknown = sorted({adapter for adapter in configured if adapter not in registry})
    if unknown:
        raise ValueError(
            "Unknown importer adapters configured: "
            + ", ".join(unknown)
            + ". Update configuration or register these adapters first."
        )
    return tuple(registry[adapter] for adapter in configured)
