"""Load type mappings and their transformations from YAML files."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

import yaml

from graph_ingest.models.importer import TypeMapping

from ..errors import ConfigurationError
from ..shape import compute_shape_hash
from .registry import TypeMappingRegistry


class MappingLoadError(ConfigurationError):
    """Raised when a mapping file cannot be loaded or validated."""


@dataclass(frozen=True)
class MappingSpec:
    shape_hash: str
    sample_payload: Any
    active: bool
    transformations: Sequence[Mapping[str, Any]]
    checksum: str
    path: Path


def _compute_checksum(raw: Mapping[str, Any]) -> str:
    serialized = json.dumps(raw, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def load_mapping_spec(path: str | Path, *, stop_nodes=(), value_nodes=()) -> MappingSpec:
    """
    Parse a mapping file.

    The file names its shape either with ``shape_hash`` or with a
    ``sample_payload`` that is fingerprinted using the given hints.
    """
    path = Path(path)
    if not path.exists():
        raise MappingLoadError(f"Mapping file not found at {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - YAML parser errors
        raise MappingLoadError(f"Failed to parse mapping YAML at {path}: {exc}") from exc
    if not isinstance(raw, Mapping):
        raise MappingLoadError(f"Mapping file {path} must contain a mapping at the top level")

    sample_payload = raw.get("sample_payload")
    shape_hash = raw.get("shape_hash")
    if not shape_hash:
        if sample_payload is None:
            raise MappingLoadError("Mapping file requires either shape_hash or sample_payload.")
        shape_hash = compute_shape_hash(sample_payload, stop_nodes=stop_nodes, value_nodes=value_nodes)

    transformations = raw.get("transformations") or []
    if not isinstance(transformations, list):
        raise MappingLoadError("transformations must be a list")
    for entry in transformations:
        if not isinstance(entry, Mapping):
            raise MappingLoadError(f"Transformation definition must be a mapping, got {entry!r}")

    return MappingSpec(
        shape_hash=str(shape_hash),
        sample_payload=sample_payload,
        active=bool(raw.get("active", True)),
        transformations=tuple(dict(entry) for entry in transformations),
        checksum=_compute_checksum(raw),
        path=path,
    )


def load_mapping_file(
    registry: TypeMappingRegistry,
    data_source_id: int,
    path: str | Path,
    *,
    stop_nodes=(),
    value_nodes=(),
) -> TypeMapping:
    """Create or extend the mapping described by ``path``. The caller commits."""
    spec = load_mapping_spec(path, stop_nodes=stop_nodes, value_nodes=value_nodes)
    resolution = registry.resolve(data_source_id, spec.shape_hash, spec.sample_payload)
    mapping = registry.get(resolution.mapping_id)
    if spec.sample_payload is not None and mapping.sample_payload is None:
        mapping.sample_payload = spec.sample_payload
    for entry in spec.transformations:
        registry.add_transformation(mapping.id, **entry)
    registry.set_active(mapping.id, spec.active)
    return mapping
