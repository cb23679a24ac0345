"""
Structural fingerprints for inbound payloads.

The fingerprint covers key names, nesting and the object/array distinction,
never scalar values or scalar types. Arrays are sampled through their first
element. Data sources may name ``stop_nodes`` (recorded but not descended
into) and ``value_nodes`` (their value becomes part of the shape) either by
bare key name or by full path, with ``[]`` marking array levels.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable, Mapping

from .transform.paths import ValueKind, kind_of

_SCALAR = "s"
_EMPTY_ARRAY = "a0"
_STOP = "x"


def _matches(names: frozenset[str], key: str, path: str) -> bool:
    return key in names or path in names


def _signature(value: Any, path: str, stop_nodes: frozenset[str], value_nodes: frozenset[str]) -> Any:
    kind = kind_of(value)
    if kind is ValueKind.OBJECT:
        entries = []
        for key in sorted(value, key=str):
            child_path = f"{path}.{key}" if path else str(key)
            child = value[key]
            if _matches(value_nodes, str(key), child_path):
                entries.append([str(key), {"v": json.dumps(child, sort_keys=True, default=str)}])
            elif _matches(stop_nodes, str(key), child_path):
                entries.append([str(key), _STOP])
            else:
                entries.append([str(key), _signature(child, child_path, stop_nodes, value_nodes)])
        return {"o": entries}
    if kind is ValueKind.ARRAY:
        if not value:
            return _EMPTY_ARRAY
        return {"a": _signature(value[0], f"{path}[]", stop_nodes, value_nodes)}
    return _SCALAR


def shape_signature(
    payload: Any,
    stop_nodes: Iterable[str] = (),
    value_nodes: Iterable[str] = (),
) -> str:
    """Return the canonical signature string that the fingerprint hashes."""
    signature = _signature(payload, "", frozenset(stop_nodes or ()), frozenset(value_nodes or ()))
    return json.dumps(signature, sort_keys=True, separators=(",", ":"))


def compute_shape_hash(
    payload: Any,
    stop_nodes: Iterable[str] = (),
    value_nodes: Iterable[str] = (),
) -> str:
    """SHA-256 hex digest of the payload's structural signature."""
    signature = shape_signature(payload, stop_nodes, value_nodes)
    return hashlib.sha256(signature.encode("utf-8")).hexdigest()


def shape_hash_for_source(payload: Any, config: Mapping[str, Any] | None) -> str:
    """Fingerprint ``payload`` using the shape hints of a data source config."""
    config = config or {}
    return compute_shape_hash(
        payload,
        stop_nodes=_as_names(config.get("stop_nodes")),
        value_nodes=_as_names(config.get("value_nodes")),
    )


def _as_names(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return tuple(item.strip() for item in value.split(",") if item.strip())
    return tuple(str(item).strip() for item in value if str(item).strip())
