"""
Type mapping registry.

Resolves (data source, shape hash) to a type mapping, creating an inactive
shell on first sight so unmatched payloads accumulate in staging instead of
erroring. Also owns transformation validation and ontology upgrades.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from graph_ingest.models import DataSource, Metatype, MetatypeKey, MetatypeRelationshipPair, db
from graph_ingest.models.importer import (
    DataSourceKind,
    ErrorAction,
    OnConflict,
    TransformationType,
    TypeMapping,
    TypeTransformation,
)
from graph_ingest.models.ontology import MetatypeRelationshipKey

from ..cache import CacheBackend, get_cache, mapping_cache_key
from ..errors import ConfigurationError, MappingUpgradeError, NotFoundError
from ..ontology import OntologyService
from ..transform.conditions import validate_conditions
from ..transform.paths import PathSyntaxError, parse_path, wildcard_count

_TRANSFORMATION_FIELDS = (
    "name",
    "position",
    "type",
    "root_array",
    "metatype_id",
    "metatype_relationship_pair_id",
    "origin_id_key",
    "origin_metatype_id",
    "origin_data_source_id",
    "destination_id_key",
    "destination_metatype_id",
    "destination_data_source_id",
    "timeseries_data_source_id",
    "unique_identifier_key",
    "on_conflict",
    "config",
    "conditions",
    "keys",
)


@dataclass(frozen=True)
class MappingResolution:
    mapping_id: int
    data_source_id: int
    shape_hash: str
    active: bool
    created: bool = False


class TypeMappingRegistry:
    def __init__(self, session=None, cache: CacheBackend | None = None, ontology: OntologyService | None = None):
        self.session = session or db.session
        self._cache = cache
        self.ontology = ontology or OntologyService(session=self.session, cache=cache)

    @property
    def cache(self) -> CacheBackend:
        if self._cache is None:
            self._cache = get_cache()
        return self._cache

    # -- lookups -----------------------------------------------------------

    def resolve(self, data_source_id: int, shape_hash: str, sample_payload: Any = None) -> MappingResolution:
        """Return the mapping for a shape, creating an inactive shell when absent."""
        key = mapping_cache_key(data_source_id, shape_hash)
        hit = self.cache.get(key)
        if hit is not None:
            return MappingResolution(
                mapping_id=hit["id"],
                data_source_id=data_source_id,
                shape_hash=shape_hash,
                active=bool(hit["active"]),
            )

        created = False
        mapping = self._find(data_source_id, shape_hash)
        if mapping is None:
            mapping = TypeMapping(
                data_source_id=data_source_id,
                shape_hash=shape_hash,
                sample_payload=sample_payload,
                active=False,
            )
            try:
                with self.session.begin_nested():
                    self.session.add(mapping)
                created = True
            except IntegrityError:
                # another worker created the shell first
                mapping = self._find(data_source_id, shape_hash)
                if mapping is None:
                    raise
        if created:
            current_app.logger.info(
                "Created inactive type mapping for new shape",
                extra={
                    "importer_data_source_id": data_source_id,
                    "importer_shape_hash": shape_hash,
                    "importer_mapping_id": mapping.id,
                },
            )
        else:
            # shells are only cached once committed and seen again
            self.cache.set(key, {"id": mapping.id, "active": bool(mapping.active)})
        return MappingResolution(
            mapping_id=mapping.id,
            data_source_id=data_source_id,
            shape_hash=shape_hash,
            active=bool(mapping.active),
            created=created,
        )

    def _find(self, data_source_id: int, shape_hash: str) -> TypeMapping | None:
        return self.session.scalar(
            select(TypeMapping).where(
                TypeMapping.data_source_id == data_source_id,
                TypeMapping.shape_hash == shape_hash,
            )
        )

    def get(self, mapping_id: int) -> TypeMapping:
        mapping = self.session.get(TypeMapping, mapping_id)
        if mapping is None:
            raise NotFoundError(f"type mapping {mapping_id} not found")
        return mapping

    def list_for_source(self, data_source_id: int) -> list[TypeMapping]:
        return list(
            self.session.scalars(
                select(TypeMapping).where(TypeMapping.data_source_id == data_source_id).order_by(TypeMapping.id)
            )
        )

    def transformations_for(self, mapping_id: int) -> list[TypeTransformation]:
        """Live transformations of a mapping in evaluation order."""
        return list(
            self.session.scalars(
                select(TypeTransformation)
                .where(
                    TypeTransformation.type_mapping_id == mapping_id,
                    TypeTransformation.archived.is_(False),
                )
                .order_by(TypeTransformation.position, TypeTransformation.id)
            )
        )

    def _all_transformations(self, mapping_id: int) -> list[TypeTransformation]:
        return list(
            self.session.scalars(
                select(TypeTransformation)
                .where(TypeTransformation.type_mapping_id == mapping_id)
                .order_by(TypeTransformation.position, TypeTransformation.id)
            )
        )

    # -- mutations ---------------------------------------------------------

    def invalidate(self, mapping: TypeMapping) -> None:
        self.cache.delete(mapping_cache_key(mapping.data_source_id, mapping.shape_hash))

    def set_active(self, mapping_id: int, active: bool = True) -> TypeMapping:
        mapping = self.get(mapping_id)
        mapping.active = bool(active)
        self.session.flush()
        self.invalidate(mapping)
        return mapping

    def add_transformation(self, mapping_id: int, **fields: Any) -> TypeTransformation:
        mapping = self.get(mapping_id)
        unknown = sorted(set(fields) - set(_TRANSFORMATION_FIELDS))
        if unknown:
            raise ConfigurationError("unknown transformation fields: " + ", ".join(unknown))
        values = self._normalize(fields)
        if "position" not in fields:
            values["position"] = len(self._all_transformations(mapping.id))
        self.validate_transformation(values)
        transformation = TypeTransformation(type_mapping_id=mapping.id, **values)
        self.session.add(transformation)
        self.session.flush()
        self.invalidate(mapping)
        return transformation

    def archive_transformation(self, transformation_id: int) -> TypeTransformation:
        transformation = self.session.get(TypeTransformation, transformation_id)
        if transformation is None:
            raise NotFoundError(f"transformation {transformation_id} not found")
        transformation.archived = True
        self.session.flush()
        self.invalidate(transformation.type_mapping)
        return transformation

    def delete_for_source(self, data_source_id: int) -> int:
        mappings = self.list_for_source(data_source_id)
        for mapping in mappings:
            self.invalidate(mapping)
            self.session.delete(mapping)
        self.session.flush()
        return len(mappings)

    # -- validation --------------------------------------------------------

    @staticmethod
    def _normalize(fields: Mapping[str, Any]) -> dict[str, Any]:
        values = dict(fields)
        try:
            values["type"] = TransformationType(values.get("type") or TransformationType.NODE)
            values["on_conflict"] = OnConflict(values.get("on_conflict") or OnConflict.CREATE)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        config = dict(values.get("config") or {})
        for name in ("on_key_extraction_error", "on_conversion_error"):
            raw = config.get(name) or ErrorAction.FAIL_ON_REQUIRED.value
            try:
                config[name] = ErrorAction(str(raw).strip().lower()).value
            except ValueError as exc:
                raise ConfigurationError(f"{name} must be one of: ignore, fail on required, fail") from exc
        values["config"] = config
        values["conditions"] = list(values.get("conditions") or [])
        values["keys"] = [dict(key) for key in values.get("keys") or []]
        return values

    def validate_transformation(self, values: Mapping[str, Any]) -> None:
        kind = values["type"]
        root_wildcards = 0
        if values.get("root_array"):
            root_wildcards = self._check_path(values["root_array"], "root_array") + 1
            if parse_path(values["root_array"])[-1].wildcard:
                root_wildcards -= 1

        for name in ("unique_identifier_key", "origin_id_key", "destination_id_key"):
            if values.get(name):
                self._check_wildcards(values[name], name, root_wildcards)

        validate_conditions(values["conditions"])
        for condition in values["conditions"]:
            for expression in (condition, *(condition.get("subexpressions") or ())):
                self._check_wildcards(expression["key"], "condition key", root_wildcards)

        if kind is TransformationType.NODE:
            if not values.get("metatype_id"):
                raise ConfigurationError("node transformations require metatype_id")
            if self.session.get(Metatype, values["metatype_id"]) is None:
                raise ConfigurationError(f"metatype {values['metatype_id']} not found")
            if values["on_conflict"] is not OnConflict.CREATE and not values.get("unique_identifier_key"):
                raise ConfigurationError("on_conflict update/ignore requires unique_identifier_key")
        elif kind is TransformationType.EDGE:
            if not values.get("metatype_relationship_pair_id"):
                raise ConfigurationError("edge transformations require metatype_relationship_pair_id")
            if self.session.get(MetatypeRelationshipPair, values["metatype_relationship_pair_id"]) is None:
                raise ConfigurationError(f"relationship pair {values['metatype_relationship_pair_id']} not found")
            if not values.get("origin_id_key") or not values.get("destination_id_key"):
                raise ConfigurationError("edge transformations require origin_id_key and destination_id_key")
        else:
            target = None
            if values.get("timeseries_data_source_id"):
                target = self.session.get(DataSource, values["timeseries_data_source_id"])
            if target is None or target.kind is not DataSourceKind.TIMESERIES:
                raise ConfigurationError("timeseries transformations require a timeseries_data_source_id")

        for position, key in enumerate(values["keys"]):
            self._validate_key(kind, values, key, position, root_wildcards)

    def _validate_key(
        self,
        kind: TransformationType,
        values: Mapping[str, Any],
        key: Mapping[str, Any],
        position: int,
        root_wildcards: int,
    ) -> None:
        if not key.get("key") and "value" not in key:
            raise ConfigurationError(f"key {position} needs a source key or a constant value")
        if key.get("key"):
            self._check_wildcards(key["key"], f"key {position}", root_wildcards)
        if kind is TransformationType.NODE:
            if self.ontology.metatype_key(values["metatype_id"], int(key.get("metatype_key_id") or 0)) is None:
                raise ConfigurationError(f"key {position} references an unknown metatype key")
        elif kind is TransformationType.EDGE:
            pair_id = values["metatype_relationship_pair_id"]
            if self.ontology.relationship_key(pair_id, int(key.get("metatype_relationship_key_id") or 0)) is None:
                raise ConfigurationError(f"key {position} references an unknown relationship key")
        elif not key.get("column_name"):
            raise ConfigurationError(f"key {position} requires column_name for timeseries transformations")

    @staticmethod
    def _check_path(path: str, label: str) -> int:
        try:
            parse_path(path)
        except PathSyntaxError as exc:
            raise ConfigurationError(f"{label}: {exc}") from exc
        return wildcard_count(path)

    def _check_wildcards(self, path: str, label: str, available: int) -> None:
        if self._check_path(path, label) > available:
            raise ConfigurationError(f"{label} '{path}' uses more [] placeholders than root_array provides")

    # -- ontology upgrade --------------------------------------------------

    def upgrade(self, mapping_ids: Sequence[int], target_ontology_version_id: int) -> list[TypeMapping]:
        """
        Point every transformation of ``mapping_ids`` at the same-named
        metatypes, relationship pairs and keys in the target ontology version.

        All replacements are computed before anything is written; one
        unresolvable reference aborts the whole batch.
        """
        mappings = [self.get(mapping_id) for mapping_id in mapping_ids]
        unresolved: list[str] = []
        plan: list[tuple[TypeTransformation, dict[str, Any]]] = []
        for mapping in mappings:
            for transformation in self._all_transformations(mapping.id):
                changes = self._upgrade_plan(transformation, target_ontology_version_id, unresolved)
                plan.append((transformation, changes))

        if unresolved:
            raise MappingUpgradeError(
                f"{len(unresolved)} reference(s) have no counterpart in ontology version {target_ontology_version_id}",
                unresolved=unresolved,
            )

        for transformation, changes in plan:
            for name, value in changes.items():
                setattr(transformation, name, value)
        self.session.flush()
        for mapping in mappings:
            self.invalidate(mapping)
        return mappings

    def _upgrade_metatype(self, metatype_id: int | None, version_id: int, label: str, unresolved: list[str]):
        if metatype_id is None:
            return None
        current = self.session.get(Metatype, metatype_id)
        target = self.ontology.find_metatype(version_id, current.name) if current is not None else None
        if target is None:
            unresolved.append(f"{label}: metatype {metatype_id}")
            return None
        return target

    def _upgrade_plan(
        self,
        transformation: TypeTransformation,
        version_id: int,
        unresolved: list[str],
    ) -> dict[str, Any]:
        label = f"transformation {transformation.id}"
        changes: dict[str, Any] = {}
        keys = copy.deepcopy(list(transformation.keys or []))

        metatype = self._upgrade_metatype(transformation.metatype_id, version_id, label, unresolved)
        if metatype is not None:
            changes["metatype_id"] = metatype.id
            for key in keys:
                if key.get("metatype_key_id") is None:
                    continue
                old_key = self.session.get(MetatypeKey, key["metatype_key_id"])
                new_key = self.ontology.find_metatype_key(metatype.id, old_key.property_name) if old_key else None
                if new_key is None:
                    unresolved.append(f"{label}: metatype key {key['metatype_key_id']}")
                    continue
                key["metatype_key_id"] = new_key.id

        for name in ("origin_metatype_id", "destination_metatype_id"):
            endpoint = self._upgrade_metatype(getattr(transformation, name), version_id, label, unresolved)
            if endpoint is not None:
                changes[name] = endpoint.id

        if transformation.metatype_relationship_pair_id is not None:
            current_pair = self.session.get(MetatypeRelationshipPair, transformation.metatype_relationship_pair_id)
            target_pair = (
                self.ontology.find_relationship_pair(version_id, current_pair.name) if current_pair is not None else None
            )
            if target_pair is None:
                unresolved.append(f"{label}: relationship pair {transformation.metatype_relationship_pair_id}")
            else:
                changes["metatype_relationship_pair_id"] = target_pair.id
                for key in keys:
                    if key.get("metatype_relationship_key_id") is None:
                        continue
                    old_key = self.session.get(MetatypeRelationshipKey, key["metatype_relationship_key_id"])
                    new_key = (
                        self.ontology.find_relationship_key(target_pair.relationship_id, old_key.property_name)
                        if old_key
                        else None
                    )
                    if new_key is None:
                        unresolved.append(f"{label}: relationship key {key['metatype_relationship_key_id']}")
                        continue
                    key["metatype_relationship_key_id"] = new_key.id

        changes["keys"] = keys
        return changes
