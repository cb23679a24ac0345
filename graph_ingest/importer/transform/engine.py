"""
Transformation engine.

Turns a staged payload into node, edge and time-series row intents by
evaluating each active transformation: root-array fan out, condition
gating, key extraction and value conversion under the transformation's
error policy. The engine never writes; persistence consumes its intents.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from graph_ingest.models import DataSource, db
from graph_ingest.models.importer import ErrorAction, OnConflict, TransformationType, TypeTransformation

from ..errors import ConversionError, KeyExtractionError
from ..ontology import OntologyService
from .conditions import conditions_hold
from .conversion import ValueConversionError, convert_value, json_ready
from .paths import MISSING, element_key, iter_root_array, resolve


@dataclass(frozen=True)
class IntentContext:
    data_source_id: int
    import_id: int | None = None
    staging_id: int | None = None


@dataclass
class EntityIntent:
    kind: TransformationType
    transformation_id: int | None
    element_key: str
    on_conflict: OnConflict
    properties: dict[str, Any]
    context: IntentContext
    metatype_id: int | None = None
    relationship_pair_id: int | None = None
    original_data_id: str | None = None
    origin_value: Any = None
    origin_metatype_id: int | None = None
    origin_data_source_id: int | None = None
    destination_value: Any = None
    destination_metatype_id: int | None = None
    destination_data_source_id: int | None = None
    timeseries_data_source_id: int | None = None

    @property
    def ledger_key(self) -> tuple[int | None, str]:
        return (self.transformation_id, self.element_key)


@dataclass
class ElementFailure:
    """A transformation element aborted by its error policy."""

    transformation_id: int | None
    element_key: str
    message: str
    code: str

    @property
    def ledger_key(self) -> tuple[int | None, str]:
        return (self.transformation_id, self.element_key)


@dataclass
class TransformationOutput:
    intents: list[EntityIntent] = field(default_factory=list)
    failures: list[ElementFailure] = field(default_factory=list)

    def extend(self, other: "TransformationOutput") -> None:
        self.intents.extend(other.intents)
        self.failures.extend(other.failures)


def _should_abort(action: ErrorAction, required: bool) -> bool:
    if action is ErrorAction.FAIL:
        return True
    if action is ErrorAction.FAIL_ON_REQUIRED:
        return required
    if action is ErrorAction.IGNORE:
        return False
    raise ValueError(f"unhandled error action {action!r}")


def _error_action(config: Mapping[str, Any] | None, name: str) -> ErrorAction:
    raw = (config or {}).get(name) or ErrorAction.FAIL_ON_REQUIRED.value
    return ErrorAction(str(raw).strip().lower())


def _stringify_identifier(value: Any) -> str | None:
    if value is MISSING or value is None or value == "":
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


class TransformationEngine:
    def __init__(self, ontology: OntologyService | None = None, session=None):
        self.session = session or db.session
        self.ontology = ontology or OntologyService(session=self.session)

    def transform(
        self,
        transformations: Iterable[TypeTransformation],
        payload: Any,
        context: IntentContext,
    ) -> TransformationOutput:
        """Apply every live transformation to ``payload`` in position order."""
        output = TransformationOutput()
        for transformation in sorted(transformations, key=lambda item: (item.position, item.id or 0)):
            if transformation.archived:
                continue
            output.extend(self.apply(transformation, payload, context))
        return output

    def apply(self, transformation: TypeTransformation, payload: Any, context: IntentContext) -> TransformationOutput:
        output = TransformationOutput()
        if transformation.root_array:
            elements: Iterable[tuple[tuple[int, ...], Any]] = iter_root_array(payload, transformation.root_array)
        else:
            elements = [((), payload)]

        for indices, _element in elements:
            if not conditions_hold(transformation.conditions, payload, indices):
                continue
            key = element_key(indices)
            try:
                properties = self._extract_properties(transformation, payload, indices)
            except (KeyExtractionError, ConversionError) as exc:
                output.failures.append(
                    ElementFailure(
                        transformation_id=transformation.id,
                        element_key=key,
                        message=exc.message,
                        code=exc.code,
                    )
                )
                continue
            output.intents.append(self._build_intent(transformation, payload, indices, key, properties, context))
        return output

    def _destination(self, transformation: TypeTransformation, mapping: Mapping[str, Any]) -> dict[str, Any] | None:
        kind = TransformationType(transformation.type)
        if kind is TransformationType.NODE:
            key_id = mapping.get("metatype_key_id")
            if key_id is None or transformation.metatype_id is None:
                return None
            return self.ontology.metatype_key(transformation.metatype_id, int(key_id))
        if kind is TransformationType.EDGE:
            key_id = mapping.get("metatype_relationship_key_id")
            if key_id is None or transformation.metatype_relationship_pair_id is None:
                return None
            return self.ontology.relationship_key(transformation.metatype_relationship_pair_id, int(key_id))
        column_name = mapping.get("column_name")
        if not column_name:
            return None
        column = self._timeseries_columns(transformation.timeseries_data_source_id).get(column_name)
        if column is None:
            return None
        return {
            "property_name": column_name,
            "data_type": column.get("type"),
            "required": bool(column.get("is_primary_timestamp")),
            "options": None,
            "default_value": None,
            "date_conversion_format_string": column.get("date_conversion_format_string"),
        }

    def _timeseries_columns(self, data_source_id: int | None) -> dict[str, Mapping[str, Any]]:
        if data_source_id is None:
            return {}
        source = self.session.get(DataSource, data_source_id)
        if source is None:
            return {}
        columns = (source.config or {}).get("columns") or []
        return {column.get("column_name"): column for column in columns}

    def _extract_properties(
        self,
        transformation: TypeTransformation,
        payload: Any,
        indices: Sequence[int],
    ) -> dict[str, Any]:
        config = transformation.config or {}
        on_key_error = _error_action(config, "on_key_extraction_error")
        on_conversion_error = _error_action(config, "on_conversion_error")
        properties: dict[str, Any] = {}

        for mapping in transformation.keys or ():
            destination = self._destination(transformation, mapping)
            label = mapping.get("key") or mapping.get("column_name") or "<constant>"
            if destination is None:
                raise KeyExtractionError(label, f"key mapping '{label}' has no destination property", required=True)
            required = bool(destination.get("required"))

            if mapping.get("key"):
                raw = resolve(payload, mapping["key"], indices)
            else:
                raw = mapping.get("value", MISSING)
            if raw is MISSING or raw is None:
                raw = destination.get("default_value")
            if raw is None:
                if _should_abort(on_key_error, required):
                    raise KeyExtractionError(label, required=required)
                continue

            data_type = mapping.get("value_type") or destination.get("data_type")
            format_string = mapping.get("date_conversion_format_string") or destination.get(
                "date_conversion_format_string"
            )
            try:
                value = convert_value(raw, data_type, format_string=format_string, options=destination.get("options"))
            except ValueConversionError as exc:
                if _should_abort(on_conversion_error, required):
                    raise ConversionError(label, raw, str(data_type), required=required) from exc
                continue
            properties[destination["property_name"]] = value

        return properties

    def _build_intent(
        self,
        transformation: TypeTransformation,
        payload: Any,
        indices: Sequence[int],
        key: str,
        properties: dict[str, Any],
        context: IntentContext,
    ) -> EntityIntent:
        kind = TransformationType(transformation.type)
        original_data_id = None
        if transformation.unique_identifier_key:
            original_data_id = _stringify_identifier(resolve(payload, transformation.unique_identifier_key, indices))

        intent = EntityIntent(
            kind=kind,
            transformation_id=transformation.id,
            element_key=key,
            on_conflict=OnConflict(transformation.on_conflict or OnConflict.CREATE),
            properties=properties if kind is TransformationType.TIMESERIES else json_ready(properties),
            context=context,
            original_data_id=original_data_id,
        )
        if kind is TransformationType.NODE:
            intent.metatype_id = transformation.metatype_id
        elif kind is TransformationType.EDGE:
            intent.relationship_pair_id = transformation.metatype_relationship_pair_id
            intent.origin_value = (
                _stringify_identifier(resolve(payload, transformation.origin_id_key, indices))
                if transformation.origin_id_key
                else None
            )
            intent.destination_value = (
                _stringify_identifier(resolve(payload, transformation.destination_id_key, indices))
                if transformation.destination_id_key
                else None
            )
            intent.origin_metatype_id = transformation.origin_metatype_id
            intent.origin_data_source_id = transformation.origin_data_source_id
            intent.destination_metatype_id = transformation.destination_metatype_id
            intent.destination_data_source_id = transformation.destination_data_source_id
        else:
            intent.timeseries_data_source_id = transformation.timeseries_data_source_id
        return intent
