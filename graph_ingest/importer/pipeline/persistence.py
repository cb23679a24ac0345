"""
Bulk persistence of node, edge and time-series intents.

Every intent runs inside its own savepoint. A failing intent rolls back only
its savepoint and is reported as failed; siblings from the same record keep
their writes.

Entities inserted under ``update`` or ``ignore`` carry an ``upsert_key``
covered by a unique index, so two writers racing on the same identifier end
up with one entity: the loser re-reads the winner's row and merges into it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from graph_ingest.models import DataSource, Edge, MetatypeRelationshipPair, Node, db
from graph_ingest.models.importer import OnConflict, TransformationType

from ..errors import ImporterError, PersistenceError
from ..ontology import OntologyService
from ..transform.engine import EntityIntent
from .timeseries import TimeseriesStorage

IntentAction = Literal["created", "updated", "ignored", "appended"]


@dataclass(frozen=True)
class IntentResult:
    intent: EntityIntent
    succeeded: bool
    action: IntentAction | None = None
    entity_id: int | None = None
    error: str | None = None


class GraphPersistence:
    def __init__(
        self,
        session=None,
        ontology: OntologyService | None = None,
        timeseries: TimeseriesStorage | None = None,
    ):
        self.session = session or db.session
        self.ontology = ontology or OntologyService(session=self.session)
        self._timeseries = timeseries

    @property
    def timeseries(self) -> TimeseriesStorage:
        if self._timeseries is None:
            self._timeseries = TimeseriesStorage(session=self.session)
        return self._timeseries

    def persist(self, intents: Sequence[EntityIntent]) -> list[IntentResult]:
        """Persist ``intents`` in order, returning one result per intent."""
        results: list[IntentResult] = []
        for intent in intents:
            try:
                self._prepare(intent)
                with self.session.begin_nested():
                    action, entity_id = self._persist_one(intent)
            except ImporterError as exc:
                results.append(IntentResult(intent=intent, succeeded=False, error=exc.message))
                continue
            except SQLAlchemyError as exc:
                message = str(getattr(exc, "orig", None) or exc)
                results.append(IntentResult(intent=intent, succeeded=False, error=message))
                continue
            results.append(IntentResult(intent=intent, succeeded=True, action=action, entity_id=entity_id))
        return results

    def _prepare(self, intent: EntityIntent) -> None:
        # schema DDL must not live inside a per-row savepoint
        if intent.kind is TransformationType.TIMESERIES:
            self.timeseries.ensure_schema(self._timeseries_source(intent))

    def _persist_one(self, intent: EntityIntent) -> tuple[IntentAction, int]:
        if intent.kind is TransformationType.NODE:
            return self._persist_node(intent)
        if intent.kind is TransformationType.EDGE:
            return self._persist_edge(intent)
        if intent.kind is TransformationType.TIMESERIES:
            row_id = self.timeseries.append_row(
                self._timeseries_source(intent),
                intent.properties,
                intent.context.import_id,
            )
            return "appended", row_id
        raise PersistenceError(f"unhandled intent kind {intent.kind!r}")

    def _timeseries_source(self, intent: EntityIntent) -> DataSource:
        source = None
        if intent.timeseries_data_source_id is not None:
            source = self.session.get(DataSource, intent.timeseries_data_source_id)
        if source is None:
            raise PersistenceError("timeseries transformation has no target data source")
        return source

    def _check_required(self, properties: dict, *, metatype_id: int | None = None, pair_id: int | None = None) -> None:
        required = self.ontology.required_properties(metatype_id=metatype_id, pair_id=pair_id)
        missing = sorted(name for name in required if properties.get(name) is None)
        if missing:
            raise PersistenceError("missing required properties: " + ", ".join(missing))

    def _insert(self, entity: Node | Edge) -> bool:
        """Insert in a nested savepoint; False when the upsert key was taken concurrently."""
        try:
            with self.session.begin_nested():
                self.session.add(entity)
                self.session.flush()
        except IntegrityError:
            if entity.upsert_key is None:
                raise
            return False
        return True

    def _merge(self, existing: Node | Edge, intent: EntityIntent, **columns) -> tuple[IntentAction, int]:
        if intent.on_conflict is OnConflict.IGNORE:
            return "ignored", existing.id
        existing.properties = {**(existing.properties or {}), **intent.properties}
        for name, value in columns.items():
            setattr(existing, name, value)
        existing.import_id = intent.context.import_id
        existing.staging_id = intent.context.staging_id
        self.session.flush()
        return "updated", existing.id

    def _find_node(self, intent: EntityIntent) -> Node | None:
        return self.session.scalar(
            select(Node)
            .where(
                Node.metatype_id == intent.metatype_id,
                Node.data_source_id == intent.context.data_source_id,
                Node.original_data_id == intent.original_data_id,
            )
            .order_by(Node.id)
            .limit(1)
        )

    def _persist_node(self, intent: EntityIntent) -> tuple[IntentAction, int]:
        if intent.metatype_id is None:
            raise PersistenceError("node transformation has no metatype")
        self._check_required(intent.properties, metatype_id=intent.metatype_id)

        upserting = intent.on_conflict is not OnConflict.CREATE and intent.original_data_id is not None
        if upserting:
            existing = self._find_node(intent)
            if existing is not None:
                return self._merge(existing, intent)

        node = Node(
            metatype_id=intent.metatype_id,
            data_source_id=intent.context.data_source_id,
            import_id=intent.context.import_id,
            staging_id=intent.context.staging_id,
            original_data_id=intent.original_data_id,
            upsert_key=intent.original_data_id if upserting else None,
            properties=dict(intent.properties),
        )
        if self._insert(node):
            return "created", node.id
        existing = self._find_node(intent)
        if existing is None:
            raise PersistenceError(f"node '{intent.original_data_id}' collided but could not be re-read")
        return self._merge(existing, intent)

    def _find_endpoint(self, value, metatype_id: int | None, data_source_id: int | None, label: str) -> Node:
        if value is None:
            raise PersistenceError(f"edge {label} identifier missing from payload")
        statement = select(Node).where(Node.original_data_id == str(value))
        if metatype_id is not None:
            statement = statement.where(Node.metatype_id == metatype_id)
        if data_source_id is not None:
            statement = statement.where(Node.data_source_id == data_source_id)
        node = self.session.scalar(statement.order_by(Node.id.desc()).limit(1))
        if node is None:
            raise PersistenceError(f"edge {label} node '{value}' not found")
        return node

    def _find_edge(self, intent: EntityIntent, pair_id: int, origin: Node, destination: Node) -> Edge | None:
        statement = select(Edge).where(
            Edge.relationship_pair_id == pair_id,
            Edge.data_source_id == intent.context.data_source_id,
        )
        if intent.original_data_id is not None:
            statement = statement.where(Edge.original_data_id == intent.original_data_id)
        else:
            statement = statement.where(Edge.origin_id == origin.id, Edge.destination_id == destination.id)
        return self.session.scalar(statement.order_by(Edge.id).limit(1))

    def _persist_edge(self, intent: EntityIntent) -> tuple[IntentAction, int]:
        if intent.relationship_pair_id is None:
            raise PersistenceError("edge transformation has no relationship pair")
        pair = self.session.get(MetatypeRelationshipPair, intent.relationship_pair_id)
        if pair is None:
            raise PersistenceError(f"relationship pair {intent.relationship_pair_id} not found")
        self._check_required(intent.properties, pair_id=pair.id)

        origin = self._find_endpoint(
            intent.origin_value,
            intent.origin_metatype_id or pair.origin_metatype_id,
            intent.origin_data_source_id or intent.context.data_source_id,
            "origin",
        )
        destination = self._find_endpoint(
            intent.destination_value,
            intent.destination_metatype_id or pair.destination_metatype_id,
            intent.destination_data_source_id or intent.context.data_source_id,
            "destination",
        )
        endpoints = {"origin_id": origin.id, "destination_id": destination.id}

        upserting = intent.on_conflict is not OnConflict.CREATE
        if upserting:
            existing = self._find_edge(intent, pair.id, origin, destination)
            if existing is not None:
                return self._merge(existing, intent, **endpoints)

        upsert_key = None
        if upserting:
            upsert_key = intent.original_data_id or f"{origin.id}:{destination.id}"
        edge = Edge(
            relationship_pair_id=pair.id,
            data_source_id=intent.context.data_source_id,
            import_id=intent.context.import_id,
            staging_id=intent.context.staging_id,
            original_data_id=intent.original_data_id,
            upsert_key=upsert_key,
            properties=dict(intent.properties),
            **endpoints,
        )
        if self._insert(edge):
            return "created", edge.id
        existing = self._find_edge(intent, pair.id, origin, destination)
        if existing is None:
            raise PersistenceError(f"edge '{upsert_key}' collided but could not be re-read")
        return self._merge(existing, intent, **endpoints)
