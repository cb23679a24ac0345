from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from graph_ingest.importer.cache import MemoryCache
from graph_ingest.importer.errors import ProcessingBusyError
from graph_ingest.importer.mapping import TypeMappingRegistry
from graph_ingest.importer.pipeline.imports import ImportService
from graph_ingest.importer.pipeline.persistence import GraphPersistence
from graph_ingest.importer.pipeline.processing import ImportProcessor, claim_processing, release_processing
from graph_ingest.importer.service import DataSourceService
from graph_ingest.models import DataSource, DataStaging, Edge, Import, Node, StagingIntentOutcome, TypeMapping, db
from graph_ingest.models.importer import ImportStatus, IntentOutcomeStatus, StagingStatus


def _node_count(**filters) -> int:
    statement = select(func.count(Node.id))
    for name, value in filters.items():
        statement = statement.where(getattr(Node, name) == value)
    return int(db.session.scalar(statement) or 0)


def _ingest(source, payload, *, process=True):
    result = DataSourceService().ingest(
        source.id,
        json.dumps(payload).encode("utf-8"),
        user="tester",
        options={"process": process},
    )
    assert result.is_success, result.error
    return result.value


def test_inline_ingest_creates_nodes_and_completes(source_factory, mapping_factory, asset_node_transformation):
    source = source_factory()
    sample = {"id": 1, "name": "Pump", "status": "active", "region": "east"}
    mapping_factory(source, sample, [asset_node_transformation()])

    summary = _ingest(source, [sample, {"id": 2, "name": "Valve", "status": "idle", "region": "west"}])

    assert summary.status == ImportStatus.COMPLETED.value
    assert summary.total_records == 2
    assert summary.records_inserted == 2
    assert summary.total_errors == 0
    nodes = db.session.scalars(select(Node).order_by(Node.original_data_id)).all()
    assert [node.properties["name"] for node in nodes] == ["Pump", "Valve"]
    assert all(node.import_id == summary.import_id for node in nodes)


def test_update_on_conflict_keeps_one_node_per_identifier(source_factory, mapping_factory, asset_node_transformation):
    source = source_factory()
    sample = {"id": 7, "name": "Pump", "status": "active", "region": "east"}
    mapping_factory(source, sample, [asset_node_transformation()])

    _ingest(source, sample)
    _ingest(source, {**sample, "status": "retired"})

    assert _node_count(original_data_id="7") == 1
    node = db.session.scalar(select(Node).where(Node.original_data_id == "7"))
    assert node.properties["status"] == "retired"


def test_ignore_on_conflict_leaves_existing_node_untouched(
    source_factory, mapping_factory, asset_node_transformation
):
    source = source_factory()
    sample = {"id": 7, "name": "Pump", "status": "active", "region": "east"}
    mapping_factory(source, sample, [asset_node_transformation(on_conflict="ignore")])

    _ingest(source, sample)
    _ingest(source, {**sample, "status": "retired"})

    node = db.session.scalar(select(Node).where(Node.original_data_id == "7"))
    assert node.properties["status"] == "active"
    skipped = db.session.scalar(
        select(func.count(StagingIntentOutcome.id)).where(StagingIntentOutcome.status == IntentOutcomeStatus.SKIPPED)
    )
    assert skipped == 1


def test_unmapped_shape_waits_for_activation_then_reprocesses(source_factory, asset_node_transformation):
    source = source_factory()
    payload = {"id": 3, "name": "Boiler", "status": "active", "region": "east"}

    summary = _ingest(source, payload)

    assert summary.status == ImportStatus.COMPLETED.value
    assert summary.message == "1 record(s) awaiting an active type mapping."
    shell = db.session.scalar(select(TypeMapping).where(TypeMapping.data_source_id == source.id))
    assert shell is not None and shell.active is False
    assert shell.sample_payload == payload
    record = db.session.scalar(select(DataStaging).where(DataStaging.import_id == summary.import_id))
    assert record.status == StagingStatus.STAGED
    assert record.mapping_id == shell.id
    assert _node_count() == 0

    registry = TypeMappingRegistry()
    registry.add_transformation(shell.id, **asset_node_transformation())
    registry.set_active(shell.id, True)
    db.session.commit()

    result = DataSourceService().reprocess(source.id)

    assert result.is_success, result.error
    assert result.value.records_processed == 1
    assert result.value.records_inserted == 1
    assert result.value.records_unmapped == 0
    db.session.refresh(record)
    assert record.status == StagingStatus.INSERTED
    assert record.inserted_at is not None
    assert _node_count() == 1


def test_bulk_record_partially_inserts_and_reports_failed_intent(source_factory, mapping_factory, ontology):
    source = source_factory()
    items = [{"id": index, "name": f"asset-{index}"} for index in range(1, 6)]
    items[2]["name"] = None
    payload = {"items": items}
    mapping_factory(
        source,
        payload,
        [
            {
                "type": "node",
                "root_array": "items",
                "metatype_id": ontology.asset.id,
                "unique_identifier_key": "items[].id",
                "on_conflict": "update",
                "config": {"on_key_extraction_error": "ignore"},
                "keys": [{"key": "items[].name", "metatype_key_id": ontology.asset_keys["name"].id}],
            }
        ],
    )

    summary = _ingest(source, payload)

    record = db.session.scalar(select(DataStaging).where(DataStaging.import_id == summary.import_id))
    assert record.status == StagingStatus.PARTIALLY_INSERTED
    assert _node_count() == 4
    [error] = record.errors
    assert error["intent"] == 3
    assert error["code"] == "persistence_failed"
    assert "missing required properties: name" in error["error"]
    assert summary.records_inserted == 1
    assert summary.total_errors == 1

    again = DataSourceService().reprocess(source.id)

    assert again.value.records_partially_inserted == 1
    assert _node_count() == 4


def test_edges_connect_nodes_by_original_identifier(source_factory, mapping_factory, ontology):
    source = source_factory()
    sites = {"kind": "site", "site_id": 100, "site_name": "Plant"}
    asset = {"kind": "asset", "asset_id": 1, "asset_name": "Pump", "site": 100, "since": "2021-05-01"}
    mapping_factory(
        source,
        sites,
        [
            {
                "type": "node",
                "metatype_id": ontology.site.id,
                "unique_identifier_key": "site_id",
                "on_conflict": "update",
                "keys": [{"key": "site_name", "metatype_key_id": ontology.site_keys["name"].id}],
            }
        ],
    )
    mapping_factory(
        source,
        asset,
        [
            {
                "type": "node",
                "metatype_id": ontology.asset.id,
                "unique_identifier_key": "asset_id",
                "on_conflict": "update",
                "keys": [{"key": "asset_name", "metatype_key_id": ontology.asset_keys["name"].id}],
            },
            {
                "type": "edge",
                "metatype_relationship_pair_id": ontology.pair.id,
                "origin_id_key": "asset_id",
                "destination_id_key": "site",
                "keys": [{"key": "since", "metatype_relationship_key_id": ontology.since.id}],
            },
        ],
    )

    _ingest(source, sites)
    summary = _ingest(source, asset)

    assert summary.total_errors == 0
    edge = db.session.scalar(select(Edge))
    origin = db.session.get(Node, edge.origin_id)
    destination = db.session.get(Node, edge.destination_id)
    assert origin.original_data_id == "1"
    assert destination.original_data_id == "100"
    assert edge.properties == {"since": "2021-05-01T00:00:00+00:00"}


def test_edge_with_unknown_endpoint_fails_only_that_intent(source_factory, mapping_factory, ontology):
    source = source_factory()
    asset = {"asset_id": 1, "asset_name": "Pump", "site": 404}
    mapping_factory(
        source,
        asset,
        [
            {
                "type": "node",
                "metatype_id": ontology.asset.id,
                "unique_identifier_key": "asset_id",
                "keys": [{"key": "asset_name", "metatype_key_id": ontology.asset_keys["name"].id}],
            },
            {
                "type": "edge",
                "metatype_relationship_pair_id": ontology.pair.id,
                "origin_id_key": "asset_id",
                "destination_id_key": "site",
            },
        ],
    )

    summary = _ingest(source, asset)

    record = db.session.scalar(select(DataStaging).where(DataStaging.import_id == summary.import_id))
    assert record.status == StagingStatus.PARTIALLY_INSERTED
    assert _node_count() == 1
    assert db.session.scalar(select(func.count(Edge.id))) == 0
    assert record.errors[0]["intent"] == 2
    assert "node '404' not found" in record.errors[0]["error"]


def test_inactive_source_stops_import_until_reactivated(source_factory, mapping_factory, asset_node_transformation):
    source = source_factory()
    sample = {"id": 1, "name": "Pump", "status": "active", "region": "east"}
    mapping_factory(source, sample, [asset_node_transformation()])
    summary = _ingest(source, sample, process=False)
    assert summary.status == ImportStatus.READY.value

    service = DataSourceService()
    service.set_inactive(source.id, user="tester")
    stopped = ImportProcessor().run(summary.import_id)

    assert stopped.status == ImportStatus.STOPPED.value
    assert stopped.message == "Data source is inactive; import stopped."
    assert _node_count() == 0

    service.set_active(source.id, user="tester")
    import_record = db.session.get(Import, summary.import_id)
    assert import_record.status == ImportStatus.READY

    completed = ImportProcessor().run(summary.import_id)

    assert completed.status == ImportStatus.COMPLETED.value
    assert _node_count() == 1


def test_terminal_import_is_not_processed_again(source_factory, mapping_factory, asset_node_transformation):
    source = source_factory()
    sample = {"id": 1, "name": "Pump", "status": "active", "region": "east"}
    mapping_factory(source, sample, [asset_node_transformation()])
    summary = _ingest(source, sample)

    rerun = ImportProcessor().run(summary.import_id)

    assert rerun == summary
    assert _node_count() == 1


def test_ingest_into_inactive_source_is_rejected(source_factory):
    source = source_factory(active=False)

    result = DataSourceService().ingest(source.id, b"[]", options={})

    assert result.is_error
    assert result.error.code == "inactive_data_source"
    assert result.error.status == 409
    assert db.session.scalar(select(func.count(Import.id))) == 0


def test_non_finite_counts_are_dropped_when_conversion_errors_are_ignored(
    source_factory, mapping_factory, asset_node_transformation, ontology
):
    source = source_factory()
    sample = {"id": 1, "name": "Pump", "status": "active", "region": "east", "count": "3"}
    transformation = asset_node_transformation(config={"on_conversion_error": "ignore"})
    transformation["keys"] = [
        *transformation["keys"],
        {"key": "count", "metatype_key_id": ontology.asset_keys["count"].id},
    ]
    mapping_factory(source, sample, [transformation])

    summary = _ingest(source, [sample, {**sample, "id": 2, "count": "Infinity"}])

    assert summary.status == ImportStatus.COMPLETED.value
    assert summary.records_inserted == 2
    assert summary.total_errors == 0
    nodes = db.session.scalars(select(Node).order_by(Node.original_data_id)).all()
    assert [node.properties.get("count") for node in nodes] == [3, None]


def test_run_is_refused_while_another_worker_holds_the_source(
    source_factory, mapping_factory, asset_node_transformation
):
    source = source_factory()
    sample = {"id": 1, "name": "Pump", "status": "active", "region": "east"}
    mapping_factory(source, sample, [asset_node_transformation()])
    summary = _ingest(source, sample, process=False)
    assert claim_processing(source.id)

    with pytest.raises(ProcessingBusyError):
        ImportProcessor().run(summary.import_id)

    assert db.session.get(Import, summary.import_id).status == ImportStatus.READY
    assert _node_count() == 0

    release_processing(source.id)
    completed = ImportProcessor().run(summary.import_id)

    assert completed.status == ImportStatus.COMPLETED.value
    assert _node_count() == 1
    assert db.session.get(DataSource, source.id).processing_claimed_at is None


def test_stale_processing_claim_can_be_taken_over(source_factory):
    source = source_factory()
    long_ago = datetime.now(timezone.utc) - timedelta(hours=2)

    assert claim_processing(source.id, now=long_ago)
    assert claim_processing(source.id)
    assert not claim_processing(source.id)


def test_import_claim_only_moves_ready_imports(source_factory, mapping_factory, asset_node_transformation):
    source = source_factory()
    sample = {"id": 1, "name": "Pump", "status": "active", "region": "east"}
    mapping_factory(source, sample, [asset_node_transformation()])
    summary = _ingest(source, sample, process=False)
    imports = ImportService()

    assert imports.claim(summary.import_id) is True
    assert imports.claim(summary.import_id) is False
    assert db.session.get(Import, summary.import_id).status == ImportStatus.PROCESSING

    # a processing import left behind by a dead run resumes under the source claim
    resumed = ImportProcessor().run(summary.import_id)

    assert resumed.status == ImportStatus.COMPLETED.value
    assert _node_count() == 1


def test_reprocess_reports_a_busy_source(source_factory):
    source = source_factory()
    assert claim_processing(source.id)

    result = DataSourceService().reprocess(source.id)

    assert result.is_error
    assert result.error.code == "processing_busy"
    assert result.error.status == 409


def test_upsert_key_is_unique_per_metatype_and_source(source_factory, ontology):
    source = source_factory()
    fields = {"metatype_id": ontology.asset.id, "data_source_id": source.id, "original_data_id": "7", "properties": {}}
    db.session.add_all([Node(**fields), Node(**fields), Node(**fields, upsert_key="7")])
    db.session.flush()

    with pytest.raises(IntegrityError):
        with db.session.begin_nested():
            db.session.add(Node(**fields, upsert_key="7"))

    assert _node_count(original_data_id="7") == 3


def test_racing_update_insert_merges_into_the_winning_node(
    monkeypatch, source_factory, mapping_factory, asset_node_transformation
):
    source = source_factory()
    sample = {"id": 7, "name": "Pump", "status": "active", "region": "east"}
    mapping_factory(source, sample, [asset_node_transformation()])
    _ingest(source, sample)

    lookup = GraphPersistence._find_node
    lookups = []

    def miss_first(self, intent):
        # the first lookup runs before the competing insert became visible
        lookups.append(intent.original_data_id)
        return None if len(lookups) == 1 else lookup(self, intent)

    monkeypatch.setattr(GraphPersistence, "_find_node", miss_first)
    summary = _ingest(source, {**sample, "status": "retired"})

    assert lookups == ["7", "7"]
    assert summary.records_inserted == 1
    assert summary.total_errors == 0
    assert _node_count(original_data_id="7") == 1
    node = db.session.scalar(select(Node).where(Node.original_data_id == "7"))
    assert node.properties["status"] == "retired"


def test_activation_is_read_from_the_database_not_a_stale_cache(
    source_factory, mapping_factory, asset_node_transformation
):
    source = source_factory()
    sample = {"id": 1, "name": "Pump", "status": "active", "region": "east"}
    bound = mapping_factory(source, sample, [asset_node_transformation()])
    _ingest(source, sample)
    assert _node_count() == 1

    # another process deactivates the mapping and only clears its own cache
    TypeMappingRegistry(cache=MemoryCache()).set_active(bound.mapping.id, False)
    db.session.commit()

    summary = _ingest(source, {**sample, "id": 2})

    assert _node_count() == 1
    record = db.session.scalar(select(DataStaging).where(DataStaging.import_id == summary.import_id))
    assert record.status == StagingStatus.STAGED
    assert summary.message == "1 record(s) awaiting an active type mapping."
