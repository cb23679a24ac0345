import io
import json

from sqlalchemy import func, select

from graph_ingest.models import DataSource, Import, Node, OntologyVersion, db
from graph_ingest.models.importer import ImportStatus

USER = {"X-Importer-User": "api-user"}
ASSETS = [
    {"id": 1, "name": "Pump", "status": "active", "region": "east"},
    {"id": 2, "name": "Valve", "status": "idle", "region": "west"},
]


def _create_source(client, **overrides):
    body = {"name": "Plant feed", "adapter_type": "standard", "config": {}, "active": True}
    body.update(overrides)
    response = client.post("/importer/data_sources", json=body, headers=USER)
    assert response.status_code == 201, response.get_json()
    return response.get_json()["value"]


def _upload(client, source_id, payload=ASSETS, query=""):
    return client.post(
        f"/importer/data_sources/{source_id}/imports{query}",
        data=json.dumps(payload),
        content_type="application/json",
        headers=USER,
    )


def test_health_lists_adapters(client):
    response = client.get("/importer/health")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["enabled"] is True
    assert payload["worker_enabled"] is False
    assert [adapter["name"] for adapter in payload["adapters"]] == [
        "standard",
        "manual",
        "http",
        "salesforce",
        "timeseries",
    ]


def test_create_get_update_and_list_sources(client):
    created = _create_source(client)
    assert created["created_by"] == "api-user"
    assert created["active"] is True

    fetched = client.get(f"/importer/data_sources/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.get_json()["value"]["name"] == "Plant feed"

    updated = client.put(
        f"/importer/data_sources/{created['id']}",
        json={"name": "Renamed", "config": {"data_type": "csv"}},
        headers={"X-Importer-User": "editor"},
    )
    assert updated.status_code == 200
    value = updated.get_json()["value"]
    assert value["name"] == "Renamed"
    assert value["config"]["data_type"] == "csv"
    assert value["modified_by"] == "editor"

    _create_source(client, name="Uploads", adapter_type="manual")
    listing = client.get("/importer/data_sources?adapter_type=manual")
    assert [source["name"] for source in listing.get_json()["value"]] == ["Uploads"]

    bad_kind = client.get("/importer/data_sources?adapter_type=ftp")
    assert bad_kind.status_code == 400


def test_create_rejects_invalid_config_with_error_envelope(client):
    response = client.post(
        "/importer/data_sources",
        json={"name": "feed", "adapter_type": "http", "config": {"endpoint": "nowhere"}},
    )

    assert response.status_code == 400
    error = response.get_json()["error"]
    assert error["code"] == "invalid_configuration"
    assert error["status"] == 400
    assert "endpoint" in error["message"]


def test_unknown_source_is_404(client):
    response = client.get("/importer/data_sources/999")

    assert response.status_code == 404
    assert response.get_json()["error"] == {
        "code": "not_found",
        "message": "data source 999 not found",
        "status": 404,
    }


def test_raw_json_upload_and_import_detail(client):
    source = _create_source(client)

    response = _upload(client, source["id"])

    assert response.status_code == 201
    summary = response.get_json()["value"]
    assert summary["status"] == ImportStatus.READY.value
    assert summary["total_records"] == 2

    detail = client.get(f"/importer/imports/{summary['import_id']}")
    assert detail.status_code == 200
    value = detail.get_json()["value"]
    assert value["created_by"] == "api-user"
    assert value["staging_counts"] == {"staged": 2}

    count = client.get(f"/importer/data_sources/{source['id']}/data/count")
    assert count.get_json()["value"] == 2


def test_multipart_csv_upload_with_inline_processing(client, mapping_factory, asset_node_transformation):
    source = _create_source(client)
    mapping_factory(
        db.session.get(DataSource, source["id"]),
        {"id": "1", "name": "Pump", "status": "active", "region": "east"},
        [asset_node_transformation()],
    )
    csv_bytes = b"id,name,status,region\n1,Pump,active,east\n2,Valve,idle,west\n"

    response = client.post(
        f"/importer/data_sources/{source['id']}/imports?process=true",
        data={"file": (io.BytesIO(csv_bytes), "assets.csv")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 201, response.get_json()
    summary = response.get_json()["value"]
    assert summary["status"] == ImportStatus.COMPLETED.value
    assert summary["records_inserted"] == 2
    assert db.session.scalar(select(func.count(Node.id))) == 2
    assert db.session.get(Import, summary["import_id"]).reference == "assets.csv"


def test_upload_rejections(client):
    source = _create_source(client)

    wrong_extension = client.post(
        f"/importer/data_sources/{source['id']}/imports",
        data={"file": (io.BytesIO(b"<xml/>"), "assets.xml")},
        content_type="multipart/form-data",
    )
    assert wrong_extension.status_code == 400
    assert wrong_extension.get_json()["error"]["message"] == "only .json and .csv uploads are accepted"

    empty = client.post(f"/importer/data_sources/{source['id']}/imports", data=b"")
    assert empty.status_code == 400

    malformed = client.post(
        f"/importer/data_sources/{source['id']}/imports", data=b"{not json", content_type="application/json"
    )
    assert malformed.status_code == 400
    assert malformed.get_json()["error"]["code"] == "acquisition_failed"


def test_upload_too_large(client, app):
    app.config["IMPORTER_MAX_UPLOAD_MB"] = 0
    source = _create_source(client)

    response = _upload(client, source["id"])

    assert response.status_code == 413
    assert response.get_json()["error"]["code"] == "upload_too_large"


def test_upload_to_inactive_source_is_conflict(client):
    source = _create_source(client, active=False)

    response = _upload(client, source["id"])

    assert response.status_code == 409
    assert response.get_json()["error"]["code"] == "inactive_data_source"


def test_process_endpoint_accepts_ready_imports_only(client):
    source = _create_source(client)
    import_id = _upload(client, source["id"]).get_json()["value"]["import_id"]

    queued = client.post(f"/importer/imports/{import_id}/process")
    assert queued.status_code == 202
    assert queued.get_json()["task_id"] is None
    assert queued.get_json()["value"]["status"] == ImportStatus.READY.value

    processed = client.post(f"/importer/imports/{import_id}/process?inline=true")
    assert processed.status_code == 202
    assert processed.get_json()["value"]["status"] == ImportStatus.COMPLETED.value

    again = client.post(f"/importer/imports/{import_id}/process")
    assert again.status_code == 409
    assert again.get_json()["error"]["code"] == "invalid_operation"

    missing = client.post("/importer/imports/999/process")
    assert missing.status_code == 404


def test_list_imports_paginates_and_filters(client):
    source = _create_source(client)
    for _ in range(3):
        _upload(client, source["id"])

    page = client.get(f"/importer/data_sources/{source['id']}/imports?page=1&page_size=2")
    payload = page.get_json()
    assert payload["total"] == 3
    assert payload["page_size"] == 2
    assert len(payload["value"]) == 2

    filtered = client.get(f"/importer/data_sources/{source['id']}/imports?status=completed")
    assert filtered.get_json()["total"] == 0

    invalid = client.get(f"/importer/data_sources/{source['id']}/imports?status=bogus")
    assert invalid.status_code == 400


def test_activation_routes(client):
    source = _create_source(client)

    deactivated = client.delete(f"/importer/data_sources/{source['id']}/active")
    assert deactivated.status_code == 200
    assert deactivated.get_json()["value"]["active"] is False

    activated = client.post(f"/importer/data_sources/{source['id']}/active")
    assert activated.get_json()["value"]["active"] is True


def test_delete_routes(client):
    kept = _create_source(client)
    _upload(client, kept["id"])

    refused = client.delete(f"/importer/data_sources/{kept['id']}")
    assert refused.status_code == 409

    archived = client.delete(f"/importer/data_sources/{kept['id']}?archive=true")
    assert archived.status_code == 200
    assert archived.get_json()["value"]["archived"] is True

    removed = client.delete(f"/importer/data_sources/{kept['id']}?remove_data=true")
    assert removed.status_code == 200
    assert removed.get_json()["value"] == {"id": kept["id"], "deleted": True}
    assert client.get(f"/importer/data_sources/{kept['id']}").status_code == 404


def test_reprocess_route(client):
    source = _create_source(client)
    _upload(client, source["id"])

    response = client.post(f"/importer/data_sources/{source['id']}/reprocess")

    assert response.status_code == 200
    payload = response.get_json()["value"]
    assert payload["records_processed"] == 2
    assert payload["records_unmapped"] == 2


def test_mapping_routes(client, ontology_factory):
    source = _create_source(client)
    _upload(client, source["id"], query="?process=true")

    listing = client.get(f"/importer/data_sources/{source['id']}/mappings")
    mappings = listing.get_json()["value"]
    assert len(mappings) == 1
    shell = mappings[0]
    assert shell["active"] is False
    assert shell["transformation_count"] == 0
    assert shell["sample_payload"] == ASSETS[0]

    activated = client.post(f"/importer/mappings/{shell['id']}/active")
    assert activated.get_json()["value"]["active"] is True
    deactivated = client.delete(f"/importer/mappings/{shell['id']}/active")
    assert deactivated.get_json()["value"]["active"] is False

    upgraded_version = ontology_factory("v2")
    upgraded = client.post(
        "/importer/mappings/upgrade",
        json={"mapping_ids": [shell["id"]], "ontology_version_id": upgraded_version.version.id},
    )
    assert upgraded.status_code == 200

    missing_fields = client.post("/importer/mappings/upgrade", json={"mapping_ids": []})
    assert missing_fields.status_code == 400


def test_mapping_upgrade_conflict_reports_unresolved(client, source_factory, mapping_factory, asset_node_transformation):
    source = source_factory()
    bound = mapping_factory(source, ASSETS[0], [asset_node_transformation()])
    empty_version = OntologyVersion(name="empty")
    db.session.add(empty_version)
    db.session.commit()

    response = client.post(
        "/importer/mappings/upgrade",
        json={"mapping_ids": [bound.mapping.id], "ontology_version_id": empty_version.id},
    )

    assert response.status_code == 409
    error = response.get_json()["error"]
    assert error["details"]["unresolved"]


def test_timeseries_rows_route(client):
    columns = [
        {"column_name": "observed_at", "property_name": "time", "type": "date", "is_primary_timestamp": True},
        {"column_name": "reading", "type": "float"},
    ]
    source = _create_source(client, name="Sensors", adapter_type="timeseries", config={"columns": columns})
    response = _upload(client, source["id"], payload=[{"time": "2024-03-01T10:00:00Z", "reading": 1.5}])
    assert response.status_code == 201, response.get_json()

    rows = client.get(f"/importer/data_sources/{source['id']}/timeseries?limit=10")

    assert rows.status_code == 200
    payload = rows.get_json()
    assert payload["total"] == 1
    assert payload["value"][0]["reading"] == 1.5

    standard = _create_source(client, name="Plain")
    wrong_kind = client.get(f"/importer/data_sources/{standard['id']}/timeseries")
    assert wrong_kind.status_code == 400
