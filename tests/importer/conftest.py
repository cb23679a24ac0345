from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest

from graph_ingest.importer.mapping import TypeMappingRegistry
from graph_ingest.importer.service import DataSourceService
from graph_ingest.importer.shape import shape_hash_for_source
from graph_ingest.models import (
    Metatype,
    MetatypeKey,
    MetatypeRelationship,
    MetatypeRelationshipKey,
    MetatypeRelationshipPair,
    OntologyVersion,
    db,
)


@pytest.fixture
def ontology_factory(app):
    """Build Asset and Site metatypes joined by a ``located_at`` relationship under a named version."""

    def _build(version_name: str) -> SimpleNamespace:
        version = OntologyVersion(name=version_name)
        db.session.add(version)
        db.session.flush()

        asset = Metatype(ontology_version_id=version.id, name="Asset")
        site = Metatype(ontology_version_id=version.id, name="Site")
        db.session.add_all([asset, site])
        db.session.flush()

        asset_keys = {
            "name": MetatypeKey(metatype_id=asset.id, name="Name", property_name="name", required=True),
            "status": MetatypeKey(metatype_id=asset.id, name="Status", property_name="status"),
            "region": MetatypeKey(metatype_id=asset.id, name="Region", property_name="region"),
            "count": MetatypeKey(metatype_id=asset.id, name="Count", property_name="count", data_type="number"),
            "installed": MetatypeKey(
                metatype_id=asset.id, name="Installed", property_name="installed", data_type="date"
            ),
        }
        site_keys = {
            "name": MetatypeKey(metatype_id=site.id, name="Name", property_name="name", required=True),
        }
        db.session.add_all([*asset_keys.values(), *site_keys.values()])

        located_at = MetatypeRelationship(ontology_version_id=version.id, name="located_at")
        db.session.add(located_at)
        db.session.flush()
        since = MetatypeRelationshipKey(
            metatype_relationship_id=located_at.id, name="Since", property_name="since", data_type="date"
        )
        pair = MetatypeRelationshipPair(
            ontology_version_id=version.id,
            name="Asset located_at Site",
            origin_metatype_id=asset.id,
            destination_metatype_id=site.id,
            relationship_id=located_at.id,
        )
        db.session.add_all([since, pair])
        db.session.commit()
        return SimpleNamespace(
            version=version,
            asset=asset,
            site=site,
            asset_keys=asset_keys,
            site_keys=site_keys,
            relationship=located_at,
            since=since,
            pair=pair,
        )

    return _build


@pytest.fixture
def ontology(ontology_factory):
    return ontology_factory("v1")


@pytest.fixture
def source_factory(app):
    def _factory(kind: str = "standard", *, name: str | None = None, config: dict | None = None, active=True):
        result = DataSourceService().create(
            name or f"{kind} source",
            kind,
            config or {},
            user="tester",
            active=active,
        )
        assert result.is_success, result.error
        return result.value

    return _factory


@pytest.fixture
def mapping_factory(app):
    """Bind ``transformations`` to the shape of ``sample`` for ``source``."""

    def _factory(source, sample: Any, transformations: list[dict], *, active: bool = True):
        registry = TypeMappingRegistry()
        shape_hash = shape_hash_for_source(sample, source.config)
        resolution = registry.resolve(source.id, shape_hash, sample)
        created = [registry.add_transformation(resolution.mapping_id, **fields) for fields in transformations]
        mapping = registry.set_active(resolution.mapping_id, active)
        db.session.commit()
        return SimpleNamespace(mapping=mapping, transformations=created)

    return _factory


@pytest.fixture
def asset_node_transformation(ontology):
    """Node transformation for flat ``{"id", "name", "status", "region"}`` payloads."""

    def _build(**overrides) -> dict:
        fields = {
            "type": "node",
            "metatype_id": ontology.asset.id,
            "unique_identifier_key": "id",
            "on_conflict": "update",
            "keys": [
                {"key": "name", "metatype_key_id": ontology.asset_keys["name"].id},
                {"key": "status", "metatype_key_id": ontology.asset_keys["status"].id},
                {"key": "region", "metatype_key_id": ontology.asset_keys["region"].id},
            ],
        }
        fields.update(overrides)
        return fields

    return _build
