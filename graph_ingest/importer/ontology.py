"""
Read-through lookups against the ontology read model.

Results are plain dictionaries so they can live in the JSON cache. Callers
that mutate metatypes or relationship keys must call the matching
``invalidate_*`` method.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import select

from graph_ingest.models import (
    Metatype,
    MetatypeKey,
    MetatypeRelationshipKey,
    MetatypeRelationshipPair,
    db,
)

from .cache import CacheBackend, cached, get_cache, metatype_keys_cache_key, relationship_keys_cache_key


def _key_payload(key: MetatypeKey | MetatypeRelationshipKey) -> dict[str, Any]:
    return {
        "id": key.id,
        "name": key.name,
        "property_name": key.property_name,
        "data_type": key.data_type,
        "required": bool(key.required),
        "options": getattr(key, "options", None),
        "default_value": getattr(key, "default_value", None),
    }


class OntologyService:
    def __init__(self, session=None, cache: CacheBackend | None = None):
        self.session = session or db.session
        self._cache = cache

    @property
    def cache(self) -> CacheBackend:
        if self._cache is None:
            self._cache = get_cache()
        return self._cache

    def metatype(self, metatype_id: int) -> Metatype | None:
        return self.session.get(Metatype, metatype_id)

    def relationship_pair(self, pair_id: int) -> MetatypeRelationshipPair | None:
        return self.session.get(MetatypeRelationshipPair, pair_id)

    def metatype_keys(self, metatype_id: int) -> list[dict[str, Any]]:
        def _load() -> list[dict[str, Any]]:
            rows = self.session.scalars(
                select(MetatypeKey).where(MetatypeKey.metatype_id == metatype_id).order_by(MetatypeKey.id)
            )
            return [_key_payload(row) for row in rows]

        return cached(metatype_keys_cache_key(metatype_id), _load, cache=self.cache)

    def relationship_keys(self, pair_id: int) -> list[dict[str, Any]]:
        def _load() -> list[dict[str, Any]]:
            pair = self.relationship_pair(pair_id)
            if pair is None:
                return []
            rows = self.session.scalars(
                select(MetatypeRelationshipKey)
                .where(MetatypeRelationshipKey.metatype_relationship_id == pair.relationship_id)
                .order_by(MetatypeRelationshipKey.id)
            )
            return [_key_payload(row) for row in rows]

        return cached(relationship_keys_cache_key(pair_id), _load, cache=self.cache)

    def metatype_key(self, metatype_id: int, key_id: int) -> dict[str, Any] | None:
        return next((key for key in self.metatype_keys(metatype_id) if key["id"] == key_id), None)

    def relationship_key(self, pair_id: int, key_id: int) -> dict[str, Any] | None:
        return next((key for key in self.relationship_keys(pair_id) if key["id"] == key_id), None)

    def required_properties(self, *, metatype_id: int | None = None, pair_id: int | None = None) -> set[str]:
        if metatype_id is not None:
            keys = self.metatype_keys(metatype_id)
        elif pair_id is not None:
            keys = self.relationship_keys(pair_id)
        else:
            return set()
        return {key["property_name"] for key in keys if key["required"]}

    def find_metatype(self, ontology_version_id: int | None, name: str) -> Metatype | None:
        return self.session.scalar(
            select(Metatype).where(Metatype.ontology_version_id == ontology_version_id, Metatype.name == name)
        )

    def find_relationship_pair(self, ontology_version_id: int | None, name: str) -> MetatypeRelationshipPair | None:
        return self.session.scalar(
            select(MetatypeRelationshipPair).where(
                MetatypeRelationshipPair.ontology_version_id == ontology_version_id,
                MetatypeRelationshipPair.name == name,
            )
        )

    def find_relationship_key(self, relationship_id: int, property_name: str) -> MetatypeRelationshipKey | None:
        return self.session.scalar(
            select(MetatypeRelationshipKey).where(
                MetatypeRelationshipKey.metatype_relationship_id == relationship_id,
                MetatypeRelationshipKey.property_name == property_name,
            )
        )

    def find_metatype_key(self, metatype_id: int, property_name: str) -> MetatypeKey | None:
        return self.session.scalar(
            select(MetatypeKey).where(MetatypeKey.metatype_id == metatype_id, MetatypeKey.property_name == property_name)
        )

    def invalidate_metatype(self, metatype_id: int) -> None:
        self.cache.delete(metatype_keys_cache_key(metatype_id))

    def invalidate_relationship_pair(self, pair_id: int) -> None:
        self.cache.delete(relationship_keys_cache_key(pair_id))
