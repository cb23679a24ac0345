"""
Database models package
"""

from .base import BaseModel, db
from .graph import Edge, Node
from .importer import (
    DataSource,
    DataSourceKind,
    DataStaging,
    Import,
    ImporterWatermark,
    ImportStatus,
    StagingIntentOutcome,
    StagingStatus,
    TypeMapping,
    TypeTransformation,
)
from .ontology import (
    Metatype,
    MetatypeKey,
    MetatypeRelationship,
    MetatypeRelationshipKey,
    MetatypeRelationshipPair,
    OntologyVersion,
)

__all__ = [
    "db",
    "BaseModel",
    # Ontology read model
    "OntologyVersion",
    "Metatype",
    "MetatypeKey",
    "MetatypeRelationship",
    "MetatypeRelationshipKey",
    "MetatypeRelationshipPair",
    # Graph
    "Node",
    "Edge",
    # Importer
    "DataSource",
    "DataSourceKind",
    "DataStaging",
    "Import",
    "ImporterWatermark",
    "ImportStatus",
    "StagingIntentOutcome",
    "StagingStatus",
    "TypeMapping",
    "TypeTransformation",
]
