"""
Read model for the ontology consumed by the importer.

Ontology CRUD lives elsewhere; these tables only carry what transformation,
validation, and mapping upgrades need to resolve: metatypes, relationship
pairs, their property keys, and the ontology version each belongs to.
"""

from __future__ import annotations

from sqlalchemy import ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db


class OntologyVersion(BaseModel):
    __tablename__ = "ontology_versions"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    status: Mapped[str] = mapped_column(db.String(32), nullable=False, default="published")
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)


class Metatype(BaseModel):
    __tablename__ = "metatypes"

    id: Mapped[int] = mapped_column(primary_key=True)
    ontology_version_id: Mapped[int | None] = mapped_column(
        ForeignKey("ontology_versions.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    ontology_version = relationship("OntologyVersion")
    keys = relationship(
        "MetatypeKey",
        back_populates="metatype",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (UniqueConstraint("ontology_version_id", "name", name="uq_metatypes_version_name"),)


class MetatypeKey(BaseModel):
    """Property definition for a metatype."""

    __tablename__ = "metatype_keys"

    id: Mapped[int] = mapped_column(primary_key=True)
    metatype_id: Mapped[int] = mapped_column(
        ForeignKey("metatypes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    property_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    data_type: Mapped[str] = mapped_column(db.String(32), nullable=False, default="string")
    required: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    options: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    default_value: Mapped[object | None] = mapped_column(db.JSON, nullable=True)

    metatype = relationship("Metatype", back_populates="keys")


class MetatypeRelationship(BaseModel):
    __tablename__ = "metatype_relationships"

    id: Mapped[int] = mapped_column(primary_key=True)
    ontology_version_id: Mapped[int | None] = mapped_column(
        ForeignKey("ontology_versions.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    name: Mapped[str] = mapped_column(db.String(255), nullable=False)

    keys = relationship(
        "MetatypeRelationshipKey",
        back_populates="metatype_relationship",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class MetatypeRelationshipKey(BaseModel):
    __tablename__ = "metatype_relationship_keys"

    id: Mapped[int] = mapped_column(primary_key=True)
    metatype_relationship_id: Mapped[int] = mapped_column(
        ForeignKey("metatype_relationships.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    property_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    data_type: Mapped[str] = mapped_column(db.String(32), nullable=False, default="string")
    required: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)

    metatype_relationship = relationship("MetatypeRelationship", back_populates="keys")


class MetatypeRelationshipPair(BaseModel):
    """Directed (origin metatype, relationship, destination metatype) triple."""

    __tablename__ = "metatype_relationship_pairs"

    id: Mapped[int] = mapped_column(primary_key=True)
    ontology_version_id: Mapped[int | None] = mapped_column(
        ForeignKey("ontology_versions.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    origin_metatype_id: Mapped[int] = mapped_column(ForeignKey("metatypes.id", ondelete="CASCADE"), nullable=False)
    destination_metatype_id: Mapped[int] = mapped_column(
        ForeignKey("metatypes.id", ondelete="CASCADE"),
        nullable=False,
    )
    relationship_id: Mapped[int] = mapped_column(
        ForeignKey("metatype_relationships.id", ondelete="CASCADE"),
        nullable=False,
    )

    origin_metatype = relationship("Metatype", foreign_keys=[origin_metatype_id])
    destination_metatype = relationship("Metatype", foreign_keys=[destination_metatype_id])
    metatype_relationship = relationship("MetatypeRelationship", foreign_keys=[relationship_id])

    __table_args__ = (UniqueConstraint("ontology_version_id", "name", name="uq_relationship_pairs_version_name"),)
