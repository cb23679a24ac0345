"""Graph entities produced by the transformation pipeline."""

from __future__ import annotations

from sqlalchemy import ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db


class Node(BaseModel):
    __tablename__ = "nodes"

    id: Mapped[int] = mapped_column(primary_key=True)
    metatype_id: Mapped[int] = mapped_column(ForeignKey("metatypes.id"), nullable=False, index=True)
    data_source_id: Mapped[int | None] = mapped_column(
        ForeignKey("data_sources.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    import_id: Mapped[int | None] = mapped_column(ForeignKey("imports.id", ondelete="SET NULL"), nullable=True)
    staging_id: Mapped[int | None] = mapped_column(
        ForeignKey("data_staging.id", ondelete="SET NULL"),
        nullable=True,
    )
    original_data_id: Mapped[str | None] = mapped_column(
        db.String(255),
        nullable=True,
        comment="Value of the transformation's unique identifier key, used for on_conflict matching.",
    )
    upsert_key: Mapped[str | None] = mapped_column(
        db.String(255),
        nullable=True,
        comment="original_data_id of nodes inserted under update/ignore; NULL under create, which allows duplicates.",
    )
    properties: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)

    metatype = relationship("Metatype")

    __table_args__ = (
        Index("idx_nodes_conflict_key", "metatype_id", "data_source_id", "original_data_id"),
        Index("uq_nodes_upsert_key", "metatype_id", "data_source_id", "upsert_key", unique=True),
    )


class Edge(BaseModel):
    __tablename__ = "edges"

    id: Mapped[int] = mapped_column(primary_key=True)
    relationship_pair_id: Mapped[int] = mapped_column(
        ForeignKey("metatype_relationship_pairs.id"),
        nullable=False,
        index=True,
    )
    origin_id: Mapped[int] = mapped_column(ForeignKey("nodes.id", ondelete="CASCADE"), nullable=False, index=True)
    destination_id: Mapped[int] = mapped_column(
        ForeignKey("nodes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    data_source_id: Mapped[int | None] = mapped_column(
        ForeignKey("data_sources.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    import_id: Mapped[int | None] = mapped_column(ForeignKey("imports.id", ondelete="SET NULL"), nullable=True)
    staging_id: Mapped[int | None] = mapped_column(
        ForeignKey("data_staging.id", ondelete="SET NULL"),
        nullable=True,
    )
    original_data_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    upsert_key: Mapped[str | None] = mapped_column(
        db.String(255),
        nullable=True,
        comment="original_data_id, or origin:destination node ids, for edges inserted under update/ignore.",
    )
    properties: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)

    relationship_pair = relationship("MetatypeRelationshipPair")
    origin = relationship("Node", foreign_keys=[origin_id])
    destination = relationship("Node", foreign_keys=[destination_id])

    __table_args__ = (
        Index("idx_edges_conflict_key", "relationship_pair_id", "data_source_id", "original_data_id"),
        Index("uq_edges_upsert_key", "relationship_pair_id", "data_source_id", "upsert_key", unique=True),
    )
