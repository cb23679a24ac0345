"""
SQLAlchemy models for the importer schema.

Data sources own imports; imports own staged records; staged records are
matched to type mappings by shape hash and transformed into graph entities or
time-series rows. Per-intent outcomes are tracked so that retries and
reprocessing never duplicate work that already succeeded.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class DataSourceKind(str, enum.Enum):
    """Closed set of acquisition strategies."""

    STANDARD = "standard"
    MANUAL = "manual"
    HTTP = "http"
    SALESFORCE = "salesforce"
    TIMESERIES = "timeseries"

    @property
    def is_polling(self) -> bool:
        return self in (DataSourceKind.HTTP, DataSourceKind.SALESFORCE)


class ImportStatus(str, enum.Enum):
    """Lifecycle states for an import."""

    READY = "ready"
    PROCESSING = "processing"
    ERROR = "error"
    STOPPED = "stopped"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in (ImportStatus.ERROR, ImportStatus.STOPPED, ImportStatus.COMPLETED)


class StagingStatus(str, enum.Enum):
    """Processing state of a staged record."""

    STAGED = "staged"
    TRANSFORMING = "transforming"
    INSERTED = "inserted"
    PARTIALLY_INSERTED = "partially_inserted"
    ERRORED = "errored"


class IntentOutcomeStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class TransformationType(str, enum.Enum):
    NODE = "node"
    EDGE = "edge"
    TIMESERIES = "timeseries"


class OnConflict(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    IGNORE = "ignore"


class ErrorAction(str, enum.Enum):
    """Action taken when key extraction or value conversion fails."""

    IGNORE = "ignore"
    FAIL_ON_REQUIRED = "fail on required"
    FAIL = "fail"


class DataSource(BaseModel):
    """Externally configured origin of payloads."""

    __tablename__ = "data_sources"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    adapter_type: Mapped[DataSourceKind] = mapped_column(
        Enum(DataSourceKind, name="data_source_kind_enum"),
        nullable=False,
        index=True,
    )
    active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False, index=True)
    archived: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False, index=True)
    config: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    created_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    modified_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    last_polled_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    poll_in_progress: Mapped[bool] = mapped_column(
        db.Boolean,
        nullable=False,
        default=False,
        comment="Claim flag preventing overlapping poll ticks for the same source.",
    )
    processing_claimed_at: Mapped[datetime | None] = mapped_column(
        db.DateTime(timezone=True),
        nullable=True,
        comment="Set while one worker transforms this source's staged records; NULL when free.",
    )

    imports = relationship(
        "Import",
        back_populates="data_source",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    type_mappings = relationship(
        "TypeMapping",
        back_populates="data_source",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def kind(self) -> DataSourceKind:
        return DataSourceKind(self.adapter_type)


class Import(BaseModel):
    """One acquisition cycle of a data source."""

    __tablename__ = "imports"

    id: Mapped[int] = mapped_column(primary_key=True)
    data_source_id: Mapped[int] = mapped_column(
        ForeignKey("data_sources.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[ImportStatus] = mapped_column(
        Enum(ImportStatus, name="import_status_enum"),
        nullable=False,
        default=ImportStatus.READY,
        index=True,
    )
    status_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    reference: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    created_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    total_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_inserted: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_errors: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)

    data_source = relationship("DataSource", back_populates="imports")
    staged_records = relationship(
        "DataStaging",
        back_populates="import_record",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("idx_imports_source_status", "data_source_id", "status"),)


class DataStaging(BaseModel):
    """
    One raw payload plus its shape hash and the data source configuration in
    force when it arrived. Only ``errors``, ``status``, ``mapping_id`` and
    ``inserted_at`` change after creation.
    """

    __tablename__ = "data_staging"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    data_source_id: Mapped[int] = mapped_column(
        ForeignKey("data_sources.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    import_id: Mapped[int] = mapped_column(
        ForeignKey("imports.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    shape_hash: Mapped[str | None] = mapped_column(db.String(64), nullable=True, index=True)
    mapping_id: Mapped[int | None] = mapped_column(
        ForeignKey("type_mappings.id", ondelete="SET NULL"),
        nullable=True,
    )
    data: Mapped[object] = mapped_column(db.JSON, nullable=False)
    data_source_config: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    errors: Mapped[list] = mapped_column(db.JSON, nullable=False, default=list)
    status: Mapped[StagingStatus] = mapped_column(
        Enum(StagingStatus, name="staging_status_enum"),
        nullable=False,
        default=StagingStatus.STAGED,
        index=True,
    )
    inserted_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    import_record = relationship("Import", back_populates="staged_records")
    type_mapping = relationship("TypeMapping")
    outcomes = relationship(
        "StagingIntentOutcome",
        back_populates="staged_record",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("idx_data_staging_source_shape", "data_source_id", "shape_hash", "status"),)


class StagingIntentOutcome(BaseModel):
    """Result of persisting one intent produced from a staged record."""

    __tablename__ = "staging_intent_outcomes"

    id: Mapped[int] = mapped_column(primary_key=True)
    staging_id: Mapped[int] = mapped_column(
        ForeignKey("data_staging.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    transformation_id: Mapped[int | None] = mapped_column(
        ForeignKey("type_transformations.id", ondelete="SET NULL"),
        nullable=True,
    )
    element_key: Mapped[str] = mapped_column(
        db.String(255),
        nullable=False,
        default="",
        comment="Root-array indices of the element this intent came from.",
    )
    status: Mapped[IntentOutcomeStatus] = mapped_column(
        Enum(IntentOutcomeStatus, name="intent_outcome_status_enum"),
        nullable=False,
    )
    entity_kind: Mapped[str | None] = mapped_column(db.String(32), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    error: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    staged_record = relationship("DataStaging", back_populates="outcomes")

    __table_args__ = (
        UniqueConstraint(
            "staging_id",
            "transformation_id",
            "element_key",
            name="uq_staging_intent_outcomes_intent",
        ),
    )


class TypeMapping(BaseModel):
    """Binding between a payload shape and the transformations that apply to it."""

    __tablename__ = "type_mappings"

    id: Mapped[int] = mapped_column(primary_key=True)
    data_source_id: Mapped[int] = mapped_column(
        ForeignKey("data_sources.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    shape_hash: Mapped[str] = mapped_column(db.String(64), nullable=False)
    sample_payload: Mapped[object | None] = mapped_column(db.JSON, nullable=True)
    active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)

    data_source = relationship("DataSource", back_populates="type_mappings")
    transformations = relationship(
        "TypeTransformation",
        back_populates="type_mapping",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="TypeTransformation.position",
    )

    __table_args__ = (UniqueConstraint("data_source_id", "shape_hash", name="uq_type_mappings_source_shape"),)


class TypeTransformation(BaseModel):
    """Rule turning a (sub)payload into one node, edge, or time-series row."""

    __tablename__ = "type_transformations"

    id: Mapped[int] = mapped_column(primary_key=True)
    type_mapping_id: Mapped[int] = mapped_column(
        ForeignKey("type_mappings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    position: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    type: Mapped[TransformationType] = mapped_column(
        Enum(TransformationType, name="transformation_type_enum"),
        nullable=False,
        default=TransformationType.NODE,
    )
    root_array: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    metatype_id: Mapped[int | None] = mapped_column(ForeignKey("metatypes.id"), nullable=True)
    metatype_relationship_pair_id: Mapped[int | None] = mapped_column(
        ForeignKey("metatype_relationship_pairs.id"),
        nullable=True,
    )
    origin_id_key: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    origin_metatype_id: Mapped[int | None] = mapped_column(ForeignKey("metatypes.id"), nullable=True)
    origin_data_source_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    destination_id_key: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    destination_metatype_id: Mapped[int | None] = mapped_column(ForeignKey("metatypes.id"), nullable=True)
    destination_data_source_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    timeseries_data_source_id: Mapped[int | None] = mapped_column(
        ForeignKey("data_sources.id", ondelete="SET NULL"),
        nullable=True,
    )
    unique_identifier_key: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    on_conflict: Mapped[OnConflict] = mapped_column(
        Enum(OnConflict, name="on_conflict_enum"),
        nullable=False,
        default=OnConflict.CREATE,
    )
    config: Mapped[dict] = mapped_column(
        db.JSON,
        nullable=False,
        default=lambda: {
            "on_key_extraction_error": ErrorAction.FAIL_ON_REQUIRED.value,
            "on_conversion_error": ErrorAction.FAIL_ON_REQUIRED.value,
        },
    )
    conditions: Mapped[list] = mapped_column(db.JSON, nullable=False, default=list)
    keys: Mapped[list] = mapped_column(db.JSON, nullable=False, default=list)
    archived: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)

    type_mapping = relationship("TypeMapping", back_populates="transformations")
    metatype = relationship("Metatype", foreign_keys=[metatype_id])
    relationship_pair = relationship("MetatypeRelationshipPair", foreign_keys=[metatype_relationship_pair_id])


class ImporterWatermark(BaseModel):
    """Track the last successful watermark for each polling data source."""

    __tablename__ = "importer_watermarks"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    adapter: Mapped[str] = mapped_column(db.String(64), nullable=False)
    data_source_id: Mapped[int] = mapped_column(
        ForeignKey("data_sources.id", ondelete="CASCADE"),
        nullable=False,
    )
    last_successful_modstamp: Mapped[datetime | None] = mapped_column(
        db.DateTime(timezone=True),
        nullable=True,
        comment="Most recent modification stamp processed successfully.",
    )
    last_import_id: Mapped[int | None] = mapped_column(
        ForeignKey("imports.id", ondelete="SET NULL"),
        nullable=True,
    )
    metadata_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "adapter",
            "data_source_id",
            name="uq_importer_watermarks_adapter_source",
        ),
    )
