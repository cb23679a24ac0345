"""
Consumer side of the pipeline: turn staged records into persisted entities.

Each staged record moves ``staged -> transforming -> inserted |
partially_inserted | errored``. Intent outcomes are written to the
``staging_intent_outcomes`` ledger; intents that already succeeded are never
persisted again, which keeps retries and reprocessing idempotent.

Only one worker transforms a given data source at a time: runs take a
claim on ``data_sources.processing_claimed_at`` with a conditional UPDATE,
so records of the same shape are processed in arrival order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from flask import current_app
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from graph_ingest.models import DataSource, DataStaging, Import, StagingIntentOutcome, TypeMapping, db
from graph_ingest.models.base import utc_now
from graph_ingest.models.importer import ImportStatus, IntentOutcomeStatus, StagingStatus
from graph_ingest.utils.importer import get_batch_size

from ..errors import NotFoundError, PersistenceError, ProcessingBusyError
from ..mapping import TypeMappingRegistry
from ..metrics import record_intent, record_processed
from ..shape import shape_hash_for_source
from ..transform.engine import IntentContext, TransformationEngine
from .imports import ImportService, ImportSummary
from .persistence import GraphPersistence, IntentResult
from .staging import StagingStore

_DONE = (IntentOutcomeStatus.SUCCEEDED, IntentOutcomeStatus.SKIPPED)


def claim_processing(data_source_id: int, *, now: datetime | None = None, session=None) -> bool:
    """Atomically take the processing claim for a source; a stale claim can be taken over."""
    session = session or db.session
    now = now or datetime.now(timezone.utc)
    stale_after = int(current_app.config.get("IMPORTER_PROCESSING_CLAIM_TIMEOUT_SECONDS", 3600))
    result = session.execute(
        update(DataSource)
        .where(
            DataSource.id == data_source_id,
            or_(
                DataSource.processing_claimed_at.is_(None),
                DataSource.processing_claimed_at < now - timedelta(seconds=stale_after),
            ),
        )
        .values(processing_claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount == 1


def release_processing(data_source_id: int, *, session=None) -> None:
    session = session or db.session
    session.rollback()
    session.execute(
        update(DataSource)
        .where(DataSource.id == data_source_id)
        .values(processing_claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    session.commit()


@dataclass
class RecordOutcome:
    staging_id: int
    status: StagingStatus
    mapped: bool = True
    succeeded: int = 0
    failed: int = 0
    already_done: int = 0
    results: list[IntentResult] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class ReprocessSummary:
    data_source_id: int
    records_processed: int
    records_inserted: int
    records_partially_inserted: int
    records_errored: int
    records_unmapped: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "data_source_id": self.data_source_id,
            "records_processed": self.records_processed,
            "records_inserted": self.records_inserted,
            "records_partially_inserted": self.records_partially_inserted,
            "records_errored": self.records_errored,
            "records_unmapped": self.records_unmapped,
        }


class StagedRecordProcessor:
    def __init__(
        self,
        session=None,
        registry: TypeMappingRegistry | None = None,
        engine: TransformationEngine | None = None,
        persistence: GraphPersistence | None = None,
    ):
        self.session = session or db.session
        self.registry = registry or TypeMappingRegistry(session=self.session)
        self.engine = engine or TransformationEngine(ontology=self.registry.ontology, session=self.session)
        self.persistence = persistence or GraphPersistence(session=self.session, ontology=self.registry.ontology)

    def _ledger(self, staging_id: int) -> dict[tuple[int | None, str], StagingIntentOutcome]:
        rows = self.session.scalars(select(StagingIntentOutcome).where(StagingIntentOutcome.staging_id == staging_id))
        return {(row.transformation_id, row.element_key): row for row in rows}

    def _record_outcome(
        self,
        ledger: dict[tuple[int | None, str], StagingIntentOutcome],
        staging_id: int,
        key: tuple[int | None, str],
        status: IntentOutcomeStatus,
        *,
        entity_kind: str | None = None,
        entity_id: int | None = None,
        error: str | None = None,
    ) -> None:
        outcome = ledger.get(key)
        if outcome is None:
            outcome = StagingIntentOutcome(staging_id=staging_id, transformation_id=key[0], element_key=key[1])
            self.session.add(outcome)
            ledger[key] = outcome
        outcome.status = status
        outcome.entity_kind = entity_kind
        outcome.entity_id = str(entity_id) if entity_id is not None else None
        outcome.error = error

    def process(self, record: DataStaging) -> RecordOutcome:
        shape_hash = record.shape_hash or shape_hash_for_source(record.data, record.data_source_config)
        resolution = self.registry.resolve(record.data_source_id, shape_hash, record.data)
        record.mapping_id = resolution.mapping_id
        # the cached resolution may predate an activation change made by another process
        active = self.session.scalar(select(TypeMapping.active).where(TypeMapping.id == resolution.mapping_id))
        transformations = self.registry.transformations_for(resolution.mapping_id) if active else []
        if not transformations:
            # stays staged until an operator activates a mapping for this shape
            self.session.flush()
            return RecordOutcome(staging_id=record.id, status=StagingStatus(record.status), mapped=False)

        record.status = StagingStatus.TRANSFORMING
        self.session.flush()

        context = IntentContext(
            data_source_id=record.data_source_id,
            import_id=record.import_id,
            staging_id=record.id,
        )
        output = self.engine.transform(transformations, record.data, context)
        ledger = self._ledger(record.id)
        done = {key for key, outcome in ledger.items() if outcome.status in _DONE}

        outcome = RecordOutcome(staging_id=record.id, status=StagingStatus.TRANSFORMING)
        pending = []
        for intent in output.intents:
            if intent.ledger_key in done:
                outcome.already_done += 1
            else:
                pending.append(intent)

        outcome.results = self.persistence.persist(pending)
        numbering = {id(intent): position for position, intent in enumerate(output.intents, start=1)}
        for result in outcome.results:
            intent = result.intent
            kind = intent.kind.value
            if result.succeeded:
                status = IntentOutcomeStatus.SKIPPED if result.action == "ignored" else IntentOutcomeStatus.SUCCEEDED
                self._record_outcome(
                    ledger, record.id, intent.ledger_key, status, entity_kind=kind, entity_id=result.entity_id
                )
                outcome.succeeded += 1
                record_intent(kind, "skipped" if status is IntentOutcomeStatus.SKIPPED else "succeeded")
                continue
            self._record_outcome(
                ledger, record.id, intent.ledger_key, IntentOutcomeStatus.FAILED, entity_kind=kind, error=result.error
            )
            outcome.failed += 1
            record_intent(kind, "failed")
            outcome.errors.append(
                {
                    "intent": numbering[id(intent)],
                    "transformation_id": intent.transformation_id,
                    "element_key": intent.element_key,
                    "code": "persistence_failed",
                    "error": result.error,
                }
            )

        for failure in output.failures:
            if failure.ledger_key in done:
                continue
            self._record_outcome(ledger, record.id, failure.ledger_key, IntentOutcomeStatus.FAILED, error=failure.message)
            outcome.failed += 1
            outcome.errors.append(
                {
                    "intent": None,
                    "transformation_id": failure.transformation_id,
                    "element_key": failure.element_key,
                    "code": failure.code,
                    "error": failure.message,
                }
            )

        if outcome.failed == 0:
            outcome.status = StagingStatus.INSERTED
        elif outcome.succeeded + outcome.already_done > 0:
            outcome.status = StagingStatus.PARTIALLY_INSERTED
        else:
            outcome.status = StagingStatus.ERRORED

        recorded_at = utc_now().isoformat()
        record.errors = [{**error, "recorded_at": recorded_at} for error in outcome.errors]
        record.status = outcome.status
        if outcome.status in (StagingStatus.INSERTED, StagingStatus.PARTIALLY_INSERTED) and record.inserted_at is None:
            record.inserted_at = utc_now()
        self.session.flush()
        record_processed(outcome.status.value)
        return outcome


class ImportProcessor:
    """Drive staged records of one import (or a whole source) through transformation."""

    def __init__(
        self,
        session=None,
        records: StagedRecordProcessor | None = None,
        staging: StagingStore | None = None,
        imports: ImportService | None = None,
        batch_size: int | None = None,
    ):
        self.session = session or db.session
        self.records = records or StagedRecordProcessor(session=self.session)
        self.staging = staging or StagingStore(session=self.session)
        self.imports = imports or ImportService(session=self.session)
        self.batch_size = batch_size or get_batch_size("IMPORTER_PROCESSING_BATCH_SIZE", 100)

    def _stop(self, import_record: Import, message: str) -> ImportSummary:
        self.imports.refresh_counts(import_record)
        self.imports.set_status(import_record, ImportStatus.STOPPED, message)
        self.session.commit()
        current_app.logger.info(
            "Importer stopped import for inactive data source",
            extra={"importer_import_id": import_record.id, "importer_data_source_id": import_record.data_source_id},
        )
        return self.imports.summarize(import_record)

    def _claim(self, data_source_id: int) -> None:
        if not claim_processing(data_source_id, session=self.session):
            raise ProcessingBusyError(
                f"data source {data_source_id} is already being processed",
                details={"data_source_id": data_source_id},
            )

    def run(self, import_id: int) -> ImportSummary:
        """
        Process one import under its source's processing claim.

        Raises ``ProcessingBusyError`` without touching the import when another
        worker holds the claim; the import stays ``ready`` for a later attempt.
        """
        import_record = self.session.get(Import, import_id)
        if import_record is None:
            raise NotFoundError(f"import {import_id} not found")
        if ImportStatus(import_record.status).is_terminal:
            return self.imports.summarize(import_record)

        data_source_id = import_record.data_source_id
        self._claim(data_source_id)
        try:
            return self._run_claimed(import_id)
        finally:
            release_processing(data_source_id, session=self.session)

    def _run_claimed(self, import_id: int) -> ImportSummary:
        import_record = self.session.get(Import, import_id)
        if import_record is None:
            raise NotFoundError(f"import {import_id} not found")
        source: DataSource = import_record.data_source
        if not source.active or source.archived:
            if ImportStatus(import_record.status).is_terminal:
                return self.imports.summarize(import_record)
            return self._stop(import_record, "Data source is inactive; import stopped.")

        # a processing import can only be a run that died while holding the claim
        if not self.imports.claim(import_id, (ImportStatus.READY, ImportStatus.PROCESSING)):
            current_app.logger.info(
                "Importer import already handled by another run",
                extra={"importer_import_id": import_id, "importer_data_source_id": source.id},
            )
            return self.imports.summarize(self.session.get(Import, import_id))

        processed = unmapped = 0
        try:
            for record in self.staging.list_unprocessed(source.id, import_id=import_id):
                if processed and processed % self.batch_size == 0:
                    self.session.commit()
                    self.session.refresh(source)
                    if not source.active or source.archived:
                        return self._stop(import_record, "Data source deactivated during processing.")
                outcome = self.records.process(record)
                processed += 1
                if not outcome.mapped:
                    unmapped += 1
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            self.imports.fail(import_id, f"Processing failed: {exc}")
            raise PersistenceError(f"processing import {import_id} failed: {exc}") from exc

        self.imports.refresh_counts(import_record)
        message = None
        if unmapped:
            message = f"{unmapped} record(s) awaiting an active type mapping."
        self.imports.set_status(import_record, ImportStatus.COMPLETED, message)
        self.session.commit()
        current_app.logger.info(
            "Importer processed import",
            extra={
                "importer_import_id": import_id,
                "importer_data_source_id": source.id,
                "importer_records_processed": processed,
                "importer_records_unmapped": unmapped,
            },
        )
        return self.imports.summarize(import_record)

    def reprocess(self, source: DataSource) -> ReprocessSummary:
        """
        Re-run transformation over every staged record of ``source``.

        Previously succeeded intents are skipped through the outcome ledger,
        so repeated calls converge. Failures surface to the caller and are not
        retried.
        """
        source_id = source.id
        self._claim(source_id)
        try:
            return self._reprocess_claimed(self.session.get(DataSource, source_id))
        finally:
            release_processing(source_id, session=self.session)

    def _reprocess_claimed(self, source: DataSource) -> ReprocessSummary:
        counts = {status: 0 for status in StagingStatus}
        processed = unmapped = 0
        touched_imports: set[int] = set()
        try:
            for record in self.staging.list_unprocessed(source.id, statuses=tuple(StagingStatus)):
                if processed and processed % self.batch_size == 0:
                    self.session.commit()
                outcome = self.records.process(record)
                processed += 1
                touched_imports.add(record.import_id)
                if not outcome.mapped:
                    unmapped += 1
                else:
                    counts[outcome.status] += 1
            for import_id in sorted(touched_imports):
                import_record = self.session.get(Import, import_id)
                if import_record is not None:
                    self.imports.refresh_counts(import_record)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError(f"reprocessing data source {source.id} failed: {exc}") from exc

        current_app.logger.info(
            "Importer reprocessed data source",
            extra={"importer_data_source_id": source.id, "importer_records_processed": processed},
        )
        return ReprocessSummary(
            data_source_id=source.id,
            records_processed=processed,
            records_inserted=counts[StagingStatus.INSERTED],
            records_partially_inserted=counts[StagingStatus.PARTIALLY_INSERTED],
            records_errored=counts[StagingStatus.ERRORED],
            records_unmapped=unmapped,
        )
