from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from graph_ingest.importer.adapters import HttpAdapter, register_adapter, stage_delivery
from graph_ingest.importer.adapters.base import fail_delivery
from graph_ingest.importer.errors import AcquisitionError
from graph_ingest.importer.scheduler import claim, due_sources, release, run_due_polls, tick
from graph_ingest.models import DataSource, Import, db
from graph_ingest.models.importer import ImportStatus

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class RecordingHttpAdapter(HttpAdapter):
    """Stages a fixed payload instead of issuing a request."""

    calls: list[int] = []
    fail = False
    deactivate = False

    def poll(self, source):
        type(self).calls.append(source.id)
        if type(self).fail:
            return fail_delivery(source, AcquisitionError("endpoint unreachable"), reference=source.config["endpoint"])
        if type(self).deactivate:
            source.active = False
            db.session.commit()
        return stage_delivery(source, [{"id": "1", "name": "Pump"}], reference=source.config["endpoint"])


@pytest.fixture
def recording_adapter():
    RecordingHttpAdapter.calls = []
    RecordingHttpAdapter.fail = False
    RecordingHttpAdapter.deactivate = False
    previous = register_adapter("http", RecordingHttpAdapter)
    yield RecordingHttpAdapter
    register_adapter("http", previous)


@pytest.fixture
def http_source(source_factory):
    def _build(name: str = "feed", *, interval: int = 5, active: bool = True):
        return source_factory(
            "http",
            name=name,
            config={"endpoint": f"https://example.test/{name}", "poll_interval": interval},
            active=active,
        )

    return _build


def _set_last_polled(source, when):
    source.last_polled_at = when
    db.session.commit()


def test_due_sources_respects_interval_and_state(http_source, source_factory):
    never = http_source("never")
    recent = http_source("recent", interval=30)
    stale = http_source("stale", interval=5)
    http_source("inactive", active=False)
    source_factory("standard", name="pushed")

    _set_last_polled(recent, NOW - timedelta(minutes=10))
    _set_last_polled(stale, NOW - timedelta(minutes=10))

    due = due_sources(NOW)

    assert [source.id for source in due] == [never.id, stale.id]


def test_claim_is_exclusive_until_released(http_source, app):
    source = http_source()

    assert claim(source.id, now=NOW) is True
    assert claim(source.id, now=NOW + timedelta(seconds=5)) is False

    release(source.id)

    assert claim(source.id, now=NOW + timedelta(seconds=10)) is True
    release(source.id)


def test_stale_claim_can_be_taken_over(http_source, app):
    app.config["IMPORTER_POLL_CLAIM_TIMEOUT_SECONDS"] = 60
    source = http_source()

    assert claim(source.id, now=NOW) is True
    assert claim(source.id, now=NOW + timedelta(seconds=30)) is False
    assert claim(source.id, now=NOW + timedelta(minutes=5)) is True
    release(source.id)


def test_claim_refuses_inactive_source(http_source):
    source = http_source(active=False)

    assert claim(source.id, now=NOW) is False


def test_tick_stages_delivery_and_releases_claim(http_source, recording_adapter):
    source = http_source()

    outcome = tick(source.id, now=NOW)

    assert outcome.status == "polled"
    assert outcome.import_id is not None
    assert recording_adapter.calls == [source.id]
    refreshed = db.session.get(DataSource, source.id)
    assert refreshed.poll_in_progress is False
    assert refreshed.last_polled_at is not None
    import_record = db.session.get(Import, outcome.import_id)
    assert ImportStatus(import_record.status) is ImportStatus.READY
    assert import_record.reference == "https://example.test/feed"


def test_tick_skips_when_claim_is_held(http_source, recording_adapter):
    source = http_source()
    assert claim(source.id, now=NOW) is True

    outcome = tick(source.id, now=NOW + timedelta(seconds=1))

    assert outcome.status == "skipped"
    assert outcome.message == "poll already in progress"
    assert recording_adapter.calls == []
    assert db.session.query(Import).count() == 0
    release(source.id)


def test_tick_skips_non_polling_source(source_factory, recording_adapter):
    source = source_factory("standard")

    outcome = tick(source.id, now=NOW)

    assert outcome.status == "skipped"
    assert outcome.message == "not a polling data source"
    assert recording_adapter.calls == []


def test_failed_poll_records_errored_import_and_keeps_source_active(http_source, recording_adapter):
    recording_adapter.fail = True
    source = http_source()

    outcome = tick(source.id, now=NOW)

    assert outcome.status == "failed"
    assert outcome.message == "endpoint unreachable"
    import_record = db.session.get(Import, outcome.import_id)
    assert ImportStatus(import_record.status) is ImportStatus.ERROR
    refreshed = db.session.get(DataSource, source.id)
    assert refreshed.active is True
    assert refreshed.poll_in_progress is False


def test_deactivated_source_is_not_polled_again(http_source, recording_adapter):
    recording_adapter.deactivate = True
    source = http_source(interval=1)

    first = run_due_polls(NOW)
    later = run_due_polls(NOW + timedelta(minutes=30))

    assert [outcome.data_source_id for outcome in first] == [source.id]
    assert later == []
    assert recording_adapter.calls == [source.id]


def test_run_due_polls_ticks_each_due_source_once(http_source, recording_adapter):
    first = http_source("first")
    second = http_source("second")

    outcomes = run_due_polls(NOW)
    repeat = run_due_polls(NOW + timedelta(minutes=1))

    assert sorted(outcome.data_source_id for outcome in outcomes) == sorted([first.id, second.id])
    assert all(outcome.status == "polled" for outcome in outcomes)
    assert repeat == []
