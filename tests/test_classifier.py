import pytest
import pytz
from datetime import datetime, timedelta

from eventsync.classifier import classify, dedupe, to_record
from eventsync.errors import ValidationError
from eventsync.models import EventCategory, EventFilter, UpsertOutcome

from conftest import NOW, make_event


@pytest.mark.parametrize("status,offset,expected", [
    ("cancelled", timedelta(hours=-1), EventCategory.CANCELLED),
    ("canceled", timedelta(hours=1), EventCategory.CANCELLED),
    ("active", timedelta(hours=-1), EventCategory.COMPLETED),
    ("active", timedelta(hours=1), EventCategory.UPCOMING),
    ("active", timedelta(0), EventCategory.UPCOMING),
])
def test_classify(status, offset, expected):
    assert classify(status, NOW + offset, NOW) == expected


def test_classify_is_order_independent():
    inputs = [("active", NOW - timedelta(days=1)), ("cancelled", NOW + timedelta(days=1))]
    first = [classify(s, t, NOW) for s, t in inputs]
    second = [classify(s, t, NOW) for s, t in reversed(inputs)]
    assert first == list(reversed(second))


def test_dedupe_keeps_freshest_copy():
    old = to_record(make_event("E1", NOW, updated_at=NOW - timedelta(hours=2)), "p1")
    new = to_record(make_event("E1", NOW, status="cancelled", updated_at=NOW), "p1")
    other = to_record(make_event("E2", NOW, updated_at=NOW), "p1")

    result = dedupe([new, other, old])
    assert len(result) == 2
    assert {r.remote_event_id: r.status for r in result}[new.remote_event_id] == "cancelled"


def test_to_record_falls_back_to_observation_time():
    record = to_record(make_event("E1", NOW), "p1", observed_at=NOW)
    assert record.remote_updated_at == NOW
    assert record.event_type_name == "Discovery Call"


class TestUpsert:

    def _rows(self, engine, remote_id):
        with engine.db_manager.get_session() as session:
            return engine.db_manager.query_events(session, EventFilter(remote_event_ids=[remote_id]))

    def test_replay_leaves_one_row(self, engine):
        event = make_event("E1", NOW, updated_at=NOW - timedelta(hours=1))

        assert engine.classifier.upsert(event, "p1", observed_at=NOW) == UpsertOutcome.INSERTED
        assert engine.classifier.upsert(event, "p1", observed_at=NOW) == UpsertOutcome.UPDATED

        assert len(self._rows(engine, event.id)) == 1

    def test_newer_copy_replaces_older(self, engine):
        first = make_event("E1", NOW + timedelta(days=1), updated_at=NOW - timedelta(hours=2))
        cancelled = make_event(
            "E1", NOW + timedelta(days=1), status="cancelled", updated_at=NOW - timedelta(hours=1)
        )

        engine.classifier.upsert(first, "p1", observed_at=NOW)
        assert engine.classifier.upsert(cancelled, "p1", observed_at=NOW) == UpsertOutcome.UPDATED

        rows = self._rows(engine, first.id)
        assert len(rows) == 1
        assert rows[0].status == "cancelled"
        assert rows[0].cancelled_at == NOW

    def test_stale_copy_is_ignored(self, engine):
        cancelled = make_event("E1", NOW, status="cancelled", updated_at=NOW)
        older_active = make_event("E1", NOW, status="active", updated_at=NOW - timedelta(hours=1))
        later = NOW + timedelta(minutes=5)

        engine.classifier.upsert(cancelled, "p1", observed_at=NOW)
        assert engine.classifier.upsert(older_active, "p1", observed_at=later) == UpsertOutcome.STALE

        row = self._rows(engine, cancelled.id)[0]
        assert row.status == "cancelled"
        assert row.last_seen_at == later

    def test_cancelled_at_is_set_once(self, engine):
        first = make_event("E1", NOW, status="cancelled", updated_at=NOW)
        again = make_event("E1", NOW, status="cancelled", updated_at=NOW + timedelta(hours=1))

        engine.classifier.upsert(first, "p1", observed_at=NOW)
        engine.classifier.upsert(again, "p1", observed_at=NOW + timedelta(hours=1))

        assert self._rows(engine, first.id)[0].cancelled_at == NOW

    def test_reactivation_clears_cancelled_at(self, engine):
        engine.classifier.upsert(make_event("E1", NOW, status="cancelled", updated_at=NOW), "p1", observed_at=NOW)
        engine.classifier.upsert(
            make_event("E1", NOW, status="active", updated_at=NOW + timedelta(minutes=1)), "p1", observed_at=NOW
        )
        row = self._rows(engine, make_event("E1", NOW).id)[0]
        assert row.status == "active"
        assert row.cancelled_at is None

    def test_invitee_details_survive_sparse_update(self, engine):
        engine.classifier.upsert(
            make_event("E1", NOW, updated_at=NOW, invitee_name="Ada", invitee_email="ada@example.com"),
            "p1",
            observed_at=NOW,
        )
        engine.classifier.upsert(
            make_event("E1", NOW, updated_at=NOW + timedelta(minutes=1)), "p1", observed_at=NOW
        )
        row = self._rows(engine, make_event("E1", NOW).id)[0]
        assert row.invitee_email == "ada@example.com"

    def test_requires_project(self, engine):
        with pytest.raises(ValidationError):
            engine.classifier.upsert(make_event("E1", NOW), "")


def test_categorize_groups_records(engine):
    records = [
        to_record(make_event("E1", NOW - timedelta(days=1)), "p1"),
        to_record(make_event("E2", NOW + timedelta(days=1)), "p1"),
        to_record(make_event("E3", NOW + timedelta(days=1), status="cancelled"), "p1"),
    ]
    groups = engine.classifier.categorize(records, NOW)
    assert [len(groups[c]) for c in (EventCategory.COMPLETED, EventCategory.UPCOMING, EventCategory.CANCELLED)] == [1, 1, 1]
