"""Tests for windowed metrics."""

import pytest
from datetime import date, datetime, timedelta

import pytz

from eventsync.classifier import to_record
from eventsync.errors import ValidationError
from eventsync.metrics import (
    WindowedMetricsCalculator, growth, previous_window, show_up_rate, utc_bounds
)

from conftest import NOW, make_event


def record(uuid, scheduled_at, status="active", created_at=None, updated_at=None):
    return to_record(
        make_event(uuid, scheduled_at, status=status, created_at=created_at, updated_at=updated_at),
        "p1",
        observed_at=NOW,
    )


@pytest.fixture
def calculator():
    return WindowedMetricsCalculator()


class TestHelpers:

    def test_show_up_rate_boundary(self):
        assert show_up_rate(0, 0) == 0.0

    def test_show_up_rate_rounding(self):
        assert show_up_rate(2, 1) == 66.7

    def test_growth(self):
        assert growth(15, 10) == 50.0
        assert growth(5, 10) == -50.0
        assert growth(7, 0) == 0.0

    def test_previous_window_has_same_length(self):
        assert previous_window(date(2024, 3, 8), date(2024, 3, 14)) == (date(2024, 3, 1), date(2024, 3, 7))
        assert previous_window(date(2024, 3, 1), date(2024, 3, 1)) == (date(2024, 2, 29), date(2024, 2, 29))

    def test_utc_bounds_follow_local_midnight(self):
        la = pytz.timezone("America/Los_Angeles")
        lower, upper = utc_bounds(date(2024, 3, 1), date(2024, 3, 1), la)
        assert lower == datetime(2024, 3, 1, 8, 0, tzinfo=pytz.UTC)
        assert upper == datetime(2024, 3, 2, 8, 0, tzinfo=pytz.UTC)


def test_timezone_decides_the_calendar_day(calculator):
    la = pytz.timezone("America/Los_Angeles")
    event = record("E1", la.localize(datetime(2024, 3, 1, 23, 30)), created_at=datetime(2024, 2, 1, tzinfo=pytz.UTC))
    day = date(2024, 3, 1)

    in_la = calculator.compute([event], day, day, "America/Los_Angeles", now=NOW)
    in_london = calculator.compute([event], day, day, "Europe/London", now=NOW)

    assert in_la.current.calls_taken == 1
    assert in_london.current.calls_taken == 0


def test_bookings_and_calls_use_different_dates(calculator):
    day1 = datetime(2024, 3, 1, 10, 0, tzinfo=pytz.UTC)
    day5 = datetime(2024, 3, 5, 10, 0, tzinfo=pytz.UTC)
    events = [
        record("E1", day5, created_at=day1),
        record("E2", day5, status="cancelled", created_at=day1),
    ]

    first_day = calculator.compute(events, date(2024, 3, 1), date(2024, 3, 1), now=NOW)
    fifth_day = calculator.compute(events, date(2024, 3, 5), date(2024, 3, 5), now=NOW)

    assert first_day.current.total_bookings == 2
    assert (first_day.current.calls_taken, first_day.current.cancelled) == (0, 0)
    assert fifth_day.current.total_bookings == 0
    assert (fifth_day.current.calls_taken, fifth_day.current.cancelled) == (1, 1)


def test_future_cancellations_do_not_lower_show_up_rate(calculator):
    events = [
        record("E1", NOW - timedelta(days=2)),
        record("E2", NOW - timedelta(days=1)),
        record("E3", NOW + timedelta(days=1), status="cancelled"),
        record("E4", NOW + timedelta(days=2)),
    ]

    report = calculator.compute(events, date(2024, 3, 10), date(2024, 3, 20), now=NOW)

    assert report.current.calls_taken == 2
    assert report.current.cancelled == 1
    assert report.current.upcoming == 1
    assert report.current.show_up_rate == 100.0


def test_past_cancellations_lower_show_up_rate(calculator):
    events = [
        record("E1", NOW - timedelta(days=2)),
        record("E2", NOW - timedelta(days=1), status="cancelled"),
    ]
    report = calculator.compute(events, date(2024, 3, 10), date(2024, 3, 20), now=NOW)
    assert report.current.show_up_rate == 50.0


def test_empty_window(calculator):
    report = calculator.compute([], date(2024, 3, 1), date(2024, 3, 7), now=NOW)
    assert report.current.show_up_rate == 0.0
    assert all(c.growth == 0.0 for c in report.comparisons.values())


def test_period_comparison(calculator):
    current_day = datetime(2024, 3, 12, 10, 0, tzinfo=pytz.UTC)
    previous_day = datetime(2024, 3, 5, 10, 0, tzinfo=pytz.UTC)
    events = [
        record("C1", current_day, created_at=current_day - timedelta(hours=1)),
        record("C2", current_day, created_at=current_day - timedelta(hours=1)),
        record("C3", current_day, created_at=current_day - timedelta(hours=1)),
        record("P1", previous_day, created_at=previous_day - timedelta(hours=1)),
        record("P2", previous_day, created_at=previous_day - timedelta(hours=1)),
    ]

    report = calculator.compute(events, date(2024, 3, 8), date(2024, 3, 14), now=NOW)

    assert report.previous.start == date(2024, 3, 1)
    assert report.previous.end == date(2024, 3, 7)
    bookings = report.comparisons["total_bookings"]
    assert (bookings.current, bookings.previous, bookings.growth) == (3, 2, 50.0)
    assert report.as_dict()["metrics"]["calls_taken"]["growth"] == 50.0


def test_duplicate_records_counted_once(calculator):
    older = record("E1", NOW - timedelta(days=1), updated_at=NOW - timedelta(days=2))
    newer = record("E1", NOW - timedelta(days=1), status="cancelled", updated_at=NOW - timedelta(days=1))

    report = calculator.compute([older, newer], date(2024, 3, 10), date(2024, 3, 20), now=NOW)

    assert report.current.calls_taken == 0
    assert report.current.cancelled == 1


def test_invalid_input_rejected(calculator):
    with pytest.raises(ValidationError):
        calculator.compute([], date(2024, 3, 7), date(2024, 3, 1), now=NOW)
    with pytest.raises(ValidationError):
        calculator.compute([], date(2024, 3, 1), date(2024, 3, 7), "Mars/Olympus_Mons", now=NOW)


def test_service_reads_only_tracked_types(engine):
    engine.registry.activate("p1", "https://api.calendly.com/event_types/TYPE-A")
    engine.classifier.upsert(make_event("E1", NOW - timedelta(days=1)), "p1", observed_at=NOW)
    engine.classifier.upsert(
        make_event("E2", NOW - timedelta(days=1), event_type_id="https://api.calendly.com/event_types/OLD"),
        "p1",
        observed_at=NOW,
    )

    report = engine.compute_metrics("p1", date(2024, 3, 10), date(2024, 3, 16), now=NOW)

    assert report.current.calls_taken == 1
    assert report.timezone == "UTC"
