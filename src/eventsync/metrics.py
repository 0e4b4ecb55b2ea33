"""Timezone-correct windowed booking metrics with period comparison."""

import logging
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

import pytz

from .classifier import classify, dedupe
from .database import DatabaseManager
from .errors import ValidationError
from .models import (
    EventCategory, EventFilter, EventRecord, MetricComparison, MetricsReport,
    WindowStats, ensure_utc
)
from .registry import MappingRegistry

logger = logging.getLogger(__name__)

METRIC_NAMES = ('total_bookings', 'calls_taken', 'cancelled', 'upcoming', 'show_up_rate')


def resolve_timezone(name: str):
    """Look up an IANA timezone, raising ValidationError for unknown names."""
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        raise ValidationError(f"Unknown timezone: {name}")


def local_date(value: datetime, tz) -> date:
    """Calendar day of an instant as seen in ``tz``."""
    return ensure_utc(value).astimezone(tz).date()


def previous_window(start: date, end: date) -> Tuple[date, date]:
    """Equal-length window immediately before ``start`` (inclusive days)."""
    days = (end - start).days + 1
    return start - timedelta(days=days), start - timedelta(days=1)


def utc_bounds(start: date, end: date, tz) -> Tuple[datetime, datetime]:
    """UTC instants covering local days ``start``..``end`` as a half-open range."""
    lower = tz.localize(datetime.combine(start, time.min)).astimezone(pytz.UTC)
    upper = tz.localize(datetime.combine(end + timedelta(days=1), time.min)).astimezone(pytz.UTC)
    return lower, upper


def show_up_rate(calls_taken: int, cancelled_past: int) -> float:
    """Percentage of calls taken out of calls taken plus cancellations already in the past.

    Cancelled calls still scheduled in the future are not counted as missed.
    """
    denominator = calls_taken + cancelled_past
    if denominator == 0:
        return 0.0
    return round(calls_taken / denominator * 100, 1)


def growth(current: float, previous: float) -> float:
    if previous == 0:
        return 0.0
    return round((current - previous) / previous * 100, 1)


def window_stats(
    events: Iterable[EventRecord],
    start: date,
    end: date,
    tz,
    now: datetime
) -> WindowStats:
    """Compute metrics for one inclusive local-date window.

    Bookings are counted by the local day they were created; calls by the
    local day they are scheduled. A cancelled call only counts against the
    show-up rate once its scheduled time has passed.
    """
    now = ensure_utc(now)
    stats = WindowStats(start=start, end=end)
    cancelled_past = 0

    for event in events:
        if start <= local_date(event.created_at, tz) <= end:
            stats.total_bookings += 1

        if not start <= local_date(event.scheduled_at, tz) <= end:
            continue
        category = classify(event.status, event.scheduled_at, now)
        if category == EventCategory.CANCELLED:
            stats.cancelled += 1
            if event.scheduled_at < now:
                cancelled_past += 1
        elif category == EventCategory.COMPLETED:
            stats.calls_taken += 1
        else:
            stats.upcoming += 1

    stats.show_up_rate = show_up_rate(stats.calls_taken, cancelled_past)
    return stats


class WindowedMetricsCalculator:
    """Pure metrics over a set of stored events."""

    def __init__(self, default_timezone: str = "UTC"):
        self.default_timezone = default_timezone

    def compute(
        self,
        events: Iterable[EventRecord],
        start: date,
        end: date,
        timezone: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> MetricsReport:
        """Metrics for ``[start, end]`` compared with the preceding window.

        Raises:
            ValidationError: If the range is inverted or the timezone unknown
        """
        if start > end:
            raise ValidationError(f"Metrics range is inverted: {start} > {end}")
        tz_name = timezone or self.default_timezone
        tz = resolve_timezone(tz_name)
        now = ensure_utc(now) or datetime.now(pytz.UTC)

        unique = dedupe(events)
        prev_start, prev_end = previous_window(start, end)
        current = window_stats(unique, start, end, tz, now)
        previous = window_stats(unique, prev_start, prev_end, tz, now)

        comparisons: Dict[str, MetricComparison] = {}
        for name in METRIC_NAMES:
            current_value = getattr(current, name)
            previous_value = getattr(previous, name)
            comparisons[name] = MetricComparison(
                current=current_value,
                previous=previous_value,
                growth=growth(current_value, previous_value),
            )

        return MetricsReport(
            timezone=tz_name,
            current=current,
            previous=previous,
            comparisons=comparisons,
        )


class MetricsService:
    """Reads a project's events from the store and computes metrics."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        registry: MappingRegistry,
        calculator: WindowedMetricsCalculator
    ):
        self.db_manager = db_manager
        self.registry = registry
        self.calculator = calculator
        self.logger = logger.getChild('service')

    def load_events(self, project_id: str, start: date, end: date, timezone: Optional[str] = None) -> List[EventRecord]:
        """Events created or scheduled within the window and its predecessor."""
        tz = resolve_timezone(timezone or self.calculator.default_timezone)
        prev_start, _ = previous_window(start, end)
        lower, upper = utc_bounds(prev_start, end, tz)

        type_ids = [m.remote_event_type_id for m in self.registry.list_active(project_id)]
        if not type_ids:
            return []

        with self.db_manager.get_session() as session:
            created = self.db_manager.query_events(session, EventFilter(
                project_id=project_id,
                remote_event_type_ids=type_ids,
                created_from=lower,
                created_to=upper,
            ))
            scheduled = self.db_manager.query_events(session, EventFilter(
                project_id=project_id,
                remote_event_type_ids=type_ids,
                scheduled_from=lower,
                scheduled_to=upper,
            ))
            merged = {row.remote_event_id: row for row in created + scheduled}
            return [EventRecord.model_validate(row) for row in merged.values()]

    def compute(
        self,
        project_id: str,
        start: date,
        end: date,
        timezone: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> MetricsReport:
        if start > end:
            raise ValidationError(f"Metrics range is inverted: {start} > {end}")
        events = self.load_events(project_id, start, end, timezone)
        self.logger.debug(f"Computing metrics for {project_id} over {len(events)} events")
        return self.calculator.compute(events, start, end, timezone, now)
