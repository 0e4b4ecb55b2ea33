"""Event classification and idempotent deduplicating writes."""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import pytz

from .database import DatabaseManager
from .errors import ValidationError
from .models import (
    EventCategory, EventRecord, EventStatus, RemoteEvent, UpsertOutcome,
    ensure_utc, normalize_status
)

logger = logging.getLogger(__name__)


def classify(status: Optional[str], scheduled_at: datetime, now: datetime) -> EventCategory:
    """Derive an event's category.

    Cancelled wins regardless of time; otherwise an event whose start has
    passed is completed and the rest are upcoming.
    """
    if normalize_status(status) == EventStatus.CANCELLED.value:
        return EventCategory.CANCELLED
    if ensure_utc(scheduled_at) < ensure_utc(now):
        return EventCategory.COMPLETED
    return EventCategory.UPCOMING


def dedupe(events: Iterable[EventRecord]) -> List[EventRecord]:
    """Keep one record per remote id, preferring the freshest copy."""
    freshest: Dict[str, EventRecord] = {}
    for event in events:
        current = freshest.get(event.remote_event_id)
        if current is None or event.remote_updated_at >= current.remote_updated_at:
            freshest[event.remote_event_id] = event
    return list(freshest.values())


def to_record(
    remote_event: RemoteEvent,
    project_id: str,
    event_type_name: Optional[str] = None,
    observed_at: Optional[datetime] = None
) -> EventRecord:
    """Convert a provider event to a store record.

    The ordering key falls back to the observation time when the provider
    does not report a modification time.
    """
    observed_at = ensure_utc(observed_at) or datetime.now(pytz.UTC)
    return EventRecord(
        remote_event_id=remote_event.id,
        project_id=project_id,
        remote_event_type_id=remote_event.event_type_id,
        event_type_name=event_type_name or remote_event.name,
        scheduled_at=remote_event.scheduled_at,
        end_at=remote_event.end_at,
        created_at=remote_event.created_at,
        remote_updated_at=remote_event.updated_at or observed_at,
        status=remote_event.status,
        cancelled_at=remote_event.cancelled_at,
        invitee_name=remote_event.invitee_name,
        invitee_email=remote_event.invitee_email,
    )


class EventClassifier:
    """Writes provider events to the store exactly once per remote id."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        self.logger = logger.getChild('classifier')

    def upsert(
        self,
        remote_event: RemoteEvent,
        project_id: str,
        event_type_name: Optional[str] = None,
        observed_at: Optional[datetime] = None
    ) -> UpsertOutcome:
        """Idempotently write one provider event.

        Args:
            remote_event: Event as reported by the provider
            project_id: Project that owns the event's type
            event_type_name: Display name of the event-type
            observed_at: When the event was observed (defaults to now)

        Returns:
            Outcome of the write

        Raises:
            ValidationError: If the event cannot be stored
        """
        if not project_id:
            raise ValidationError(f"Event {remote_event.id} has no owning project")

        observed_at = ensure_utc(observed_at) or datetime.now(pytz.UTC)
        record = to_record(remote_event, project_id, event_type_name, observed_at)

        with self.db_manager.get_session() as session:
            outcome = self.db_manager.upsert_event(session, record, observed_at=observed_at)

        if outcome == UpsertOutcome.STALE:
            self.logger.debug(f"Ignored stale copy of {remote_event.id}")
        return outcome

    def categorize(self, records: Iterable[EventRecord], now: datetime) -> Dict[EventCategory, List[EventRecord]]:
        """Group records by derived category."""
        groups: Dict[EventCategory, List[EventRecord]] = {category: [] for category in EventCategory}
        for record in dedupe(records):
            groups[classify(record.status, record.scheduled_at, now)].append(record)
        return groups
