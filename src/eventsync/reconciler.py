"""Gap reconciler: brings the local store in line with the provider."""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import pytz
from sqlalchemy.exc import SQLAlchemyError

from .channel import ConnectionChannelManager
from .classifier import EventClassifier
from .config import Settings
from .database import DatabaseManager
from .errors import EventSyncError, ValidationError
from .models import (
    EventFailure, EventFilter, EventRecord, EventStatus, RemoteEvent, SyncPhase,
    SyncReport, TriggerReason, UpsertOutcome, ensure_utc, normalize_status
)
from .registry import MappingRegistry
from .services.base import AuthExpiredError, BaseProviderClient, ProviderError, ProviderUnavailableError

logger = logging.getLogger(__name__)


class GapReconciler:
    """Finds remote events missing or stale locally and writes them."""

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        provider: BaseProviderClient,
        registry: MappingRegistry,
        classifier: EventClassifier,
        channel: ConnectionChannelManager,
    ):
        self.settings = settings
        self.db_manager = db_manager
        self.provider = provider
        self.registry = registry
        self.classifier = classifier
        self.channel = channel
        self.logger = logger.getChild('reconciler')

    def default_window(
        self,
        now: datetime,
        trigger_reason: TriggerReason = TriggerReason.MANUAL,
        debug_mode: bool = False
    ) -> Tuple[datetime, datetime]:
        """Window reconciled when the caller gives none.

        The window always reaches forward so future bookings are caught.
        """
        sync_config = self.settings.sync_config
        if trigger_reason == TriggerReason.BACKFILL:
            lookback = sync_config.backfill_days
        elif debug_mode:
            lookback = sync_config.debug_lookback_days
        else:
            lookback = sync_config.lookback_days
        return (
            now - timedelta(days=lookback),
            now + timedelta(days=sync_config.lookahead_days),
        )

    async def backfill(self, project_id: str) -> SyncReport:
        """One-time historical reconciliation after the first activation."""
        return await self.reconcile(project_id, TriggerReason.BACKFILL)

    async def reconcile(
        self,
        project_id: str,
        trigger_reason: TriggerReason = TriggerReason.MANUAL,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
        debug_mode: bool = False,
        now: Optional[datetime] = None,
    ) -> SyncReport:
        """Run one reconciliation for a project.

        Args:
            project_id: Project to reconcile
            trigger_reason: Why the run started
            window_start: Optional explicit window start
            window_end: Optional explicit window end
            debug_mode: Widen the lookback and log per-event detail at INFO
            now: Reference time (defaults to the current time)

        Returns:
            Report of the run; skipped runs report zero gaps

        Raises:
            ValidationError: If the window is empty or inverted
            AuthExpiredError: If the provider rejected the credentials
            ProviderUnavailableError: If the provider could not be reached
        """
        now = ensure_utc(now) or datetime.now(pytz.UTC)
        default_start, default_end = self.default_window(now, trigger_reason, debug_mode)
        start = ensure_utc(window_start) or default_start
        end = ensure_utc(window_end) or default_end
        if start >= end:
            raise ValidationError(f"Reconciliation window is empty: {start.isoformat()} >= {end.isoformat()}")

        report = SyncReport(
            project_id=project_id,
            trigger_reason=trigger_reason,
            debug_mode=debug_mode,
            window_start=start,
            window_end=end,
            started_at=now,
        )
        detail_level = logging.INFO if debug_mode else logging.DEBUG

        report.phase = SyncPhase.LOADING_MAPPINGS
        mappings = self.registry.list_active(project_id)
        if not mappings:
            return self._skip(report, "no active mappings")

        connection = self.channel.get(project_id)
        if connection is None or not connection.is_connected:
            return self._skip(report, "project is not connected")

        report.phase = SyncPhase.ACQUIRING_LEASE
        with self.db_manager.get_session() as session:
            lease = self.db_manager.acquire_sync_lease(
                session, project_id, self.settings.sync_config.sync_lease_seconds, now=now
            )
        if lease is None:
            return self._skip(report, "another reconciliation is in progress")

        succeeded = False
        try:
            tracked = {m.remote_event_type_id: m.display_name for m in mappings}

            report.phase = SyncPhase.FETCHING
            self.logger.log(
                detail_level,
                f"Run {report.run_id}: fetching {project_id} events {start.isoformat()} .. {end.isoformat()}"
            )
            try:
                batch = await self.provider.list_events(project_id, start, end)
            except ProviderUnavailableError:
                report.phase = SyncPhase.FAILED
                raise

            remote = self._dedupe_remote(e for e in batch.events if e.event_type_id in tracked)
            report.events_fetched = len(remote)
            report.partial = not batch.complete
            if report.partial:
                self.logger.warning(f"Run {report.run_id}: partial fetch for {project_id}: {batch.error}")

            report.phase = SyncPhase.DIFFING
            local = self._load_local(project_id, list(tracked), start, end, [e.id for e in remote])
            gaps = [e for e in remote if self._is_gap(e, local.get(e.id), project_id)]
            report.gaps_found = len(gaps)

            report.phase = SyncPhase.UPSERTING
            for event in gaps:
                event = await self._enrich(project_id, event)
                self._write(report, event, project_id, tracked.get(event.event_type_id), now, detail_level)

            report.phase = SyncPhase.REFRESHING
            if batch.complete:
                remote_ids = {e.id for e in remote}
                vanished = [
                    record for record in local.values()
                    if record.remote_event_id not in remote_ids
                    and record.status != EventStatus.CANCELLED.value
                    and record.remote_event_type_id in tracked
                    and start <= record.scheduled_at < end
                ]
                for record in vanished:
                    await self._refresh_status(report, project_id, record, tracked, now, detail_level)

            if trigger_reason == TriggerReason.BACKFILL and not report.partial:
                with self.db_manager.get_session() as session:
                    self.db_manager.clear_backfill_pending(session, project_id)

            report.phase = SyncPhase.COMPLETED
            succeeded = True
        except AuthExpiredError as e:
            report.phase = SyncPhase.FAILED
            self.channel.handle_auth_expired(project_id, str(e))
            raise
        finally:
            report.completed_at = datetime.now(pytz.UTC)
            with self.db_manager.get_session() as session:
                self.db_manager.release_sync_lease(
                    session, project_id, lease, synced_at=now if succeeded else None
                )

        self.logger.info(
            f"Run {report.run_id} for {project_id} ({trigger_reason.value}) completed: "
            f"fetched={report.events_fetched} gaps={report.gaps_found} "
            f"upserted={report.events_upserted} stale={report.stale_skipped} "
            f"refreshed={report.statuses_refreshed} failures={len(report.failures)}"
            + (" partial" if report.partial else "")
        )
        return report

    def _skip(self, report: SyncReport, reason: str) -> SyncReport:
        report.phase = SyncPhase.SKIPPED
        report.skip_reason = reason
        report.completed_at = datetime.now(pytz.UTC)
        self.logger.info(f"Run {report.run_id} for {report.project_id} skipped: {reason}")
        return report

    def _dedupe_remote(self, events) -> List[RemoteEvent]:
        freshest: Dict[str, RemoteEvent] = {}
        for event in events:
            current = freshest.get(event.id)
            if current is None or (event.updated_at or event.created_at) >= (current.updated_at or current.created_at):
                freshest[event.id] = event
        return list(freshest.values())

    def _load_local(
        self,
        project_id: str,
        type_ids: List[str],
        start: datetime,
        end: datetime,
        remote_ids: List[str]
    ) -> Dict[str, EventRecord]:
        with self.db_manager.get_session() as session:
            rows = self.db_manager.query_events(session, EventFilter(
                project_id=project_id,
                remote_event_type_ids=type_ids,
                scheduled_from=start,
                scheduled_to=end,
            ))
            if remote_ids:
                rows += self.db_manager.query_events(session, EventFilter(remote_event_ids=remote_ids))
            return {row.remote_event_id: EventRecord.model_validate(row) for row in rows}

    def _is_gap(self, remote: RemoteEvent, local: Optional[EventRecord], project_id: str) -> bool:
        if local is None:
            return True
        if local.project_id != project_id:
            return True
        if normalize_status(local.status) != remote.status:
            return True
        if local.scheduled_at != remote.scheduled_at:
            return True
        if remote.updated_at is not None and remote.updated_at != local.remote_updated_at:
            return True
        return False

    async def _enrich(self, project_id: str, event: RemoteEvent) -> RemoteEvent:
        """Attach invitee details; failure leaves the event as it was."""
        if event.invitee_email or event.invitee_name:
            return event
        try:
            invitees = await self.provider.list_invitees(project_id, event.id)
        except AuthExpiredError:
            raise
        except ProviderError as e:
            self.logger.warning(f"Invitee lookup failed for {event.id}: {e}")
            return event
        if not invitees:
            return event
        first = invitees[0]
        return event.model_copy(update={'invitee_name': first.name, 'invitee_email': first.email})

    def _write(
        self,
        report: SyncReport,
        event: RemoteEvent,
        project_id: str,
        event_type_name: Optional[str],
        now: datetime,
        detail_level: int
    ) -> None:
        try:
            outcome = self.classifier.upsert(event, project_id, event_type_name, observed_at=now)
        except (EventSyncError, SQLAlchemyError, ValueError) as e:
            self.logger.error(f"Run {report.run_id}: failed to write {event.id}: {e}")
            report.failures.append(EventFailure(
                remote_event_id=event.id,
                error=str(e),
                error_type=type(e).__name__,
            ))
            return

        if outcome == UpsertOutcome.STALE:
            report.stale_skipped += 1
        else:
            report.events_upserted += 1
        self.logger.log(detail_level, f"Run {report.run_id}: {event.id} {outcome.value} ({event.status})")

    async def _refresh_status(
        self,
        report: SyncReport,
        project_id: str,
        record: EventRecord,
        tracked: Dict[str, str],
        now: datetime,
        detail_level: int
    ) -> None:
        """Re-check an active local event that no longer appears remotely."""
        try:
            remote = await self.provider.get_event(project_id, record.remote_event_id)
        except AuthExpiredError:
            raise
        except ProviderError as e:
            self.logger.warning(f"Status refresh failed for {record.remote_event_id}: {e}")
            return

        if remote is None:
            remote = RemoteEvent(
                id=record.remote_event_id,
                event_type_id=record.remote_event_type_id,
                name=record.event_type_name,
                status=EventStatus.CANCELLED.value,
                scheduled_at=record.scheduled_at,
                end_at=record.end_at,
                created_at=record.created_at,
                updated_at=max(now, record.remote_updated_at),
                cancelled_at=now,
                invitee_name=record.invitee_name,
                invitee_email=record.invitee_email,
            )
            self.logger.log(detail_level, f"Run {report.run_id}: {record.remote_event_id} no longer exists; cancelled")
        elif not self._is_gap(remote, record, project_id):
            return

        before = report.events_upserted
        self._write(report, remote, project_id, tracked.get(remote.event_type_id), now, detail_level)
        if report.events_upserted > before:
            report.statuses_refreshed += 1
