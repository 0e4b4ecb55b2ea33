"""Sync engine: wires the store, provider and reconciliation components."""

import asyncio
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import pytz

from .channel import ConnectionChannelManager
from .classifier import EventClassifier
from .config import Settings
from .database import DatabaseManager
from .errors import ValidationError
from .metrics import MetricsService, WindowedMetricsCalculator
from .models import (
    ChannelState, MetricsReport, SyncReport, TriggerReason, TriggerRequest,
    TriggerResult, WebhookResult
)
from .reconciler import GapReconciler
from .registry import MappingRegistry
from .services import AuthExpiredError, BaseProviderClient, CalendlyClient, ProviderError
from .webhooks import INVITEE_CANCELED, parse_delivery, verify_signature

logger = logging.getLogger(__name__)


class SyncEngine:
    """Entry point for triggers, webhook deliveries and metrics."""

    def __init__(
        self,
        settings: Settings,
        provider: Optional[BaseProviderClient] = None,
        db_manager: Optional[DatabaseManager] = None
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            provider: Provider client (defaults to Calendly)
            db_manager: Store (defaults to one built from settings)
        """
        self.settings = settings
        self.db_manager = db_manager or DatabaseManager(settings)
        self.provider = provider or CalendlyClient(settings, self.db_manager)
        self.classifier = EventClassifier(self.db_manager)
        self.registry = MappingRegistry(self.db_manager, on_first_activation=self._backfill)
        self.channel = ConnectionChannelManager(settings, self.db_manager, self.provider)
        self.reconciler = GapReconciler(
            settings, self.db_manager, self.provider, self.registry, self.classifier, self.channel
        )
        self.metrics = MetricsService(
            self.db_manager, self.registry, WindowedMetricsCalculator(settings.default_timezone)
        )
        self.logger = logger.getChild('sync_engine')

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.cleanup()

    async def initialize(self) -> None:
        """Initialize the sync engine."""
        self.db_manager.init_db()
        self.logger.info("Sync engine initialized successfully")

    async def cleanup(self) -> None:
        """Wait for pending backfills and release resources."""
        await self.registry.wait_for_background()
        await self.provider.close()
        self.logger.info("Sync engine cleaned up")

    async def _backfill(self, project_id: str) -> SyncReport:
        return await self.reconciler.backfill(project_id)

    # Triggers

    async def trigger(self, request: TriggerRequest) -> TriggerResult:
        """Run a reconciliation for a trigger-surface request."""
        report = await self.reconciler.reconcile(
            request.project_id,
            request.trigger_reason,
            debug_mode=request.debug_mode,
        )
        return TriggerResult(
            events_synced=report.events_upserted,
            gaps_found=report.gaps_found,
            skipped=report.skipped,
            partial=report.partial,
            failures=len(report.failures),
        )

    async def sync_project(
        self,
        project_id: str,
        trigger_reason: TriggerReason = TriggerReason.MANUAL,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
        debug_mode: bool = False
    ) -> SyncReport:
        """Reconcile one project and return the full report."""
        return await self.reconciler.reconcile(
            project_id,
            trigger_reason,
            window_start=window_start,
            window_end=window_end,
            debug_mode=debug_mode,
        )

    async def sync_due_projects(
        self,
        now: Optional[datetime] = None,
        extra_project_ids: Optional[List[str]] = None
    ) -> List[SyncReport]:
        """Reconcile every project whose interval elapsed, plus any requested ones.

        Projects whose historical backfill has not completed yet run with the
        backfill window. A failure for one project is logged and does not
        stop the others.
        """
        due = self.channel.projects_due(now)
        with self.db_manager.get_session() as session:
            pending = self.db_manager.projects_pending_backfill(session)
        for project_id in pending + list(extra_project_ids or []):
            if project_id not in due:
                due.append(project_id)

        reports = []
        for project_id in due:
            if project_id in pending:
                reason = TriggerReason.BACKFILL
            elif project_id in (extra_project_ids or []):
                reason = TriggerReason.WEBHOOK
            else:
                reason = TriggerReason.SCHEDULED
            try:
                reports.append(await self.reconciler.reconcile(project_id, reason, now=now))
            except (ProviderError, ValidationError) as e:
                self.logger.error(f"Scheduled reconciliation for {project_id} failed: {type(e).__name__}: {e}")
        return reports

    # Webhooks

    async def handle_webhook(self, body: bytes, signature: Optional[str] = None) -> WebhookResult:
        """Verify, route and store one webhook delivery.

        Raises:
            WebhookSignatureError: If a signing key is configured and the
                signature does not verify
            ValidationError: If the body is malformed
        """
        if self.settings.webhook_signing_key:
            verify_signature(
                body,
                signature,
                self.settings.webhook_signing_key,
                self.settings.webhook_tolerance_seconds,
            )

        delivery = parse_delivery(body)
        if not delivery.handled:
            return WebhookResult(event=delivery.event, ignored_reason="unhandled event")
        if not delivery.event_uri:
            raise ValidationError("Webhook payload has no scheduled event URI")

        remote = delivery.remote_event
        if remote is None:
            project_hint = self._project_for_delivery(delivery.event_type_id, delivery.owner_uri)
            if project_hint is None:
                return WebhookResult(
                    event=delivery.event,
                    remote_event_id=delivery.event_uri,
                    ignored_reason="no connected project can resolve the event",
                )
            try:
                remote = await self.provider.get_event(project_hint, delivery.event_uri)
            except AuthExpiredError as e:
                self.channel.handle_auth_expired(project_hint, str(e))
                raise
            if remote is None:
                return WebhookResult(
                    event=delivery.event,
                    remote_event_id=delivery.event_uri,
                    ignored_reason="event no longer exists",
                )
            if delivery.event == INVITEE_CANCELED:
                remote = remote.model_copy(update={'status': 'cancelled'})

        owner = self.registry.owner_of(remote.event_type_id)
        if owner is None:
            self.logger.info(f"Webhook for untracked event type {remote.event_type_id} ignored")
            return WebhookResult(
                event=delivery.event,
                remote_event_id=remote.id,
                ignored_reason="event type is not tracked",
            )

        outcome = self.classifier.upsert(remote, owner.project_id, owner.display_name or None)
        self.logger.info(f"Webhook {delivery.event} for {remote.id} -> {owner.project_id}: {outcome.value}")
        return WebhookResult(
            event=delivery.event,
            remote_event_id=remote.id,
            project_id=owner.project_id,
            outcome=outcome,
        )

    def _project_for_delivery(self, event_type_id: Optional[str], owner_uri: Optional[str]) -> Optional[str]:
        if event_type_id:
            owner = self.registry.owner_of(event_type_id)
            if owner is not None:
                return owner.project_id
        if owner_uri:
            with self.db_manager.get_session() as session:
                connection = self.db_manager.get_connection_by_owner(session, owner_uri)
                if connection is not None:
                    return connection.project_id
        return None

    # Metrics and status

    def compute_metrics(
        self,
        project_id: str,
        start: date,
        end: date,
        timezone: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> MetricsReport:
        return self.metrics.compute(project_id, start, end, timezone, now)

    async def test_connections(self) -> Dict[str, Any]:
        """Test every connected project's provider access."""
        with self.db_manager.get_session() as session:
            project_ids = [
                c.project_id for c in self.db_manager.list_connections(
                    session, [ChannelState.WEBHOOK_ACTIVE, ChannelState.POLLING_ACTIVE]
                )
            ]
        results = await asyncio.gather(
            *(self.provider.test_connection(p) for p in project_ids)
        )
        return dict(zip(project_ids, results))

    def get_status(self) -> Dict[str, Any]:
        with self.db_manager.get_session() as session:
            stats = self.db_manager.get_statistics(session)
        stats['checked_at'] = datetime.now(pytz.UTC).isoformat()
        return stats
