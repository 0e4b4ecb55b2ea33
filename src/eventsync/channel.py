"""Connection channel manager: webhook vs polling delivery per project."""

import logging
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, List, Optional

import pytz

from .config import Settings
from .database import DatabaseManager
from .errors import InvalidTransitionError, NotConnectedError, ValidationError
from .models import ChannelState, CleanupReport, ConnectionRecord, RemoteWebhook
from .services.base import AuthExpiredError, BaseProviderClient, ProviderError

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[ChannelState, FrozenSet[ChannelState]] = {
    ChannelState.DISCONNECTED: frozenset({ChannelState.AUTHORIZING}),
    ChannelState.AUTHORIZING: frozenset({
        ChannelState.AUTHORIZING,
        ChannelState.WEBHOOK_ACTIVE,
        ChannelState.POLLING_ACTIVE,
        ChannelState.DISCONNECTED,
    }),
    ChannelState.WEBHOOK_ACTIVE: frozenset({
        ChannelState.WEBHOOK_ACTIVE,
        ChannelState.POLLING_ACTIVE,
        ChannelState.DISCONNECTED,
    }),
    ChannelState.POLLING_ACTIVE: frozenset({
        ChannelState.POLLING_ACTIVE,
        ChannelState.WEBHOOK_ACTIVE,
        ChannelState.DISCONNECTED,
    }),
}


def check_transition(current: ChannelState, target: ChannelState) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is allowed."""
    if target not in TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value)


class ConnectionChannelManager:
    """Owns each project's connection state machine."""

    def __init__(self, settings: Settings, db_manager: DatabaseManager, provider: BaseProviderClient):
        self.settings = settings
        self.db_manager = db_manager
        self.provider = provider
        self.logger = logger.getChild('channel')

    def get(self, project_id: str) -> Optional[ConnectionRecord]:
        with self.db_manager.get_session() as session:
            connection = self.db_manager.get_connection(session, project_id)
            return ConnectionRecord.model_validate(connection) if connection else None

    def _require(self, project_id: str) -> ConnectionRecord:
        connection = self.get(project_id)
        if connection is None:
            raise NotConnectedError(f"Project {project_id} has no connection")
        return connection

    def _transition(self, project_id: str, target: ChannelState, **fields) -> ConnectionRecord:
        current = self.get(project_id)
        current_state = current.state if current else ChannelState.DISCONNECTED
        check_transition(current_state, target)

        with self.db_manager.get_session() as session:
            connection = self.db_manager.save_connection(session, project_id, state=target, **fields)
            record = ConnectionRecord.model_validate(connection)

        if current_state != target:
            self.logger.info(
                f"Project {project_id}: {current_state.value} -> {target.value}"
                + (f" ({record.status_reason})" if record.status_reason else "")
            )
        return record

    # Authorization

    def begin_authorization(self, project_id: str) -> str:
        """Start OAuth for a project and return the provider authorization URL."""
        if not project_id or not project_id.strip():
            raise ValidationError("project_id must not be empty")
        self._transition(project_id, ChannelState.AUTHORIZING, status_reason=None)
        return self.provider.get_auth_url(state=project_id)

    async def complete_authorization(self, project_id: str, code: str) -> ConnectionRecord:
        """Exchange the code, then try webhooks and fall back to polling.

        Raises:
            AuthExpiredError: If the code is rejected (connection goes back
                to disconnected)
        """
        if not code:
            raise ValidationError("authorization code must not be empty")
        connection = self._require(project_id)
        check_transition(connection.state, ChannelState.POLLING_ACTIVE)

        try:
            grant = await self.provider.exchange_code(code)
        except AuthExpiredError as e:
            self._transition(project_id, ChannelState.DISCONNECTED, status_reason=str(e))
            raise

        with self.db_manager.get_session() as session:
            self.db_manager.save_connection(
                session,
                project_id,
                access_token=grant.access_token,
                refresh_token=grant.refresh_token,
                token_expires_at=grant.expires_at,
                owner_uri=grant.owner_uri,
                organization_uri=grant.organization_uri,
            )

        return await self._establish_channel(project_id)

    async def _establish_channel(self, project_id: str) -> ConnectionRecord:
        callback_url = self.settings.webhook_callback_url
        if not callback_url:
            return self._transition(
                project_id,
                ChannelState.POLLING_ACTIVE,
                webhook_id=None,
                webhook_callback_url=None,
                status_reason="No webhook callback URL configured; polling",
            )

        try:
            webhook = await self.provider.register_webhook(project_id, callback_url)
        except AuthExpiredError as e:
            self.handle_auth_expired(project_id, str(e))
            raise
        except ProviderError as e:
            return self._transition(
                project_id,
                ChannelState.POLLING_ACTIVE,
                webhook_id=None,
                webhook_callback_url=None,
                status_reason=f"Webhook registration failed, polling instead: {e}",
            )

        return self._transition(
            project_id,
            ChannelState.WEBHOOK_ACTIVE,
            webhook_id=webhook.id,
            webhook_callback_url=webhook.callback_url or callback_url,
            status_reason=None,
        )

    # Maintenance

    async def cleanup_duplicates(self, project_id: str) -> CleanupReport:
        """Keep the newest webhook for our callback URL and delete the others.

        Deletion is best-effort; failures are reported, not raised. The
        channel state is re-evaluated from what remains.
        """
        connection = self._require(project_id)
        if not connection.is_connected:
            raise NotConnectedError(f"Project {project_id} is {connection.state.value}")

        callback_url = self.settings.webhook_callback_url
        try:
            hooks = await self.provider.list_webhooks(project_id)
        except AuthExpiredError as e:
            self.handle_auth_expired(project_id, str(e))
            raise
        ours: List[RemoteWebhook] = sorted(
            [h for h in hooks if callback_url and h.callback_url.rstrip('/') == callback_url],
            key=lambda h: h.created_at,
            reverse=True,
        )

        report = CleanupReport(project_id=project_id)
        keep = ours[0] if ours else None
        for hook in ours[1:]:
            try:
                await self.provider.delete_webhook(project_id, hook.id)
                report.deleted.append(hook.id)
            except AuthExpiredError as e:
                self.handle_auth_expired(project_id, str(e))
                raise
            except ProviderError as e:
                self.logger.warning(f"Could not delete duplicate webhook {hook.id}: {e}")
                report.delete_failures.append(hook.id)

        if keep is not None:
            updated = self._transition(
                project_id,
                ChannelState.WEBHOOK_ACTIVE,
                webhook_id=keep.id,
                webhook_callback_url=keep.callback_url,
                status_reason=None,
            )
        else:
            updated = await self._establish_channel(project_id)

        report.kept_webhook_id = updated.webhook_id
        report.state = updated.state
        self.logger.info(
            f"Webhook cleanup for {project_id}: kept {report.kept_webhook_id}, "
            f"deleted {len(report.deleted)}, failed {len(report.delete_failures)}"
        )
        return report

    async def check_health(self, project_id: str) -> ConnectionRecord:
        """Verify the webhook registration still exists; re-register if it vanished."""
        connection = self._require(project_id)
        now = datetime.now(pytz.UTC)

        if connection.state == ChannelState.WEBHOOK_ACTIVE:
            try:
                hooks = await self.provider.list_webhooks(project_id)
                if not any(h.id == connection.webhook_id for h in hooks):
                    self.logger.warning(f"Webhook {connection.webhook_id} for {project_id} vanished; re-registering")
                    connection = await self._establish_channel(project_id)
            except AuthExpiredError as e:
                return self.handle_auth_expired(project_id, str(e))

        with self.db_manager.get_session() as session:
            updated = self.db_manager.save_connection(session, project_id, last_health_check=now)
            return ConnectionRecord.model_validate(updated)

    async def disconnect(self, project_id: str) -> ConnectionRecord:
        """Tear down the connection: remote webhook, tokens and mappings."""
        connection = self._require(project_id)

        if connection.webhook_id:
            try:
                await self.provider.delete_webhook(project_id, connection.webhook_id)
            except ProviderError as e:
                self.logger.warning(f"Could not delete webhook {connection.webhook_id} on disconnect: {e}")
        try:
            await self.provider.disconnect(project_id)
        except ProviderError as e:
            self.logger.warning(f"Token revoke failed for {project_id}: {e}")

        with self.db_manager.get_session() as session:
            removed = self.db_manager.delete_project_mappings(session, project_id)
        self.logger.info(f"Removed {removed} mappings for disconnected project {project_id}")

        if connection.state == ChannelState.DISCONNECTED:
            with self.db_manager.get_session() as session:
                cleared = self.db_manager.save_connection(
                    session, project_id, **self._cleared_fields(status_reason="Disconnected by user")
                )
                return ConnectionRecord.model_validate(cleared)

        return self._transition(
            project_id,
            ChannelState.DISCONNECTED,
            **self._cleared_fields(status_reason="Disconnected by user"),
        )

    def handle_auth_expired(self, project_id: str, reason: str) -> Optional[ConnectionRecord]:
        """Drop to disconnected after the provider rejected our credentials.

        Safe to call more than once; returns None for unknown projects.
        """
        connection = self.get(project_id)
        if connection is None:
            self.logger.warning(f"Authorization expired for unknown project {project_id}: {reason}")
            return None
        if connection.state == ChannelState.DISCONNECTED:
            return connection
        return self._transition(
            project_id,
            ChannelState.DISCONNECTED,
            **self._cleared_fields(status_reason=f"Authorization expired: {reason}"),
        )

    def _cleared_fields(self, status_reason: str) -> Dict[str, object]:
        return {
            'status_reason': status_reason,
            'webhook_id': None,
            'webhook_callback_url': None,
            'access_token': None,
            'refresh_token': None,
            'token_expires_at': None,
            'sync_lease_owner': None,
            'sync_lease_until': None,
        }

    # Scheduling

    def reconcile_interval(self, connection: ConnectionRecord) -> Optional[timedelta]:
        """How often background reconciliation runs for a connection.

        Polling connections rely on it for delivery; webhook connections get
        a slower backstop for dropped deliveries.
        """
        sync_config = self.settings.sync_config
        if connection.state == ChannelState.POLLING_ACTIVE:
            return timedelta(minutes=sync_config.polling_interval_minutes)
        if connection.state == ChannelState.WEBHOOK_ACTIVE:
            return timedelta(minutes=sync_config.backstop_interval_minutes)
        return None

    def projects_due(self, now: Optional[datetime] = None) -> List[str]:
        """Connected projects whose last sync is older than their interval."""
        now = now or datetime.now(pytz.UTC)
        with self.db_manager.get_session() as session:
            connections = [
                ConnectionRecord.model_validate(c)
                for c in self.db_manager.list_connections(
                    session, [ChannelState.WEBHOOK_ACTIVE, ChannelState.POLLING_ACTIVE]
                )
            ]

        due = []
        for connection in connections:
            interval = self.reconcile_interval(connection)
            if interval is None:
                continue
            if connection.last_sync_at is None or connection.last_sync_at + interval <= now:
                due.append(connection.project_id)
        return due
