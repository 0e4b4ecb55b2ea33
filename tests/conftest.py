import json

import pytest
import pytz
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from eventsync.config import Settings
from eventsync.models import (
    ChannelState, EventBatch, RemoteEvent, RemoteEventType, RemoteInvitee,
    RemoteWebhook, TokenGrant
)
from eventsync.services.base import BaseProviderClient, ProviderRequestError
from eventsync.sync_engine import SyncEngine
from eventsync.webhooks import INVITEE_CANCELED, INVITEE_CREATED
from pydantic_settings import SettingsConfigDict

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=pytz.UTC)
EVENT_TYPE = "https://api.calendly.com/event_types/TYPE-A"
OTHER_TYPE = "https://api.calendly.com/event_types/TYPE-B"
OWNER_URI = "https://api.calendly.com/users/OWNER"
EVENT_URI = "https://api.calendly.com/scheduled_events/E1"


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        calendly_client_id='client-id',
        calendly_client_secret='client-secret',
        calendly_redirect_uri='https://app.example.com/oauth/callback',
        data_dir=str(tmp_path),
        database_url=f'sqlite:///{tmp_path}/test.db',
        retry_backoff_seconds=0,
    )
    values.update(overrides)
    return TestSettings(**values)


def make_event(
    uuid: str,
    scheduled_at: datetime,
    status: str = "active",
    event_type_id: str = EVENT_TYPE,
    created_at: Optional[datetime] = None,
    updated_at: Optional[datetime] = None,
    **kwargs
) -> RemoteEvent:
    return RemoteEvent(
        id=f"https://api.calendly.com/scheduled_events/{uuid}",
        event_type_id=event_type_id,
        name="Discovery Call",
        status=status,
        scheduled_at=scheduled_at,
        end_at=scheduled_at + timedelta(minutes=30),
        created_at=created_at or scheduled_at - timedelta(days=3),
        updated_at=updated_at,
        **kwargs
    )


class InMemoryProvider(BaseProviderClient):
    """Provider double holding remote state in dictionaries."""

    name = "memory"

    def __init__(self, settings):
        super().__init__(settings)
        self.events: Dict[str, RemoteEvent] = {}
        self.event_types: List[RemoteEventType] = [
            RemoteEventType(id=EVENT_TYPE, name="Discovery Call"),
            RemoteEventType(id=OTHER_TYPE, name="Follow-up"),
        ]
        self.webhooks: Dict[str, RemoteWebhook] = {}
        self.invitees: Dict[str, List[RemoteInvitee]] = {}
        self.list_error: Optional[Exception] = None
        self.register_error: Optional[Exception] = None
        self.exchange_error: Optional[Exception] = None
        self.get_event_error: Optional[Exception] = None
        self.invitee_error: Optional[Exception] = None
        self.list_webhooks_error: Optional[Exception] = None
        self.undeletable: set = set()
        self.partial = False
        self.get_event_calls: List[str] = []
        self.deleted_webhooks: List[str] = []
        self.revoked: List[str] = []
        self._webhook_seq = 0

    def add(self, *events: RemoteEvent) -> None:
        for event in events:
            self.events[event.id] = event

    def add_webhook(self, callback_url: str, created_at: datetime) -> RemoteWebhook:
        self._webhook_seq += 1
        hook = RemoteWebhook(
            id=f"https://api.calendly.com/webhook_subscriptions/HOOK-{self._webhook_seq}",
            callback_url=callback_url,
            created_at=created_at,
            state="active",
        )
        self.webhooks[hook.id] = hook
        return hook

    def get_auth_url(self, state: str) -> str:
        return f"https://auth.example.com/oauth/authorize?state={state}"

    async def exchange_code(self, code: str) -> TokenGrant:
        if self.exchange_error is not None:
            raise self.exchange_error
        return TokenGrant(
            access_token=f"access-{code}",
            refresh_token=f"refresh-{code}",
            expires_at=datetime.now(pytz.UTC) + timedelta(hours=2),
            owner_uri=OWNER_URI,
            organization_uri="https://api.calendly.com/organizations/ORG",
        )

    async def list_event_types(self, project_id: str) -> List[RemoteEventType]:
        return list(self.event_types)

    async def list_events(self, project_id, window_start, window_end) -> EventBatch[RemoteEvent]:
        if self.list_error is not None:
            raise self.list_error
        events = [
            e for e in self.events.values()
            if window_start <= e.scheduled_at <= window_end
        ]
        if self.partial:
            return EventBatch(events=events[:1], complete=False, error="stopped after 1 pages")
        return EventBatch(events=events)

    async def get_event(self, project_id: str, event_id: str) -> Optional[RemoteEvent]:
        self.get_event_calls.append(event_id)
        if self.get_event_error is not None:
            raise self.get_event_error
        return self.events.get(event_id)

    async def list_invitees(self, project_id: str, event_id: str) -> List[RemoteInvitee]:
        if self.invitee_error is not None:
            raise self.invitee_error
        return self.invitees.get(event_id, [])

    async def register_webhook(self, project_id: str, callback_url: str) -> RemoteWebhook:
        if self.register_error is not None:
            raise self.register_error
        return self.add_webhook(callback_url, datetime.now(pytz.UTC))

    async def list_webhooks(self, project_id: str) -> List[RemoteWebhook]:
        if self.list_webhooks_error is not None:
            raise self.list_webhooks_error
        return list(self.webhooks.values())

    async def delete_webhook(self, project_id: str, webhook_id: str) -> None:
        if webhook_id in self.undeletable:
            raise ProviderRequestError("forbidden", status_code=403)
        self.webhooks.pop(webhook_id, None)
        self.deleted_webhooks.append(webhook_id)

    async def disconnect(self, project_id: str) -> None:
        self.revoked.append(project_id)


def connect_project(engine, project_id: str, state: ChannelState = ChannelState.POLLING_ACTIVE, **fields):
    """Persist a connected project without going through OAuth."""
    with engine.db_manager.get_session() as session:
        engine.db_manager.save_connection(
            session,
            project_id,
            state=state,
            access_token='token',
            refresh_token='refresh',
            owner_uri=OWNER_URI,
            **fields
        )


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def provider(settings):
    return InMemoryProvider(settings)


@pytest.fixture
def engine(settings, provider):
    engine = SyncEngine(settings, provider=provider)
    engine.db_manager.init_db()
    # Backfill is exercised explicitly in the registry tests
    engine.registry.on_first_activation = None
    return engine


def delivery_body(event=INVITEE_CREATED, full=True, event_type=EVENT_TYPE):
    """Invitee webhook body; ``full=False`` leaves out the scheduled-event details."""
    scheduled = {
        "uri": EVENT_URI,
        "event_memberships": [{"user": OWNER_URI}],
    }
    if full:
        scheduled.update({
            "event_type": event_type,
            "name": "Discovery Call",
            "status": "active",
            "start_time": "2024-03-20T17:00:00.000000Z",
            "end_time": "2024-03-20T17:30:00.000000Z",
            "created_at": "2024-03-14T09:00:00.000000Z",
            "updated_at": "2024-03-14T09:00:00.000000Z",
        })
    payload = {
        "name": "Ada Lovelace",
        "email": "ada@example.com",
        "scheduled_event": scheduled,
    }
    if event == INVITEE_CANCELED:
        payload["cancellation"] = {"created_at": "2024-03-15T08:00:00.000000Z", "reason": "conflict"}
        if full:
            scheduled["updated_at"] = "2024-03-15T08:00:00.000000Z"
    return json.dumps({"event": event, "payload": payload}).encode()


def mark_backfilled(engine, *project_ids: str) -> None:
    """Clear the first-activation backfill flag, as if the backfill had completed."""
    with engine.db_manager.get_session() as session:
        for project_id in project_ids:
            engine.db_manager.clear_backfill_pending(session, project_id)
