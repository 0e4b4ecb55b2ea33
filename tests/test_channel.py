import pytest
from datetime import timedelta

from eventsync.channel import check_transition
from eventsync.errors import InvalidTransitionError, NotConnectedError
from eventsync.models import ChannelMode, ChannelState
from eventsync.services import AuthExpiredError, WebhookCapabilityError
from eventsync.sync_engine import SyncEngine

from conftest import EVENT_TYPE, NOW, InMemoryProvider, connect_project, make_settings

CALLBACK = "https://sync.example.com/webhooks/calendly"


@pytest.fixture
def webhook_engine(tmp_path):
    settings = make_settings(tmp_path, webhook_callback_url=CALLBACK)
    engine = SyncEngine(settings, provider=InMemoryProvider(settings))
    engine.db_manager.init_db()
    engine.registry.on_first_activation = None
    return engine


@pytest.mark.parametrize("current,target", [
    (ChannelState.DISCONNECTED, ChannelState.WEBHOOK_ACTIVE),
    (ChannelState.DISCONNECTED, ChannelState.POLLING_ACTIVE),
    (ChannelState.WEBHOOK_ACTIVE, ChannelState.AUTHORIZING),
])
def test_illegal_transitions(current, target):
    with pytest.raises(InvalidTransitionError):
        check_transition(current, target)


def test_legal_transitions():
    check_transition(ChannelState.DISCONNECTED, ChannelState.AUTHORIZING)
    check_transition(ChannelState.AUTHORIZING, ChannelState.WEBHOOK_ACTIVE)
    check_transition(ChannelState.WEBHOOK_ACTIVE, ChannelState.POLLING_ACTIVE)
    check_transition(ChannelState.POLLING_ACTIVE, ChannelState.DISCONNECTED)


def test_begin_authorization_returns_url(engine):
    url = engine.channel.begin_authorization("p1")

    assert "state=p1" in url
    assert engine.channel.get("p1").state == ChannelState.AUTHORIZING


@pytest.mark.asyncio
async def test_authorization_without_callback_falls_back_to_polling(engine):
    engine.channel.begin_authorization("p1")
    connection = await engine.channel.complete_authorization("p1", "code-1")

    assert connection.channel_mode == ChannelMode.POLLING
    assert connection.access_token == "access-code-1"
    assert "callback" in connection.status_reason


@pytest.mark.asyncio
async def test_authorization_registers_webhook(webhook_engine):
    webhook_engine.channel.begin_authorization("p1")
    connection = await webhook_engine.channel.complete_authorization("p1", "code-1")

    assert connection.state == ChannelState.WEBHOOK_ACTIVE
    assert connection.webhook_id in webhook_engine.provider.webhooks
    assert connection.webhook_callback_url == CALLBACK


@pytest.mark.asyncio
async def test_webhook_capability_error_falls_back_to_polling(webhook_engine):
    webhook_engine.provider.register_error = WebhookCapabilityError("plan does not allow webhooks", status_code=403)
    webhook_engine.channel.begin_authorization("p1")
    connection = await webhook_engine.channel.complete_authorization("p1", "code-1")

    assert connection.state == ChannelState.POLLING_ACTIVE
    assert connection.webhook_id is None
    assert "plan does not allow webhooks" in connection.status_reason


@pytest.mark.asyncio
async def test_rejected_code_disconnects(engine):
    engine.provider.exchange_error = AuthExpiredError("invalid_grant", status_code=400)
    engine.channel.begin_authorization("p1")

    with pytest.raises(AuthExpiredError):
        await engine.channel.complete_authorization("p1", "bad")
    assert engine.channel.get("p1").state == ChannelState.DISCONNECTED


@pytest.mark.asyncio
async def test_complete_without_begin_is_rejected(engine):
    with pytest.raises(NotConnectedError):
        await engine.channel.complete_authorization("p1", "code")


@pytest.mark.asyncio
async def test_cleanup_keeps_newest_webhook(webhook_engine):
    provider = webhook_engine.provider
    old = provider.add_webhook(CALLBACK, NOW - timedelta(days=3))
    stuck = provider.add_webhook(CALLBACK, NOW - timedelta(days=2))
    newest = provider.add_webhook(CALLBACK + "/", NOW - timedelta(days=1))
    foreign = provider.add_webhook("https://other.example.com/hook", NOW)
    provider.undeletable.add(stuck.id)
    connect_project(webhook_engine, "p1", ChannelState.WEBHOOK_ACTIVE, webhook_id=old.id)

    report = await webhook_engine.channel.cleanup_duplicates("p1")

    assert report.kept_webhook_id == newest.id
    assert report.deleted == [old.id]
    assert report.delete_failures == [stuck.id]
    assert report.state == ChannelState.WEBHOOK_ACTIVE
    assert foreign.id in provider.webhooks
    assert webhook_engine.channel.get("p1").webhook_id == newest.id


@pytest.mark.asyncio
async def test_cleanup_with_no_webhooks_reestablishes_channel(webhook_engine):
    connect_project(webhook_engine, "p1", ChannelState.POLLING_ACTIVE)

    report = await webhook_engine.channel.cleanup_duplicates("p1")

    assert report.state == ChannelState.WEBHOOK_ACTIVE
    assert report.kept_webhook_id in webhook_engine.provider.webhooks


@pytest.mark.asyncio
async def test_health_check_reregisters_vanished_webhook(webhook_engine):
    connect_project(webhook_engine, "p1", ChannelState.WEBHOOK_ACTIVE, webhook_id="gone")

    connection = await webhook_engine.channel.check_health("p1")

    assert connection.state == ChannelState.WEBHOOK_ACTIVE
    assert connection.webhook_id != "gone"
    assert connection.webhook_id in webhook_engine.provider.webhooks
    assert connection.last_health_check is not None


@pytest.mark.asyncio
async def test_auth_expiry_during_cleanup_disconnects(webhook_engine):
    connect_project(webhook_engine, "p1", ChannelState.WEBHOOK_ACTIVE, webhook_id="hook")
    webhook_engine.provider.list_webhooks_error = AuthExpiredError("token revoked", status_code=401)

    with pytest.raises(AuthExpiredError):
        await webhook_engine.channel.cleanup_duplicates("p1")

    connection = webhook_engine.channel.get("p1")
    assert connection.state == ChannelState.DISCONNECTED
    assert connection.webhook_id is None


@pytest.mark.asyncio
async def test_auth_expiry_while_reregistering_disconnects(webhook_engine):
    connect_project(webhook_engine, "p1", ChannelState.WEBHOOK_ACTIVE, webhook_id="gone")
    webhook_engine.provider.register_error = AuthExpiredError("token revoked", status_code=401)

    connection = await webhook_engine.channel.check_health("p1")

    assert connection.state == ChannelState.DISCONNECTED
    assert webhook_engine.channel.get("p1").access_token is None


@pytest.mark.asyncio
async def test_disconnect_tears_down(webhook_engine):
    hook = webhook_engine.provider.add_webhook(CALLBACK, NOW)
    connect_project(webhook_engine, "p1", ChannelState.WEBHOOK_ACTIVE, webhook_id=hook.id)
    webhook_engine.registry.activate("p1", EVENT_TYPE)

    connection = await webhook_engine.channel.disconnect("p1")

    assert connection.state == ChannelState.DISCONNECTED
    assert connection.access_token is None
    assert webhook_engine.provider.deleted_webhooks == [hook.id]
    assert webhook_engine.provider.revoked == ["p1"]
    assert webhook_engine.registry.list_all("p1") == []

    again = await webhook_engine.channel.disconnect("p1")
    assert again.state == ChannelState.DISCONNECTED


def test_auth_expiry_disconnects(engine):
    connect_project(engine, "p1")

    connection = engine.channel.handle_auth_expired("p1", "token revoked")

    assert connection.state == ChannelState.DISCONNECTED
    assert "token revoked" in connection.status_reason
    assert engine.channel.handle_auth_expired("p1", "again").status_reason == connection.status_reason
    assert engine.channel.handle_auth_expired("unknown", "token revoked") is None


def test_projects_due(engine):
    connect_project(engine, "never-synced")
    connect_project(engine, "polled-recently", last_sync_at=NOW - timedelta(minutes=5))
    connect_project(engine, "polled-long-ago", last_sync_at=NOW - timedelta(minutes=20))
    connect_project(engine, "webhook-recent", ChannelState.WEBHOOK_ACTIVE, last_sync_at=NOW - timedelta(minutes=20))
    connect_project(engine, "webhook-old", ChannelState.WEBHOOK_ACTIVE, last_sync_at=NOW - timedelta(hours=2))
    connect_project(engine, "gone", ChannelState.DISCONNECTED)

    assert engine.channel.projects_due(NOW) == ["never-synced", "polled-long-ago", "webhook-old"]
