import pytest
from datetime import timedelta

from eventsync.models import ChannelState, SyncPhase, TriggerReason, TriggerRequest
from eventsync.services import ProviderUnavailableError
from eventsync.sync_engine import SyncEngine

from conftest import EVENT_TYPE, NOW, OTHER_TYPE, connect_project, make_event, mark_backfilled


@pytest.mark.asyncio
async def test_sync_due_projects_continues_after_failure(engine, provider, monkeypatch):
    engine.registry.activate("p1", EVENT_TYPE)
    engine.registry.activate("p2", OTHER_TYPE)
    connect_project(engine, "p1")
    connect_project(engine, "p2")
    mark_backfilled(engine, "p1", "p2")
    provider.add(make_event("E1", NOW + timedelta(hours=1), event_type_id=OTHER_TYPE))

    original = provider.list_events

    async def failing_for_p1(project_id, window_start, window_end):
        if project_id == "p1":
            raise ProviderUnavailableError("timeout")
        return await original(project_id, window_start, window_end)

    monkeypatch.setattr(provider, "list_events", failing_for_p1)
    reports = await engine.sync_due_projects(now=NOW)

    assert [r.project_id for r in reports] == ["p2"]
    assert reports[0].events_upserted == 1
    assert reports[0].trigger_reason == TriggerReason.SCHEDULED


@pytest.mark.asyncio
async def test_webhook_signalled_projects_are_included(engine):
    engine.registry.activate("p1", EVENT_TYPE)
    connect_project(engine, "p1", last_sync_at=NOW)
    mark_backfilled(engine, "p1")

    reports = await engine.sync_due_projects(now=NOW, extra_project_ids=["p1"])

    assert [r.trigger_reason for r in reports] == [TriggerReason.WEBHOOK]


@pytest.mark.asyncio
async def test_backfill_blocked_by_lease_runs_on_next_schedule(engine, provider):
    connect_project(engine, "p1")
    old = make_event("OLD", NOW - timedelta(days=40))
    provider.add(old)
    with engine.db_manager.get_session() as session:
        token = engine.db_manager.acquire_sync_lease(session, "p1", 60)

    engine.registry.on_first_activation = engine.reconciler.backfill
    engine.registry.activate("p1", EVENT_TYPE)
    await engine.registry.wait_for_background()
    assert engine.registry.list_active("p1")[0].backfill_pending

    with engine.db_manager.get_session() as session:
        engine.db_manager.release_sync_lease(session, "p1", token)
    reports = await engine.sync_due_projects(now=NOW)

    assert [r.trigger_reason for r in reports] == [TriggerReason.BACKFILL]
    assert reports[0].phase == SyncPhase.COMPLETED
    with engine.db_manager.get_session() as session:
        assert engine.db_manager.get_event(session, old.id) is not None
    assert not engine.registry.list_active("p1")[0].backfill_pending

    later = await engine.sync_due_projects(now=NOW + timedelta(hours=1))
    assert [r.trigger_reason for r in later] == [TriggerReason.SCHEDULED]


@pytest.mark.asyncio
async def test_partial_backfill_stays_pending(engine, provider):
    engine.registry.activate("p1", EVENT_TYPE)
    connect_project(engine, "p1")
    provider.add(make_event("E1", NOW - timedelta(days=10)), make_event("E2", NOW - timedelta(days=20)))
    provider.partial = True

    reports = await engine.sync_due_projects(now=NOW)

    assert reports[0].trigger_reason == TriggerReason.BACKFILL
    assert reports[0].partial
    assert engine.registry.list_active("p1")[0].backfill_pending


def test_disconnected_projects_are_not_pending(engine):
    engine.registry.activate("p1", EVENT_TYPE)
    engine.registry.activate("p2", OTHER_TYPE)
    connect_project(engine, "p2", ChannelState.DISCONNECTED)

    with engine.db_manager.get_session() as session:
        assert engine.db_manager.projects_pending_backfill(session) == []


@pytest.mark.asyncio
async def test_trigger_reports_skip(engine):
    result = await engine.trigger(TriggerRequest(project_id="p1"))

    assert result.skipped
    assert result.events_synced == 0


@pytest.mark.asyncio
async def test_test_connections(engine):
    connect_project(engine, "p1")
    connect_project(engine, "p2", ChannelState.DISCONNECTED)

    results = await engine.test_connections()

    assert list(results) == ["p1"]
    assert results["p1"]["success"]
    assert results["p1"]["event_type_count"] == 2


def test_status_counts(engine):
    engine.registry.activate("p1", EVENT_TYPE)
    connect_project(engine, "p1")
    engine.classifier.upsert(make_event("E1", NOW, status="cancelled"), "p1", observed_at=NOW)

    stats = engine.get_status()

    assert stats["connected"] == 1
    assert stats["active_mappings"] == 1
    assert stats["events"] == 1
    assert stats["cancelled_events"] == 1
    assert "checked_at" in stats


@pytest.mark.asyncio
async def test_async_context_manager(settings, provider):
    async with SyncEngine(settings, provider=provider) as engine:
        assert engine.get_status()["events"] == 0
