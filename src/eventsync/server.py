import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Optional, Set

import pytz
from fastapi import FastAPI, Request, HTTPException

from .config import Settings
from .errors import ConflictError, ValidationError, WebhookSignatureError
from .models import TriggerRequest
from .services import AuthExpiredError, ProviderUnavailableError
from .sync_engine import SyncEngine
from .webhooks import SIGNATURE_HEADER

logger = logging.getLogger(__name__)

app = FastAPI(title="eventsync", version="1.0")


class SyncRuntime:
    """Background scheduler: periodic reconciliation plus webhook follow-ups."""

    def __init__(self, settings: Settings, engine: SyncEngine):
        self.settings = settings
        self.engine = engine
        self.trigger = asyncio.Event()
        self.running = True
        self.last_sync: Optional[datetime] = None
        self.sync_task: Optional[asyncio.Task] = None
        self.loop_interval_seconds = settings.sync_config.scheduler_tick_seconds
        self.pending_projects: Set[str] = set()
        self.logger = logger.getChild('runtime')

    async def run(self):
        while self.running:
            try:
                # Wait for either trigger or interval timeout
                try:
                    await asyncio.wait_for(self.trigger.wait(), timeout=self.loop_interval_seconds)
                except asyncio.TimeoutError:
                    pass
                finally:
                    self.trigger.clear()

                if not self.running:
                    break
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                # Keep the loop alive; the next tick retries
                self.logger.exception("Scheduler iteration failed")
                await asyncio.sleep(2)

    async def run_once(self):
        pending = sorted(self.pending_projects)
        self.pending_projects.clear()
        await self.engine.sync_due_projects(extra_project_ids=pending)
        self.last_sync = datetime.now(pytz.UTC)

    def signal(self, project_id: Optional[str] = None):
        if project_id:
            self.pending_projects.add(project_id)
        if not self.trigger.is_set():
            self.trigger.set()


@app.on_event("startup")
async def on_startup():
    settings = getattr(app.state, 'settings', None) or Settings()
    engine = getattr(app.state, 'engine', None) or SyncEngine(settings)
    await engine.initialize()
    app.state.settings = settings
    app.state.engine = engine
    app.state.runtime = SyncRuntime(settings, engine)
    if getattr(app.state, 'start_scheduler', True):
        app.state.runtime.sync_task = asyncio.create_task(app.state.runtime.run())


@app.on_event("shutdown")
async def on_shutdown():
    runtime: SyncRuntime = app.state.runtime
    runtime.running = False
    runtime.signal()
    if runtime.sync_task:
        await asyncio.wait([runtime.sync_task], timeout=5)
    await app.state.engine.cleanup()


@app.get("/health")
async def health():
    rt: SyncRuntime = app.state.runtime
    return {
        "ok": True,
        "last_sync": rt.last_sync.isoformat() if rt.last_sync else None,
        "interval_seconds": rt.loop_interval_seconds,
    }


@app.post("/webhooks/calendly")
async def calendly_webhook(request: Request):
    body = await request.body()
    engine: SyncEngine = app.state.engine
    try:
        result = await engine.handle_webhook(body, request.headers.get(SIGNATURE_HEADER))
    except WebhookSignatureError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AuthExpiredError as e:
        raise HTTPException(status_code=409, detail=f"Reconnect required: {e}")
    except ProviderUnavailableError as e:
        # Non-2xx makes the provider redeliver
        raise HTTPException(status_code=503, detail=str(e))

    if result.project_id:
        app.state.runtime.signal(result.project_id)
    return result.model_dump(mode="json")


@app.post("/sync")
async def trigger_sync(body: TriggerRequest):
    engine: SyncEngine = app.state.engine
    try:
        result = await engine.trigger(body)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AuthExpiredError as e:
        raise HTTPException(status_code=409, detail=f"Reconnect required: {e}")
    except ProviderUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return result.model_dump(mode="json")


@app.get("/projects/{project_id}/metrics")
async def project_metrics(
    project_id: str,
    start: Optional[date] = None,
    end: Optional[date] = None,
    timezone: Optional[str] = None,
):
    engine: SyncEngine = app.state.engine
    today = datetime.now(pytz.UTC).date()
    end = end or today
    start = start or end - timedelta(days=6)
    try:
        report = engine.compute_metrics(project_id, start, end, timezone)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return report.as_dict()


@app.post("/projects/{project_id}/mappings/{event_type_id:path}/activate")
async def activate_mapping(project_id: str, event_type_id: str, display_name: str = "", transfer: bool = False):
    engine: SyncEngine = app.state.engine
    try:
        mapping = engine.registry.activate(project_id, event_type_id, display_name, transfer_ownership=transfer)
    except ConflictError as e:
        raise HTTPException(status_code=409, detail={"error": str(e), "owner_project_id": e.owner_project_id})
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return mapping.model_dump(mode="json")


@app.get("/projects/{project_id}/connection")
async def connection_status(project_id: str):
    engine: SyncEngine = app.state.engine
    connection = engine.channel.get(project_id)
    if connection is None:
        raise HTTPException(status_code=404, detail=f"Project {project_id} has no connection")
    return {
        "project_id": connection.project_id,
        "state": connection.state.value,
        "channel_mode": connection.channel_mode.value,
        "status_reason": connection.status_reason,
        "last_sync_at": connection.last_sync_at.isoformat() if connection.last_sync_at else None,
        "last_health_check": connection.last_health_check.isoformat() if connection.last_health_check else None,
    }
