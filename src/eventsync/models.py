"""Data models for event synchronization and metrics."""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional, List, TypeVar, Generic
from dataclasses import dataclass, field
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, validator
import pytz


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return a timezone-aware UTC datetime (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=pytz.UTC)
    return value.astimezone(pytz.UTC)


def normalize_status(status: Optional[str]) -> str:
    """Normalize provider status spelling ('canceled' and 'cancelled' are one status)."""
    value = (status or "").strip().lower()
    if value in ("canceled", "cancelled"):
        return EventStatus.CANCELLED.value
    return value or EventStatus.ACTIVE.value


class EventStatus(str, Enum):
    """Normalized provider event status."""

    ACTIVE = "active"
    CANCELLED = "cancelled"


class EventCategory(str, Enum):
    """Derived event category, never stored."""

    CANCELLED = "cancelled"
    COMPLETED = "completed"
    UPCOMING = "upcoming"


class ChannelState(str, Enum):
    """Connection channel states."""

    DISCONNECTED = "disconnected"
    AUTHORIZING = "authorizing"
    WEBHOOK_ACTIVE = "webhook_active"
    POLLING_ACTIVE = "polling_active"


class ChannelMode(str, Enum):
    """Delivery mode derived from the channel state."""

    WEBHOOK = "webhook"
    POLLING = "polling"
    DISCONNECTED = "disconnected"


class TriggerReason(str, Enum):
    """Why a reconciliation run started."""

    MANUAL = "manual"
    WEBHOOK = "webhook"
    SCHEDULED = "scheduled"
    BACKFILL = "backfill"


class UpsertOutcome(str, Enum):
    """Result of a single idempotent event write."""

    INSERTED = "inserted"
    UPDATED = "updated"
    STALE = "stale"


class SyncPhase(str, Enum):
    """Named phases of a reconciliation run."""

    PENDING = "pending"
    LOADING_MAPPINGS = "loading_mappings"
    ACQUIRING_LEASE = "acquiring_lease"
    FETCHING = "fetching"
    DIFFING = "diffing"
    UPSERTING = "upserting"
    REFRESHING = "refreshing"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class RemoteEventType(BaseModel):
    """Bookable template defined by the provider."""

    id: str = Field(..., description="Provider event-type URI")
    name: str = Field("", description="Display name")
    active: bool = Field(True)
    slug: Optional[str] = Field(None)
    duration_minutes: Optional[int] = Field(None)


class RemoteEvent(BaseModel):
    """Scheduled event as reported by the provider."""

    id: str = Field(..., description="Provider event URI (deduplication key)")
    event_type_id: str = Field(..., description="Provider event-type URI")
    name: Optional[str] = Field(None, description="Event name")
    status: str = Field(EventStatus.ACTIVE.value)
    scheduled_at: datetime = Field(..., description="Event start time")
    end_at: Optional[datetime] = Field(None)
    created_at: datetime = Field(..., description="Booking creation time")
    updated_at: Optional[datetime] = Field(None, description="Provider last-modified time")
    cancelled_at: Optional[datetime] = Field(None)
    invitee_name: Optional[str] = Field(None)
    invitee_email: Optional[str] = Field(None)

    @validator('scheduled_at', 'end_at', 'created_at', 'updated_at', 'cancelled_at')
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware UTC."""
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v

    @validator('status', pre=True)
    def normalize(cls, v):
        return normalize_status(v)

    @validator('id', 'event_type_id')
    def non_empty(cls, v):
        if not v or not v.strip():
            raise ValueError("identifier must not be empty")
        return v.strip()

    @property
    def uuid(self) -> str:
        """Trailing path segment of the provider URI."""
        return self.id.rstrip('/').rsplit('/', 1)[-1]


class RemoteInvitee(BaseModel):
    """Invitee attached to a scheduled event."""

    name: Optional[str] = None
    email: Optional[str] = None
    status: Optional[str] = None
    created_at: Optional[datetime] = None


class RemoteWebhook(BaseModel):
    """Webhook subscription registered with the provider."""

    id: str = Field(..., description="Provider subscription URI")
    callback_url: str = Field(...)
    created_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    state: Optional[str] = Field(None)
    events: List[str] = Field(default_factory=list)

    @validator('created_at')
    def ensure_timezone_aware(cls, v):
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v


class TokenGrant(BaseModel):
    """OAuth token exchange result."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    owner_uri: Optional[str] = None
    organization_uri: Optional[str] = None


class MappingRecord(BaseModel):
    """Ownership of a remote event-type by a project."""

    project_id: str
    remote_event_type_id: str
    display_name: str = ""
    is_active: bool = True
    backfill_pending: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ConnectionRecord(BaseModel):
    """Per-project provider connection."""

    project_id: str
    state: ChannelState = ChannelState.DISCONNECTED
    webhook_id: Optional[str] = None
    webhook_callback_url: Optional[str] = None
    status_reason: Optional[str] = None
    last_health_check: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    owner_uri: Optional[str] = None
    organization_uri: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def channel_mode(self) -> ChannelMode:
        if self.state == ChannelState.WEBHOOK_ACTIVE:
            return ChannelMode.WEBHOOK
        if self.state == ChannelState.POLLING_ACTIVE:
            return ChannelMode.POLLING
        return ChannelMode.DISCONNECTED

    @property
    def is_connected(self) -> bool:
        return self.state in (ChannelState.WEBHOOK_ACTIVE, ChannelState.POLLING_ACTIVE)


class EventRecord(BaseModel):
    """Locally stored event."""

    remote_event_id: str
    project_id: str
    remote_event_type_id: str
    event_type_name: Optional[str] = None
    scheduled_at: datetime
    end_at: Optional[datetime] = None
    created_at: datetime
    remote_updated_at: datetime
    status: str = EventStatus.ACTIVE.value
    cancelled_at: Optional[datetime] = None
    invitee_name: Optional[str] = None
    invitee_email: Optional[str] = None
    last_seen_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @validator('scheduled_at', 'end_at', 'created_at', 'remote_updated_at',
               'cancelled_at', 'last_seen_at')
    def ensure_timezone_aware(cls, v):
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v


class EventFilter(BaseModel):
    """Store-side event query."""

    project_id: Optional[str] = None
    remote_event_type_ids: Optional[List[str]] = None
    remote_event_ids: Optional[List[str]] = None
    scheduled_from: Optional[datetime] = None
    scheduled_to: Optional[datetime] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    status: Optional[str] = None


class EventFailure(BaseModel):
    """Single event that could not be written during a run."""

    remote_event_id: str
    error: str
    error_type: str


class SyncReport(BaseModel):
    """Outcome of one reconciliation run (logged, not persisted)."""

    run_id: UUID = Field(default_factory=uuid4)
    project_id: str
    trigger_reason: TriggerReason
    debug_mode: bool = False
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    phase: SyncPhase = SyncPhase.PENDING
    started_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    completed_at: Optional[datetime] = None

    events_fetched: int = 0
    events_upserted: int = 0
    gaps_found: int = 0
    stale_skipped: int = 0
    statuses_refreshed: int = 0
    partial: bool = False
    skip_reason: Optional[str] = None
    failures: List[EventFailure] = Field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return self.phase == SyncPhase.SKIPPED

    @property
    def success_rate(self) -> float:
        """Share of gap events that were written successfully."""
        if not self.gaps_found:
            return 1.0
        return self.events_upserted / self.gaps_found


class TriggerRequest(BaseModel):
    """Request accepted by the trigger surface."""

    project_id: str
    trigger_reason: TriggerReason = TriggerReason.MANUAL
    debug_mode: bool = False

    @validator('project_id')
    def project_id_not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError("project_id must not be empty")
        return v.strip()


class TriggerResult(BaseModel):
    """Response returned to the trigger surface."""

    events_synced: int = 0
    gaps_found: int = 0
    skipped: bool = False
    partial: bool = False
    failures: int = 0


class WebhookResult(BaseModel):
    """Outcome of a webhook delivery."""

    event: str
    remote_event_id: Optional[str] = None
    project_id: Optional[str] = None
    outcome: Optional[UpsertOutcome] = None
    ignored_reason: Optional[str] = None


class CleanupReport(BaseModel):
    """Outcome of duplicate webhook cleanup."""

    project_id: str
    kept_webhook_id: Optional[str] = None
    deleted: List[str] = Field(default_factory=list)
    delete_failures: List[str] = Field(default_factory=list)
    state: ChannelState = ChannelState.DISCONNECTED


class WindowStats(BaseModel):
    """Metrics for a single calendar window."""

    start: date
    end: date
    total_bookings: int = 0
    calls_taken: int = 0
    cancelled: int = 0
    upcoming: int = 0
    show_up_rate: float = 0.0


class MetricComparison(BaseModel):
    """Current value compared with the preceding window."""

    current: float
    previous: float
    growth: float


class MetricsReport(BaseModel):
    """Windowed metrics with period-over-period comparison."""

    timezone: str
    current: WindowStats
    previous: WindowStats
    comparisons: Dict[str, MetricComparison] = Field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'timezone': self.timezone,
            'from': self.current.start.isoformat(),
            'to': self.current.end.isoformat(),
            'metrics': {k: v.model_dump() for k, v in self.comparisons.items()},
        }


T = TypeVar('T')


@dataclass
class EventBatch(Generic[T]):
    """Remote listing for a window; complete=False marks a pagination cut-off."""

    events: List[T] = field(default_factory=list)
    complete: bool = True
    error: Optional[str] = None


class SyncConfiguration(BaseModel):
    """Reconciliation windows and scheduling."""

    lookback_days: int = Field(2, ge=0, description="Default gap window reaches this far back")
    debug_lookback_days: int = Field(7, ge=0, description="Wider lookback used in debug mode")
    lookahead_days: int = Field(60, ge=0, description="Future bookings included in the window")
    backfill_days: int = Field(90, ge=1, description="Historical window on first activation")
    polling_interval_minutes: int = Field(15, ge=1)
    backstop_interval_minutes: int = Field(60, ge=1)
    sync_lease_seconds: int = Field(300, ge=10)
    scheduler_tick_seconds: int = Field(30, ge=1)
    page_size: int = Field(100, ge=1, le=100)
    max_pages: int = Field(50, ge=1)

    @validator('debug_lookback_days')
    def debug_window_not_narrower(cls, v, values):
        if 'lookback_days' in values and v < values['lookback_days']:
            raise ValueError("debug_lookback_days must not be smaller than lookback_days")
        return v
