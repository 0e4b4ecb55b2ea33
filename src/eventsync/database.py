"""Database models and operations for the reconciled event store."""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import (
    create_engine, Column, String, DateTime, Boolean, Integer, Text, Index,
    UniqueConstraint, case, delete, func, or_, text, update
)
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.types import TypeDecorator
import pytz

from .config import Settings
from .errors import ConflictError
from .models import (
    ChannelState, EventFilter, EventRecord, EventStatus, UpsertOutcome, ensure_utc
)

Base = declarative_base()

CONNECTED_STATES = (ChannelState.WEBHOOK_ACTIVE.value, ChannelState.POLLING_ACTIVE.value)


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as UTC on every backend."""

    impl = DateTime
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(DateTime(timezone=True))
        else:
            return dialect.type_descriptor(DateTime())

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        value = ensure_utc(value)
        if dialect.name == 'postgresql':
            return value
        # SQLite has no timezone support; keep naive UTC so ordering stays lexical
        return value.replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return ensure_utc(value)


class MappingDB(Base):
    """Ownership of a remote event-type by a project."""

    __tablename__ = 'event_type_mappings'

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(String(255), nullable=False, index=True)
    remote_event_type_id = Column(String(500), nullable=False)
    display_name = Column(String(500), nullable=False, default="")
    is_active = Column(Boolean, nullable=False, default=True)
    # Cleared once a historical backfill for the project completes
    backfill_pending = Column(Boolean, nullable=False, default=False)

    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint('project_id', 'remote_event_type_id', name='uq_mapping_project_type'),
        # At most one active owner per remote event-type, system-wide
        Index(
            'uq_mapping_active_type',
            'remote_event_type_id',
            unique=True,
            sqlite_where=text('is_active = 1'),
            postgresql_where=text('is_active'),
        ),
        Index('idx_mapping_project_active', 'project_id', 'is_active'),
    )


class ConnectionDB(Base):
    """Per-project provider connection and channel state."""

    __tablename__ = 'connections'

    project_id = Column(String(255), primary_key=True)
    state = Column(String(32), nullable=False, default=ChannelState.DISCONNECTED.value)
    status_reason = Column(Text, nullable=True)

    webhook_id = Column(String(500), nullable=True)
    webhook_callback_url = Column(String(1000), nullable=True)

    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(UTCDateTime(), nullable=True)
    owner_uri = Column(String(500), nullable=True)
    organization_uri = Column(String(500), nullable=True)

    last_health_check = Column(UTCDateTime(), nullable=True)
    last_sync_at = Column(UTCDateTime(), nullable=True)
    sync_lease_owner = Column(String(64), nullable=True)
    sync_lease_until = Column(UTCDateTime(), nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_connection_state', 'state'),
        Index('idx_connection_owner', 'owner_uri'),
    )


class EventDB(Base):
    """Locally reconciled copy of a remote scheduled event."""

    __tablename__ = 'events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    remote_event_id = Column(String(500), nullable=False)
    project_id = Column(String(255), nullable=False)
    remote_event_type_id = Column(String(500), nullable=False)
    event_type_name = Column(String(500), nullable=True)

    scheduled_at = Column(UTCDateTime(), nullable=False)
    end_at = Column(UTCDateTime(), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False)
    remote_updated_at = Column(UTCDateTime(), nullable=False)
    status = Column(String(32), nullable=False, default=EventStatus.ACTIVE.value)
    cancelled_at = Column(UTCDateTime(), nullable=True)

    invitee_name = Column(String(500), nullable=True)
    invitee_email = Column(String(500), nullable=True)

    last_seen_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint('remote_event_id', name='uq_event_remote_id'),
        Index('idx_event_project_scheduled', 'project_id', 'scheduled_at'),
        Index('idx_event_project_created', 'project_id', 'created_at'),
        Index('idx_event_type', 'remote_event_type_id'),
        Index('idx_event_status', 'status'),
    )


class DatabaseManager:
    """Database manager for store operations."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    def _insert(self, table):
        if self.engine.dialect.name == 'postgresql':
            return postgresql_insert(table)
        return sqlite_insert(table)

    # Events

    def upsert_event(
        self,
        session: Session,
        record: EventRecord,
        observed_at: Optional[datetime] = None
    ) -> UpsertOutcome:
        """Insert or update an event keyed by its remote id.

        Last write wins on ``remote_updated_at``: an incoming copy older than
        the stored one never replaces it and only refreshes ``last_seen_at``.

        Args:
            session: Database session
            record: Event to write
            observed_at: When the copy was observed (defaults to now)

        Returns:
            Whether the row was inserted, updated or rejected as stale
        """
        observed_at = ensure_utc(observed_at) or utcnow()
        cancelled_at = record.cancelled_at
        if record.status == EventStatus.CANCELLED.value and cancelled_at is None:
            cancelled_at = observed_at

        values = {
            'remote_event_id': record.remote_event_id,
            'project_id': record.project_id,
            'remote_event_type_id': record.remote_event_type_id,
            'event_type_name': record.event_type_name,
            'scheduled_at': record.scheduled_at,
            'end_at': record.end_at,
            'created_at': record.created_at,
            'remote_updated_at': record.remote_updated_at,
            'status': record.status,
            'cancelled_at': cancelled_at if record.status == EventStatus.CANCELLED.value else None,
            'invitee_name': record.invitee_name,
            'invitee_email': record.invitee_email,
            'last_seen_at': observed_at,
        }

        existed = session.query(EventDB.id).filter(
            EventDB.remote_event_id == record.remote_event_id
        ).first() is not None

        stmt = self._insert(EventDB.__table__).values(**values)
        excluded = stmt.excluded
        table = EventDB.__table__
        stmt = stmt.on_conflict_do_update(
            index_elements=['remote_event_id'],
            set_={
                'project_id': excluded.project_id,
                'remote_event_type_id': excluded.remote_event_type_id,
                'event_type_name': func.coalesce(excluded.event_type_name, table.c.event_type_name),
                'scheduled_at': excluded.scheduled_at,
                'end_at': excluded.end_at,
                'created_at': excluded.created_at,
                'remote_updated_at': excluded.remote_updated_at,
                'status': excluded.status,
                'cancelled_at': case(
                    (excluded.status == EventStatus.CANCELLED.value,
                     func.coalesce(table.c.cancelled_at, excluded.cancelled_at)),
                    else_=None,
                ),
                'invitee_name': func.coalesce(excluded.invitee_name, table.c.invitee_name),
                'invitee_email': func.coalesce(excluded.invitee_email, table.c.invitee_email),
                'last_seen_at': excluded.last_seen_at,
            },
            where=excluded.remote_updated_at >= table.c.remote_updated_at,
        )
        result = session.execute(stmt)

        if result.rowcount == 0:
            session.execute(
                update(EventDB)
                .where(EventDB.remote_event_id == record.remote_event_id)
                .values(last_seen_at=observed_at)
            )
            session.commit()
            return UpsertOutcome.STALE

        session.commit()
        return UpsertOutcome.UPDATED if existed else UpsertOutcome.INSERTED

    def query_events(self, session: Session, event_filter: EventFilter) -> List[EventDB]:
        """Query events matching a filter, ordered by scheduled time.

        Args:
            session: Database session
            event_filter: Filter criteria; unset fields do not constrain

        Returns:
            List of events
        """
        query = session.query(EventDB)

        if event_filter.project_id is not None:
            query = query.filter(EventDB.project_id == event_filter.project_id)
        if event_filter.remote_event_type_ids is not None:
            query = query.filter(EventDB.remote_event_type_id.in_(event_filter.remote_event_type_ids))
        if event_filter.remote_event_ids is not None:
            query = query.filter(EventDB.remote_event_id.in_(event_filter.remote_event_ids))
        if event_filter.scheduled_from is not None:
            query = query.filter(EventDB.scheduled_at >= event_filter.scheduled_from)
        if event_filter.scheduled_to is not None:
            query = query.filter(EventDB.scheduled_at < event_filter.scheduled_to)
        if event_filter.created_from is not None:
            query = query.filter(EventDB.created_at >= event_filter.created_from)
        if event_filter.created_to is not None:
            query = query.filter(EventDB.created_at < event_filter.created_to)
        if event_filter.status is not None:
            query = query.filter(EventDB.status == event_filter.status)

        return query.order_by(EventDB.scheduled_at, EventDB.remote_event_id).all()

    def get_event(self, session: Session, remote_event_id: str) -> Optional[EventDB]:
        """Get a stored event by its remote id."""
        return session.query(EventDB).filter(
            EventDB.remote_event_id == remote_event_id
        ).first()

    def count_events(self, session: Session, project_id: Optional[str] = None) -> int:
        query = session.query(EventDB)
        if project_id is not None:
            query = query.filter(EventDB.project_id == project_id)
        return query.count()

    # Mappings

    def upsert_mapping(
        self,
        session: Session,
        project_id: str,
        remote_event_type_id: str,
        display_name: str = "",
        is_active: bool = True,
        transfer_ownership: bool = False,
        backfill_pending: bool = False
    ) -> MappingDB:
        """Create or toggle a mapping in one atomic write.

        Args:
            session: Database session
            project_id: Owning project
            remote_event_type_id: Remote event-type URI
            display_name: Human-readable event-type name
            is_active: Desired active flag
            transfer_ownership: Deactivate any other active owner first
            backfill_pending: Flag the mapping for a historical backfill

        Returns:
            The mapping row

        Raises:
            ConflictError: If another project actively owns the event-type
        """
        now = utcnow()
        try:
            if transfer_ownership and is_active:
                session.execute(
                    update(MappingDB)
                    .where(
                        MappingDB.remote_event_type_id == remote_event_type_id,
                        MappingDB.project_id != project_id,
                        MappingDB.is_active.is_(True),
                    )
                    .values(is_active=False, updated_at=now)
                )

            stmt = self._insert(MappingDB.__table__).values(
                project_id=project_id,
                remote_event_type_id=remote_event_type_id,
                display_name=display_name,
                is_active=is_active,
                backfill_pending=backfill_pending,
                created_at=now,
                updated_at=now,
            )
            set_: Dict[str, Any] = {
                'is_active': stmt.excluded.is_active,
                'updated_at': stmt.excluded.updated_at,
            }
            if display_name:
                set_['display_name'] = stmt.excluded.display_name
            if backfill_pending:
                set_['backfill_pending'] = stmt.excluded.backfill_pending
            stmt = stmt.on_conflict_do_update(
                index_elements=['project_id', 'remote_event_type_id'],
                set_=set_,
            )
            session.execute(stmt)
            session.commit()
        except IntegrityError:
            session.rollback()
            owner = self.get_active_mapping(session, remote_event_type_id)
            owner_project = owner.project_id if owner else None
            raise ConflictError(
                f"Event type {remote_event_type_id} is already owned by project {owner_project}",
                owner_project_id=owner_project,
            )

        return session.query(MappingDB).filter(
            MappingDB.project_id == project_id,
            MappingDB.remote_event_type_id == remote_event_type_id,
        ).one()

    def deactivate_mapping(self, session: Session, project_id: str, remote_event_type_id: str) -> bool:
        """Deactivate a mapping; returns whether anything changed."""
        result = session.execute(
            update(MappingDB)
            .where(
                MappingDB.project_id == project_id,
                MappingDB.remote_event_type_id == remote_event_type_id,
                MappingDB.is_active.is_(True),
            )
            .values(is_active=False, updated_at=utcnow())
        )
        session.commit()
        return result.rowcount > 0

    def query_mappings(
        self,
        session: Session,
        project_id: Optional[str] = None,
        active_only: bool = True
    ) -> List[MappingDB]:
        """Get mappings ordered by creation time.

        Args:
            session: Database session
            project_id: Restrict to one project
            active_only: Only return active mappings

        Returns:
            List of mappings
        """
        query = session.query(MappingDB)
        if project_id is not None:
            query = query.filter(MappingDB.project_id == project_id)
        if active_only:
            query = query.filter(MappingDB.is_active.is_(True))
        return query.order_by(MappingDB.created_at, MappingDB.id).all()

    def get_active_mapping(self, session: Session, remote_event_type_id: str) -> Optional[MappingDB]:
        """Get the active owner of a remote event-type."""
        return session.query(MappingDB).filter(
            MappingDB.remote_event_type_id == remote_event_type_id,
            MappingDB.is_active.is_(True),
        ).first()

    def projects_pending_backfill(self, session: Session) -> List[str]:
        """Connected projects with an active mapping still waiting for its backfill."""
        rows = session.query(MappingDB.project_id).join(
            ConnectionDB, ConnectionDB.project_id == MappingDB.project_id
        ).filter(
            MappingDB.is_active.is_(True),
            MappingDB.backfill_pending.is_(True),
            ConnectionDB.state.in_(CONNECTED_STATES),
        ).distinct().order_by(MappingDB.project_id).all()
        return [row.project_id for row in rows]

    def clear_backfill_pending(self, session: Session, project_id: str) -> int:
        result = session.execute(
            update(MappingDB)
            .where(MappingDB.project_id == project_id, MappingDB.backfill_pending.is_(True))
            .values(backfill_pending=False, updated_at=utcnow())
        )
        session.commit()
        return result.rowcount

    def delete_project_mappings(self, session: Session, project_id: str) -> int:
        """Hard-delete every mapping of a project (full disconnect only)."""
        result = session.execute(delete(MappingDB).where(MappingDB.project_id == project_id))
        session.commit()
        return result.rowcount

    # Connections

    def get_connection(self, session: Session, project_id: str) -> Optional[ConnectionDB]:
        return session.query(ConnectionDB).filter(ConnectionDB.project_id == project_id).first()

    def get_connection_by_owner(self, session: Session, owner_uri: str) -> Optional[ConnectionDB]:
        return session.query(ConnectionDB).filter(
            ConnectionDB.owner_uri == owner_uri,
            ConnectionDB.state.in_(CONNECTED_STATES),
        ).first()

    def save_connection(self, session: Session, project_id: str, **kwargs) -> ConnectionDB:
        """Create or update a connection row.

        Args:
            session: Database session
            project_id: Project id
            **kwargs: Fields to update

        Returns:
            Updated connection
        """
        connection = self.get_connection(session, project_id)
        if connection is None:
            connection = ConnectionDB(project_id=project_id)
            session.add(connection)

        for key, value in kwargs.items():
            if hasattr(connection, key):
                if isinstance(value, ChannelState):
                    value = value.value
                setattr(connection, key, value)

        connection.updated_at = utcnow()
        session.commit()
        return connection

    def list_connections(
        self,
        session: Session,
        states: Optional[Iterable[str]] = None
    ) -> List[ConnectionDB]:
        query = session.query(ConnectionDB)
        if states is not None:
            query = query.filter(ConnectionDB.state.in_([getattr(s, 'value', s) for s in states]))
        return query.order_by(ConnectionDB.project_id).all()

    def acquire_sync_lease(
        self,
        session: Session,
        project_id: str,
        lease_seconds: int,
        now: Optional[datetime] = None
    ) -> Optional[str]:
        """Claim the per-project reconciliation lease.

        The claim is a single conditional UPDATE, so at most one caller wins
        while the lease is held and unexpired.

        Returns:
            Lease token, or None if another run holds the lease or the
            project is not connected
        """
        now = ensure_utc(now) or utcnow()
        token = uuid4().hex
        result = session.execute(
            update(ConnectionDB)
            .where(
                ConnectionDB.project_id == project_id,
                ConnectionDB.state.in_(CONNECTED_STATES),
                or_(
                    ConnectionDB.sync_lease_until.is_(None),
                    ConnectionDB.sync_lease_until < now,
                ),
            )
            .values(
                sync_lease_owner=token,
                sync_lease_until=now + timedelta(seconds=lease_seconds),
            )
        )
        session.commit()
        return token if result.rowcount == 1 else None

    def release_sync_lease(
        self,
        session: Session,
        project_id: str,
        token: str,
        synced_at: Optional[datetime] = None
    ) -> bool:
        """Release a lease held by ``token``; optionally stamp the sync time."""
        values: Dict[str, Any] = {'sync_lease_owner': None, 'sync_lease_until': None}
        if synced_at is not None:
            values['last_sync_at'] = synced_at
        result = session.execute(
            update(ConnectionDB)
            .where(
                ConnectionDB.project_id == project_id,
                ConnectionDB.sync_lease_owner == token,
            )
            .values(**values)
        )
        session.commit()
        return result.rowcount == 1

    def get_statistics(self, session: Session) -> Dict[str, Any]:
        """Get store-wide counts for status displays."""
        return {
            'connections': session.query(ConnectionDB).count(),
            'connected': session.query(ConnectionDB).filter(
                ConnectionDB.state.in_(CONNECTED_STATES)
            ).count(),
            'active_mappings': session.query(MappingDB).filter(MappingDB.is_active.is_(True)).count(),
            'events': session.query(EventDB).count(),
            'cancelled_events': session.query(EventDB).filter(
                EventDB.status == EventStatus.CANCELLED.value
            ).count(),
        }
