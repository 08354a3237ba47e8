"""Database models and operations for local events and sync state."""

from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import (
    create_engine, event, Column, String, DateTime, Boolean, Text, Integer, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.types import TypeDecorator
import pytz

from .config import Settings
from .models import SyncResult

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(pytz.UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as naive UTC.

    SQLite drops tzinfo, so values are normalized to UTC on the way in and
    tagged as UTC on the way out.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value
        return value.astimezone(pytz.UTC).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return value.replace(tzinfo=pytz.UTC)


class EventDB(Base):
    """Database model for a local calendar event and its sync metadata."""

    __tablename__ = 'events'

    id = Column(String(64), primary_key=True)
    title = Column(String(1024), nullable=False, default='')
    start = Column(UTCDateTime(), nullable=False)
    end = Column(UTCDateTime(), nullable=False)
    all_day = Column(Boolean, nullable=False, default=False)
    timezone = Column(String(64), nullable=True)
    recurrence = Column(String(16), nullable=False, default='none')
    recurrence_custom = Column(Text, nullable=True)
    location = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    color = Column(String(4), nullable=True)
    alert = Column(String(16), nullable=False, default='none')
    alert_offset = Column(Integer, nullable=False, default=0)

    # Sync metadata
    sync_status = Column(String(16), nullable=False, default='local')  # 'local', 'synced', 'conflict', 'deleted'
    remote_event_id = Column(String(1024), nullable=True)
    remote_calendar_id = Column(String(255), nullable=True)
    remote_etag = Column(String(255), nullable=True)
    remote_updated_at = Column(UTCDateTime(), nullable=True)
    local_version = Column(Integer, nullable=False, default=0)

    created_at = Column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint('remote_calendar_id', 'remote_event_id', name='uq_event_remote'),
        Index('idx_event_sync_status', 'sync_status'),
        Index('idx_event_remote_id', 'remote_event_id'),
        Index('idx_event_start', 'start'),
    )


class SyncStateDB(Base):
    """Key/value sync state, e.g. the per-calendar sync token."""

    __tablename__ = 'sync_state'

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(UTCDateTime(), nullable=False, default=_utcnow)


class SyncSessionDB(Base):
    """Database model for sync sessions (one row per pass)."""

    __tablename__ = 'sync_sessions'

    id = Column(String(32), primary_key=True, default=lambda: uuid4().hex)
    calendar_id = Column(String(255), nullable=False, default='primary')
    started_at = Column(UTCDateTime(), nullable=False, default=_utcnow)
    completed_at = Column(UTCDateTime(), nullable=True)
    push_only = Column(Boolean, nullable=False, default=False)
    full_sync = Column(Boolean, nullable=False, default=False)

    # Counters
    pulled = Column(Integer, default=0)
    pushed = Column(Integer, default=0)
    deleted = Column(Integer, default=0)
    conflicts = Column(Integer, default=0)
    errors = Column(Integer, default=0)

    # Status
    status = Column(String(20), nullable=False, default='running')  # 'running', 'completed', 'partial', 'failed', 'interrupted'
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_sync_session_started', 'started_at'),
        Index('idx_sync_session_status', 'status'),
    )


class DatabaseManager:
    """Database manager for local events and sync bookkeeping."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        connect_args = {}
        if settings.database_url.startswith('sqlite'):
            # Store calls arrive from the event loop and from worker threads.
            connect_args['check_same_thread'] = False
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
        if settings.database_url.startswith('sqlite'):
            event.listen(self.engine, 'connect', _configure_sqlite)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def reset_db(self) -> None:
        """Drop and recreate all tables."""
        Base.metadata.drop_all(bind=self.engine)
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    def get_state(self, session: Session, key: str) -> Optional[str]:
        """Read a sync state value.

        Args:
            session: Database session
            key: State key

        Returns:
            Stored value or None if absent
        """
        row = session.get(SyncStateDB, key)
        return row.value if row else None

    def set_state(self, session: Session, key: str, value: Optional[str]) -> None:
        """Write a sync state value; None removes the key.

        Args:
            session: Database session
            key: State key
            value: New value
        """
        row = session.get(SyncStateDB, key)
        if value is None:
            if row is not None:
                session.delete(row)
        elif row is None:
            session.add(SyncStateDB(key=key, value=value, updated_at=_utcnow()))
        else:
            row.value = value
            row.updated_at = _utcnow()
        session.commit()

    def create_sync_session(
        self,
        session: Session,
        calendar_id: str,
        push_only: bool = False
    ) -> SyncSessionDB:
        """Create new sync session.

        Args:
            session: Database session
            calendar_id: Calendar being synchronized
            push_only: Whether the pass skips the pull phase

        Returns:
            Created sync session
        """
        sync_session = SyncSessionDB(calendar_id=calendar_id, push_only=push_only)
        session.add(sync_session)
        session.commit()
        return sync_session

    def complete_sync_session(
        self,
        session: Session,
        sync_session_id: str,
        result: SyncResult,
        status: str = 'completed'
    ) -> Optional[SyncSessionDB]:
        """Record the outcome of a sync pass.

        Args:
            session: Database session
            sync_session_id: Sync session to complete
            result: Counters and error message of the pass
            status: Final status

        Returns:
            Updated sync session
        """
        sync_session = session.get(SyncSessionDB, sync_session_id)
        if sync_session is None:
            return None
        sync_session.completed_at = result.completed_at or _utcnow()
        sync_session.full_sync = result.full_sync
        sync_session.pulled = result.pulled
        sync_session.pushed = result.pushed
        sync_session.deleted = result.deleted
        sync_session.conflicts = result.conflicts
        sync_session.errors = result.errors
        sync_session.status = status
        sync_session.error_message = result.error_message
        session.commit()
        return sync_session

    def get_recent_sync_sessions(
        self,
        session: Session,
        limit: int = 10
    ) -> List[SyncSessionDB]:
        """Get recent sync sessions.

        Args:
            session: Database session
            limit: Number of sessions to return

        Returns:
            List of sync sessions
        """
        return session.query(SyncSessionDB).order_by(
            SyncSessionDB.started_at.desc()
        ).limit(limit).all()


def _configure_sqlite(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()
