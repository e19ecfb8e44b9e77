"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Table definitions for organizations, subscriptions and their resources
- Per-organization locking for count-then-insert sequences
"""
from typing import Optional, Generator
from contextlib import contextmanager
import threading
import weakref
from sqlalchemy import (
    create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text,
    Index, ForeignKey, UniqueConstraint, CheckConstraint, text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import os

from cloudmedia.core.config import settings

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine: Optional[Engine] = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None) -> Engine:
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if _engine is not None:
        _engine.dispose()

    if url.startswith("sqlite"):
        # Connections are handed between request threads; SQLite serializes writers itself
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": POOL_TIMEOUT},
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine() -> Engine:
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Everything executed inside the block is one transaction: committed on
    normal exit, rolled back if the block raises.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class _LocalLock:
    """threading.Lock that can sit in a weak-valued map."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self):
        self._lock = threading.Lock()

    def __enter__(self):
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info):
        self._lock.release()


# Process-local locks used when the database has no advisory locks (SQLite).
# An entry lives only while some caller still holds its lock object.
_local_locks: "weakref.WeakValueDictionary[str, _LocalLock]" = weakref.WeakValueDictionary()
_local_locks_guard = threading.Lock()


def _local_lock_for(key: str) -> _LocalLock:
    with _local_locks_guard:
        lock = _local_locks.get(key)
        if lock is None:
            lock = _LocalLock()
            _local_locks[key] = lock
        return lock


@contextmanager
def organization_lock(organization_id: str) -> Generator[Session, None, None]:
    """
    Open a transaction that holds an exclusive lock on one organization.

    Used by every count-then-insert path (brand kits, transforms, members,
    uploads) so a second request observes the first one's insert.

    PostgreSQL: pg_advisory_xact_lock keyed by the organization id, released
    at commit/rollback. Other dialects: a process-local lock held for the
    whole transaction.
    """
    engine = get_engine()
    if engine.dialect.name == "postgresql":
        with get_db_session() as session:
            session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                {"key": f"organization:{organization_id}"},
            )
            yield session
        return

    lock = _local_lock_for(organization_id)
    with lock:
        with get_db_session() as session:
            yield session


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


# Organizations (tenants)
organizations = Table(
    'organizations',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('slug', String(200), nullable=False, unique=True),
    # Denormalized copy of subscriptions.plan, always written together
    Column('plan', String(50), nullable=False, server_default='free'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Organization members
users = Table(
    'app_users',
    metadata,
    Column('id', String(100), primary_key=True),  # identity provider user id
    Column('organization_id', String(36), ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
    Column('email', String(320), nullable=False, server_default=''),
    Column('first_name', String(200), nullable=True),
    Column('last_name', String(200), nullable=True),
    Column('role', String(20), nullable=False),  # 'owner', 'admin', 'member'
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint("role IN ('owner', 'admin', 'member')", name='ck_app_users_role'),
    # Composite index for listing members of an organization
    Index('idx_app_users_org_created', 'organization_id', 'created_at'),
)

# Subscriptions (one per organization)
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('organization_id', String(36), ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False, unique=True),
    Column('plan', String(50), nullable=False),
    Column('status', String(20), nullable=False),  # active, canceled, past_due
    Column('current_period_start', DateTime(timezone=True), nullable=False),
    Column('current_period_end', DateTime(timezone=True), nullable=False),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default=text('false')),
    Column('video_credits', Integer, nullable=False),
    Column('image_credits', Integer, nullable=False),
    Column('storage_limit', Integer, nullable=False),  # GB
    Column('stripe_customer_id', String(100), nullable=True, index=True),
    Column('stripe_subscription_id', String(100), nullable=True, unique=True),
    Column('last_event_at', DateTime(timezone=True), nullable=True),  # created time of the last applied billing event
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint('video_credits >= 0', name='ck_subscriptions_video_credits'),
    CheckConstraint('image_credits >= 0', name='ck_subscriptions_image_credits'),
)

# Brand kits
brand_kits = Table(
    'brand_kits',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('organization_id', String(36), ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
    Column('name', String(200), nullable=False),
    Column('logo_public_id', String(255), nullable=True),
    Column('primary_color', String(20), nullable=True),
    Column('secondary_color', String(20), nullable=True),
    Column('font_family', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_brand_kits_org_created', 'organization_id', 'created_at'),
)

# Uploaded videos
videos = Table(
    'videos',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('organization_id', String(36), ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
    Column('user_id', String(100), ForeignKey('app_users.id'), nullable=False),
    Column('brand_kit_id', String(36), ForeignKey('brand_kits.id', ondelete='SET NULL'), nullable=True),
    Column('title', String(300), nullable=False),
    Column('description', Text, nullable=True),
    Column('public_id', String(255), nullable=False),
    Column('original_size', String(50), nullable=True),
    Column('compressed_size', String(50), nullable=True),
    Column('duration', Integer, nullable=False, server_default='0'),
    Column('format', String(20), nullable=False, server_default='mp4'),
    Column('resolution', String(20), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_videos_org_created', 'organization_id', 'created_at'),
)

# Transforms applied to a video
video_transforms = Table(
    'video_transforms',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('video_id', String(36), ForeignKey('videos.id', ondelete='CASCADE'), nullable=False),
    Column('brand_kit_id', String(36), ForeignKey('brand_kits.id', ondelete='SET NULL'), nullable=True),
    Column('name', String(300), nullable=False),
    Column('transform_type', String(20), nullable=False),
    Column('settings', JSON, nullable=False),
    Column('output_url', Text, nullable=True),
    Column('output_public_id', String(255), nullable=True),
    Column('status', String(20), nullable=False, server_default='completed'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_video_transforms_video_created', 'video_id', 'created_at'),
)

# Usage audit trail (append-only)
usage_records = Table(
    'usage_records',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('organization_id', String(36), ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
    Column('type', String(50), nullable=False),
    Column('year', Integer, nullable=False),
    Column('month', Integer, nullable=False),
    Column('count', Integer, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Composite index for monthly summaries: (organization_id, year, month)
    Index('idx_usage_records_org_period', 'organization_id', 'year', 'month'),
)

# Billing events (webhook idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('outcome', String(20), nullable=False),  # applied, ignored, dropped
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('stripe_event_id', name='uq_billing_events_stripe_id'),
    Index('idx_billing_events_received_at', 'received_at'),
)
