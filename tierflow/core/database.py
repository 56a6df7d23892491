"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (StaticPool for in-memory SQLite)
- Table definitions for the subscription lifecycle
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Numeric, Index, ForeignKey, UniqueConstraint, text, true, false
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from tierflow.core.config import settings

logger = logging.getLogger("tierflow.database")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
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

    if url.startswith("sqlite"):
        # A single shared connection keeps in-memory databases alive across sessions
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
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
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
            session.commit()
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


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Plans catalog
plans = Table(
    'plans',
    metadata,
    Column('plan_id', String(50), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('price', Numeric(10, 2), nullable=False),
    Column('discount_percent', Numeric(5, 2), nullable=False, server_default='0'),
    Column('duration_months', Integer, nullable=False, server_default='1'),
    Column('is_trial', Boolean, nullable=False, server_default=false()),
    Column('trial_days', Integer, nullable=False, server_default='0'),
    Column('tier', Integer, nullable=False),
    Column('plan_kind', String(10), nullable=False),  # PAID | TRIAL | FREE, set once at creation
    Column('features', JSON, nullable=False),
    Column('processor_price_id', String(100), nullable=True),
    Column('is_recommended', Boolean, nullable=False, server_default=false()),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_plans_active_tier', 'is_active', 'tier'),
)

# Users known to billing (trial marker + processor customer)
app_users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(255), nullable=True),
    Column('has_used_trial', Boolean, nullable=False, server_default=false()),
    Column('processor_customer_id', String(100), nullable=True, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Subscription records (one current per user, history retained)
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False, index=True),
    Column('plan_id', String(50), ForeignKey('plans.plan_id'), nullable=False),
    Column('status', String(20), nullable=False, index=True),
    Column('start_date', DateTime(timezone=True), nullable=False),
    Column('end_date', DateTime(timezone=True), nullable=False, index=True),
    Column('next_plan_id', String(50), ForeignKey('plans.plan_id'), nullable=True),
    Column('scheduled_change_at', DateTime(timezone=True), nullable=True),
    Column('processor_subscription_id', String(100), nullable=True, unique=True),
    Column('processor_customer_id', String(100), nullable=True),
    Column('ends_immediately', Boolean, nullable=False, server_default=false()),
    Column('canceled_at', DateTime(timezone=True), nullable=True),
    Column('version', Integer, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_subscriptions_user_status', 'user_id', 'status'),
    Index('idx_subscriptions_status_end', 'status', 'end_date'),
    # At most one current (non-terminal) record per user
    Index(
        'uq_subscriptions_one_current_per_user',
        'user_id',
        unique=True,
        postgresql_where=text("status IN ('TRIAL', 'ACTIVE', 'PAST_DUE', 'CANCELED')"),
        sqlite_where=text("status IN ('TRIAL', 'ACTIVE', 'PAST_DUE', 'CANCELED')"),
    ),
)

# Processor-confirmed charges
payments = Table(
    'payments',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('subscription_id', String(36), ForeignKey('subscriptions.id'), nullable=False, index=True),
    Column('amount', Numeric(10, 2), nullable=False),
    Column('currency', String(10), nullable=False),
    Column('processor_payment_id', String(100), nullable=True, unique=True),
    Column('kind', String(20), nullable=False, server_default='renewal'),  # checkout | renewal | proration
    Column('period_start', DateTime(timezone=True), nullable=False),
    Column('paid_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_payments_subscription_period', 'subscription_id', 'period_start'),
)

# Refunds and downgrade credits issued through the processor
refunds = Table(
    'refunds',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('subscription_id', String(36), ForeignKey('subscriptions.id'), nullable=False, index=True),
    Column('amount', Numeric(10, 2), nullable=False),
    Column('reason', Text, nullable=False),
    Column('receipt_id', String(100), nullable=False),
    Column('actor', String(100), nullable=False),
    Column('period_start', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Webhook events (idempotency + parking)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 hash of raw body
    Column('payload_json', JSON, nullable=True),  # normalized event, kept for replay
    Column('status', String(20), nullable=False, server_default='received'),  # received | processed | ignored | parked | failed
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('event_id', name='uq_billing_events_event_id'),
    Index('idx_billing_events_status', 'status'),
    Index('idx_billing_events_received_at', 'received_at'),
)

# Idempotency keys (admin overrides, checkout)
idempotency_keys = Table(
    'idempotency_keys',
    metadata,
    Column('key', String(255), primary_key=True),
    Column('scope', String(100), nullable=True, index=True),
    Column('result_json', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Admin audit log
billing_admin_audit = Table(
    'billing_admin_audit',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor', String(100), nullable=False),
    Column('action', String(100), nullable=False),
    Column('target_user_id', String(100), nullable=True),
    Column('target_resource', String(200), nullable=True),
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_billing_admin_audit_action', 'action'),
    Index('idx_billing_admin_audit_user_id', 'target_user_id'),
    Index('idx_billing_admin_audit_created_at', 'created_at'),
)

# Scheduled job runs
billing_job_runs = Table(
    'billing_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', Text, nullable=True),
    Index('idx_billing_job_runs_name_started', 'job_name', 'started_at'),
)
