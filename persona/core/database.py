"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (in-memory SQLite)
- Table definitions for the content store, engagement sets, API quota
  metering and payments
- Dialect-aware INSERT .. ON CONFLICT helper used by every atomic
  set/counter mutation
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Text, Index, UniqueConstraint, PrimaryKeyConstraint, inspect
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func, true
import logging
import os

from persona.core.config import settings

logger = logging.getLogger("persona")

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

    return settings.DATABASE_URL


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
        engine_kwargs = {"connect_args": {"check_same_thread": False}, "echo": False}
        if ":memory:" in url or url.rstrip("/").endswith("sqlite:"):
            engine_kwargs["poolclass"] = StaticPool
        _engine = create_engine(url, **engine_kwargs)
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

    One logical operation = one transaction: commits when the block exits
    cleanly, rolls back on any exception.

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


def upsert(session: Session, table: Table):
    """
    Return a dialect-specific INSERT supporting ON CONFLICT clauses.

    Both the PostgreSQL and SQLite constructs expose
    on_conflict_do_nothing / on_conflict_do_update with the same signature.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(table)
    if dialect == "sqlite":
        return sqlite_insert(table)
    raise RuntimeError(f"Unsupported database dialect for atomic upserts: {dialect}")


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


def missing_tables(required: list[str]) -> list[str]:
    engine = get_engine()
    inspector = inspect(engine)
    return [t for t in required if not inspector.has_table(t)]


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

users = Table(
    'users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('name', Text, nullable=False),
    Column('email', String(320), nullable=True, unique=True),
    Column('avatar', Text, nullable=True),
    Column('role', String(20), nullable=False, server_default='user'),  # user | admin | superadmin
    Column('status', String(20), nullable=False, server_default='active'),  # active | banned
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_created_at', 'created_at'),
)

# ---------------------------------------------------------------------------
# Content store (engageable entities)
# ---------------------------------------------------------------------------

celebrities = Table(
    'celebrities',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('slug', String(200), nullable=False, unique=True),
    Column('name', Text, nullable=False),
    Column('occupation', Text, nullable=True),
    Column('profile_image', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

outfits = Table(
    'outfits',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('slug', String(200), nullable=False, unique=True),
    Column('title', Text, nullable=False),
    Column('celebrity_id', String(100), nullable=True, index=True),
    # Denormalized read-model counters, rewritten in the same transaction as the sets
    Column('likes_count', Integer, nullable=False, server_default='0'),
    Column('comments_count', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

movies = Table(
    'movies',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('slug', String(200), nullable=False, unique=True),
    Column('title', Text, nullable=False),
    Column('release_date', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

reviews = Table(
    'reviews',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('slug', String(200), nullable=False, unique=True),
    Column('title', Text, nullable=False),
    Column('movie_title', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

news = Table(
    'news',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('slug', String(200), nullable=False, unique=True),
    Column('title', Text, nullable=False),
    Column('published_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# ---------------------------------------------------------------------------
# Engagement sets and sequences
# ---------------------------------------------------------------------------

entity_likes = Table(
    'entity_likes',
    metadata,
    Column('entity_type', String(20), nullable=False),
    Column('entity_id', String(100), nullable=False),
    Column('user_id', String(100), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Set semantics: a user appears at most once per entity
    PrimaryKeyConstraint('entity_type', 'entity_id', 'user_id', name='pk_entity_likes'),
    Index('idx_entity_likes_user', 'user_id', 'entity_type', 'created_at'),
)

entity_favourites = Table(
    'entity_favourites',
    metadata,
    Column('entity_type', String(20), nullable=False),
    Column('entity_id', String(100), nullable=False),
    Column('user_id', String(100), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    PrimaryKeyConstraint('entity_type', 'entity_id', 'user_id', name='pk_entity_favourites'),
    Index('idx_entity_favourites_user', 'user_id', 'entity_type', 'created_at'),
)

entity_comments = Table(
    'entity_comments',
    metadata,
    # Autoincrement sequence gives insertion (= display) order
    Column('seq', Integer, primary_key=True, autoincrement=True),
    Column('comment_id', String(64), nullable=False, unique=True),
    Column('entity_type', String(20), nullable=False),
    Column('entity_id', String(100), nullable=False),
    Column('user_id', String(100), nullable=False),
    Column('user_name', Text, nullable=False),
    Column('user_avatar', Text, nullable=True),
    Column('text', Text, nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_entity_comments_entity', 'entity_type', 'entity_id', 'seq'),
)

celebrity_follows = Table(
    'celebrity_follows',
    metadata,
    Column('user_id', String(100), nullable=False),
    Column('celebrity_id', String(100), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    PrimaryKeyConstraint('user_id', 'celebrity_id', name='pk_celebrity_follows'),
    Index('idx_celebrity_follows_celebrity', 'celebrity_id'),
)

# ---------------------------------------------------------------------------
# Audience reviews
# ---------------------------------------------------------------------------

user_reviews = Table(
    'user_reviews',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('review_slug', String(200), nullable=False),
    Column('user_id', String(100), nullable=False),
    Column('user_name', Text, nullable=False),
    Column('user_avatar', Text, nullable=True),
    Column('rating', Integer, nullable=False),
    Column('title', Text, nullable=True),
    Column('body', Text, nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    # One audience review per (user, review page)
    UniqueConstraint('review_slug', 'user_id', name='uq_user_reviews_slug_user'),
    Index('idx_user_reviews_slug_created', 'review_slug', 'created_at'),
)

user_review_helpful = Table(
    'user_review_helpful',
    metadata,
    Column('user_review_id', String(64), nullable=False),
    Column('user_id', String(100), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    PrimaryKeyConstraint('user_review_id', 'user_id', name='pk_user_review_helpful'),
)

# ---------------------------------------------------------------------------
# API keys and usage metering
# ---------------------------------------------------------------------------

api_keys = Table(
    'api_keys',
    metadata,
    Column('key_id', String(64), primary_key=True),
    Column('user_id', String(100), nullable=False, unique=True),  # one key per user
    Column('key_prefix', String(32), nullable=False, unique=True),  # lookup handle, safe to display
    Column('key_hash', Text, nullable=False),  # bcrypt
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('plan_id', String(20), nullable=False, server_default='free'),
    Column('free_quota', Integer, nullable=False),
    Column('purchased_quota', Integer, nullable=False, server_default='0'),
    Column('total_hits', Integer, nullable=False, server_default='0'),  # all-time, never reset
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Column('last_used_at', DateTime(timezone=True), nullable=True),
    Index('idx_api_keys_plan', 'plan_id'),
)

api_usage_monthly = Table(
    'api_usage_monthly',
    metadata,
    Column('key_id', String(64), nullable=False),
    Column('month', String(7), nullable=False),  # YYYY-MM (UTC)
    Column('hits', Integer, nullable=False, server_default='0'),
    PrimaryKeyConstraint('key_id', 'month', name='pk_api_usage_monthly'),
)

api_usage_daily = Table(
    'api_usage_daily',
    metadata,
    Column('key_id', String(64), nullable=False),
    Column('day', String(10), nullable=False),  # YYYY-MM-DD (UTC)
    Column('hits', Integer, nullable=False, server_default='0'),
    PrimaryKeyConstraint('key_id', 'day', name='pk_api_usage_daily'),
)

api_endpoint_hits = Table(
    'api_endpoint_hits',
    metadata,
    Column('key_id', String(64), nullable=False),
    Column('endpoint', String(300), nullable=False),  # "GET /api/v1/celebrities"
    Column('hits', Integer, nullable=False, server_default='0'),
    Column('last_hit_at', DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint('key_id', 'endpoint', name='pk_api_endpoint_hits'),
)

# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

payment_orders = Table(
    'payment_orders',
    metadata,
    Column('order_id', String(64), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('plan_id', String(20), nullable=False),
    Column('plan_label', String(100), nullable=False),
    Column('quota_granted', Integer, nullable=False),
    Column('amount_inr', Integer, nullable=False),
    Column('currency', String(3), nullable=False, server_default='INR'),
    Column('provider_order_id', String(100), nullable=False, unique=True),
    Column('provider_payment_id', String(100), nullable=True),
    Column('provider_signature', String(200), nullable=True),
    Column('status', String(20), nullable=False, server_default='created'),  # created | paid | failed | refunded
    # Set exactly once by whichever path credits the quota
    Column('quota_credited_at', DateTime(timezone=True), nullable=True),
    Column('credit_source', String(10), nullable=True),  # auto | manual
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Index('idx_payment_orders_status_created', 'status', 'created_at'),
)

# Append-only operator audit trail
admin_audit = Table(
    'admin_audit',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor_id', String(100), nullable=False),
    Column('actor_role', String(20), nullable=False),
    Column('action', String(100), nullable=False),  # "manual_credit", "revoke_api_key", ...
    Column('target_user_id', String(100), nullable=True),
    Column('target_resource', String(200), nullable=True),  # order_id, key_id, ...
    Column('note', Text, nullable=True),
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_admin_audit_action_created', 'action', 'created_at'),
    Index('idx_admin_audit_target_user', 'target_user_id'),
)

REQUIRED_TABLES = [t.name for t in metadata.sorted_tables]
